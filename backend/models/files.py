"""File data models."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class EphemeralFileHandle:
    """A job-scoped file id, optionally with the in-text path that referenced it."""
    external_handle: str
    sandbox_path: Optional[str] = None
    filename: Optional[str] = None


@dataclass
class FileMetadata:
    """Metadata the conversation backend holds for a file."""
    handle: str
    filename: str
    size_bytes: int = 0
    content_type: Optional[str] = None
    purpose: Optional[str] = None


@dataclass
class StoredObject:
    """Result of an upload to the storage backend."""
    url: str
    key: str
    size: int
    content_type: str = "application/octet-stream"


@dataclass
class PersistedFile:
    """A publicly addressable copy of a file, keyed by its originating handle."""
    external_handle: str
    storage_key: str
    public_url: str
    filename: str
    content_type: str
    size_bytes: int
    conversation_id: str
    created_at: datetime
    last_accessed_at: datetime
    usage_count: int = 1
