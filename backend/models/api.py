"""Request and response schemas for the HTTP API."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TurnRequest(BaseModel):
    """Body of POST /turn."""
    message: str
    conversation_id: Optional[str] = None
    file_handles: List[str] = Field(default_factory=list)
    search_enabled: bool = False
    json_mode_requested: bool = False


class FileOutput(BaseModel):
    """A persisted file as returned to the UI."""
    file_handle: str
    filename: str
    url: str
    content_type: str
    size_bytes: int


class Source(BaseModel):
    """A web source used to answer the turn."""
    title: str
    url: str
    relevance_score: Optional[float] = None
    snippet: str = ""


class TurnResponse(BaseModel):
    """Body returned by POST /turn."""
    reply: str
    conversation_id: str
    status: str
    message_id: Optional[str] = None
    files: Optional[List[FileOutput]] = None
    search_sources: Optional[List[Source]] = None
    structured_reply: Optional[Dict[str, Any]] = None


class StorageStats(BaseModel):
    """Aggregate storage usage."""
    total_bytes: int
    file_count: int
    storage_limit: int
    percent_used: float
    last_cleanup: Optional[str] = None


class CleanupSummary(BaseModel):
    """Result of a retention cleanup pass."""
    deleted_count: int
    freed_bytes: int
