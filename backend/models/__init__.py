"""Data models for the Assistant Turn Pipeline."""
from .conversation import (
    AssistantMessage,
    ContentPart,
    FileAnnotation,
    Job,
    JobState,
    TERMINAL_STATES,
    TurnInput,
)
from .files import EphemeralFileHandle, FileMetadata, PersistedFile, StoredObject
from .reply import SanitizedReply, SourceCitation, TurnResult
from .api import TurnRequest, TurnResponse, FileOutput, Source, StorageStats, CleanupSummary

__all__ = [
    "AssistantMessage",
    "ContentPart",
    "FileAnnotation",
    "Job",
    "JobState",
    "TERMINAL_STATES",
    "TurnInput",
    "EphemeralFileHandle",
    "FileMetadata",
    "PersistedFile",
    "StoredObject",
    "SanitizedReply",
    "SourceCitation",
    "TurnResult",
    "TurnRequest",
    "TurnResponse",
    "FileOutput",
    "Source",
    "StorageStats",
    "CleanupSummary",
]
