"""Turn result data models."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .files import PersistedFile


@dataclass
class SourceCitation:
    """A web source produced by search augmentation."""
    title: str
    url: str
    relevance_score: Optional[float] = None
    snippet: str = ""


@dataclass
class SanitizedReply:
    """The user-facing reply of a turn."""
    text: str
    files: List[PersistedFile] = field(default_factory=list)
    search_sources: Optional[List[SourceCitation]] = None
    structured: Optional[Dict[str, Any]] = None


@dataclass
class TurnResult:
    """
    Outcome of one conversation turn.

    Attributes:
        status: "success", "failed" or "timeout"
        conversation_id: Conversation the turn ran in (created if needed)
        reply: Sanitized reply, or the fixed message for failed/timeout turns
        job_id: Backend job that served the turn
        error_kind: Recovered error kind for non-success turns
        cleanup_requested: Storage usage crossed the cleanup threshold
    """
    status: str
    conversation_id: str
    reply: SanitizedReply
    job_id: Optional[str] = None
    error_kind: Optional[str] = None
    cleanup_requested: bool = False
