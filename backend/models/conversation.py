"""Conversation, job and message data models."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional


class JobState(str, Enum):
    """States of a backend run, plus the locally derived TIMEOUT."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    CANCELLING = "cancelling"
    REQUIRES_ACTION = "requires_action"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        """True once the backend will not move the job any further."""
        return self in TERMINAL_STATES

    @property
    def stops_polling(self) -> bool:
        """True for terminal states and for requires_action."""
        return self in TERMINAL_STATES or self is JobState.REQUIRES_ACTION


TERMINAL_STATES = frozenset({
    JobState.COMPLETED,
    JobState.FAILED,
    JobState.CANCELLED,
    JobState.EXPIRED,
    JobState.INCOMPLETE,
    JobState.TIMEOUT,
})


@dataclass
class Job:
    """The asynchronous unit the conversation backend executes per turn."""
    id: str
    conversation_id: str
    state: JobState
    required_action: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None


@dataclass
class TurnInput:
    """One request to run a conversation turn."""
    text: str
    conversation_id: Optional[str] = None
    file_handles: List[str] = field(default_factory=list)
    search_enabled: bool = False
    json_mode_requested: bool = False
    submitted_at: Optional[datetime] = None


@dataclass
class FileAnnotation:
    """An in-text file path the model emitted, tied to the file it points at."""
    text: str  # e.g. "sandbox:/mnt/data/report.csv"
    file_handle: str


@dataclass
class ContentPart:
    """
    One piece of an assistant message.

    The backend's loosely shaped content is resolved into this tagged variant
    once, in the client, so nothing downstream has to sniff shapes again.

    Attributes:
        kind: "text", "image_ref" or "file_ref"
        text: Message text (text parts only)
        file_handle: Referenced file (image_ref/file_ref parts only)
        annotations: In-text file paths found in a text part
    """
    kind: Literal["text", "image_ref", "file_ref"]
    text: str = ""
    file_handle: Optional[str] = None
    annotations: List[FileAnnotation] = field(default_factory=list)


@dataclass
class AssistantMessage:
    """A message read back from the conversation backend."""
    id: str
    role: str
    created_at: datetime
    parts: List[ContentPart]
    run_id: Optional[str] = None
    attachments: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        """All text parts joined with newlines."""
        return "\n".join(part.text for part in self.parts if part.kind == "text" and part.text)
