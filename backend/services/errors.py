"""Error taxonomy for the turn pipeline."""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class PipelineError:
    """Structured error information carried by every pipeline exception."""
    code: str
    message: str
    status_code: int = 500
    details: Dict[str, Any] = field(default_factory=dict)


class TurnPipelineError(Exception):
    """Base exception for turn pipeline errors with structured error information."""

    code = "PIPELINE_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        self.error = PipelineError(
            code=code or self.code,
            message=message,
            status_code=self.status_code,
            details=details or {},
        )
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error.code,
            "message": self.error.message,
            "details": self.error.details,
        }


class ConfigurationError(TurnPipelineError):
    """Missing credentials or assistant id. Fatal, never retried."""
    code = "CONFIG_ERROR"
    status_code = 500


class ValidationError(TurnPipelineError):
    """Invalid request input, such as an empty message."""
    code = "VALIDATION_ERROR"
    status_code = 400


class UpstreamCreateError(TurnPipelineError):
    """Creating a conversation, message or job failed. Not idempotent, so not retried here."""
    code = "UPSTREAM_CREATE_ERROR"
    status_code = 500


class ConcurrentTurnError(TurnPipelineError):
    """A non-terminal job already exists for the conversation."""
    code = "CONCURRENT_TURN"
    status_code = 409


class UpstreamTimeoutError(TurnPipelineError):
    """The job did not reach a terminal state within the attempt budget."""
    code = "RUN_TIMEOUT"
    status_code = 408


class PartialExtractionError(TurnPipelineError):
    """The reply could not be fully extracted from the backend messages."""
    code = "PARTIAL_EXTRACTION"


class FileResolutionError(TurnPipelineError):
    """A single file could not be persisted."""
    code = "FILE_RESOLUTION_ERROR"


class SearchError(TurnPipelineError):
    """The search collaborator failed or returned nothing usable."""
    code = "SEARCH_ERROR"
    status_code = 502


class JsonParseError(TurnPipelineError):
    """A JSON-mode reply was not valid JSON."""
    code = "JSON_PARSE_ERROR"
    status_code = 422


class TransportError(TurnPipelineError):
    """An outbound call failed after the transport policy gave up."""
    code = "TRANSPORT_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
        upstream_status: Optional[int] = None,
    ):
        super().__init__(message, details=details, code=code)
        self.upstream_status = upstream_status
        if upstream_status is not None:
            self.error.details.setdefault("upstream_status", upstream_status)
