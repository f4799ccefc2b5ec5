"""Conversation backend client for the OpenAI Assistants API (threads, runs, files)."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models.conversation import AssistantMessage, ContentPart, FileAnnotation, Job, JobState
from models.files import FileMetadata
from services.errors import ConcurrentTurnError, ConfigurationError, TransportError
from services.transport import TransportPolicy

logger = logging.getLogger(__name__)


class AssistantClient:
    """Client for the hosted assistant's threads, messages, runs and files."""

    def __init__(
        self,
        api_key: Optional[str],
        assistant_id: Optional[str],
        transport: TransportPolicy,
        base_url: str = "https://api.openai.com/v1",
        organization: Optional[str] = None,
    ):
        """
        Initialize the assistant client.

        Args:
            api_key: OpenAI API key
            assistant_id: Assistant that runs every job
            transport: Retry/timeout policy for every call
            base_url: API root
            organization: Optional OpenAI organization id

        Raises:
            ConfigurationError: If the API key or assistant id is missing
        """
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY must be provided or set in environment")
        if not assistant_id:
            raise ConfigurationError("OPENAI_ASSISTANT_ID must be provided or set in environment")

        self.assistant_id = assistant_id
        self.transport = transport
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "assistants=v2",
            "Content-Type": "application/json",
        }
        if organization:
            self.headers["OpenAI-Organization"] = organization
        logger.info("AssistantClient initialized successfully")

    # Threads and messages

    def create_conversation(self) -> str:
        """Create a new thread and return its id."""
        data = self._post("/threads", {}, retryable=False)
        logger.info(f"Created conversation {data['id']}")
        return data["id"]

    def append_message(self, conversation_id: str, text: str, file_handles: List[str]) -> None:
        """Add a user message with the given files attached for code-interpreter use."""
        payload: Dict[str, Any] = {"role": "user", "content": text}
        if file_handles:
            payload["attachments"] = [
                {"file_id": handle, "tools": [{"type": "code_interpreter"}]}
                for handle in file_handles
            ]
        try:
            self._post(f"/threads/{conversation_id}/messages", payload, retryable=False)
        except TransportError as e:
            if _is_active_run_rejection(e):
                raise ConcurrentTurnError(
                    "A previous turn is still running for this conversation",
                    details={"conversation_id": conversation_id},
                ) from e
            raise
        logger.debug(f"Appended message to {conversation_id} with {len(file_handles)} attachments")

    def list_recent_messages(
        self,
        conversation_id: str,
        since: Optional[datetime] = None,
        limit: int = 20,
    ) -> List[AssistantMessage]:
        """
        List the newest messages of a thread, oldest first.

        Args:
            conversation_id: Thread id
            since: Only keep messages created at or after this instant
            limit: How many of the newest messages to fetch

        Returns:
            Messages in chronological order
        """
        data = self._get(
            f"/threads/{conversation_id}/messages",
            params={"order": "desc", "limit": limit},
        )
        messages = [self._parse_message(item) for item in data.get("data", [])]
        if since is not None:
            messages = [m for m in messages if m.created_at >= since]
        messages.sort(key=lambda m: m.created_at)
        return messages

    # Runs

    def create_job(
        self,
        conversation_id: str,
        agent_id: Optional[str] = None,
        additional_instructions: Optional[str] = None,
    ) -> str:
        """
        Start a run on the thread.

        Raises:
            ConcurrentTurnError: If the backend reports an active run on the thread
            TransportError: For any other failure
        """
        payload: Dict[str, Any] = {"assistant_id": agent_id or self.assistant_id}
        if additional_instructions:
            payload["additional_instructions"] = additional_instructions
        try:
            data = self._post(f"/threads/{conversation_id}/runs", payload, retryable=False)
        except TransportError as e:
            if _is_active_run_rejection(e):
                raise ConcurrentTurnError(
                    "A previous turn is still running for this conversation",
                    details={"conversation_id": conversation_id},
                ) from e
            raise
        logger.info(f"Created job {data['id']} on {conversation_id}")
        return data["id"]

    def get_job(self, conversation_id: str, job_id: str) -> Job:
        """Fetch the current state of a run."""
        data = self._get(f"/threads/{conversation_id}/runs/{job_id}")
        return self._parse_job(data, conversation_id)

    def list_active_jobs(self, conversation_id: str) -> List[Job]:
        """Return the thread's runs that have not reached a terminal state."""
        data = self._get(f"/threads/{conversation_id}/runs", params={"order": "desc", "limit": 10})
        jobs = [self._parse_job(item, conversation_id) for item in data.get("data", [])]
        return [job for job in jobs if not job.state.is_terminal]

    # Files

    def get_file_metadata(self, handle: str) -> FileMetadata:
        data = self._get(f"/files/{handle}")
        return FileMetadata(
            handle=handle,
            filename=data.get("filename") or "",
            size_bytes=data.get("bytes") or 0,
            purpose=data.get("purpose"),
        )

    def get_file_content(self, handle: str) -> bytes:
        response = self.transport.request(
            "GET", f"{self.base_url}/files/{handle}/content", headers=self.headers
        )
        return response.content

    # Helpers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self.transport.request("GET", f"{self.base_url}{path}", headers=self.headers, params=params)
        return response.json()

    def _post(self, path: str, payload: Dict[str, Any], retryable: bool = True) -> Dict[str, Any]:
        response = self.transport.request(
            "POST", f"{self.base_url}{path}", headers=self.headers, json=payload, retryable=retryable
        )
        return response.json()

    @staticmethod
    def _parse_job(data: Dict[str, Any], conversation_id: str) -> Job:
        try:
            state = JobState(data.get("status", ""))
        except ValueError:
            logger.warning(f"Unknown run status {data.get('status')!r}, treating as in_progress")
            state = JobState.IN_PROGRESS
        last_error = data.get("last_error") or {}
        return Job(
            id=data["id"],
            conversation_id=data.get("thread_id") or conversation_id,
            state=state,
            required_action=data.get("required_action"),
            last_error=last_error.get("message") if isinstance(last_error, dict) else None,
        )

    @staticmethod
    def _parse_message(data: Dict[str, Any]) -> AssistantMessage:
        """Resolve the backend's message content into tagged parts."""
        parts: List[ContentPart] = []
        content = data.get("content")

        if isinstance(content, str):
            parts.append(ContentPart(kind="text", text=content))
        else:
            for item in content or []:
                item_type = item.get("type")
                if item_type == "text":
                    text_obj = item.get("text") or {}
                    if isinstance(text_obj, str):
                        parts.append(ContentPart(kind="text", text=text_obj))
                        continue
                    annotations = [
                        FileAnnotation(text=ann["text"], file_handle=ann["file_path"]["file_id"])
                        for ann in text_obj.get("annotations") or []
                        if ann.get("type") == "file_path" and ann.get("file_path", {}).get("file_id")
                    ]
                    parts.append(ContentPart(
                        kind="text",
                        text=text_obj.get("value", ""),
                        annotations=annotations,
                    ))
                elif item_type == "image_file":
                    file_id = (item.get("image_file") or {}).get("file_id")
                    if file_id:
                        parts.append(ContentPart(kind="image_ref", file_handle=file_id))
                elif item_type == "file":
                    file_id = (item.get("file") or {}).get("file_id")
                    if file_id:
                        parts.append(ContentPart(kind="file_ref", file_handle=file_id))
                else:
                    logger.debug(f"Skipping unsupported content part {item_type!r}")

        attachments = [
            a["file_id"] for a in data.get("attachments") or [] if a.get("file_id")
        ]
        return AssistantMessage(
            id=data["id"],
            role=data.get("role", "assistant"),
            created_at=datetime.fromtimestamp(data.get("created_at", 0), tz=timezone.utc),
            parts=parts,
            run_id=data.get("run_id"),
            attachments=attachments,
        )


def _is_active_run_rejection(error: TransportError) -> bool:
    """Whether the backend refused the call because a run is still active on the thread."""
    message = str(error).lower()
    return error.upstream_status == 400 and ("active run" in message or "is active" in message)
