"""
Turn Coordinator for the Assistant Turn Pipeline.

Drives one user message through the conversation backend to a sanitized,
link-stable reply:

    validate -> conversation -> file context -> [search] -> message -> job
    -> poll -> extract -> resolve files -> sanitize -> [json] -> sources
"""
import json
import re
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from models.conversation import AssistantMessage, JobState, TurnInput
from models.reply import SanitizedReply, SourceCitation, TurnResult
from services.assistant_client import AssistantClient
from services.content_sanitizer import ContentSanitizer
from services.errors import (
    ConcurrentTurnError,
    ConfigurationError,
    JsonParseError,
    PartialExtractionError,
    TransportError,
    UpstreamCreateError,
    ValidationError,
)
from services.file_resolver import FileReferenceResolver, collect_references
from services.file_store import ConversationFileStore
from services.run_poller import PollBudget, PollOutcome, RunPoller, SEARCH_BUDGET, STANDARD_BUDGET
from services.search_augmenter import JSON_ONLY_INSTRUCTION, SearchAugmenter

logger = logging.getLogger(__name__)

NO_RESPONSE_MESSAGE = "No response received."
FAILED_MESSAGE = "The assistant run failed. Please try again."
SEARCH_FAILED_MESSAGE = (
    "The assistant failed to process your request with web search. "
    "Please try again without web search."
)
TIMEOUT_MESSAGE = "The assistant is taking too long to respond. Please try again."
REQUIRES_ACTION_MESSAGE = "Additional action required. Please try again."

_CODE_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n(.*?)\n?\s*```\s*$", re.DOTALL)


def merge_handles(*groups: List[str]) -> List[str]:
    """Concatenate handle lists, dropping duplicates and keeping first-seen order."""
    merged: List[str] = []
    seen = set()
    for group in groups:
        for handle in group or []:
            if handle and handle not in seen:
                seen.add(handle)
                merged.append(handle)
    return merged


def parse_structured(text: str) -> Dict[str, Any]:
    """
    Parse a JSON-mode reply.

    A surrounding markdown code fence is tolerated. The reply must be a JSON
    object.

    Raises:
        JsonParseError: If the text is not a JSON object
    """
    candidate = text.strip()
    fenced = _CODE_FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1).strip()

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise JsonParseError("Reply is not valid JSON", details={"position": e.pos}) from e

    if not isinstance(parsed, dict):
        raise JsonParseError("Reply is JSON but not an object", details={"type": type(parsed).__name__})
    return parsed


def render_sources(sources: List[SourceCitation]) -> str:
    """Markdown "Sources" section appended to natural-language replies."""
    lines = ["", "", "---", "**Sources:**"]
    for index, source in enumerate(sources, start=1):
        lines.append(f"{index}. [{source.title}]({source.url})")
    return "\n".join(lines)


class TurnCoordinator:
    """Compose one conversation turn from the pipeline's collaborators."""

    def __init__(
        self,
        assistant_client: AssistantClient,
        poller: RunPoller,
        resolver: FileReferenceResolver,
        sanitizer: ContentSanitizer,
        augmenter: SearchAugmenter,
        conversation_files: Optional[ConversationFileStore] = None,
        standard_budget: PollBudget = STANDARD_BUDGET,
        search_budget: PollBudget = SEARCH_BUDGET,
        timestamp_tolerance_s: float = 5,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize the coordinator.

        Args:
            assistant_client: Conversation backend
            poller: Waits for jobs to finish
            resolver: Persists referenced files
            sanitizer: Cleans reply text
            augmenter: Optional search stage
            conversation_files: Per-conversation file context; None disables it
            standard_budget: Poll budget for plain turns
            search_budget: Poll budget for search-augmented turns
            timestamp_tolerance_s: Slack applied to the submit time when
                selecting the reply messages
            clock: Source of the submit time
        """
        self.assistant_client = assistant_client
        self.poller = poller
        self.resolver = resolver
        self.sanitizer = sanitizer
        self.augmenter = augmenter
        self.conversation_files = conversation_files
        self.standard_budget = standard_budget
        self.search_budget = search_budget
        self.timestamp_tolerance = timedelta(seconds=timestamp_tolerance_s)
        self._clock = clock
        logger.info("Initialized TurnCoordinator")

    def run_turn(self, turn: TurnInput) -> TurnResult:
        """
        Run one turn to completion.

        Args:
            turn: The user's message and options

        Returns:
            TurnResult; failed and timed-out jobs come back as a result with a
            fixed message, not as an exception

        Raises:
            ValidationError: If the message is empty
            ConfigurationError: If no assistant is configured
            UpstreamCreateError: If the conversation, message or job cannot be created
            ConcurrentTurnError: If the conversation already has a running job
        """
        text = (turn.text or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty")
        if not self.assistant_client.assistant_id:
            raise ConfigurationError("OPENAI_ASSISTANT_ID must be provided or set in environment")

        submitted_at = turn.submitted_at or self._clock()
        conversation_id = turn.conversation_id
        if conversation_id:
            self._ensure_idle(conversation_id)
        else:
            conversation_id = self._create_conversation()

        log_extra = {"conversation_id": conversation_id}
        context_handles = self._context_handles(conversation_id)
        handles = merge_handles(context_handles, turn.file_handles)

        outbound, sources = self._compose_outbound(text, turn)

        try:
            self.assistant_client.append_message(conversation_id, outbound, handles)
        except TransportError as e:
            logger.error(f"Failed to add message: {e}", extra=log_extra)
            raise UpstreamCreateError(
                "Failed to add message to conversation",
                details={"conversation_id": conversation_id, "upstream_code": e.error.code},
            ) from e

        job_id = self._create_job(conversation_id)
        log_extra["job_id"] = job_id

        budget = self.search_budget if turn.search_enabled else self.standard_budget
        outcome = self.poller.await_terminal(conversation_id, job_id, budget)

        if outcome.state is not JobState.COMPLETED:
            return self._unsuccessful(outcome, conversation_id, job_id, turn.search_enabled)

        reply, cleanup_requested, error_kind = self._build_reply(
            conversation_id, job_id, submitted_at, sources, turn.json_mode_requested
        )

        self._record_file_usage(conversation_id, handles)

        logger.info(
            f"Turn completed with {len(reply.files)} files"
            + (f" and {len(sources)} sources" if sources else ""),
            extra=log_extra,
        )
        return TurnResult(
            status="success",
            conversation_id=conversation_id,
            reply=reply,
            job_id=job_id,
            error_kind=error_kind,
            cleanup_requested=cleanup_requested,
        )

    # Submission

    def _ensure_idle(self, conversation_id: str) -> None:
        try:
            active = self.assistant_client.list_active_jobs(conversation_id)
        except TransportError as e:
            # The backend still rejects a message or job while a run is active
            logger.warning(f"Could not check active jobs of {conversation_id}: {e}")
            return
        if active:
            raise ConcurrentTurnError(
                "A previous turn is still running for this conversation",
                details={"conversation_id": conversation_id, "job_id": active[0].id},
            )

    def _create_conversation(self) -> str:
        try:
            return self.assistant_client.create_conversation()
        except TransportError as e:
            logger.error(f"Failed to create conversation: {e}")
            raise UpstreamCreateError(
                "Failed to create conversation", details={"upstream_code": e.error.code}
            ) from e

    def _create_job(self, conversation_id: str) -> str:
        try:
            return self.assistant_client.create_job(conversation_id)
        except TransportError as e:
            logger.error(f"Failed to create job: {e}", extra={"conversation_id": conversation_id})
            raise UpstreamCreateError(
                "Failed to start the assistant",
                details={"conversation_id": conversation_id, "upstream_code": e.error.code},
            ) from e

    def _context_handles(self, conversation_id: str) -> List[str]:
        if self.conversation_files is None:
            return []
        try:
            return self.conversation_files.list_active_handles(conversation_id)
        except TransportError as e:
            logger.warning(f"Could not load file context of {conversation_id}: {e}")
            return []

    def _compose_outbound(self, text: str, turn: TurnInput) -> Tuple[str, List[SourceCitation]]:
        """Outbound message text and the search sources embedded in it."""
        if turn.search_enabled:
            augmentation = self.augmenter.augment(text, turn.json_mode_requested)
            return augmentation.text, augmentation.sources
        if turn.json_mode_requested:
            return f"{text}\n\n{JSON_ONLY_INSTRUCTION}", []
        return text, []

    # Completion

    def _unsuccessful(self, outcome: PollOutcome, conversation_id: str, job_id: str, search_enabled: bool) -> TurnResult:
        state = outcome.state
        if state is JobState.TIMEOUT:
            status, message = "timeout", TIMEOUT_MESSAGE
        elif state is JobState.REQUIRES_ACTION:
            status, message = "failed", REQUIRES_ACTION_MESSAGE
        else:
            status = "failed"
            message = SEARCH_FAILED_MESSAGE if search_enabled else FAILED_MESSAGE

        logger.warning(
            f"Turn ended with job state {state.value}",
            extra={"conversation_id": conversation_id, "job_id": job_id},
        )
        return TurnResult(
            status=status,
            conversation_id=conversation_id,
            reply=SanitizedReply(text=message),
            job_id=job_id,
            error_kind=outcome.error.error.code if outcome.error else state.value,
        )

    def _build_reply(
        self,
        conversation_id: str,
        job_id: str,
        submitted_at: datetime,
        sources: List[SourceCitation],
        json_mode_requested: bool,
    ) -> Tuple[SanitizedReply, bool, Optional[str]]:
        """Sanitized reply, whether cleanup was requested, and any recovered error kind."""
        try:
            messages = self._extract(conversation_id, job_id, submitted_at)
        except PartialExtractionError as e:
            logger.warning(f"{e}", extra={"conversation_id": conversation_id, "job_id": job_id})
            return (
                SanitizedReply(text=NO_RESPONSE_MESSAGE, search_sources=sources or None),
                False,
                e.error.code,
            )

        raw_text = "\n\n".join(m.text for m in messages if m.text)
        refs = collect_references(messages)
        resolution = self.resolver.resolve(refs, conversation_id)
        text = self.resolver.rewrite_text(raw_text, refs, resolution)
        text = self.sanitizer.clean(text)

        error_kind = None
        structured = None
        structured_ok = False
        if json_mode_requested:
            try:
                structured = parse_structured(text)
            except JsonParseError as e:
                logger.warning(f"JSON reply could not be parsed: {e}", extra={"conversation_id": conversation_id})
                structured = {"raw_text": text, "parsing_failed": True}
                error_kind = e.error.code
            else:
                structured_ok = True
                if sources:
                    structured["sources"] = [
                        {"title": s.title, "url": s.url, "relevance_score": s.relevance_score}
                        for s in sources
                    ]

        if sources and not structured_ok:
            text += render_sources(sources)

        reply = SanitizedReply(
            text=text or NO_RESPONSE_MESSAGE,
            files=resolution.files,
            search_sources=sources or None,
            structured=structured,
        )
        return reply, resolution.cleanup_requested, error_kind

    def _extract(self, conversation_id: str, job_id: str, submitted_at: datetime) -> List[AssistantMessage]:
        """
        Assistant messages produced by this turn, oldest first.

        Messages are selected by creation time (submit time minus the
        tolerance); those tagged with the job id win when any exist.

        Raises:
            PartialExtractionError: If nothing can be read back
        """
        since = submitted_at - self.timestamp_tolerance
        try:
            messages = self.assistant_client.list_recent_messages(conversation_id, since=since)
        except TransportError as e:
            raise PartialExtractionError(
                f"Could not read the reply of job {job_id}",
                details={"upstream_code": e.error.code},
            ) from e

        replies = [m for m in messages if m.role == "assistant"]
        own = [m for m in replies if m.run_id == job_id]
        if own:
            replies = own

        if not any(m.parts or m.attachments for m in replies):
            raise PartialExtractionError(f"No reply found for job {job_id}")
        return replies

    def _record_file_usage(self, conversation_id: str, handles: List[str]) -> None:
        if self.conversation_files is None or not handles:
            return
        try:
            self.conversation_files.record_usage(conversation_id, handles)
        except TransportError as e:
            logger.warning(f"Could not record file usage of {conversation_id}: {e}")
