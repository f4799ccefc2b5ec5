"""Wait for a backend job to reach a terminal state."""
import time
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from models.conversation import Job, JobState
from services.assistant_client import AssistantClient
from services.errors import TransportError, TurnPipelineError, UpstreamTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollBudget:
    """Polling interval and the maximum number of polls."""
    interval_ms: int
    max_attempts: int

    @property
    def worst_case_seconds(self) -> float:
        return self.interval_ms * self.max_attempts / 1000


STANDARD_BUDGET = PollBudget(interval_ms=1000, max_attempts=300)
SEARCH_BUDGET = PollBudget(interval_ms=2000, max_attempts=900)


@dataclass
class PollOutcome:
    """
    Where polling stopped.

    Attributes:
        state: Final job state; TIMEOUT when the budget ran out
        job: Last job snapshot fetched, if any
        attempts: Number of polls made
        error: Transport failure that stopped polling early, or the
            UpstreamTimeoutError raised in place of a TIMEOUT
    """
    state: JobState
    job: Optional[Job] = None
    attempts: int = 0
    error: Optional[TurnPipelineError] = None


class RunPoller:
    """Poll a job sequentially until it stops, fails to fetch, or the budget runs out."""

    def __init__(self, assistant_client: AssistantClient, sleep: Callable[[float], None] = time.sleep):
        self.assistant_client = assistant_client
        self._sleep = sleep

    def await_terminal(self, conversation_id: str, job_id: str, budget: PollBudget) -> PollOutcome:
        """
        Block until the job is terminal or requires action.

        Each attempt sleeps one interval and then fetches the job, so the
        worst case is max_attempts * interval plus one round trip.

        Args:
            conversation_id: Conversation the job runs in
            job_id: Job to wait for
            budget: Interval and attempt limit

        Returns:
            PollOutcome; never raises for upstream failures
        """
        job: Optional[Job] = None
        interval = budget.interval_ms / 1000

        for attempt in range(1, budget.max_attempts + 1):
            self._sleep(interval)
            try:
                job = self.assistant_client.get_job(conversation_id, job_id)
            except TransportError as e:
                logger.error(
                    f"Polling job {job_id} failed: {e}",
                    extra={"conversation_id": conversation_id, "job_id": job_id, "error_code": e.error.code},
                )
                return PollOutcome(state=JobState.FAILED, job=job, attempts=attempt, error=e)

            if job.state.stops_polling:
                logger.info(
                    f"Job {job_id} reached {job.state.value} after {attempt} polls",
                    extra={"conversation_id": conversation_id, "job_id": job_id},
                )
                return PollOutcome(state=job.state, job=job, attempts=attempt)

            if attempt % 30 == 0:
                logger.debug(f"Job {job_id} still {job.state.value} after {attempt} polls")

        logger.warning(
            f"Job {job_id} did not finish within {budget.max_attempts} polls",
            extra={"conversation_id": conversation_id, "job_id": job_id},
        )
        error = UpstreamTimeoutError(
            f"Job {job_id} did not finish within {budget.worst_case_seconds:g}s",
            details={"conversation_id": conversation_id, "job_id": job_id, "attempts": budget.max_attempts},
        )
        return PollOutcome(state=JobState.TIMEOUT, job=job, attempts=budget.max_attempts, error=error)
