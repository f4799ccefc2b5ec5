"""Retry, timeout and backoff policy shared by every outbound call."""
import time
import logging
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx

from services.errors import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransportPolicy:
    """Execute outbound calls with bounded retries and exponential backoff."""

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        name: str,
        timeout: float = 30.0,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the transport policy.

        Args:
            name: Collaborator name used in logs and error details
            timeout: Per-attempt request timeout in seconds
            max_attempts: Total attempts per call, including the first
            initial_delay: Backoff before the second attempt, doubled afterwards
            max_delay: Upper bound for a single backoff
            transport: Optional httpx transport (tests pass httpx.MockTransport)
            sleep: Sleep function used between attempts
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.name = name
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.transport = transport
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Delay to wait after the given zero-based attempt failed."""
        return min(self.initial_delay * (2 ** attempt), self.max_delay)

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
    ) -> httpx.Response:
        """
        Send an HTTP request, retrying timeouts, network errors, 429 and 5xx.

        Calls that create upstream state pass retryable=False and get a
        single attempt.

        Returns:
            The successful (2xx) response

        Raises:
            TransportError: Non-retryable status, or all attempts exhausted
        """
        last_error: Optional[TransportError] = None
        max_attempts = self.max_attempts if retryable else 1

        for attempt in range(max_attempts):
            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.request(method, url, headers=headers, json=json, params=params)
            except httpx.TimeoutException as e:
                last_error = TransportError(
                    f"{self.name} request timed out after {self.timeout}s",
                    details={"url": url, "original_error": str(e)},
                    code="TIMEOUT_ERROR",
                )
            except httpx.RequestError as e:
                last_error = TransportError(
                    f"{self.name} network error: {e}",
                    details={"url": url, "original_error": str(e)},
                    code="NETWORK_ERROR",
                )
            else:
                if response.is_success:
                    return response

                error = self._status_error(response, url)
                if response.status_code not in self.RETRYABLE_STATUS:
                    logger.error(f"{self.name} rejected {method} {url}: {response.status_code}")
                    raise error
                last_error = error

            if attempt < max_attempts - 1:
                delay = self.backoff(attempt)
                logger.warning(
                    f"{self.name} call failed ({last_error.error.code}) on attempt "
                    f"{attempt + 1}/{max_attempts}. Retrying in {delay}s..."
                )
                self._sleep(delay)

        logger.error(f"{self.name} call failed after {max_attempts} attempts: {last_error}")
        raise last_error

    def execute(self, operation: Callable[[], T], description: str) -> T:
        """
        Run an SDK call under the same retry contract as request().

        Timeouts, network errors and retryable TransportErrors are retried;
        anything else is wrapped into a TransportError right away.
        """
        last_error: Optional[TransportError] = None

        for attempt in range(self.max_attempts):
            try:
                return operation()
            except TransportError as e:
                if e.upstream_status not in self.RETRYABLE_STATUS:
                    raise
                last_error = e
            except httpx.TimeoutException as e:
                last_error = TransportError(
                    f"{self.name} {description} timed out",
                    details={"original_error": str(e)},
                    code="TIMEOUT_ERROR",
                )
            except httpx.NetworkError as e:
                last_error = TransportError(
                    f"{self.name} {description} network error: {e}",
                    details={"original_error": str(e)},
                    code="NETWORK_ERROR",
                )
            except Exception as e:
                logger.error(f"{self.name} {description} failed: {e}", exc_info=True)
                raise TransportError(
                    f"{self.name} {description} failed: {e}",
                    details={"original_error": str(e), "error_type": type(e).__name__},
                    code="UNKNOWN_ERROR",
                ) from e

            if attempt < self.max_attempts - 1:
                delay = self.backoff(attempt)
                logger.warning(
                    f"{self.name} {description} failed on attempt "
                    f"{attempt + 1}/{self.max_attempts}. Retrying in {delay}s..."
                )
                self._sleep(delay)

        logger.error(f"{self.name} {description} failed after {self.max_attempts} attempts")
        raise last_error

    def _status_error(self, response: httpx.Response, url: str) -> TransportError:
        """Build a TransportError from a non-2xx response."""
        status = response.status_code
        message = f"HTTP {status}"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict) and err.get("message"):
                message = err["message"]
            elif isinstance(err, str):
                message = err
            elif body.get("message"):
                message = body["message"]
            elif body.get("detail"):
                message = str(body["detail"])
        elif response.text:
            message = response.text[:200]

        if status == 429:
            code = "RATE_LIMIT_ERROR"
        elif status in (401, 403):
            code = "AUTHENTICATION_ERROR"
        else:
            code = "API_ERROR"

        return TransportError(
            f"{self.name} error: {message}",
            details={"url": url, "status": status},
            code=code,
            upstream_status=status,
        )
