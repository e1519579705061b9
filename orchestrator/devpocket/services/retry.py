"""
Retry Strategy for Remote Cluster Calls

Wraps Kubernetes API calls with tenacity so that transient failures (timeouts,
refused/reset connections, 5xx from the API server) are retried with a linear
backoff of ``delay * attempt`` while permanent failures surface immediately.

Classification is structured first (exception type, HTTP status) and only
falls back to message patterns for exceptions that carry neither.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

from kubernetes.client.rest import ApiException
from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)
from urllib3 import exceptions as urllib3_exceptions

from ..errors import (
    AuthError,
    DatabaseError,
    DevPocketError,
    FormatError,
    KubernetesError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# HTTP statuses from the API server that are worth another attempt
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Statuses that will not change on retry (bad credentials, bad request, conflicts)
NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 409, 422})

_RETRYABLE_EXCEPTION_TYPES = (
    TransientNetworkError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    urllib3_exceptions.MaxRetryError,
    urllib3_exceptions.NewConnectionError,
    urllib3_exceptions.ProtocolError,
    urllib3_exceptions.TimeoutError,
)

# Configuration or logic problems; retrying would only delay the failure
_NON_RETRYABLE_EXCEPTION_TYPES = (
    AuthError,
    FormatError,
    ValueError,
    TypeError,
    KeyError,
)

# Last resort for exceptions carrying neither a type nor a status we know
_RETRYABLE_MESSAGE_PATTERNS = re.compile(
    r"ECONNREFUSED|ETIMEDOUT|ECONNRESET|ENOTFOUND"
    r"|connection (?:refused|reset|timed out|aborted)"
    r"|timed? ?out|temporarily unavailable|service unavailable"
    r"|too many requests|etcd cluster is unavailable",
    re.IGNORECASE,
)
_AUTH_MESSAGE_PATTERNS = re.compile(r"unauthori[sz]ed|forbidden", re.IGNORECASE)


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception should trigger a retry.

    Returns True for network-level failures and retryable API server statuses,
    False for authentication, validation and not-found errors.
    """
    if isinstance(exception, _NON_RETRYABLE_EXCEPTION_TYPES):
        return False

    if isinstance(exception, ApiException):
        status = exception.status or 0
        if status in NON_RETRYABLE_STATUS_CODES:
            return False
        if status in RETRYABLE_STATUS_CODES:
            return True
        # status 0 means the request never got an HTTP answer
        if status == 0:
            return bool(_RETRYABLE_MESSAGE_PATTERNS.search(str(exception.reason or "")))
        return False

    if isinstance(exception, _RETRYABLE_EXCEPTION_TYPES):
        return True

    if isinstance(exception, DevPocketError):
        return False

    message = str(exception)
    if _AUTH_MESSAGE_PATTERNS.search(message):
        return False
    return bool(_RETRYABLE_MESSAGE_PATTERNS.search(message))


def classify_error(exception: BaseException) -> Type[DevPocketError]:
    """Map any exception onto the error taxonomy class the API should report."""
    if isinstance(exception, DevPocketError):
        return type(exception)
    if isinstance(exception, SQLAlchemyError):
        return DatabaseError
    if isinstance(exception, ApiException) and exception.status in (401, 403):
        return AuthError
    if _AUTH_MESSAGE_PATTERNS.search(str(exception)) and not isinstance(exception, ApiException):
        return AuthError
    if is_retryable_error(exception):
        return TransientNetworkError
    return KubernetesError


@dataclass
class RetryContext:
    """What is being retried, for log output."""
    label: str
    context: Optional[Dict[str, Any]] = None
    attempt: int = 0
    last_error: Optional[BaseException] = None

    def describe(self) -> str:
        if not self.context:
            return self.label
        details = " ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.label} ({details})"


class RetryPolicy:
    """
    Bounded retry with linear backoff for remote operations.

    Example:
        >>> policy = RetryPolicy(max_attempts=3, delay_seconds=1.0)
        >>> await policy.retry_operation(lambda: read_pod(), "read pod", {"pod": name})
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.k8s_retry_max_attempts,
            delay_seconds=settings.k8s_retry_delay_seconds,
        )

    def _before_sleep(self, retry_context: RetryContext) -> Callable[[RetryCallState], None]:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            retry_context.last_error = error
            wait = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"[RETRY] {retry_context.describe()} failed on attempt "
                f"{retry_state.attempt_number}/{self.max_attempts}, retrying in {wait:.1f}s: {error}"
            )
        return log_retry

    async def retry_operation(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails permanently or attempts run out.

        Args:
            operation: Zero-argument coroutine factory (called once per attempt)
            label: Short description for logs
            context: Extra key/values for logs (cluster id, namespace, ...)

        Returns:
            The operation's result

        Raises:
            The last exception raised by ``operation``, unchanged
        """
        retry_context = RetryContext(label=label, context=context)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.delay_seconds, increment=self.delay_seconds),
            retry=retry_if_exception(is_retryable_error),
            sleep=self.sleep,
            before_sleep=self._before_sleep(retry_context),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    retry_context.attempt = attempt.retry_state.attempt_number
                    logger.debug(
                        f"[RETRY] {retry_context.describe()} attempt {retry_context.attempt}/{self.max_attempts}"
                    )
                    result = await operation()
        except Exception as e:
            logger.error(
                f"[RETRY] {retry_context.describe()} failed after {retry_context.attempt} "
                f"attempt(s): {type(e).__name__}: {e}"
            )
            raise

        if retry_context.attempt > 1:
            logger.info(f"[RETRY] {retry_context.describe()} succeeded on attempt {retry_context.attempt}")
        return result
