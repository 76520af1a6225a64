"""Transient-failure retry policy for provider calls.

Classification decides whether a failure is worth another attempt; the
backoff is exponential with a uniform +/-25% jitter. The attempt loop itself
is driven by tenacity.
"""

from __future__ import annotations

import asyncio
import errno
import random
import socket
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

RETRYABLE_ERROR_CODES = frozenset({
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ENOTFOUND",
    "EAI_AGAIN",
    "EPIPE",
    "EHOSTUNREACH",
    "ENETUNREACH",
})

_TRANSIENT_MESSAGE_PATTERNS = (
    "rate limit",
    "too many requests",
    "timeout",
    "timed out",
    "temporarily unavailable",
    "service unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "socket hang up",
    "econnreset",
    "econnrefused",
    "etimedout",
    "overloaded",
)

_OS_ERROR_CODES: tuple[tuple[type[OSError], str], ...] = (
    (ConnectionResetError, "ECONNRESET"),
    (ConnectionRefusedError, "ECONNREFUSED"),
    (BrokenPipeError, "EPIPE"),
    (TimeoutError, "ETIMEDOUT"),
)

_GAI_ERROR_CODES = {
    socket.EAI_AGAIN: "EAI_AGAIN",
    socket.EAI_NONAME: "ENOTFOUND",
}


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    enabled: bool = True


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass
class RetryOutcome(Generic[T]):
    success: bool
    attempts: int
    data: T | None = None
    error: Exception | None = None
    # Classification of the last error, reported even when retries are disabled.
    was_retryable: bool = False


def _iter_cause_chain(error: BaseException):
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def _status_of(error: BaseException) -> int | None:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _code_of(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code.upper()
    if isinstance(error, socket.gaierror):
        return _GAI_ERROR_CODES.get(error.errno)
    if isinstance(error, OSError):
        if error.errno is not None and error.errno in errno.errorcode:
            return errno.errorcode[error.errno]
        for error_type, name in _OS_ERROR_CODES:
            if isinstance(error, error_type):
                return name
    return None


def is_retryable_error(error: BaseException) -> bool:
    """True when ``error`` looks transient: a retryable status, network code or message."""
    if not isinstance(error, Exception):
        return False

    for link in _iter_cause_chain(error):
        status = _status_of(link)
        if status is not None and status in RETRYABLE_STATUS_CODES:
            return True
        code = _code_of(link)
        if code is not None and code in RETRYABLE_ERROR_CODES:
            return True

    message = str(error).lower()
    return any(pattern in message for pattern in _TRANSIENT_MESSAGE_PATTERNS)


def calculate_backoff_delay(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """Delay in milliseconds before retry ``attempt`` (0 = first retry)."""
    capped = min(max_delay_ms, base_delay_ms * (2 ** attempt))
    return int(capped * random.uniform(0.75, 1.25))


class wait_jittered_backoff(wait_base):
    def __init__(self, base_delay_ms: int, max_delay_ms: int):
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms

    def __call__(self, retry_state: RetryCallState) -> float:
        attempt = max(0, retry_state.attempt_number - 1)
        return calculate_backoff_delay(attempt, self.base_delay_ms, self.max_delay_ms) / 1000.0


def _log_retry(total_attempts: int) -> Callable[[RetryCallState], None]:
    def _before_sleep(retry_state: RetryCallState) -> None:
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        reason = f"{type(exc).__name__}: {exc}" if exc else "Unknown"
        logger.warning(
            f"{reason}. Retrying in {wait * 1000:.0f}ms "
            f"(attempt {retry_state.attempt_number}/{total_attempts})..."
        )

    return _before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """Run ``operation`` under the retry policy and report how it went.

    The first call always runs. Failures never propagate; they come back in the
    outcome together with the attempt count. Cancellation is not absorbed.
    """
    cfg = config or DEFAULT_RETRY_CONFIG
    total_attempts = max(0, cfg.max_retries) + 1 if cfg.enabled else 1

    retrying = AsyncRetrying(
        retry=retry_if_exception(is_retryable_error),
        stop=stop_after_attempt(total_attempts),
        wait=wait_jittered_backoff(cfg.base_delay_ms, cfg.max_delay_ms),
        before_sleep=_log_retry(total_attempts),
        sleep=sleep,
        reraise=True,
    )

    attempts = 0
    data: T | None = None
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                data = await operation()
    except Exception as ex:
        retryable = is_retryable_error(ex)
        if not retryable:
            logger.warning(f"Non-retryable error, not retrying: {ex}")
        elif total_attempts > 1:
            logger.error(f"Max retries ({total_attempts - 1}) exhausted: {ex}")
        return RetryOutcome(success=False, attempts=attempts, error=ex, was_retryable=retryable)

    return RetryOutcome(success=True, attempts=attempts, data=data)


def with_retry_wrapper(
    fn: Callable[..., Awaitable[T]],
    config: RetryConfig | None = None,
) -> Callable[..., Awaitable[RetryOutcome[T]]]:
    async def wrapped(*args: Any, **kwargs: Any) -> RetryOutcome[T]:
        return await with_retry(lambda: fn(*args, **kwargs), config)

    return wrapped
