from __future__ import annotations

import asyncio
import errno
import random
import re
import socket
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

from planexec.config import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY_MS
from planexec.logging import get_logger
from planexec.service.errors import StepCancelledError

logger = get_logger(__name__)

T = TypeVar("T")

MAX_DELAY_MS = 30000
JITTER_RATIO = 0.1
MAX_RETRIES_WARNING = 10

# Checked first: "invalid timeout configuration" must not be retried
NON_RETRYABLE_MESSAGE_PATTERNS: Tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"validation",
        r"invalid",
        r"not found",
        r"unauthori[sz]ed",
        r"forbidden",
        r"bad request",
        r"\b4(?!29)\d\d\b",
        r"syntax error",
        r"parse error",
        r"malformed",
    )
)

RETRYABLE_MESSAGE_PATTERNS: Tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"timeout",
        r"timed out",
        r"network",
        r"connection",
        r"temporar",
        r"unavailable",
        r"rate limit",
        r"throttl",
        r"server error",
        r"\b5\d\d\b",
        r"\b429\b",
        r"ECONNRESET",
        r"ENOTFOUND",
        r"ETIMEDOUT",
        r"ECONNREFUSED",
    )
)

# Defects in the calling code, not the remote system
PROGRAMMING_ERROR_TYPES: Tuple[type, ...] = (TypeError, NameError, AttributeError)

RETRYABLE_ERROR_CODES = frozenset(
    {
        "ECONNRESET",
        "ENOTFOUND",
        "ETIMEDOUT",
        "ECONNREFUSED",
        "EADDRINUSE",
        "ENETUNREACH",
        "EHOSTUNREACH",
    }
)

RETRYABLE_ERRNOS = frozenset(
    getattr(errno, name) for name in RETRYABLE_ERROR_CODES if hasattr(errno, name)
)

NETWORK_EXCEPTION_TYPES: Tuple[type, ...] = (
    ConnectionResetError,
    ConnectionRefusedError,
    TimeoutError,
    socket.gaierror,
)


def _error_message(error: BaseException) -> str:
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error) or type(error).__name__


def _explicit_marker(error: BaseException) -> Optional[bool]:
    for attr in ("retryable", "is_retryable"):
        marker = getattr(error, attr, None)
        if isinstance(marker, bool):
            return marker
    return None


def _message_heuristics(error: BaseException) -> Optional[bool]:
    message = _error_message(error)
    if any(p.search(message) for p in NON_RETRYABLE_MESSAGE_PATTERNS):
        return False
    if any(p.search(message) for p in RETRYABLE_MESSAGE_PATTERNS):
        return True
    return None


def _programming_error(error: BaseException) -> Optional[bool]:
    if isinstance(error, PROGRAMMING_ERROR_TYPES):
        return False
    return None


def _network_code(error: BaseException) -> Optional[bool]:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in RETRYABLE_ERROR_CODES:
        return True
    if isinstance(error, OSError) and error.errno in RETRYABLE_ERRNOS:
        return True
    if isinstance(error, NETWORK_EXCEPTION_TYPES):
        return True
    return None


def _status_of(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _http_status(error: BaseException) -> Optional[bool]:
    status = _status_of(error)
    if status is None:
        return None
    if 500 <= status < 600 or status == 429:
        return True
    if 400 <= status < 500:
        return False
    return None


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    check: Callable[[BaseException], Optional[bool]]


# First rule returning a verdict wins; unclassified errors are retried
CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule("explicit_marker", _explicit_marker),
    ClassificationRule("message_heuristics", _message_heuristics),
    ClassificationRule("programming_error", _programming_error),
    ClassificationRule("network_code", _network_code),
    ClassificationRule("http_status", _http_status),
)


def classify_error(error: BaseException) -> Tuple[bool, str]:
    """Return (retryable, name of the deciding rule)."""
    for rule in CLASSIFICATION_RULES:
        verdict = rule.check(error)
        if verdict is not None:
            return verdict, rule.name
    return True, "default"


def is_retryable_error(error: BaseException) -> bool:
    return classify_error(error)[0]


def get_retry_delay_from_error(error: BaseException) -> Optional[float]:
    value = getattr(error, "retry_after_ms", None)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
        return float(value)
    return None


def compute_backoff_delay(
    base_delay_ms: float,
    attempt: int,
    *,
    uniform: Callable[[float, float], float] = random.uniform,
) -> float:
    """Exponential backoff with up to 10% jitter, capped at MAX_DELAY_MS."""
    exponential = base_delay_ms * (2 ** attempt)
    jitter = uniform(0, JITTER_RATIO * exponential)
    return min(exponential + jitter, MAX_DELAY_MS)


async def _sleep(delay_ms: float, cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is None:
        await asyncio.sleep(delay_ms / 1000.0)
        return
    if cancel_event.is_set():
        raise StepCancelledError("cancelled before retry")
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay_ms / 1000.0)
    except asyncio.TimeoutError:
        return
    raise StepCancelledError("cancelled during retry backoff")


async def retry_with_backoff(
    unit_of_work: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay_ms: float = DEFAULT_RETRY_DELAY_MS,
    *,
    cancel_event: Optional[asyncio.Event] = None,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
    classifier: Callable[[BaseException], bool] = is_retryable_error,
) -> T:
    """Run ``unit_of_work`` until it succeeds, fails terminally or retries run out.

    ``max_retries=3`` allows at most 4 invocations. ``on_retry`` receives the
    retry number (1-based), the error and the delay before the retry.
    """
    attempt = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise StepCancelledError("cancelled before attempt")
        try:
            return await unit_of_work()
        except StepCancelledError:
            raise
        except Exception as exc:
            if attempt >= max_retries:
                if max_retries > 0:
                    logger.error(
                        "retry_exhausted",
                        attempts=attempt + 1,
                        error=str(exc),
                    )
                raise
            if not classifier(exc):
                logger.info(
                    "retry_skipped_non_retryable",
                    attempt=attempt + 1,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

            override = get_retry_delay_from_error(exc)
            delay_ms = override if override is not None else compute_backoff_delay(base_delay_ms, attempt)
            logger.warning(
                "retry_backoff",
                attempt=attempt + 1,
                max_retries=max_retries,
                delay_ms=round(delay_ms, 1),
                retry_after_override=override is not None,
                error=str(exc),
            )
            if on_retry is not None:
                on_retry(attempt + 1, exc, delay_ms)
            await _sleep(delay_ms, cancel_event)
            attempt += 1


def validate_retry_config(max_retries: int, delay_ms: float) -> List[str]:
    errors: List[str] = []
    if max_retries < 0:
        errors.append("Max retries must be non-negative")
    if max_retries > MAX_RETRIES_WARNING:
        errors.append(
            f"Max retries should not exceed {MAX_RETRIES_WARNING} to prevent runaway retry loops"
        )
    if delay_ms < 0:
        errors.append("Delay must be non-negative")
    if delay_ms > MAX_DELAY_MS:
        errors.append(f"Delay should not exceed {MAX_DELAY_MS}ms")
    return errors
