"""
API error classification and retry policies.

Every failed request is mapped to an ErrorKind; the kind decides whether the
request is retried, how long to wait, and which fallback applies.
"""

import re
from dataclasses import dataclass

import httpx

from notion_sync.models import ErrorKind

FILTER_PATTERNS = [
    r"filter.*validation.*failed",
    r"property.*last_edited_time.*not.*exist",
    r"invalid.*timestamp.*format",
    r"filter.*property.*does.*not.*exist",
    r"bad.*request.*filter",
    r"unsupported.*filter.*type",
]

AUTH_PATTERNS = [
    r"unauthorized",
    r"forbidden",
    r"invalid.*token",
    r"expired.*token",
]

RATE_LIMIT_PATTERNS = [
    r"rate.*limit",
    r"too.*many.*requests",
]

NETWORK_PATTERNS = [
    r"timeout",
    r"timed.*out",
    r"connection.*refused",
    r"connection.*reset",
    r"curl.*error",
    r"ssl.*error",
    r"network.*unreachable",
    r"dns.*resolution.*failed",
    r"host.*not.*found",
]

SERVER_PATTERNS = [
    r"internal.*server",
    r"service.*unavailable",
    r"bad.*gateway",
]


def _matches(patterns: list[str], message: str) -> bool:
    return any(re.search(pattern, message, re.IGNORECASE) for pattern in patterns)


def classify_error(
    error: BaseException | None = None,
    status_code: int | None = None,
    message: str | None = None,
) -> ErrorKind:
    """
    Classify a failed request.

    HTTP status wins when present, then message patterns, then the exception
    type. Anything left over is UNKNOWN_ERROR.

    Args:
        error: The exception raised by the transport, if any
        status_code: HTTP status of the response, if one was received
        message: Error message (API error body or exception text)
    """
    text = message if message is not None else (str(error) if error else "")

    if status_code is not None:
        if status_code in (401, 403):
            return ErrorKind.AUTH_ERROR
        if status_code == 429:
            return ErrorKind.RATE_LIMIT_ERROR
        if status_code >= 500:
            return ErrorKind.SERVER_ERROR
        if 400 <= status_code < 500:
            if _matches(FILTER_PATTERNS, text):
                return ErrorKind.FILTER_ERROR
            return ErrorKind.CLIENT_ERROR

    if text:
        if _matches(FILTER_PATTERNS, text):
            return ErrorKind.FILTER_ERROR
        if _matches(AUTH_PATTERNS, text):
            return ErrorKind.AUTH_ERROR
        if _matches(RATE_LIMIT_PATTERNS, text):
            return ErrorKind.RATE_LIMIT_ERROR
        if _matches(NETWORK_PATTERNS, text):
            return ErrorKind.NETWORK_ERROR
        if _matches(SERVER_PATTERNS, text):
            return ErrorKind.SERVER_ERROR

    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.NETWORK_ERROR

    return ErrorKind.UNKNOWN_ERROR


@dataclass(frozen=True)
class RetryPolicy:
    """How a given error kind is retried."""

    should_retry: bool
    max_retries: int
    backoff: tuple[float, ...] = ()

    def delay_for(self, retry_number: int) -> float:
        """Delay before the given retry (1-based); the last entry repeats."""
        if not self.backoff:
            return 0.0
        index = min(max(retry_number, 1), len(self.backoff)) - 1
        return self.backoff[index]


NO_RETRY = RetryPolicy(should_retry=False, max_retries=0)

RETRY_POLICIES: dict[ErrorKind, RetryPolicy] = {
    ErrorKind.NETWORK_ERROR: RetryPolicy(True, 3, (1, 3, 9)),
    ErrorKind.RATE_LIMIT_ERROR: RetryPolicy(True, 5, (5, 15, 45, 120, 300)),
    ErrorKind.SERVER_ERROR: RetryPolicy(True, 2, (2, 8)),
    ErrorKind.FILTER_ERROR: RetryPolicy(True, 1, (1,)),
    ErrorKind.AUTH_ERROR: NO_RETRY,
    ErrorKind.CLIENT_ERROR: NO_RETRY,
    ErrorKind.UNKNOWN_ERROR: NO_RETRY,
}


def get_retry_policy(kind: ErrorKind | None) -> RetryPolicy:
    """Policy for an error kind; kinds without an entry are never retried."""
    if kind is None:
        return NO_RETRY
    return RETRY_POLICIES.get(kind, NO_RETRY)


def counts_against_host(kind: ErrorKind | None) -> bool:
    """Whether a failure says something about the remote host's health."""
    return kind in (ErrorKind.NETWORK_ERROR, ErrorKind.SERVER_ERROR)
