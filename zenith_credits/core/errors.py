"""
Provider error classification and fallback failures.

Classification decides how hard a failing provider is penalized; it never
decides whether the next provider is tried.
"""

from enum import Enum
from typing import TYPE_CHECKING, List, Sequence

if TYPE_CHECKING:
    from .fallback import AttemptRecord


class ErrorCategory(Enum):
    """Coarse kinds of upstream provider failure."""
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    AUTH = "auth"
    NETWORK = "network"
    UNKNOWN = "unknown"


_RATE_LIMIT_WORDS = ("429", "rate", "quota")
_TIMEOUT_WORDS = ("timeout", "timed out")
_AUTH_WORDS = ("api key", "unauthorized", "forbidden", "401", "403")
_NETWORK_WORDS = ("network", "connection", "econnrefused", "fetch failed", "502", "503", "504")


def categorize_error(error: BaseException) -> ErrorCategory:
    """Classify a provider failure.

    Checks an HTTP ``status_code`` attribute first (as carried by the openai
    SDK's APIStatusError), then builtin exception types, then the message.
    """
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status in (401, 403):
            return ErrorCategory.AUTH
        if status >= 500:
            return ErrorCategory.NETWORK

    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCategory.NETWORK

    message = str(error).lower()
    if any(word in message for word in _RATE_LIMIT_WORDS):
        return ErrorCategory.RATE_LIMIT
    if any(word in message for word in _TIMEOUT_WORDS):
        return ErrorCategory.TIMEOUT
    if any(word in message for word in _AUTH_WORDS):
        return ErrorCategory.AUTH
    if any(word in message for word in _NETWORK_WORDS):
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


class FallbackError(Exception):
    """Raised when a fallback-executed operation produced no result."""


class NoProvidersConfiguredError(FallbackError):
    """Raised when there is no enabled provider to try."""

    def __init__(self, message: str = "No AI provider is configured or enabled"):
        super().__init__(message)


class AllProvidersFailedError(FallbackError):
    """Raised when every provider in the chain failed.

    ``attempts`` holds one failed AttemptRecord per provider, in the order
    they were tried.
    """

    def __init__(self, attempts: Sequence["AttemptRecord"]):
        self.attempts: List["AttemptRecord"] = list(attempts)
        details = "; ".join(
            f"{a.provider}: {type(a.error).__name__}: {a.error}" for a in self.attempts
        )
        super().__init__(f"All {len(self.attempts)} providers failed ({details})")

    @property
    def errors(self) -> List[BaseException]:
        return [a.error for a in self.attempts if a.error is not None]
