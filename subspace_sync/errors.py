"""
Error types and failure classification.

Every failure that leaves a manager boundary is one of the types below, never
a raw transport exception:

- ``TransientRemoteError``: network-class failure, retried with backoff.
- ``FatalRemoteError``: not-found / forbidden / malformed, never retried.
- ``RateLimitedError``: local policy refusal, no network call was made.
- ``ReorderError``: an optimistic reorder was rolled back.

:func:`classify` maps an exception onto :class:`ErrorKind` using the status
code when one is known and the message pattern sets otherwise.
"""

from __future__ import annotations

import enum
from typing import Any, Dict, Optional


NETWORK_PATTERNS = (
    "network error",
    "timeout",
    "timed out",
    "connection",
    "socket",
    "offline",
    "failed to fetch",
    "aborted",
    "interrupted",
    "etimedout",
    "econnrefused",
    "econnreset",
    "dns",
    "service unavailable",
    "429",
    "500",
    "502",
    "503",
    "504",
)

FATAL_PATTERNS = ("not found", "does not exist", "forbidden")


class ErrorKind(enum.Enum):
    NETWORK = "network"
    FATAL = "fatal"
    OTHER = "other"


class SyncError(Exception):
    """Base exception for the sync layer.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_ERROR"
        self.details = details or {}


class RemoteError(SyncError):
    """A call to the remote service failed."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        endpoint: Optional[str] = None,
        path: Optional[str] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code=code or "REMOTE_ERROR",
            details={"status": status, "endpoint": endpoint, "path": path},
        )
        self.status = status
        self.endpoint = endpoint
        self.path = path


class TransientRemoteError(RemoteError):
    """Timeout, connection failure, DNS failure, 5xx or 429."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("code", "TRANSIENT")
        super().__init__(message, **kwargs)


class RetryExhaustedError(TransientRemoteError):
    """Every attempt allowed by the retry policy failed."""

    def __init__(self, message: str, *, attempts: int, **kwargs: Any) -> None:
        kwargs.setdefault("code", "RETRY_EXHAUSTED")
        super().__init__(message, **kwargs)
        self.attempts = attempts


class FatalRemoteError(RemoteError):
    """Not found, forbidden or otherwise non-retryable."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("code", "FATAL")
        super().__init__(message, **kwargs)


class ResponseShapeError(FatalRemoteError):
    """The remote payload could not be decoded into the expected shape."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("code", "BAD_RESPONSE")
        super().__init__(message, **kwargs)


class SignerUnavailableError(FatalRemoteError):
    """A write operation was requested without a signer capability."""

    def __init__(self, message: str = "A signer is required for write operations", **kwargs: Any) -> None:
        kwargs.setdefault("code", "NO_SIGNER")
        super().__init__(message, **kwargs)


class RateLimitedError(SyncError):
    """Local rate-limit policy refused an attempt for ``scope_id``."""

    def __init__(self, scope_id: str, retry_after: Optional[float] = None) -> None:
        super().__init__(
            f"Rate limit exceeded for requests to {scope_id}",
            code="RATE_LIMITED",
            details={"scope_id": scope_id, "retry_after": retry_after},
        )
        self.scope_id = scope_id
        self.retry_after = retry_after


class ReorderError(SyncError):
    """The remote half of a reorder failed; local order was rolled back."""

    def __init__(self, message: str, *, community_id: str, moved_id: int) -> None:
        super().__init__(
            message,
            code="REORDER_FAILED",
            details={"community_id": community_id, "moved_id": moved_id},
        )
        self.community_id = community_id
        self.moved_id = moved_id


class PersistenceError(SyncError):
    """Raised by store backends; always absorbed by :class:`PersistentStore`."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="PERSISTENCE", details={"key": key})
        self.key = key


def classify(exc: BaseException) -> ErrorKind:
    """Return the :class:`ErrorKind` for ``exc``."""

    if isinstance(exc, TransientRemoteError):
        return ErrorKind.NETWORK
    if isinstance(exc, FatalRemoteError):
        return ErrorKind.FATAL

    status = getattr(exc, "status", None)
    if status is not None:
        if status in (403, 404):
            return ErrorKind.FATAL
        if status == 429 or status >= 500:
            return ErrorKind.NETWORK

    text = str(exc).lower()
    if any(pattern in text for pattern in NETWORK_PATTERNS):
        return ErrorKind.NETWORK
    if any(pattern in text for pattern in FATAL_PATTERNS):
        return ErrorKind.FATAL
    return ErrorKind.OTHER


def is_fatal(exc: BaseException) -> bool:
    return classify(exc) is ErrorKind.FATAL


def is_network(exc: BaseException) -> bool:
    return classify(exc) is ErrorKind.NETWORK
