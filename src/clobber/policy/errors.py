from __future__ import annotations

from typing import Optional


class ClobberError(Exception):
    """Base class for engine errors."""


class MalformedRule(ClobberError):
    """A rule state update could not be parsed. The update is dropped."""

    def __init__(self, message: str, *, event_type: str = "", room_id: str = "", state_key: str = "") -> None:
        super().__init__(message)
        self.event_type = event_type
        self.room_id = room_id
        self.state_key = state_key


class MalformedAccountData(ClobberError):
    """An account-data payload failed validation. The whole update is dropped."""

    def __init__(self, message: str, *, data_type: str = "") -> None:
        super().__init__(message)
        self.data_type = data_type


class SnapshotCorruptError(ClobberError):
    """Persisted engine state failed verification; enforcement must not start."""


class ExecError(ClobberError):
    """Failure reported by the enforcement executor or the transport."""

    retryable = False


class RateLimitedError(ExecError):
    retryable = True

    def __init__(self, message: str = "rate limited", *, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NetworkError(ExecError):
    retryable = True


class ForbiddenError(ExecError):
    """The bot lacks the power level needed in the room."""


class ConflictError(ExecError):
    """The room's ACL object changed between read and write."""

    retryable = True
