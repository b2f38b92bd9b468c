from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorCode(Enum):
    CONFIG_MISSING = "CONFIG_MISSING"
    CONFIG_INVALID = "CONFIG_INVALID"
    CALDAV_REQUEST_FAILED = "CALDAV_REQUEST_FAILED"
    CALDAV_TIMEOUT = "CALDAV_TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class MealCalError(Exception):
    """Base exception for the sync service."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


class CaldavNotConfiguredError(MealCalError):
    """No CalDAV account is stored for the user, or it is disabled. Never retried."""

    def __init__(self, user_id: str) -> None:
        super().__init__(
            "CalDAV not configured or disabled",
            ErrorCode.CONFIG_MISSING,
            details={"user_id": user_id},
        )


class InvalidConfigError(MealCalError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__(
            "Invalid CalDAV config: " + "; ".join(errors),
            ErrorCode.CONFIG_INVALID,
            details={"errors": list(errors)},
        )
        self.errors = list(errors)


class CaldavRequestError(MealCalError):
    """A CalDAV request failed at the network or HTTP level."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        *,
        timed_out: bool = False,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            message,
            ErrorCode.CALDAV_TIMEOUT if timed_out else ErrorCode.CALDAV_REQUEST_FAILED,
            details={"status": status},
            cause=cause,
        )
        self.status = status
        self.timed_out = timed_out
