"""Error taxonomy and operation results.

Internally, transport and guard failures are raised as ``SyncError``
subclasses. Public component operations never let them escape: they catch
``SyncError`` and return an ``OperationResult`` carrying the ``FailureKind``.

Failure kinds:
    UNAUTHENTICATED: Guard failure. No network call was attempted.
    INVALID_TARGET: A required identifier (chat id, message id, pending
        verification id) was missing.
    NOT_FOUND: The resource server answered 404.
    REMOTE_FAILURE: Network error or 5xx.
    VALIDATION_FAILURE: Any other 4xx (conflicting email, wrong password, ...).
"""
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class FailureKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    INVALID_TARGET = "invalid_target"
    NOT_FOUND = "not_found"
    REMOTE_FAILURE = "remote_failure"
    VALIDATION_FAILURE = "validation_failure"


class SyncError(Exception):
    """Base class for every failure raised inside chatsync components."""

    kind: FailureKind = FailureKind.REMOTE_FAILURE
    default_message = "Request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        payload: Any = None,
    ) -> None:
        self.message = message or self.default_message
        self.status_code = status_code
        self.payload = payload
        super().__init__(self.message)


class Unauthenticated(SyncError):
    kind = FailureKind.UNAUTHENTICATED
    default_message = "Not authenticated"


class InvalidTarget(SyncError):
    kind = FailureKind.INVALID_TARGET
    default_message = "Missing target identifier"


class NotFound(SyncError):
    kind = FailureKind.NOT_FOUND
    default_message = "Resource not found"


class RemoteFailure(SyncError):
    kind = FailureKind.REMOTE_FAILURE


class ValidationFailure(SyncError):
    kind = FailureKind.VALIDATION_FAILURE
    default_message = "Request rejected"


class OperationResult(BaseModel):
    """Success/failure signal returned by every public operation.

    Attributes:
        success: Whether the operation completed.
        error: Failure kind when ``success`` is False.
        message: Human-readable message (server text when available).
        data: Operation-specific payload (chat, message, user, ...).
        needsVerification: Set by log-in when the account still awaits OTP
            verification.
    """
    success: bool = Field(..., description="Whether the operation completed")
    error: Optional[FailureKind] = Field(default=None, description="Failure kind")
    message: Optional[str] = Field(default=None, description="Failure or status text")
    data: Any = Field(default=None, description="Operation payload")
    needsVerification: bool = Field(default=False, description="OTP verification pending")

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None) -> "OperationResult":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: SyncError, **extra: Any) -> "OperationResult":
        return cls(success=False, error=error.kind, message=error.message, **extra)

    def __bool__(self) -> bool:
        return self.success
