"""Error taxonomy for task-board, lock and session operations."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes surfaced to orchestrator callers."""

    ERR_INVALID_ARGUMENT = "ERR_INVALID_ARGUMENT"
    ERR_POLICY_DENIED = "ERR_POLICY_DENIED"
    ERR_TASK_NOT_FOUND = "ERR_TASK_NOT_FOUND"
    ERR_LEASE_CONFLICT = "ERR_LEASE_CONFLICT"
    ERR_LEASE_EXPIRED = "ERR_LEASE_EXPIRED"
    ERR_TASK_DEPENDENCY_NOT_MET = "ERR_TASK_DEPENDENCY_NOT_MET"
    ERR_LOCK_CONFLICT = "ERR_LOCK_CONFLICT"
    ERR_LOCK_NOT_FOUND = "ERR_LOCK_NOT_FOUND"
    ERR_MESSAGE_NOT_FOUND = "ERR_MESSAGE_NOT_FOUND"
    ERR_ARTIFACT_NOT_FOUND = "ERR_ARTIFACT_NOT_FOUND"
    ERR_SESSION_INVALID_STATE = "ERR_SESSION_INVALID_STATE"


class DenyReason(str, Enum):
    """Reasons attached to policy-denied errors."""

    TASK_WRONG_STATE = "TASK_WRONG_STATE"
    LOCK_HELD_BY_OTHER = "LOCK_HELD_BY_OTHER"


class OrchestrationError(Exception):
    """Base error carrying a stable code and structured details."""

    code: ErrorCode = ErrorCode.ERR_INVALID_ARGUMENT

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a JSON-friendly payload."""

        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class InvalidArgumentError(OrchestrationError):
    code = ErrorCode.ERR_INVALID_ARGUMENT


class TaskNotFoundError(OrchestrationError):
    code = ErrorCode.ERR_TASK_NOT_FOUND


class LeaseConflictError(OrchestrationError):
    code = ErrorCode.ERR_LEASE_CONFLICT


class LeaseExpiredError(OrchestrationError):
    """Lease token mismatch or true expiry; callers cannot tell them apart."""

    code = ErrorCode.ERR_LEASE_EXPIRED


class DependencyNotMetError(OrchestrationError):
    code = ErrorCode.ERR_TASK_DEPENDENCY_NOT_MET


class LockConflictError(OrchestrationError):
    code = ErrorCode.ERR_LOCK_CONFLICT


class LockNotFoundError(OrchestrationError):
    code = ErrorCode.ERR_LOCK_NOT_FOUND


class MessageNotFoundError(OrchestrationError):
    code = ErrorCode.ERR_MESSAGE_NOT_FOUND


class ArtifactNotFoundError(OrchestrationError):
    code = ErrorCode.ERR_ARTIFACT_NOT_FOUND


class SessionStateError(OrchestrationError):
    code = ErrorCode.ERR_SESSION_INVALID_STATE


class PolicyDeniedError(OrchestrationError):
    """Operation refused by policy, with a machine-readable deny reason."""

    code = ErrorCode.ERR_POLICY_DENIED

    def __init__(
        self,
        deny_reason: DenyReason,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.deny_reason = deny_reason

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["deny_reason"] = self.deny_reason.value
        return payload
