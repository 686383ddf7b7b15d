"""Structured errors raised by the orchestration core."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    CONFLICT = "conflict"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    MALFORMED_SIGNAL = "malformed_signal"
    NO_ACTIVE_TASK = "no_active_task"
    DELIVERY_FAILURE = "delivery_failure"


class OrchestratorError(RuntimeError):
    """Base error carrying a machine-readable kind."""

    kind: ErrorKind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


class NotFoundError(OrchestratorError):
    kind = ErrorKind.NOT_FOUND


class InvalidRequestError(OrchestratorError):
    kind = ErrorKind.INVALID_REQUEST


class AttemptConflictError(OrchestratorError):
    """Another dispatch already recorded this attempt number."""

    kind = ErrorKind.CONFLICT

    def __init__(self, *, task_id: str, attempt_number: int) -> None:
        super().__init__(
            f"Dispatch attempt already recorded: task_id={task_id} attempt={attempt_number}",
        )
        self.task_id = task_id
        self.attempt_number = attempt_number


class AttemptsExhaustedError(OrchestratorError):
    kind = ErrorKind.ATTEMPTS_EXHAUSTED

    def __init__(self, *, task_id: str, attempts: int) -> None:
        super().__init__(
            f"Max dispatch attempts reached for task {task_id} (attempts={attempts})",
        )
        self.task_id = task_id
        self.attempts = attempts


class MalformedSignalError(OrchestratorError):
    kind = ErrorKind.MALFORMED_SIGNAL


class NoActiveTaskError(OrchestratorError):
    kind = ErrorKind.NO_ACTIVE_TASK


class DeliveryFailureError(OrchestratorError):
    """Outbound delivery failed after the attempt row was committed open."""

    kind = ErrorKind.DELIVERY_FAILURE

    def __init__(self, message: str, *, task_id: str, attempt_number: int) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.attempt_number = attempt_number
