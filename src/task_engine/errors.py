from typing import Any, Dict, Optional


class TaskEngineError(Exception):
    """Base class for all errors raised by the task engine."""


class ScheduleParseError(TaskEngineError, ValueError):
    """Raised when a schedule description cannot be parsed or never fires."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"Invalid schedule '{expression}': {reason}")
        self.expression = expression
        self.reason = reason


class TaskNotFoundError(TaskEngineError, KeyError):
    """Raised when a task identifier does not exist in the task store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with id '{task_id}' was not found.")
        self.task_id = task_id

    def __str__(self) -> str:
        return self.args[0]


class ExecutionNotFoundError(TaskEngineError, KeyError):
    """Raised when an execution identifier does not exist in the task store."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution with id '{execution_id}' was not found.")
        self.execution_id = execution_id

    def __str__(self) -> str:
        return self.args[0]


class InvalidTaskStateError(TaskEngineError):
    """Raised when an administrative command is not allowed in the task's current status."""

    def __init__(self, task_id: str, status: str, command: str) -> None:
        super().__init__(f"Cannot {command} task '{task_id}' while it is {status}.")
        self.task_id = task_id
        self.status = status
        self.command = command


class InvalidTransitionError(TaskEngineError, ValueError):
    """Raised when an execution status would move backwards."""


class LeaseConflictError(TaskEngineError):
    """Another worker already holds the lease on this task."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' is already leased by another worker.")
        self.task_id = task_id


class ActionInvocationError(TaskEngineError):
    """Raised by an action handler when the action itself fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ActionTimeoutError(TaskEngineError):
    """The action did not finish within the task's timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Action did not complete within {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class ExecutionCancelledError(TaskEngineError):
    """The execution was cancelled before the action finished."""

    def __init__(self, message: str, forced: bool = False) -> None:
        super().__init__(message)
        self.forced = forced
