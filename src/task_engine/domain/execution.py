import uuid
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from task_engine.errors import InvalidTransitionError

from .condition import ConditionDiagnostic
from .task import UTC, ensure_utc

TRIGGERED_BY_SCHEDULE = "schedule"
TRIGGERED_BY_MANUAL = "manual"
TRIGGERED_BY_RECOVERY = "recovery"


def triggered_by_source(source: str) -> str:
    return f"trigger:{source}"


class ExecutionStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.QUEUED, ExecutionStatus.RUNNING)

    @property
    def rank(self) -> int:
        if self == ExecutionStatus.QUEUED:
            return 0
        if self == ExecutionStatus.RUNNING:
            return 1
        return 2


class ExecutionError(BaseModel):
    type: str = Field(..., description="Error class name")
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ExecutionError":
        return cls(type=type(exc).__name__, message=str(exc), details=dict(getattr(exc, "details", None) or {}))


class Execution(BaseModel):
    """
    Represents one attempt to run a task's action.
    """
    id: str = Field(default_factory=lambda: f"exe_{uuid.uuid4().hex[:8]}", description="Unique execution identifier")
    task_id: str = Field(..., description="The task this execution belongs to")
    attempt_number: int = Field(default=1, ge=1)
    status: ExecutionStatus = ExecutionStatus.QUEUED
    triggered_by: str = TRIGGERED_BY_SCHEDULE
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: Optional[datetime] = None
    result: Optional[Any] = None
    error: Optional[ExecutionError] = None
    logs: List[str] = Field(default_factory=list)
    duration_ms: Optional[int] = None
    skipped: bool = False
    diagnostics: List[ConditionDiagnostic] = Field(default_factory=list)

    @field_validator("started_at", "completed_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def log(self, message: str, at: Optional[datetime] = None) -> None:
        """
        Append a timestamped line. Logs are never rewritten.
        """
        at = at or datetime.now(UTC)
        self.logs.append(f"{at.astimezone(UTC).isoformat()} {message}")

    def set_status(self, status: ExecutionStatus, at: Optional[datetime] = None):
        """
        Move the execution forward. Terminal states are final.
        """
        if status == self.status:
            return
        if self.status.is_terminal or status.rank < self.status.rank:
            raise InvalidTransitionError(
                f"Execution {self.id} cannot move from {self.status.value} to {status.value}")
        at = at or datetime.now(UTC)
        self.status = status
        if status == ExecutionStatus.RUNNING:
            self.started_at = at
        elif status.is_terminal:
            self.completed_at = max(at, self.started_at)
            self.duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)

    def set_result(self, result: Any, at: Optional[datetime] = None):
        self.result = result
        self.set_status(ExecutionStatus.COMPLETED, at)

    def set_error(self, error: ExecutionError, status: ExecutionStatus = ExecutionStatus.FAILED,
                  at: Optional[datetime] = None):
        if status not in [ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT, ExecutionStatus.CANCELLED]:
            raise ValueError("Status must be one of FAILED, TIMEOUT or CANCELLED")
        self.error = error
        self.set_status(status, at)


class AbandonedLeaseRecovery(BaseModel):
    """
    Record of a stale lease being reclaimed after a crash or restart.
    """
    task_id: str
    lease_holder: Optional[str] = None
    leased_at: Optional[datetime] = None
    recovered_at: datetime
    execution_id: str = Field(..., description="The execution closed out as timed out")

    @field_validator("leased_at", "recovered_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)
