import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
import logging
from zoneinfo import ZoneInfo
from abc import ABC, abstractmethod

from pydantic import BaseModel, Field, field_validator

from .action import ActionSpec
from .condition import Condition

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")


def ensure_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return None
    if v.tzinfo is None:
        logger.warning("Datetime %s does not include a timezone. Defaulting to UTC.", v.isoformat())
        return v.replace(tzinfo=UTC)
    return v.astimezone(UTC)


class TaskKind(str, Enum):
    ONE_TIME = "one-time"
    RECURRING = "recurring"
    TRIGGER = "trigger"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class BaseSchedule(BaseModel, ABC):
    """
    Base class for all schedule types.
    """
    kind: str
    description: Optional[str] = Field(None, description="Free-form description of the schedule as entered by the author")

    @abstractmethod
    def format_schedule(self) -> str:
        pass


class OneTimeSchedule(BaseSchedule):
    """
    Defines a one-time schedule for task execution.
    """
    kind: Literal["one-time"] = "one-time"
    run_at: datetime = Field(..., description="Precise instant of execution")

    @field_validator("run_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def format_schedule(self) -> str:
        return f"Scheduled for one-time execution at {self.run_at.strftime('%Y-%m-%d %H:%M:%S %Z')}"


class RecurringSchedule(BaseSchedule):
    """
    Specifies a recurring schedule for task execution, evaluated in a fixed timezone.
    """
    kind: Literal["recurring"] = "recurring"
    cron_expression: str = Field(..., description="Five-field cron expression defining the recurring execution pattern")
    timezone: str = Field(default="UTC", description="IANA timezone the expression is evaluated in")
    start_time: Optional[datetime] = Field(None, description="No run happens before this instant")
    end_time: Optional[datetime] = Field(None, description="No run happens after this instant")

    @field_validator("start_time", "end_time")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def format_schedule(self) -> str:
        schedule_str = f"Scheduled to recur with cron expression: {self.cron_expression} ({self.timezone})"
        if self.start_time:
            schedule_str += f", starting from {self.start_time.strftime('%Y-%m-%d %H:%M:%S %Z')}"
        if self.end_time:
            schedule_str += f", ending at {self.end_time.strftime('%Y-%m-%d %H:%M:%S %Z')}"
        return schedule_str


class TriggerSchedule(BaseSchedule):
    """
    Eligibility is driven by trigger events, never by time.
    """
    kind: Literal["trigger"] = "trigger"
    source: str = Field(..., description="Trigger source identifier, e.g. 'webhook:deploys'")
    match: Dict[str, Any] = Field(default_factory=dict, description="Attributes an event must carry to fire this task")

    def format_schedule(self) -> str:
        return f"Triggered by events from '{self.source}'"


Schedule = Annotated[
    Union[OneTimeSchedule, RecurringSchedule, TriggerSchedule],
    Field(discriminator="kind"),
]


class TriggerEvent(BaseModel):
    """
    An external trigger arrival.
    """
    source: str = Field(..., description="Trigger source identifier")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Event attributes matched against trigger descriptors")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Variables made available to conditions and actions")


class RetryPolicy(BaseModel):
    max_attempts: int = Field(..., ge=1, description="Total attempts including the first one")
    base_backoff: timedelta = Field(default=timedelta(seconds=30), description="Delay before the second attempt")
    multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor applied per attempt")


class NotificationChannel(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"
    PUSH = "push"


class NotificationConfig(BaseModel):
    on_success: bool = False
    on_failure: bool = False
    channels: List[NotificationChannel] = Field(default_factory=list)


class RetryState(BaseModel):
    """
    Progress of the current attempt chain. Cleared once the chain succeeds or is exhausted.
    """
    chain_id: str = Field(default_factory=lambda: f"chn_{uuid.uuid4().hex[:8]}")
    attempt: int = Field(..., ge=1, description="Number of attempts already made in this chain")
    next_attempt_at: datetime
    last_error: Optional[str] = None
    triggered_by: Optional[str] = Field(None, description="Origin of the first attempt; retries are recorded under it")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Variables the first attempt ran with, replayed on retries")

    @field_validator("next_attempt_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class Task(BaseModel):
    """
    Encapsulates a unit of automation that can be scheduled for execution.
    """
    id: str = Field(default_factory=lambda: f"tsk_{uuid.uuid4().hex[:8]}", description="Unique task identifier")
    name: str = Field(..., description="Task name")
    description: Optional[str] = Field(None, description="Task description")
    schedule: Schedule = Field(..., description="Task schedule configuration")
    action: ActionSpec = Field(..., description="Action invoked when the task runs")
    conditions: List[Condition] = Field(default_factory=list, description="Gates that must all hold before the action is invoked")
    retry_policy: Optional[RetryPolicy] = Field(None, description="Retry behaviour; any failure is terminal when absent")
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    timeout: Optional[timedelta] = Field(None, description="Action timeout; the engine default applies when absent")
    requires_approval: bool = Field(default=False, description="Create the task as pending until approved")
    status: TaskStatus = TaskStatus.PENDING
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    run_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    retry_state: Optional[RetryState] = None
    lease_holder: Optional[str] = None
    leased_at: Optional[datetime] = None
    cancel_requested: bool = False
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Task creation timestamp with UTC timezone"
    )
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", "next_run_at", "last_run_at", "leased_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def kind(self) -> TaskKind:
        return TaskKind(self.schedule.kind)

    @property
    def is_recurring(self) -> bool:
        return self.kind == TaskKind.RECURRING

    @property
    def is_one_time(self) -> bool:
        return self.kind == TaskKind.ONE_TIME

    @property
    def is_trigger(self) -> bool:
        return self.kind == TaskKind.TRIGGER

    @property
    def next_attempt_number(self) -> int:
        return self.retry_state.attempt + 1 if self.retry_state else 1

    def effective_timeout(self, default: timedelta) -> timedelta:
        return self.timeout if self.timeout is not None else default

    @property
    def readable_string(self) -> str:
        task_summary = f"Task Name: '{self.name}' [{self.status.value}]"
        if self.description:
            task_summary += f"\nDescription: {self.description}"

        schedule_details = self.schedule.format_schedule()
        action_details = f"Action: {self.action.type.value} {self.action.config}"

        return f"{task_summary}\n{schedule_details}\n{action_details}"
