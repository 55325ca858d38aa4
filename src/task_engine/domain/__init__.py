from .action import ActionSpec, ActionType
from .condition import (
    ComparisonOperator,
    Condition,
    ConditionDiagnostic,
    ConditionType,
    EvaluationContext,
    TimeWindowCondition,
    UpstreamResultCondition,
    VariableCondition,
)
from .execution import AbandonedLeaseRecovery, Execution, ExecutionError, ExecutionStatus
from .task import (
    NotificationChannel,
    NotificationConfig,
    OneTimeSchedule,
    RecurringSchedule,
    RetryPolicy,
    RetryState,
    Task,
    TaskKind,
    TaskStatus,
    TriggerEvent,
    TriggerSchedule,
)

__all__ = [
    "ActionSpec", "ActionType",
    "ComparisonOperator", "Condition", "ConditionDiagnostic", "ConditionType", "EvaluationContext",
    "TimeWindowCondition", "UpstreamResultCondition", "VariableCondition",
    "AbandonedLeaseRecovery", "Execution", "ExecutionError", "ExecutionStatus",
    "NotificationChannel", "NotificationConfig", "OneTimeSchedule", "RecurringSchedule", "RetryPolicy", "RetryState",
    "Task", "TaskKind", "TaskStatus", "TriggerEvent", "TriggerSchedule",
]
