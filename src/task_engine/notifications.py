import logging
from enum import Enum
from typing import Protocol

from task_engine.domain.execution import Execution
from task_engine.domain.task import Task

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class NotificationSink(Protocol):
    """
    Receives task outcome notifications. Delivery is best-effort: the engine
    never waits on it for task state and ignores its failures.
    """

    async def notify(self, event: NotificationEvent, task: Task, execution: Execution) -> None:
        ...


class LoggingNotificationSink:
    """
    Default sink: writes notifications to the log.
    """

    async def notify(self, event: NotificationEvent, task: Task, execution: Execution) -> None:
        logger.info(
            "Task %s (%s) %s on attempt %d, channels=%s",
            task.id, task.name, event.value, execution.attempt_number,
            [c.value for c in task.notification.channels],
        )


def should_notify(event: NotificationEvent, task: Task) -> bool:
    if event == NotificationEvent.SUCCESS:
        return task.notification.on_success
    return task.notification.on_failure
