import asyncio
from datetime import datetime, timedelta
from typing import Any, List, Tuple

import pytest
from pydantic import BaseModel

from task_engine.config import EngineSettings
from task_engine.domain.action import ActionType
from task_engine.domain.condition import EvaluationContext
from task_engine.domain.execution import Execution
from task_engine.domain.task import UTC, Task
from task_engine.errors import ActionInvocationError
from task_engine.notifications import NotificationEvent


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now


class RecordingHandler:
    """Succeeds and remembers every invocation."""

    def __init__(self, result: Any = "ok"):
        self.result = result
        self.calls: List[Tuple[BaseModel, EvaluationContext]] = []

    @staticmethod
    def supported_type() -> ActionType:
        return ActionType.SEND_EMAIL

    async def invoke(self, config: BaseModel, context: EvaluationContext, cancel_signal: asyncio.Event) -> Any:
        self.calls.append((config, context))
        return self.result


class FailingHandler(RecordingHandler):
    async def invoke(self, config: BaseModel, context: EvaluationContext, cancel_signal: asyncio.Event) -> Any:
        self.calls.append((config, context))
        raise ActionInvocationError("smtp unavailable", details={"code": 421})


class HangingHandler(RecordingHandler):
    """Blocks until cancelled. A stubborn one ignores the cancel signal."""

    def __init__(self, stubborn: bool = False):
        super().__init__()
        self.stubborn = stubborn
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def invoke(self, config: BaseModel, context: EvaluationContext, cancel_signal: asyncio.Event) -> Any:
        self.calls.append((config, context))
        self.started.set()
        if self.stubborn:
            await self.release.wait()
        else:
            await cancel_signal.wait()
        return "finished"


class RecordingSink:
    def __init__(self):
        self.events: List[Tuple[NotificationEvent, str, str]] = []

    async def notify(self, event: NotificationEvent, task: Task, execution: Execution) -> None:
        self.events.append((event, task.id, execution.id))


class BrokenSink:
    async def notify(self, event: NotificationEvent, task: Task, execution: Execution) -> None:
        raise RuntimeError("mail relay down")


@pytest.fixture
def start_time() -> datetime:
    return datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def clock(start_time: datetime) -> FakeClock:
    return FakeClock(start_time)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        POLL_INTERVAL_SECONDS=0.05,
        WORKER_POOL_SIZE=4,
        DEFAULT_ACTION_TIMEOUT_SECONDS=5,
        CANCEL_GRACE_SECONDS=0.1,
        LEASE_GRACE_SECONDS=60,
        RETRY_JITTER=0.0,
        LEASE_HOLDER="test-worker",
    )


@pytest.fixture
def email_config() -> dict:
    return {"to": "ops@example.com", "subject": "Daily digest", "body": "All systems nominal"}


@pytest.fixture
def recording_handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def failing_handler() -> FailingHandler:
    return FailingHandler()


@pytest.fixture
def hanging_handler() -> HangingHandler:
    return HangingHandler()


@pytest.fixture
def stubborn_handler() -> HangingHandler:
    return HangingHandler(stubborn=True)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def broken_sink() -> BrokenSink:
    return BrokenSink()
