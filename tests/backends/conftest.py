import pytest
import pytest_asyncio

from task_engine.actions.registry import ActionRegistry
from task_engine.backends.polling import PollingBackend
from task_engine.domain.action import ActionSpec, ActionType
from task_engine.domain.task import Task
from task_engine.storages.sqlalchemy import InMemoryStorage


@pytest_asyncio.fixture(scope="function")
async def storage():
    storage = InMemoryStorage()
    await storage.create_tables()
    yield storage
    await storage.dispose()


@pytest_asyncio.fixture(scope="function")
async def make_backend(storage, settings, clock, sink):
    backends = []

    def factory(handler, **kwargs) -> PollingBackend:
        registry = ActionRegistry()
        registry.register(handler)
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("notification_sink", sink)
        kwargs.setdefault("clock", clock)
        backend = PollingBackend(registry, storage, **kwargs)
        backends.append(backend)
        return backend

    yield factory
    for backend in backends:
        await backend.stop()


@pytest.fixture(scope="function")
def make_task(email_config):
    def factory(schedule, **kwargs) -> Task:
        kwargs.setdefault("name", "Digest")
        return Task(
            schedule=schedule,
            action=ActionSpec(type=ActionType.SEND_EMAIL, config=email_config),
            **kwargs,
        )
    return factory
