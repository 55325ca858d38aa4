"""
Task Automation Engine

Schedules and runs automation tasks with durable state, bounded concurrency,
conditions, retries and notifications.

Core Concepts:

Task:
    A Task is a declared unit of automation: a schedule (one-time instant,
    cron expression in a timezone, or trigger source), an action, optional
    conditions, a retry policy and notification settings. A Task defines the
    work to be done but does not represent an actual run.

Execution:
    An Execution is one attempt to run a Task's action. Its status only moves
    forward (queued, running, then completed, failed, cancelled or timeout)
    and its logs are append-only.

Lease:
    A worker moves a Task from active to running through one atomic update in
    the task store. Exactly one worker wins, so a Task never runs twice at once.

Relationships:
    - A Task owns its Executions; deleting the Task deletes its history.
    - A failed Execution may be followed by a retry of the same Task, with a
      higher attempt number, once the backoff delay has passed.
"""

from .actions import ActionRegistry, ChainActionHandler, WebhookActionHandler
from .backends import BaseBackend, PollingBackend
from .config import EngineSettings, get_engine_settings
from .storages import InMemoryStorage, SqlAlchemyStorage

__all__ = [
    "actions", "backends", "domain", "storages",
    "ActionRegistry", "ChainActionHandler", "WebhookActionHandler",
    "BaseBackend", "PollingBackend",
    "EngineSettings", "get_engine_settings",
    "InMemoryStorage", "SqlAlchemyStorage",
]
