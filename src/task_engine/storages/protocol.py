from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from task_engine.domain.execution import Execution
from task_engine.domain.task import Task, TaskKind, TaskStatus, TriggerEvent


class Storage(Protocol):
    async def create_task(self, task: Task) -> str:
        """Create a new task and return its ID."""
        ...

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Retrieve a task by its ID."""
        ...

    async def update_task(self, task: Task) -> bool:
        """Overwrite a task that is not running. Return False if it is missing or running."""
        ...

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task that is not running, together with its executions."""
        ...

    async def list_tasks(self, limit: int = 100, offset: int = 0, status: Optional[TaskStatus] = None,
                         kind: Optional[TaskKind] = None) -> List[Task]:
        """List tasks with pagination, newest first."""
        ...

    async def list_due(self, now: datetime, trigger: Optional[TriggerEvent] = None, limit: int = 100) -> List[Task]:
        """
        Active tasks whose next run is at or before `now`, soonest first.
        With a trigger event, active trigger tasks matching that event that are not
        waiting on a retry instead.
        """
        ...

    async def list_upcoming(self, now: datetime, until: datetime, limit: int = 20) -> List[Task]:
        """Active tasks due between `now` and `until`, soonest first."""
        ...

    async def list_running(self) -> List[Task]:
        """Tasks currently holding a lease."""
        ...

    async def try_acquire_lease(self, task_id: str, holder: str, now: datetime) -> bool:
        """Atomically move a task from active to running. Return True for exactly one caller."""
        ...

    async def release(self, task_id: str, new_status: TaskStatus, next_run_at: Optional[datetime],
                      *, lease_holder: Optional[str] = None, **changes: Any) -> bool:
        """Move a running task to `new_status`, clearing its lease."""
        ...

    async def transition(self, task_id: str, from_statuses: Iterable[TaskStatus], to_status: TaskStatus,
                         **changes: Any) -> bool:
        """Atomically move a task between statuses. Return False if it was not in `from_statuses`."""
        ...

    async def request_cancel(self, task_id: str) -> bool:
        """Flag a running task for cancellation."""
        ...

    async def append_execution(self, execution: Execution) -> str:
        """Record a new execution and return its ID."""
        ...

    async def update_execution(self, execution: Execution) -> bool:
        """Update an existing execution. Return True if successful, False otherwise."""
        ...

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        """Retrieve an execution with its full logs."""
        ...

    async def list_executions(self, task_id: str, limit: int = 20, offset: int = 0) -> List[Execution]:
        """List executions for a task, newest first."""
        ...

    async def list_open_executions(self, task_id: str) -> List[Execution]:
        """Executions of a task that have not reached a terminal status."""
        ...

    async def execution_stats(self, task_id: str) -> Dict[str, Any]:
        """Aggregate counts and average duration over a task's executions."""
        ...

    async def prune_executions(self, task_id: str, keep_last: int) -> int:
        """Delete all but the newest `keep_last` attempts and `keep_last` skips. Return how many were removed."""
        ...
