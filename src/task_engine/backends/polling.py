import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import AsyncContextManager, Coroutine, List, Optional, Set

from task_engine.actions.registry import ActionRegistry
from task_engine.config import get_engine_settings
from task_engine.domain.execution import TRIGGERED_BY_SCHEDULE, Execution, triggered_by_source
from task_engine.domain.task import TriggerEvent
from task_engine.storages.protocol import Storage
from task_engine.storages.sqlalchemy import SqlAlchemyStorage, storage_from_url
from .base import BaseBackend

logger = logging.getLogger(__name__)


class PollingBackend(BaseBackend):
    """
    Polls the task store for due tasks and runs them on a bounded pool of
    asyncio workers.

    Several backends may share one database: the store's lease is the only
    coordination between them.
    """

    def __init__(self, registry: ActionRegistry, storage: Optional[Storage] = None, **kwargs):
        if storage is None:
            settings = kwargs.get("settings") or get_engine_settings()
            kwargs["settings"] = settings
            storage = storage_from_url(settings.DATABASE_URL)
        super().__init__(registry, storage, **kwargs)
        self.scheduler_task: Optional[asyncio.Task] = None
        self.is_running: bool = False
        self._semaphore = asyncio.Semaphore(self.settings.WORKER_POOL_SIZE)
        self._wake = asyncio.Event()
        self._workers: Set[asyncio.Task] = set()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._inflight: Set[str] = set()

    async def start(self):
        """
        Create tables, reclaim abandoned leases, then start the poll loop.
        """
        if self.is_running:
            return
        if isinstance(self.storage, SqlAlchemyStorage):
            await self.storage.create_tables()
        self._stopping = False
        await self.recover_abandoned_leases()
        self.is_running = True
        self.scheduler_task = asyncio.create_task(self._scheduler_loop())
        logger.info("PollingBackend started as %s with %d workers", self.lease_holder, self.settings.WORKER_POOL_SIZE)

    async def stop(self):
        """
        Stop polling, cancel in-flight executions and wait for them to settle.
        """
        if not self.is_running:
            return
        self.is_running = False
        self._stopping = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        if self.scheduler_task:
            self.scheduler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.scheduler_task
            self.scheduler_task = None
        for signal in list(self._cancel_signals.values()):
            signal.set()
        if self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)
        await self.flush_notifications()
        logger.info("PollingBackend stopped")

    async def poll_once(self, now: Optional[datetime] = None) -> List[Execution]:
        """
        Run a single poll cycle and wait for every execution it started.
        Due checks and condition evaluation use `now` when given.
        """
        workers = await self._dispatch_due(now or self.clock())
        executions = await asyncio.gather(*workers)
        await self.flush_notifications()
        return [execution for execution in executions if execution is not None]

    async def fire_trigger(self, event: TriggerEvent) -> List[Execution]:
        """
        Feed a trigger arrival to every active trigger task it matches.

        Tasks that are already running when the event arrives do not see it.
        """
        tasks = await self.storage.list_due(self.clock(), trigger=event, limit=self.settings.POLL_BATCH_SIZE)
        logger.debug("Trigger %s matched %d tasks", event.source, len(tasks))
        workers = [
            self._spawn(self._lease_and_execute(task.id, triggered_by_source(event.source), event.payload,
                                                require_due=False))
            for task in tasks
        ]
        executions = await asyncio.gather(*workers)
        await self.flush_notifications()
        return [execution for execution in executions if execution is not None]

    async def _scheduler_loop(self):
        """
        Main scheduler loop: poll, then sleep until the next interval or an earlier wake-up.
        """
        while self.is_running:
            self._wake.clear()
            try:
                await self._dispatch_due(self.clock())
            except Exception:
                logger.exception("Error in scheduler loop")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.settings.POLL_INTERVAL_SECONDS)

    async def _dispatch_due(self, now: datetime) -> List[asyncio.Task]:
        tasks = await self.storage.list_due(now, limit=self.settings.POLL_BATCH_SIZE)
        workers = []
        for task in tasks:
            if task.id in self._inflight:
                continue
            self._inflight.add(task.id)
            workers.append(self._spawn(self._run_due(task.id, now)))
        if tasks:
            logger.debug("Poll at %s found %d due tasks, dispatched %d", now.isoformat(), len(tasks), len(workers))
        return workers

    async def _run_due(self, task_id: str, now: datetime) -> Optional[Execution]:
        try:
            return await self._lease_and_execute(task_id, TRIGGERED_BY_SCHEDULE, now=now)
        finally:
            self._inflight.discard(task_id)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        worker = asyncio.create_task(coro)
        self._workers.add(worker)
        worker.add_done_callback(self._worker_done)
        return worker

    def _worker_done(self, worker: asyncio.Task):
        self._workers.discard(worker)
        if not worker.cancelled() and worker.exception() is not None:
            logger.error("Worker crashed", exc_info=worker.exception())

    def _worker_slot(self) -> AsyncContextManager:
        return self._semaphore

    def _wake_up(self):
        self._wake.set()

    def _schedule_wakeup(self, delay: timedelta):
        if not self.is_running:
            return
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire():
            self._timers.discard(handle)
            self._wake.set()

        handle = loop.call_later(delay.total_seconds(), fire)
        self._timers.add(handle)
