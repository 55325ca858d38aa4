from abc import ABC, abstractmethod
import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Any, AsyncContextManager, Awaitable, Callable, Dict, List, Optional, Set

from task_engine.actions.registry import ActionRegistry
from task_engine.conditions import ConditionEvaluator
from task_engine.config import EngineSettings, get_engine_settings
from task_engine.domain.condition import ConditionDiagnostic, EvaluationContext, format_diagnostics
from task_engine.domain.execution import (
    TRIGGERED_BY_MANUAL,
    TRIGGERED_BY_RECOVERY,
    TRIGGERED_BY_SCHEDULE,
    AbandonedLeaseRecovery,
    Execution,
    ExecutionError,
    ExecutionStatus,
)
from task_engine.domain.task import UTC, Task, TaskKind, TaskStatus
from task_engine.errors import (
    ActionTimeoutError,
    ExecutionCancelledError,
    ExecutionNotFoundError,
    InvalidTaskStateError,
    LeaseConflictError,
    TaskNotFoundError,
)
from task_engine.notifications import LoggingNotificationSink, NotificationEvent, NotificationSink, should_notify
from task_engine.retry import RetryCoordinator
from task_engine.schedule import compute_next_run, initial_next_run, validate_schedule
from task_engine.storages.protocol import Storage

logger = logging.getLogger(__name__)

ContextProvider = Callable[[Task], Dict[str, Any]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BaseBackend(ABC):
    """
    The administrative surface and the per-task execution pipeline.

    Subclasses decide when due tasks are dispatched; everything that happens
    once a lease is held (conditions, invocation, timeout, cancellation,
    retries, rescheduling, notifications) lives here.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        storage: Storage,
        settings: Optional[EngineSettings] = None,
        notification_sink: Optional[NotificationSink] = None,
        retry_coordinator: Optional[RetryCoordinator] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        context_provider: Optional[ContextProvider] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings: EngineSettings = settings or get_engine_settings()
        self.registry: ActionRegistry = registry
        self.storage: Storage = storage
        self.notification_sink: NotificationSink = notification_sink or LoggingNotificationSink()
        self.retry_coordinator: RetryCoordinator = retry_coordinator or RetryCoordinator(
            max_backoff=self.settings.retry_max_backoff, jitter=self.settings.RETRY_JITTER)
        self.evaluator: ConditionEvaluator = evaluator or ConditionEvaluator()
        self.context_provider: Optional[ContextProvider] = context_provider
        self.clock: Callable[[], datetime] = clock
        self.lease_holder: str = self.settings.lease_holder
        self._cancel_signals: Dict[str, asyncio.Event] = {}
        self._notifications: Set[asyncio.Task] = set()
        self._stopping: bool = False

    @abstractmethod
    async def start(self):
        pass

    @abstractmethod
    async def stop(self):
        pass

    # Administrative surface

    async def create_task(self, task: Task) -> str:
        """
        Validate and store a new task.

        Raises:
            ScheduleParseError: If the schedule is invalid or never fires.
            ValueError: If the action config does not match its schema.
        """
        now = self.clock()
        self.registry.validate(task.action)
        validate_schedule(task.schedule, now)

        if task.requires_approval:
            status, next_run_at = TaskStatus.PENDING, None
        else:
            status, next_run_at = self._activation(task, now)
        task = task.model_copy(update=dict(
            status=status,
            next_run_at=next_run_at,
            retry_state=None,
            lease_holder=None,
            leased_at=None,
            cancel_requested=False,
            updated_at=now,
        ))
        await self.storage.create_task(task)
        logger.info("Created task %s (%s) as %s, next run %s", task.id, task.name, status.value, next_run_at)
        return task.id

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self.storage.get_task(task_id)

    async def list_tasks(self, limit: int = 100, offset: int = 0, status: Optional[TaskStatus] = None,
                         kind: Optional[TaskKind] = None) -> List[Task]:
        return await self.storage.list_tasks(limit, offset, status=status, kind=kind)

    async def update_task(self, task: Task) -> Task:
        """
        Replace a task's definition. Counters and history are kept; an active
        task is rescheduled from the new schedule.
        """
        current = await self._require_task(task.id)
        if current.status == TaskStatus.RUNNING:
            raise InvalidTaskStateError(task.id, current.status.value, "update")
        now = self.clock()
        self.registry.validate(task.action)
        validate_schedule(task.schedule, now)

        status, next_run_at = current.status, current.next_run_at
        if status == TaskStatus.ACTIVE:
            status, next_run_at = self._activation(task, now)
        updated = task.model_copy(update=dict(
            status=status,
            next_run_at=next_run_at,
            last_run_at=current.last_run_at,
            run_count=current.run_count,
            success_count=current.success_count,
            failure_count=current.failure_count,
            retry_state=current.retry_state,
            lease_holder=None,
            leased_at=None,
            cancel_requested=False,
            created_at=current.created_at,
            updated_at=now,
        ))
        if not await self.storage.update_task(updated):
            raise await self._refusal(task.id, "update")
        logger.info("Updated task %s", task.id)
        return updated

    async def delete_task(self, task_id: str) -> bool:
        """
        Delete a task and its execution history. Refused while the task is running.
        """
        task = await self._require_task(task_id)
        if task.status == TaskStatus.RUNNING:
            raise InvalidTaskStateError(task_id, task.status.value, "delete")
        if not await self.storage.delete_task(task_id):
            raise await self._refusal(task_id, "delete")
        logger.info("Deleted task %s", task_id)
        return True

    async def approve_task(self, task_id: str) -> Task:
        task = await self._require_task(task_id)
        now = self.clock()
        status, next_run_at = self._activation(task, now)
        if not await self.storage.transition(task_id, [TaskStatus.PENDING], status,
                                             next_run_at=next_run_at, updated_at=now):
            raise await self._refusal(task_id, "approve")
        logger.info("Approved task %s, next run %s", task_id, next_run_at)
        return await self._require_task(task_id)

    async def pause_task(self, task_id: str) -> Task:
        task = await self._require_task(task_id)
        if task.status == TaskStatus.PAUSED:
            return task
        if task.status != TaskStatus.ACTIVE:
            raise InvalidTaskStateError(task_id, task.status.value, "pause")
        now = self.clock()
        if not await self.storage.transition(task_id, [TaskStatus.ACTIVE], TaskStatus.PAUSED,
                                             next_run_at=None, updated_at=now):
            raise await self._refusal(task_id, "pause")
        logger.info("Paused task %s", task_id)
        return await self._require_task(task_id)

    async def resume_task(self, task_id: str) -> Task:
        task = await self._require_task(task_id)
        if task.status != TaskStatus.PAUSED:
            raise InvalidTaskStateError(task_id, task.status.value, "resume")
        now = self.clock()
        status, next_run_at = self._activation(task, now)
        if not await self.storage.transition(task_id, [TaskStatus.PAUSED], status,
                                             next_run_at=next_run_at, updated_at=now):
            raise await self._refusal(task_id, "resume")
        logger.info("Resumed task %s, next run %s", task_id, next_run_at)
        self._wake_up()
        return await self._require_task(task_id)

    async def cancel_task(self, task_id: str) -> Task:
        """
        Cancel a task. A running task keeps its lease until the in-flight
        execution drains; it is then settled as cancelled.
        """
        task = await self._require_task(task_id)
        if task.status.is_terminal:
            raise InvalidTaskStateError(task_id, task.status.value, "cancel")
        now = self.clock()
        if task.status == TaskStatus.RUNNING:
            if await self.storage.request_cancel(task_id):
                signal = self._cancel_signals.get(task_id)
                if signal is not None:
                    signal.set()
                logger.info("Cancellation requested for running task %s", task_id)
                return await self._require_task(task_id)
            # The execution settled in the meantime.
            task = await self._require_task(task_id)
            if task.status.is_terminal:
                raise InvalidTaskStateError(task_id, task.status.value, "cancel")
        if not await self.storage.transition(
                task_id, [TaskStatus.PENDING, TaskStatus.ACTIVE, TaskStatus.PAUSED], TaskStatus.CANCELLED,
                next_run_at=None, retry_state=None, updated_at=now):
            raise await self._refusal(task_id, "cancel")
        logger.info("Cancelled task %s", task_id)
        return await self._require_task(task_id)

    async def run_now(self, task_id: str, variables: Optional[Dict[str, Any]] = None) -> Execution:
        """
        Run a task immediately, outside its schedule, and wait for the outcome.

        Raises:
            InvalidTaskStateError: If the task is not active.
            LeaseConflictError: If the task is already being executed.
        """
        task = await self._require_task(task_id)
        if task.status == TaskStatus.RUNNING:
            raise LeaseConflictError(task_id)
        if task.status != TaskStatus.ACTIVE:
            raise InvalidTaskStateError(task_id, task.status.value, "run")
        execution = await self._lease_and_execute(task_id, TRIGGERED_BY_MANUAL, variables, require_due=False)
        if execution is None:
            raise LeaseConflictError(task_id)
        await self.flush_notifications()
        return execution

    async def list_executions(self, task_id: str, limit: int = 20, offset: int = 0) -> List[Execution]:
        return await self.storage.list_executions(task_id, limit, offset)

    async def get_execution(self, execution_id: str) -> Execution:
        execution = await self.storage.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_upcoming(self, horizon: timedelta = timedelta(hours=24), limit: int = 20) -> List[Task]:
        now = self.clock()
        return await self.storage.list_upcoming(now, now + horizon, limit)

    async def get_task_stats(self, task_id: str) -> Dict[str, Any]:
        task = await self._require_task(task_id)
        stats = await self.storage.execution_stats(task_id)
        stats.update(
            status=task.status,
            run_count=task.run_count,
            success_count=task.success_count,
            failure_count=task.failure_count,
            next_run_at=task.next_run_at,
            last_run_at=task.last_run_at,
        )
        return stats

    async def prune_executions(self, task_id: str, keep_last: Optional[int] = None) -> int:
        keep_last = self.settings.EXECUTION_HISTORY_LIMIT if keep_last is None else keep_last
        removed = await self.storage.prune_executions(task_id, keep_last)
        if removed:
            logger.debug("Pruned %d executions of task %s", removed, task_id)
        return removed

    async def recover_abandoned_leases(self, now: Optional[datetime] = None) -> List[AbandonedLeaseRecovery]:
        """
        Reclaim running tasks whose lease outlived their timeout plus the grace
        margin. The abandoned attempt is closed out as timed out and the task
        is due again immediately.
        """
        now = now or self.clock()
        recoveries: List[AbandonedLeaseRecovery] = []
        for task in await self.storage.list_running():
            if task.id in self._cancel_signals:
                continue
            if task.leased_at is not None:
                deadline = task.leased_at + task.effective_timeout(self.settings.default_action_timeout) \
                    + self.settings.lease_grace
                if now <= deadline:
                    continue

            message = f"Lease held by {task.lease_holder} since {task.leased_at} was abandoned"
            error = ExecutionError(type="AbandonedLeaseRecovery", message=message)
            abandoned = await self.storage.list_open_executions(task.id)
            if not abandoned:
                synthetic = Execution(task_id=task.id, attempt_number=task.next_attempt_number,
                                      triggered_by=TRIGGERED_BY_RECOVERY, started_at=task.leased_at or now)
                await self.storage.append_execution(synthetic)
                abandoned = [synthetic]
            for execution in abandoned:
                execution.log(message, now)
                execution.set_error(error, ExecutionStatus.TIMEOUT, now)
                await self.storage.update_execution(execution)

            if await self.storage.release(task.id, TaskStatus.ACTIVE, self._rearm_at(task, now),
                                          lease_holder=task.lease_holder, updated_at=now):
                recovery = AbandonedLeaseRecovery(task_id=task.id, lease_holder=task.lease_holder,
                                                  leased_at=task.leased_at, recovered_at=now,
                                                  execution_id=abandoned[-1].id)
                logger.info("Recovered abandoned lease on task %s (holder %s)", task.id, task.lease_holder)
                recoveries.append(recovery)
        return recoveries

    async def flush_notifications(self):
        """Wait for notifications that are still being delivered."""
        while self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    # Execution pipeline

    def _worker_slot(self) -> AsyncContextManager:
        return contextlib.nullcontext()

    def _wake_up(self):
        pass

    def _schedule_wakeup(self, delay: timedelta):
        pass

    async def _lease_and_execute(self, task_id: str, triggered_by: str,
                                 variables: Optional[Dict[str, Any]] = None,
                                 require_due: bool = True,
                                 now: Optional[datetime] = None) -> Optional[Execution]:
        async with self._worker_slot():
            if self._stopping:
                return None
            now = now or self.clock()
            if not await self.storage.try_acquire_lease(task_id, self.lease_holder, now):
                logger.debug("Lease conflict on task %s", task_id)
                return None
            task = await self.storage.get_task(task_id)
            if require_due and (task.next_run_at is None or task.next_run_at > now):
                # Settled by another worker between listing and leasing.
                await self.storage.release(task_id, TaskStatus.ACTIVE, task.next_run_at,
                                           lease_holder=self.lease_holder)
                return None
            if triggered_by == TRIGGERED_BY_SCHEDULE and task.retry_state is not None:
                # A retry continues the chain under the origin of its first attempt.
                triggered_by = task.retry_state.triggered_by or triggered_by
                variables = task.retry_state.variables
            return await self._execute_task(task, triggered_by, variables, now)

    async def _execute_task(self, task: Task, triggered_by: str = TRIGGERED_BY_SCHEDULE,
                            variables: Optional[Dict[str, Any]] = None,
                            now: Optional[datetime] = None) -> Execution:
        """
        Run one attempt of a leased task and settle it.
        """
        now = now or self.clock()
        attempt = task.next_attempt_number
        context = self._build_context(task, now, variables)

        passed, diagnostics = self.evaluator.evaluate(task.conditions, context)
        if not passed:
            return await self._skip(task, attempt, triggered_by, diagnostics, now)

        execution = Execution(task_id=task.id, attempt_number=attempt, triggered_by=triggered_by, started_at=now)
        execution.log(f"Queued attempt {attempt} ({triggered_by})", now)
        await self.storage.append_execution(execution)

        cancel_signal = asyncio.Event()
        self._cancel_signals[task.id] = cancel_signal
        try:
            execution.set_status(ExecutionStatus.RUNNING, self.clock())
            execution.log(f"Invoking {task.action.type.value} action", execution.started_at)
            await self.storage.update_execution(execution)
            try:
                handler, config = self.registry.resolve(task.action)
                result = await self._invoke(task, handler, config, context, cancel_signal)
            except ExecutionCancelledError as e:
                return await self._settle_cancelled(task, execution, e)
            except ActionTimeoutError as e:
                logger.warning("Task %s timed out on attempt %d", task.id, attempt)
                return await self._settle_failure(task, execution, e, ExecutionStatus.TIMEOUT, variables)
            except Exception as e:
                logger.debug("Task %s failed on attempt %d: %s", task.id, attempt, e)
                return await self._settle_failure(task, execution, e, ExecutionStatus.FAILED, variables)
            return await self._settle_success(task, execution, result)
        finally:
            self._cancel_signals.pop(task.id, None)

    async def _invoke(self, task: Task, handler, config, context: EvaluationContext,
                      cancel_signal: asyncio.Event) -> Any:
        """
        Await the action under the task's timeout. A cancellation (local or
        requested through the store) or a timeout signals the action, waits
        out the grace period, then abandons it.
        """
        timeout = task.effective_timeout(self.settings.default_action_timeout).total_seconds()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        outcome: Dict[str, bool] = {}
        action = asyncio.ensure_future(_watch(handler.invoke(config, context, cancel_signal), cancel_signal, outcome))
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    cancel_signal.set()
                    forced = not await self._drain(action)
                    if forced:
                        logger.warning("Task %s ignored the cancel signal after timing out", task.id)
                    raise ActionTimeoutError(timeout)

                waiter = asyncio.ensure_future(cancel_signal.wait())
                try:
                    done, _ = await asyncio.wait(
                        {action, waiter},
                        timeout=min(remaining, self.settings.POLL_INTERVAL_SECONDS),
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    waiter.cancel()

                if action in done and outcome["before_cancel"]:
                    return action.result()
                # Settling after the signal, even by returning normally, counts as cancelled.
                if cancel_signal.is_set():
                    forced = not await self._drain(action)
                    if forced:
                        logger.warning("Forced cancellation of task %s after %ss grace",
                                       task.id, self.settings.CANCEL_GRACE_SECONDS)
                    raise ExecutionCancelledError("Execution was cancelled", forced=forced)
                if await self._cancel_requested(task.id):
                    cancel_signal.set()
        finally:
            if not action.done():
                action.cancel()
            action.add_done_callback(_consume_result)

    async def _drain(self, action: asyncio.Future) -> bool:
        done, _ = await asyncio.wait({action}, timeout=self.settings.CANCEL_GRACE_SECONDS)
        return bool(done)

    async def _cancel_requested(self, task_id: str) -> bool:
        task = await self.storage.get_task(task_id)
        return task is not None and task.cancel_requested

    async def _skip(self, task: Task, attempt: int, triggered_by: str,
                    diagnostics: List[ConditionDiagnostic], now: datetime) -> Execution:
        reason = format_diagnostics(diagnostics)
        execution = Execution(task_id=task.id, attempt_number=attempt, triggered_by=triggered_by,
                              started_at=now, skipped=True, diagnostics=diagnostics)
        execution.log(f"Skipped: {reason}", now)
        execution.set_status(ExecutionStatus.COMPLETED, now)
        await self.storage.append_execution(execution)

        status, next_run_at = TaskStatus.ACTIVE, task.next_run_at
        if task.is_recurring:
            next_run_at = compute_next_run(task.schedule, now)
            if next_run_at is None:
                status = TaskStatus.COMPLETED
        elif task.is_trigger:
            next_run_at = None
        logger.debug("Skipped task %s: %s", task.id, reason)
        await self._release(task, status, next_run_at, updated_at=now)
        await self.prune_executions(task.id)
        return execution

    async def _settle_success(self, task: Task, execution: Execution, result: Any) -> Execution:
        now = self.clock()
        execution.log("Action completed", now)
        execution.set_result(result, now)
        await self.storage.update_execution(execution)

        status, next_run_at = TaskStatus.ACTIVE, None
        if task.is_one_time:
            status = TaskStatus.COMPLETED
        elif task.is_recurring:
            next_run_at = compute_next_run(task.schedule, now)
            if next_run_at is None:
                status = TaskStatus.COMPLETED
        await self._release(
            task, status, next_run_at,
            last_run_at=execution.started_at,
            run_count=task.run_count + 1,
            success_count=task.success_count + 1,
            retry_state=None,
            updated_at=now,
        )
        await self.prune_executions(task.id)
        self._notify(NotificationEvent.SUCCESS, task.id, execution)
        return execution

    async def _settle_failure(self, task: Task, execution: Execution, exc: Exception,
                              status: ExecutionStatus, variables: Optional[Dict[str, Any]] = None) -> Execution:
        now = self.clock()
        error = ExecutionError.from_exception(exc)
        execution.log(f"{error.type}: {error.message}", now)
        execution.set_error(error, status, now)
        await self.storage.update_execution(execution)

        decision = self.retry_coordinator.on_failure(task.retry_policy, execution.attempt_number)
        if decision.retry:
            retry_state = self.retry_coordinator.next_state(task.retry_state, decision, now, error.message)
            if task.retry_state is None:
                retry_state = retry_state.model_copy(update={
                    "triggered_by": execution.triggered_by,
                    "variables": dict(variables or {}),
                })
            logger.info("Retrying task %s (attempt %d) in %s", task.id, decision.attempt_number + 1, decision.delay)
            await self._release(task, TaskStatus.ACTIVE, retry_state.next_attempt_at,
                                last_run_at=execution.started_at, retry_state=retry_state, updated_at=now)
            self._schedule_wakeup(decision.delay)
        else:
            logger.info("Task %s failed after %d attempt(s): %s", task.id, execution.attempt_number, error.message)
            await self._release(
                task, TaskStatus.FAILED, None,
                last_run_at=execution.started_at,
                run_count=task.run_count + 1,
                failure_count=task.failure_count + 1,
                retry_state=None,
                updated_at=now,
            )
            self._notify(NotificationEvent.FAILURE, task.id, execution)
        await self.prune_executions(task.id)
        return execution

    async def _settle_cancelled(self, task: Task, execution: Execution, exc: ExecutionCancelledError) -> Execution:
        now = self.clock()
        execution.log("Cancellation forced after grace period" if exc.forced else "Action stopped on cancel", now)
        execution.set_error(ExecutionError.from_exception(exc), ExecutionStatus.CANCELLED, now)
        await self.storage.update_execution(execution)
        # Shutdown cancels without a request on the task: hand it back, due immediately.
        await self._release(task, TaskStatus.ACTIVE, self._rearm_at(task, now), updated_at=now)
        return execution

    async def _release(self, task: Task, status: TaskStatus, next_run_at: Optional[datetime], **changes: Any):
        if await self._cancel_requested(task.id):
            status, next_run_at = TaskStatus.CANCELLED, None
            changes["retry_state"] = None
            logger.info("Cancelled task %s", task.id)
        if not await self.storage.release(task.id, status, next_run_at, lease_holder=self.lease_holder, **changes):
            logger.warning("Lease on task %s was lost before it could be released", task.id)
        elif status == TaskStatus.ACTIVE and next_run_at is not None:
            self._wake_up()

    def _build_context(self, task: Task, now: datetime, variables: Optional[Dict[str, Any]]) -> EvaluationContext:
        merged: Dict[str, Any] = {}
        if self.context_provider is not None:
            merged.update(self.context_provider(task) or {})
        if variables:
            merged.update(variables)
        return EvaluationContext(now=now, variables=merged)

    def _rearm_at(self, task: Task, now: datetime) -> Optional[datetime]:
        """Due time of an interrupted attempt. A trigger task outside a retry chain waits for its next event."""
        if task.is_trigger and task.retry_state is None:
            return None
        return now

    def _activation(self, task: Task, now: datetime):
        """Status and next run of a task entering the active state."""
        if task.is_trigger:
            return TaskStatus.ACTIVE, None
        next_run_at = initial_next_run(task.schedule, now)
        if next_run_at is None:
            return TaskStatus.COMPLETED, None
        return TaskStatus.ACTIVE, next_run_at

    def _notify(self, event: NotificationEvent, task_id: str, execution: Execution):
        notification = asyncio.create_task(self._deliver(event, task_id, execution))
        self._notifications.add(notification)
        notification.add_done_callback(self._notifications.discard)

    async def _deliver(self, event: NotificationEvent, task_id: str, execution: Execution):
        try:
            task = await self.storage.get_task(task_id)
            if task is None or not should_notify(event, task):
                return
            await self.notification_sink.notify(event, task, execution)
        except Exception as e:
            logger.warning("Notification %s for task %s failed: %s", event.value, task_id, e)

    async def _require_task(self, task_id: str) -> Task:
        task = await self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def _refusal(self, task_id: str, command: str) -> Exception:
        task = await self.storage.get_task(task_id)
        if task is None:
            return TaskNotFoundError(task_id)
        return InvalidTaskStateError(task_id, task.status.value, command)


async def _watch(invocation: Awaitable[Any], cancel_signal: asyncio.Event, outcome: Dict[str, bool]) -> Any:
    try:
        return await invocation
    finally:
        outcome["before_cancel"] = not cancel_signal.is_set()


def _consume_result(future: asyncio.Future):
    if not future.cancelled():
        future.exception()

