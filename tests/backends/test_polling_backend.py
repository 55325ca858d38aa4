import asyncio
from datetime import timedelta
from typing import Any

import pytest
from pydantic import BaseModel

from task_engine.domain.action import ActionSpec, ActionType
from task_engine.domain.condition import ComparisonOperator, EvaluationContext, VariableCondition
from task_engine.domain.execution import Execution, ExecutionStatus
from task_engine.domain.task import (
    NotificationConfig,
    OneTimeSchedule,
    RecurringSchedule,
    RetryPolicy,
    Task,
    TaskStatus,
    TriggerEvent,
    TriggerSchedule,
)
from task_engine.errors import ActionInvocationError
from task_engine.notifications import NotificationEvent


class FlakyHandler:
    """Fails a fixed number of times, then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    @staticmethod
    def supported_type() -> ActionType:
        return ActionType.SEND_EMAIL

    async def invoke(self, config: BaseModel, context: EvaluationContext, cancel_signal: asyncio.Event) -> Any:
        self.calls += 1
        if self.calls <= self.failures:
            raise ActionInvocationError(f"failure {self.calls}")
        return {"delivered": True}


@pytest.mark.asyncio
async def test_recurring_every_five_minutes(make_backend, make_task, recording_handler, clock, start_time):
    backend = make_backend(recording_handler)
    task_id = await backend.create_task(make_task(RecurringSchedule(cron_expression="*/5 * * * *")))

    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.ACTIVE
    assert task.next_run_at == start_time + timedelta(minutes=5)

    for _ in range(3):
        clock.advance(timedelta(minutes=5))
        executions = await backend.poll_once()
        assert len(executions) == 1
        assert executions[0].status == ExecutionStatus.COMPLETED

    task = await backend.get_task(task_id)
    assert task.run_count == 3
    assert task.success_count == 3
    assert task.status == TaskStatus.ACTIVE
    assert task.last_run_at == start_time + timedelta(minutes=15)
    assert task.next_run_at == start_time + timedelta(minutes=20)
    assert len(recording_handler.calls) == 3


@pytest.mark.asyncio
async def test_retries_until_exhausted(make_backend, make_task, failing_handler, clock, sink, start_time):
    backend = make_backend(failing_handler)
    task_id = await backend.create_task(make_task(
        OneTimeSchedule(run_at=start_time),
        retry_policy=RetryPolicy(max_attempts=3, base_backoff=timedelta(seconds=30), multiplier=2.0),
        notification=NotificationConfig(on_failure=True),
    ))

    await backend.poll_once()
    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.ACTIVE
    assert task.run_count == 0
    assert task.retry_state.attempt == 1
    assert task.next_run_at == start_time + timedelta(seconds=30)

    # Not due again until the backoff has passed.
    assert await backend.poll_once() == []

    clock.advance(timedelta(seconds=30))
    await backend.poll_once()
    clock.advance(timedelta(seconds=60))
    await backend.poll_once()

    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.run_count == 1
    assert task.failure_count == 1
    assert task.retry_state is None

    executions = await backend.list_executions(task_id)
    assert len(executions) == 3
    assert [e.attempt_number for e in executions] == [3, 2, 1]
    assert all(e.status == ExecutionStatus.FAILED for e in executions)
    assert executions[0].error.type == "ActionInvocationError"
    assert executions[0].error.details == {"code": 421}
    assert sink.events == [(NotificationEvent.FAILURE, task_id, executions[0].id)]

    clock.advance(timedelta(hours=1))
    assert await backend.poll_once() == []


@pytest.mark.asyncio
async def test_retry_then_success(make_backend, make_task, clock, sink, start_time):
    handler = FlakyHandler(failures=1)
    backend = make_backend(handler)
    task_id = await backend.create_task(make_task(
        OneTimeSchedule(run_at=start_time),
        retry_policy=RetryPolicy(max_attempts=3, base_backoff=timedelta(seconds=10)),
        notification=NotificationConfig(on_success=True, on_failure=True),
    ))

    await backend.poll_once()
    clock.advance(timedelta(seconds=10))
    executions = await backend.poll_once()

    assert executions[0].attempt_number == 2
    assert executions[0].result == {"delivered": True}
    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.COMPLETED
    assert task.run_count == 1
    assert task.success_count == 1
    assert task.failure_count == 0
    assert task.retry_state is None
    assert [e[0] for e in sink.events] == [NotificationEvent.SUCCESS]


@pytest.mark.asyncio
async def test_unsatisfied_condition_skips(make_backend, make_task, recording_handler, start_time):
    variables = {}
    backend = make_backend(recording_handler, context_provider=lambda task: variables)
    task_id = await backend.create_task(make_task(
        OneTimeSchedule(run_at=start_time),
        conditions=[VariableCondition(key="approved", operator=ComparisonOperator.EXISTS)],
    ))

    executions = await backend.poll_once()

    assert len(executions) == 1
    assert executions[0].skipped
    assert executions[0].status == ExecutionStatus.COMPLETED
    assert not executions[0].diagnostics[0].passed
    assert recording_handler.calls == []
    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.ACTIVE
    assert task.run_count == 0
    assert task.next_run_at == start_time

    variables["approved"] = True
    executions = await backend.poll_once()
    assert not executions[0].skipped
    assert len(recording_handler.calls) == 1
    assert (await backend.get_task(task_id)).status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_skipped_recurring_task_moves_on(make_backend, make_task, recording_handler, clock, start_time):
    backend = make_backend(recording_handler)
    task_id = await backend.create_task(make_task(
        RecurringSchedule(cron_expression="0 * * * *"),
        conditions=[VariableCondition(key="approved", operator=ComparisonOperator.EXISTS)],
    ))

    clock.advance(timedelta(hours=1))
    await backend.poll_once()

    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.ACTIVE
    assert task.run_count == 0
    assert task.next_run_at == start_time + timedelta(hours=2)


@pytest.mark.asyncio
async def test_one_time_due_window(make_backend, make_task, recording_handler, clock, start_time):
    backend = make_backend(recording_handler)
    task_id = await backend.create_task(make_task(OneTimeSchedule(run_at=start_time + timedelta(minutes=10))))

    clock.advance(timedelta(minutes=9, seconds=59))
    assert await backend.poll_once() == []

    clock.advance(timedelta(seconds=1))
    executions = await backend.poll_once()
    assert len(executions) == 1
    assert executions[0].triggered_by == "schedule"

    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.COMPLETED
    assert task.next_run_at is None

    clock.advance(timedelta(days=1))
    assert await backend.poll_once() == []


@pytest.mark.asyncio
async def test_timeout_is_recorded_as_timeout(make_backend, make_task, hanging_handler, start_time):
    backend = make_backend(hanging_handler)
    task_id = await backend.create_task(make_task(
        OneTimeSchedule(run_at=start_time),
        timeout=timedelta(milliseconds=50),
    ))

    executions = await backend.poll_once()

    assert executions[0].status == ExecutionStatus.TIMEOUT
    assert executions[0].error.type == "ActionTimeoutError"
    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.failure_count == 1


@pytest.mark.asyncio
async def test_timeout_counts_as_a_failed_attempt(make_backend, make_task, hanging_handler, start_time):
    backend = make_backend(hanging_handler)
    task_id = await backend.create_task(make_task(
        OneTimeSchedule(run_at=start_time),
        timeout=timedelta(milliseconds=50),
        retry_policy=RetryPolicy(max_attempts=2, base_backoff=timedelta(seconds=5)),
    ))

    await backend.poll_once()

    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.ACTIVE
    assert task.retry_state.attempt == 1
    assert task.next_run_at == start_time + timedelta(seconds=5)


@pytest.mark.asyncio
async def test_cancel_running_task(make_backend, make_task, hanging_handler, start_time):
    backend = make_backend(hanging_handler)
    task_id = await backend.create_task(make_task(OneTimeSchedule(run_at=start_time)))

    poll = asyncio.create_task(backend.poll_once())
    await hanging_handler.started.wait()
    assert (await backend.get_task(task_id)).status == TaskStatus.RUNNING

    task = await backend.cancel_task(task_id)
    assert task.cancel_requested

    executions = await poll
    assert executions[0].status == ExecutionStatus.CANCELLED
    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.CANCELLED
    assert task.lease_holder is None


@pytest.mark.asyncio
async def test_unresponsive_action_is_forced_to_cancelled(make_backend, make_task, stubborn_handler, start_time):
    backend = make_backend(stubborn_handler)
    task_id = await backend.create_task(make_task(OneTimeSchedule(run_at=start_time)))

    poll = asyncio.create_task(backend.poll_once())
    await stubborn_handler.started.wait()
    await backend.cancel_task(task_id)

    executions = await asyncio.wait_for(poll, timeout=5)
    stubborn_handler.release.set()

    assert executions[0].status == ExecutionStatus.CANCELLED
    assert any("forced" in line for line in executions[0].logs)
    assert (await backend.get_task(task_id)).status == TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_trigger_fires_matching_tasks(make_backend, make_task, recording_handler):
    backend = make_backend(recording_handler)
    task_id = await backend.create_task(make_task(TriggerSchedule(source="webhook:deploys", match={"env": "prod"})))

    assert await backend.poll_once() == []
    assert await backend.fire_trigger(TriggerEvent(source="webhook:deploys", attributes={"env": "dev"})) == []

    executions = await backend.fire_trigger(TriggerEvent(
        source="webhook:deploys", attributes={"env": "prod"}, payload={"version": "1.4.2"}))

    assert len(executions) == 1
    assert executions[0].triggered_by == "trigger:webhook:deploys"
    _, context = recording_handler.calls[0]
    assert context.variables["version"] == "1.4.2"
    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.ACTIVE
    assert task.next_run_at is None
    assert task.run_count == 1


@pytest.mark.asyncio
async def test_only_one_backend_runs_a_due_task(make_backend, make_task, recording_handler, settings, start_time):
    first = make_backend(recording_handler)
    second = make_backend(recording_handler, settings=settings.model_copy(update={"LEASE_HOLDER": "other-worker"}))
    await first.create_task(make_task(OneTimeSchedule(run_at=start_time)))

    results = await asyncio.gather(first.poll_once(), second.poll_once())

    assert sum(len(r) for r in results) == 1
    assert len(recording_handler.calls) == 1


@pytest.mark.asyncio
async def test_notification_failure_does_not_affect_task(make_backend, make_task, recording_handler, broken_sink,
                                                        start_time):
    backend = make_backend(recording_handler, notification_sink=broken_sink)
    task_id = await backend.create_task(make_task(
        OneTimeSchedule(run_at=start_time),
        notification=NotificationConfig(on_success=True),
    ))

    executions = await backend.poll_once()

    assert executions[0].status == ExecutionStatus.COMPLETED
    assert (await backend.get_task(task_id)).status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_handler_fails_the_execution(make_backend, make_task, recording_handler, start_time):
    backend = make_backend(recording_handler)
    task_id = await backend.create_task(Task(
        name="Hook",
        schedule=OneTimeSchedule(run_at=start_time),
        action=ActionSpec(type=ActionType.WEBHOOK, config={"url": "https://example.com"}),
    ))

    executions = await backend.poll_once()

    assert executions[0].status == ExecutionStatus.FAILED
    assert executions[0].error.type == "KeyError"
    assert (await backend.get_task(task_id)).status == TaskStatus.FAILED


@pytest.mark.asyncio
async def test_recover_abandoned_lease(make_backend, make_task, recording_handler, storage, clock, start_time):
    backend = make_backend(recording_handler)
    task_id = await backend.create_task(make_task(
        OneTimeSchedule(run_at=start_time),
        timeout=timedelta(minutes=1),
    ))
    assert await storage.try_acquire_lease(task_id, "crashed-worker", start_time)

    # Within timeout plus grace the lease is still considered live.
    clock.advance(timedelta(minutes=2))
    assert await backend.recover_abandoned_leases() == []

    clock.advance(timedelta(seconds=1))
    recoveries = await backend.recover_abandoned_leases()

    assert len(recoveries) == 1
    assert recoveries[0].task_id == task_id
    assert recoveries[0].lease_holder == "crashed-worker"
    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.ACTIVE
    assert task.next_run_at == clock.now
    assert task.lease_holder is None

    executions = await backend.list_executions(task_id)
    assert len(executions) == 1
    assert executions[0].status == ExecutionStatus.TIMEOUT
    assert executions[0].triggered_by == "recovery"
    assert executions[0].id == recoveries[0].execution_id

    executions = await backend.poll_once()
    assert executions[0].status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_recovery_closes_open_execution(make_backend, make_task, recording_handler, storage, clock, start_time):
    backend = make_backend(recording_handler)
    task_id = await backend.create_task(make_task(OneTimeSchedule(run_at=start_time), timeout=timedelta(seconds=1)))
    await storage.try_acquire_lease(task_id, "crashed-worker", start_time)
    orphan = Execution(task_id=task_id, started_at=start_time)
    orphan.set_status(ExecutionStatus.RUNNING, start_time)
    await storage.append_execution(orphan)

    clock.advance(timedelta(minutes=5))
    recoveries = await backend.recover_abandoned_leases()

    assert recoveries[0].execution_id == orphan.id
    recovered = await backend.get_execution(orphan.id)
    assert recovered.status == ExecutionStatus.TIMEOUT
    assert recovered.error.type == "AbandonedLeaseRecovery"
    assert len(await backend.list_executions(task_id)) == 1


@pytest.mark.asyncio
async def test_start_recovers_and_stop_drains(make_backend, make_task, hanging_handler, storage, clock, start_time):
    backend = make_backend(hanging_handler)
    task_id = await backend.create_task(make_task(OneTimeSchedule(run_at=start_time), timeout=timedelta(seconds=30)))
    await storage.try_acquire_lease(task_id, "crashed-worker", start_time)
    clock.advance(timedelta(minutes=5))

    await backend.start()
    await asyncio.wait_for(hanging_handler.started.wait(), timeout=5)
    await backend.stop()

    executions = await backend.list_executions(task_id)
    assert [e.status for e in executions] == [ExecutionStatus.CANCELLED, ExecutionStatus.TIMEOUT]
    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.ACTIVE
    assert task.next_run_at == clock.now


class CancelledOnReturnHandler:
    """Returns a result while a cancel signal is already on its way."""

    @staticmethod
    def supported_type() -> ActionType:
        return ActionType.SEND_EMAIL

    async def invoke(self, config: BaseModel, context: EvaluationContext, cancel_signal: asyncio.Event) -> Any:
        asyncio.get_running_loop().call_soon(cancel_signal.set)
        return "done"


@pytest.mark.asyncio
async def test_long_retry_chain_keeps_capped_backoff(make_backend, make_task, failing_handler, clock, start_time):
    backend = make_backend(failing_handler)
    task_id = await backend.create_task(make_task(
        OneTimeSchedule(run_at=start_time),
        retry_policy=RetryPolicy(max_attempts=20, base_backoff=timedelta(seconds=1), multiplier=10.0),
    ))

    for attempt in range(1, 17):
        executions = await backend.poll_once()
        assert [e.attempt_number for e in executions] == [attempt]
        task = await backend.get_task(task_id)
        assert task.status == TaskStatus.ACTIVE
        assert task.lease_holder is None
        assert task.next_run_at == clock.now + timedelta(seconds=min(10.0 ** (attempt - 1), 3600))
        clock.advance(timedelta(hours=2))

    task = await backend.get_task(task_id)
    assert task.retry_state.attempt == 16
    assert task.next_run_at == clock.now - timedelta(hours=1)


@pytest.mark.asyncio
async def test_trigger_task_retries_on_the_poll(make_backend, make_task, failing_handler, clock, start_time):
    backend = make_backend(failing_handler)
    task_id = await backend.create_task(make_task(
        TriggerSchedule(source="webhook:deploys"),
        retry_policy=RetryPolicy(max_attempts=2, base_backoff=timedelta(seconds=10)),
    ))

    executions = await backend.fire_trigger(TriggerEvent(source="webhook:deploys", payload={"version": "2"}))
    assert [e.status for e in executions] == [ExecutionStatus.FAILED]
    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.ACTIVE
    assert task.next_run_at == start_time + timedelta(seconds=10)

    # Events arriving while a retry is pending are not delivered.
    assert await backend.fire_trigger(TriggerEvent(source="webhook:deploys", payload={"version": "3"})) == []
    assert await backend.poll_once() == []

    clock.advance(timedelta(seconds=10))
    executions = await backend.poll_once()

    assert len(executions) == 1
    assert executions[0].attempt_number == 2
    assert executions[0].triggered_by == "trigger:webhook:deploys"
    _, context = failing_handler.calls[1]
    assert context.variables["version"] == "2"
    task = await backend.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.next_run_at is None
    assert task.retry_state is None


@pytest.mark.asyncio
async def test_skips_do_not_prune_failed_attempts(make_backend, make_task, failing_handler, settings, clock,
                                                  start_time):
    variables = {"approved": True}
    backend = make_backend(failing_handler, context_provider=lambda task: variables,
                           settings=settings.model_copy(update={"EXECUTION_HISTORY_LIMIT": 5}))
    task_id = await backend.create_task(make_task(
        OneTimeSchedule(run_at=start_time),
        conditions=[VariableCondition(key="approved", operator=ComparisonOperator.EXISTS)],
        retry_policy=RetryPolicy(max_attempts=3, base_backoff=timedelta(seconds=10)),
    ))

    failed = (await backend.poll_once())[0]
    assert failed.status == ExecutionStatus.FAILED

    del variables["approved"]
    clock.advance(timedelta(seconds=10))
    for _ in range(10):
        executions = await backend.poll_once()
        assert executions[0].skipped

    history = await backend.list_executions(task_id)
    assert failed.id in [e.id for e in history]
    assert len([e for e in history if e.skipped]) == 5
    assert (await backend.get_task(task_id)).retry_state.attempt == 1


@pytest.mark.asyncio
async def test_poll_once_uses_the_given_time(make_backend, make_task, recording_handler, clock, start_time):
    backend = make_backend(recording_handler)
    task_id = await backend.create_task(make_task(OneTimeSchedule(run_at=start_time + timedelta(minutes=10))))

    assert await backend.poll_once(now=start_time + timedelta(minutes=9)) == []
    executions = await backend.poll_once(now=start_time + timedelta(minutes=10))

    assert clock.now == start_time
    assert [e.status for e in executions] == [ExecutionStatus.COMPLETED]
    _, context = recording_handler.calls[0]
    assert context.now == start_time + timedelta(minutes=10)
    assert (await backend.get_task(task_id)).status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_result_returned_before_cancel_is_kept(make_backend, make_task, start_time):
    handler = CancelledOnReturnHandler()
    backend = make_backend(handler)
    task_id = await backend.create_task(make_task(OneTimeSchedule(run_at=start_time)))

    executions = await backend.poll_once()

    assert executions[0].status == ExecutionStatus.COMPLETED
    assert executions[0].result == "done"
    assert (await backend.get_task(task_id)).status == TaskStatus.COMPLETED
