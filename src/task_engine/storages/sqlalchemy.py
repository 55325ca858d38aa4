import asyncio
import contextlib
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from pydantic import BaseModel
from pydantic_core import to_jsonable_python
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from task_engine.domain.execution import Execution, ExecutionStatus
from task_engine.domain.task import UTC, Task, TaskKind, TaskStatus, TriggerEvent, ensure_utc
from task_engine.schedule import matches_trigger
from task_engine.storages.protocol import Storage

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """
    Stores naive UTC and hands back aware UTC datetimes, since SQLite drops tzinfo.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class TaskModel(Base):
    __tablename__ = 'tasks'

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String)
    kind = Column(String, nullable=False, index=True)
    schedule = Column(JSON, nullable=False)
    action = Column(JSON, nullable=False)
    conditions = Column(JSON, nullable=False)
    retry_policy = Column(JSON(none_as_null=True))
    notification = Column(JSON, nullable=False)
    timeout_seconds = Column(Float)
    requires_approval = Column(Boolean, default=False)
    status = Column(String, nullable=False, index=True)
    next_run_at = Column(UTCDateTime, index=True)
    last_run_at = Column(UTCDateTime)
    run_count = Column(Integer, default=0)
    success_count = Column(Integer, default=0)
    failure_count = Column(Integer, default=0)
    retry_state = Column(JSON(none_as_null=True))
    lease_holder = Column(String)
    leased_at = Column(UTCDateTime)
    cancel_requested = Column(Boolean, default=False)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime)


class ExecutionModel(Base):
    __tablename__ = 'executions'

    # Insertion order, used for newest-first listing.
    pk = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, unique=True, nullable=False, index=True)
    task_id = Column(String, ForeignKey('tasks.id'), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    status = Column(String, nullable=False)
    triggered_by = Column(String, nullable=False)
    started_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime)
    result = Column(JSON(none_as_null=True))
    error = Column(JSON(none_as_null=True))
    logs = Column(JSON, nullable=False)
    duration_ms = Column(Integer)
    skipped = Column(Boolean, default=False)
    diagnostics = Column(JSON, nullable=False)


def _encode(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, timedelta):
        return value.total_seconds()
    return value


class SqlAlchemyStorage(Storage):
    def __init__(self, db_url: str, **engine_kwargs: Any):
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        # SQLite allows a single writer; queue sessions instead of failing with "database is locked".
        self._lock: Optional[asyncio.Lock] = asyncio.Lock() if self.engine.dialect.name == "sqlite" else None

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    @contextlib.asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._lock or contextlib.nullcontext():
            async with self.async_session() as session:
                yield session

    async def _conditional_update(self, conditions: List[Any], values: Dict[str, Any]) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(TaskModel)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def create_task(self, task: Task) -> str:
        async with self._session() as session:
            session.add(TaskModel(**self._task_columns(task)))
            await session.commit()
            return task.id

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._session() as session:
            result = await session.execute(select(TaskModel).filter_by(id=task_id))
            db_task = result.scalar_one_or_none()
            if db_task:
                return self._db_to_task(db_task)
            return None

    async def update_task(self, task: Task) -> bool:
        values = self._task_columns(task)
        values.pop("id")
        return await self._conditional_update(
            [TaskModel.id == task.id, TaskModel.status != TaskStatus.RUNNING.value], values)

    async def delete_task(self, task_id: str) -> bool:
        async with self._session() as session:
            await session.execute(delete(ExecutionModel).where(ExecutionModel.task_id == task_id))
            result = await session.execute(
                delete(TaskModel).where(TaskModel.id == task_id, TaskModel.status != TaskStatus.RUNNING.value)
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.commit()
            return True

    async def list_tasks(self, limit: int = 100, offset: int = 0, status: Optional[TaskStatus] = None,
                         kind: Optional[TaskKind] = None) -> List[Task]:
        query = select(TaskModel)
        if status is not None:
            query = query.where(TaskModel.status == status.value)
        if kind is not None:
            query = query.where(TaskModel.kind == kind.value)
        async with self._session() as session:
            result = await session.execute(
                query.order_by(TaskModel.created_at.desc(), TaskModel.id).offset(offset).limit(limit))
            return [self._db_to_task(db_task) for db_task in result.scalars()]

    async def list_due(self, now: datetime, trigger: Optional[TriggerEvent] = None, limit: int = 100) -> List[Task]:
        query = select(TaskModel).where(TaskModel.status == TaskStatus.ACTIVE.value)
        if trigger is None:
            # Trigger tasks carry a due time only while a retry or recovery is pending.
            query = (
                query.where(TaskModel.next_run_at.is_not(None),
                            TaskModel.next_run_at <= now)
                .order_by(TaskModel.next_run_at.asc())
                .limit(limit)
            )
        else:
            query = query.where(TaskModel.kind == TaskKind.TRIGGER.value,
                                TaskModel.next_run_at.is_(None)).order_by(TaskModel.created_at)
        async with self._session() as session:
            result = await session.execute(query)
            tasks = [self._db_to_task(db_task) for db_task in result.scalars()]
        if trigger is not None:
            tasks = [task for task in tasks if matches_trigger(task.schedule, trigger)][:limit]
        return tasks

    async def list_upcoming(self, now: datetime, until: datetime, limit: int = 20) -> List[Task]:
        async with self._session() as session:
            result = await session.execute(
                select(TaskModel)
                .where(TaskModel.status == TaskStatus.ACTIVE.value,
                       TaskModel.next_run_at.is_not(None),
                       TaskModel.next_run_at >= now,
                       TaskModel.next_run_at <= until)
                .order_by(TaskModel.next_run_at.asc())
                .limit(limit)
            )
            return [self._db_to_task(db_task) for db_task in result.scalars()]

    async def list_running(self) -> List[Task]:
        async with self._session() as session:
            result = await session.execute(
                select(TaskModel).where(TaskModel.status == TaskStatus.RUNNING.value).order_by(TaskModel.leased_at)
            )
            return [self._db_to_task(db_task) for db_task in result.scalars()]

    async def try_acquire_lease(self, task_id: str, holder: str, now: datetime) -> bool:
        return await self._conditional_update(
            [TaskModel.id == task_id, TaskModel.status == TaskStatus.ACTIVE.value],
            dict(status=TaskStatus.RUNNING.value, lease_holder=holder, leased_at=now,
                 cancel_requested=False, updated_at=now),
        )

    async def release(self, task_id: str, new_status: TaskStatus, next_run_at: Optional[datetime],
                      *, lease_holder: Optional[str] = None, **changes: Any) -> bool:
        conditions = [TaskModel.id == task_id, TaskModel.status == TaskStatus.RUNNING.value]
        if lease_holder is not None:
            conditions.append(TaskModel.lease_holder == lease_holder)
        values = dict(status=new_status.value, next_run_at=next_run_at, lease_holder=None,
                      leased_at=None, cancel_requested=False)
        values.update({key: _encode(value) for key, value in changes.items()})
        return await self._conditional_update(conditions, values)

    async def transition(self, task_id: str, from_statuses: Iterable[TaskStatus], to_status: TaskStatus,
                         **changes: Any) -> bool:
        values = dict(status=to_status.value)
        values.update({key: _encode(value) for key, value in changes.items()})
        return await self._conditional_update(
            [TaskModel.id == task_id, TaskModel.status.in_([s.value for s in from_statuses])], values)

    async def request_cancel(self, task_id: str) -> bool:
        return await self._conditional_update(
            [TaskModel.id == task_id, TaskModel.status == TaskStatus.RUNNING.value],
            dict(cancel_requested=True),
        )

    async def append_execution(self, execution: Execution) -> str:
        async with self._session() as session:
            session.add(ExecutionModel(**self._execution_columns(execution)))
            await session.commit()
            return execution.id

    async def update_execution(self, execution: Execution) -> bool:
        async with self._session() as session:
            result = await session.execute(select(ExecutionModel).filter_by(id=execution.id))
            db_execution = result.scalar_one_or_none()
            if db_execution:
                for key, value in self._execution_columns(execution).items():
                    setattr(db_execution, key, value)
                await session.commit()
                return True
            return False

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        async with self._session() as session:
            result = await session.execute(select(ExecutionModel).filter_by(id=execution_id))
            db_execution = result.scalar_one_or_none()
            if db_execution:
                return self._db_to_execution(db_execution)
            return None

    async def list_executions(self, task_id: str, limit: int = 20, offset: int = 0) -> List[Execution]:
        async with self._session() as session:
            result = await session.execute(
                select(ExecutionModel)
                .filter_by(task_id=task_id)
                .order_by(ExecutionModel.pk.desc())
                .offset(offset)
                .limit(limit)
            )
            return [self._db_to_execution(db_execution) for db_execution in result.scalars()]

    async def list_open_executions(self, task_id: str) -> List[Execution]:
        async with self._session() as session:
            result = await session.execute(
                select(ExecutionModel)
                .where(ExecutionModel.task_id == task_id,
                       ExecutionModel.status.in_([ExecutionStatus.QUEUED.value, ExecutionStatus.RUNNING.value]))
                .order_by(ExecutionModel.pk)
            )
            return [self._db_to_execution(db_execution) for db_execution in result.scalars()]

    async def execution_stats(self, task_id: str) -> Dict[str, Any]:
        async with self._session() as session:
            rows = (await session.execute(
                select(ExecutionModel.status, ExecutionModel.skipped, func.count(ExecutionModel.pk),
                       func.sum(ExecutionModel.duration_ms), func.count(ExecutionModel.duration_ms))
                .where(ExecutionModel.task_id == task_id)
                .group_by(ExecutionModel.status, ExecutionModel.skipped)
            )).all()
            last = (await session.execute(
                select(ExecutionModel).filter_by(task_id=task_id).order_by(ExecutionModel.pk.desc()).limit(1)
            )).scalar_one_or_none()

        stats: Dict[str, Any] = dict(total=0, successful=0, failed=0, timed_out=0, cancelled=0, skipped=0)
        duration_sum, duration_count = 0, 0
        for status, skipped, count, total_ms, timed in rows:
            stats["total"] += count
            if skipped:
                stats["skipped"] += count
                continue
            if status == ExecutionStatus.COMPLETED.value:
                stats["successful"] += count
            elif status == ExecutionStatus.FAILED.value:
                stats["failed"] += count
            elif status == ExecutionStatus.TIMEOUT.value:
                stats["timed_out"] += count
            elif status == ExecutionStatus.CANCELLED.value:
                stats["cancelled"] += count
            duration_sum += total_ms or 0
            duration_count += timed
        stats["average_duration_ms"] = duration_sum / duration_count if duration_count else None
        stats["last_execution"] = self._db_to_execution(last) if last else None
        return stats

    async def prune_executions(self, task_id: str, keep_last: int) -> int:
        """
        Keep the newest `keep_last` attempts and, separately, the newest `keep_last`
        skips, so a run of skips never pushes real attempts out of the history.
        """
        removed = 0
        async with self._session() as session:
            for skipped in (False, True):
                newest = (
                    select(ExecutionModel.pk)
                    .where(ExecutionModel.task_id == task_id, ExecutionModel.skipped == skipped)
                    .order_by(ExecutionModel.pk.desc())
                    .limit(keep_last)
                )
                result = await session.execute(
                    delete(ExecutionModel).where(ExecutionModel.task_id == task_id,
                                                 ExecutionModel.skipped == skipped,
                                                 ExecutionModel.pk.not_in(newest))
                )
                removed += result.rowcount
            await session.commit()
        return removed

    def _task_columns(self, task: Task) -> Dict[str, Any]:
        return dict(
            id=task.id,
            name=task.name,
            description=task.description,
            kind=task.kind.value,
            schedule=_encode(task.schedule),
            action=_encode(task.action),
            conditions=[_encode(c) for c in task.conditions],
            retry_policy=_encode(task.retry_policy),
            notification=_encode(task.notification),
            timeout_seconds=_encode(task.timeout),
            requires_approval=task.requires_approval,
            status=task.status.value,
            next_run_at=task.next_run_at,
            last_run_at=task.last_run_at,
            run_count=task.run_count,
            success_count=task.success_count,
            failure_count=task.failure_count,
            retry_state=_encode(task.retry_state),
            lease_holder=task.lease_holder,
            leased_at=task.leased_at,
            cancel_requested=task.cancel_requested,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )

    def _execution_columns(self, execution: Execution) -> Dict[str, Any]:
        return dict(
            id=execution.id,
            task_id=execution.task_id,
            attempt_number=execution.attempt_number,
            status=execution.status.value,
            triggered_by=execution.triggered_by,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            result=to_jsonable_python(execution.result, fallback=str),
            error=_encode(execution.error),
            logs=list(execution.logs),
            duration_ms=execution.duration_ms,
            skipped=execution.skipped,
            diagnostics=[_encode(d) for d in execution.diagnostics],
        )

    def _db_to_task(self, db_task: TaskModel) -> Task:
        return Task.model_validate(dict(
            id=db_task.id,
            name=db_task.name,
            description=db_task.description,
            schedule=db_task.schedule,
            action=db_task.action,
            conditions=db_task.conditions or [],
            retry_policy=db_task.retry_policy,
            notification=db_task.notification,
            timeout=timedelta(seconds=db_task.timeout_seconds) if db_task.timeout_seconds is not None else None,
            requires_approval=bool(db_task.requires_approval),
            status=TaskStatus(db_task.status),
            next_run_at=db_task.next_run_at,
            last_run_at=db_task.last_run_at,
            run_count=db_task.run_count or 0,
            success_count=db_task.success_count or 0,
            failure_count=db_task.failure_count or 0,
            retry_state=db_task.retry_state,
            lease_holder=db_task.lease_holder,
            leased_at=db_task.leased_at,
            cancel_requested=bool(db_task.cancel_requested),
            created_at=db_task.created_at,
            updated_at=db_task.updated_at,
        ))

    def _db_to_execution(self, db_execution: ExecutionModel) -> Execution:
        return Execution.model_validate(dict(
            id=db_execution.id,
            task_id=db_execution.task_id,
            attempt_number=db_execution.attempt_number,
            status=ExecutionStatus(db_execution.status),
            triggered_by=db_execution.triggered_by,
            started_at=db_execution.started_at,
            completed_at=db_execution.completed_at,
            result=db_execution.result,
            error=db_execution.error,
            logs=db_execution.logs or [],
            duration_ms=db_execution.duration_ms,
            skipped=bool(db_execution.skipped),
            diagnostics=db_execution.diagnostics or [],
        ))


class InMemoryStorage(SqlAlchemyStorage):
    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)


def storage_from_url(db_url: str) -> SqlAlchemyStorage:
    """A shared-connection store for in-memory SQLite URLs, a pooled one otherwise."""
    if db_url.startswith("sqlite") and ":memory:" in db_url:
        return InMemoryStorage()
    return SqlAlchemyStorage(db_url)
