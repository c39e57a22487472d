"""
Partition state store: durable watermarks, leases, run log and events.

The store is the single source of truth shared by every partition worker.
Mutations of one key are serialized (per-key lock in process, lease row
across processes); different keys never wait on each other.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional
import asyncio
import logging
import uuid

from sqlalchemy import select, update, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from core.clock import utcnow
from core.database import create_session_maker
from core.exceptions import ConfigurationError, StateStoreError
from models.base import PartitionStatus, RunStatus, TriggerSource
from models.partition_event import PartitionEvent
from models.partition_state import PartitionStateRecord
from models.run_record import RunRecordRow
from schemas.partition import PartitionState, RunRecord, TransitionEvent

logger = logging.getLogger(__name__)


def dialect_insert(dialect_name: str):
    """Return the INSERT construct that supports ON CONFLICT for a dialect"""
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    raise ConfigurationError(
        f"Unsupported database dialect: {dialect_name}",
        context={"dialect": dialect_name}
    )


class PartitionStateStore(ABC):
    """
    Abstract partition state store.

    Responsibilities:
    - PartitionState per key (get / put / list / delete)
    - Per-key leases so only one LoadJob runs per partition
    - Append-only RunRecord log
    - Partition transition events
    """

    def __init__(self, table_name: str):
        self.table_name = table_name
        self._key_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Partition state
    # ------------------------------------------------------------------

    @abstractmethod
    async def get(self, key: str) -> Optional[PartitionState]:
        """Return the state for a key, or None if the key was never seen"""
        pass

    @abstractmethod
    async def put(self, state: PartitionState) -> None:
        """Upsert a partition state"""
        pass

    @abstractmethod
    async def list_states(self) -> List[PartitionState]:
        """All known partition states, ordered by key"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a partition's state (explicit partition removal)"""
        pass

    @abstractmethod
    async def _write_transition(
        self,
        state: PartitionState,
        previous_status: Optional[PartitionStatus],
        run_id: Optional[str],
        detail: Optional[str]
    ) -> None:
        """Persist state and its transition event atomically"""
        pass

    async def transition(
        self,
        state: PartitionState,
        to_status: PartitionStatus,
        run_id: Optional[str] = None,
        detail: Optional[str] = None
    ) -> PartitionState:
        """
        Move a partition to a new status and record the transition event.

        Args:
            state: Current in-memory state (mutated in place)
            to_status: Target status
            run_id: Cycle that caused the transition
            detail: Free text for operators (error message, row counts)

        Returns:
            The updated state
        """
        async with self._key_locks[state.key]:
            previous_status = state.status
            state.status = to_status
            await self._write_transition(state, previous_status, run_id, detail)

        logger.info(
            f"Partition {self.table_name}/{state.key}: "
            f"{previous_status.value if previous_status else None} -> {to_status.value}",
            extra={
                "partition_event": {
                    "table_name": self.table_name,
                    "partition_key": state.key,
                    "from_status": previous_status.value if previous_status else None,
                    "to_status": to_status.value,
                    "attempt_count": state.attempt_count,
                    "run_id": run_id,
                    "detail": detail,
                }
            }
        )
        return state

    async def reset(self, key: str) -> Optional[PartitionState]:
        """
        Operator intervention: clear the retry budget of a partition so the
        next cycle evaluates it as if it had never failed.
        """
        state = await self.get(key)
        if state is None:
            return None

        state.attempt_count = 0
        state.failed_fingerprint = None
        state.last_attempt_at = None
        state.error_message = None

        if state.status == PartitionStatus.FAILED:
            target = PartitionStatus.COMMITTED if state.last_load_time else PartitionStatus.PENDING
        else:
            target = state.status

        return await self.transition(state, target, detail="retry budget reset by operator")

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    @abstractmethod
    async def acquire(self, key: str, owner: str) -> bool:
        """Take the per-key lease. Returns False if another owner holds it"""
        pass

    @abstractmethod
    async def release(self, key: str, owner: str) -> None:
        """Release a lease held by owner"""
        pass

    @abstractmethod
    async def release_all_leases(self) -> int:
        """Drop every lease (startup recovery). Returns the number released"""
        pass

    # ------------------------------------------------------------------
    # Run log and events
    # ------------------------------------------------------------------

    @abstractmethod
    async def start_run(self, trigger_source: TriggerSource, force: bool = False) -> RunRecord:
        pass

    @abstractmethod
    async def finish_run(self, run: RunRecord) -> RunRecord:
        pass

    @abstractmethod
    async def list_runs(self, limit: int = 20) -> List[RunRecord]:
        pass

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        pass

    @abstractmethod
    async def list_events(self, key: Optional[str] = None, limit: int = 100) -> List[TransitionEvent]:
        pass


class SqlPartitionStateStore(PartitionStateStore):
    """
    State store backed by SQLAlchemy async (PostgreSQL or SQLite).

    Every write transaction starts with a write statement, and every
    database failure surfaces as StateStoreError.
    """

    def __init__(self, engine: AsyncEngine, table_name: str):
        super().__init__(table_name)
        self.engine = engine
        self._session_maker = create_session_maker(engine)
        self._insert = dialect_insert(engine.dialect.name)

    @asynccontextmanager
    async def _transaction(self, operation: str, key: Optional[str] = None) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except (SQLAlchemyError, OSError) as e:
            raise StateStoreError(
                f"State store operation '{operation}' failed",
                context={
                    "operation": operation,
                    "table_name": self.table_name,
                    "partition_key": key
                },
                original_exception=e
            )

    def _where_key(self, key: str):
        return (
            PartitionStateRecord.table_name == self.table_name,
            PartitionStateRecord.partition_key == key,
        )

    async def _upsert_state(self, session: AsyncSession, state: PartitionState) -> None:
        now = utcnow()
        values = {
            "status": state.status,
            "source_fingerprint": state.source_fingerprint,
            "last_load_time": state.last_load_time,
            "rows_committed": state.rows_committed,
            "attempt_count": state.attempt_count,
            "last_attempt_at": state.last_attempt_at,
            "failed_fingerprint": state.failed_fingerprint,
            "error_message": state.error_message,
            "updated_at": now,
        }
        stmt = self._insert(PartitionStateRecord).values(
            table_name=self.table_name,
            partition_key=state.key,
            created_at=now,
            **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["table_name", "partition_key"],
            set_={name: stmt.excluded[name] for name in values}
        )
        await session.execute(stmt)

    # ------------------------------------------------------------------
    # Partition state
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[PartitionState]:
        async with self._transaction("get", key) as session:
            result = await session.execute(
                select(PartitionStateRecord).where(*self._where_key(key))
            )
            record = result.scalar_one_or_none()

        return PartitionState.from_record(record) if record else None

    async def put(self, state: PartitionState) -> None:
        async with self._key_locks[state.key]:
            async with self._transaction("put", state.key) as session:
                await self._upsert_state(session, state)

    async def list_states(self) -> List[PartitionState]:
        async with self._transaction("list") as session:
            result = await session.execute(
                select(PartitionStateRecord)
                .where(PartitionStateRecord.table_name == self.table_name)
                .order_by(PartitionStateRecord.partition_key)
            )
            records = result.scalars().all()

        return [PartitionState.from_record(r) for r in records]

    async def delete(self, key: str) -> bool:
        async with self._key_locks[key]:
            async with self._transaction("delete", key) as session:
                result = await session.execute(
                    delete(PartitionStateRecord).where(*self._where_key(key))
                )
                deleted = result.rowcount > 0

        if deleted:
            logger.info(f"Removed partition state {self.table_name}/{key}")
        return deleted

    async def _write_transition(self, state, previous_status, run_id, detail) -> None:
        async with self._transaction("transition", state.key) as session:
            await self._upsert_state(session, state)
            session.add(PartitionEvent(
                run_id=run_id,
                table_name=self.table_name,
                partition_key=state.key,
                from_status=previous_status,
                to_status=state.status,
                attempt_count=state.attempt_count,
                detail=detail,
                occurred_at=utcnow()
            ))

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    async def acquire(self, key: str, owner: str) -> bool:
        now = utcnow()
        async with self._key_locks[key]:
            async with self._transaction("acquire", key) as session:
                # First sighting of a key creates its row
                await session.execute(
                    self._insert(PartitionStateRecord)
                    .values(
                        table_name=self.table_name,
                        partition_key=key,
                        status=PartitionStatus.PENDING,
                        attempt_count=0,
                        rows_committed=0,
                        created_at=now,
                        updated_at=now
                    )
                    .on_conflict_do_nothing(index_elements=["table_name", "partition_key"])
                )
                result = await session.execute(
                    update(PartitionStateRecord)
                    .where(*self._where_key(key), PartitionStateRecord.lease_owner.is_(None))
                    .values(lease_owner=owner, lease_acquired_at=now)
                    .execution_options(synchronize_session=False)
                )
                acquired = result.rowcount == 1

        if not acquired:
            logger.warning(f"Partition {self.table_name}/{key} is leased by another worker")
        return acquired

    async def release(self, key: str, owner: str) -> None:
        async with self._key_locks[key]:
            async with self._transaction("release", key) as session:
                await session.execute(
                    update(PartitionStateRecord)
                    .where(*self._where_key(key), PartitionStateRecord.lease_owner == owner)
                    .values(lease_owner=None, lease_acquired_at=None)
                    .execution_options(synchronize_session=False)
                )

    async def release_all_leases(self) -> int:
        async with self._transaction("release_all_leases") as session:
            result = await session.execute(
                update(PartitionStateRecord)
                .where(
                    PartitionStateRecord.table_name == self.table_name,
                    PartitionStateRecord.lease_owner.isnot(None)
                )
                .values(lease_owner=None, lease_acquired_at=None)
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount

        if released:
            logger.info(f"Released {released} stale partition leases for {self.table_name}")
        return released

    # ------------------------------------------------------------------
    # Run log and events
    # ------------------------------------------------------------------

    async def start_run(self, trigger_source: TriggerSource, force: bool = False) -> RunRecord:
        row = RunRecordRow(
            run_id=str(uuid.uuid4()),
            table_name=self.table_name,
            trigger_source=trigger_source,
            force=force,
            status=RunStatus.RUNNING,
            started_at=utcnow(),
            partitions_considered=0,
            partitions_refreshed=0,
            partitions_failed=0,
            partitions_skipped=0
        )
        async with self._transaction("start_run") as session:
            session.add(row)
            await session.flush()
            record = RunRecord.model_validate(row)

        return record

    async def finish_run(self, run: RunRecord) -> RunRecord:
        async with self._transaction("finish_run") as session:
            await session.execute(
                update(RunRecordRow)
                .where(RunRecordRow.run_id == run.run_id)
                .values(
                    status=run.status,
                    finished_at=run.finished_at,
                    duration_seconds=run.duration_seconds,
                    partitions_considered=run.partitions_considered,
                    partitions_refreshed=run.partitions_refreshed,
                    partitions_failed=run.partitions_failed,
                    partitions_skipped=run.partitions_skipped,
                    error_message=run.error_message,
                    run_metadata=run.run_metadata
                )
                .execution_options(synchronize_session=False)
            )
        return run

    async def list_runs(self, limit: int = 20) -> List[RunRecord]:
        async with self._transaction("list_runs") as session:
            result = await session.execute(
                select(RunRecordRow)
                .where(RunRecordRow.table_name == self.table_name)
                .order_by(RunRecordRow.id.desc())
                .limit(limit)
            )
            rows = result.scalars().all()

        return [RunRecord.model_validate(r) for r in rows]

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        async with self._transaction("get_run") as session:
            result = await session.execute(
                select(RunRecordRow).where(RunRecordRow.run_id == run_id)
            )
            row = result.scalar_one_or_none()

        return RunRecord.model_validate(row) if row else None

    async def list_events(self, key: Optional[str] = None, limit: int = 100) -> List[TransitionEvent]:
        query = select(PartitionEvent).where(PartitionEvent.table_name == self.table_name)
        if key is not None:
            query = query.where(PartitionEvent.partition_key == key)

        async with self._transaction("list_events", key) as session:
            result = await session.execute(
                query.order_by(PartitionEvent.id.desc()).limit(limit)
            )
            rows = result.scalars().all()

        return [TransitionEvent.model_validate(r) for r in rows]
