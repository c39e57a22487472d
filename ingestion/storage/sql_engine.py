"""
Storage engine over SQLAlchemy: rows live in segments, partitions resolve
through a pointer table.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set
import logging
import uuid

from pydantic_core import PydanticSerializationError, to_jsonable_python
from sqlalchemy import select, update, delete, insert, exists
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from core.clock import utcnow
from core.database import create_session_maker
from core.exceptions import CommitError, DataFormatError, StagingError
from ingestion.state_store import dialect_insert
from ingestion.storage.base import SegmentInfo, StorageEngine
from models.base import SegmentStatus
from models.segment import PartitionPointer, PartitionSegment, SegmentRow

logger = logging.getLogger(__name__)


class SqlStorageEngine(StorageEngine):
    """
    Segment/pointer storage engine.

    Layout:
    - partition_segments: one row per staged or live copy of a partition
    - partition_segment_rows: transformed rows, tagged with their segment
    - partition_pointers: (table, key) -> live segment

    Readers resolve a partition through its pointer in a single statement,
    so a repoint (one UPDATE in one transaction) is observed atomically.
    """

    def __init__(self, engine: AsyncEngine, table_name: str):
        super().__init__(table_name)
        self.engine = engine
        self._session_maker = create_session_maker(engine)
        self._insert = dialect_insert(engine.dialect.name)
        self._in_flight: Set[str] = set()
        self._next_row: Dict[str, int] = {}

    @asynccontextmanager
    async def _transaction(self, error_cls, operation: str, **context) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except (SQLAlchemyError, OSError) as e:
            raise error_cls(
                f"Storage operation '{operation}' failed",
                context={"operation": operation, "table_name": self.table_name, **context},
                original_exception=e
            )

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    async def open_staging(self, key: str, fingerprint: Optional[str] = None) -> str:
        handle = str(uuid.uuid4())
        async with self._transaction(StagingError, "open_staging", partition_key=key) as session:
            session.add(PartitionSegment(
                segment_id=handle,
                table_name=self.table_name,
                partition_key=key,
                status=SegmentStatus.STAGING,
                source_fingerprint=fingerprint,
                row_count=0,
                created_at=utcnow()
            ))

        self._in_flight.add(handle)
        self._next_row[handle] = 0
        logger.debug(f"Opened staging segment {handle} for {self.table_name}/{key}")
        return handle

    async def append_staging(self, handle: str, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0

        try:
            payloads = to_jsonable_python(rows)
        except PydanticSerializationError as e:
            raise DataFormatError(
                "Transformed rows are not JSON serializable",
                context={"staging_handle": handle},
                original_exception=e
            )

        start = self._next_row.get(handle, 0)
        values = [
            {"segment_id": handle, "row_number": start + offset, "payload": row}
            for offset, row in enumerate(payloads)
        ]

        async with self._transaction(StagingError, "append_staging", staging_handle=handle) as session:
            await session.execute(insert(SegmentRow), values)
            await session.execute(
                update(PartitionSegment)
                .where(PartitionSegment.segment_id == handle)
                .values(row_count=PartitionSegment.row_count + len(rows))
                .execution_options(synchronize_session=False)
            )

        self._next_row[handle] = start + len(rows)
        return len(rows)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def _pointer_segment_id(self, key: str) -> Optional[str]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(PartitionPointer.segment_id).where(
                    PartitionPointer.table_name == self.table_name,
                    PartitionPointer.partition_key == key
                )
            )
            return result.scalar_one_or_none()

    async def repoint(self, key: str, handle: str) -> Optional[str]:
        try:
            previous = await self._pointer_segment_id(key)
        except (SQLAlchemyError, OSError) as e:
            raise CommitError(
                "Could not read current partition pointer",
                context={"table_name": self.table_name, "partition_key": key},
                original_exception=e
            )

        now = utcnow()
        async with self._transaction(CommitError, "repoint", partition_key=key, staging_handle=handle) as session:
            promoted = await session.execute(
                update(PartitionSegment)
                .where(
                    PartitionSegment.segment_id == handle,
                    PartitionSegment.table_name == self.table_name,
                    PartitionSegment.partition_key == key,
                    PartitionSegment.status == SegmentStatus.STAGING
                )
                .values(status=SegmentStatus.LIVE, committed_at=now)
                .execution_options(synchronize_session=False)
            )
            if promoted.rowcount != 1:
                raise CommitError(
                    "Staging segment is missing or not in staging state",
                    context={"table_name": self.table_name, "partition_key": key, "staging_handle": handle}
                )

            stmt = self._insert(PartitionPointer).values(
                table_name=self.table_name,
                partition_key=key,
                segment_id=handle,
                updated_at=now
            )
            await session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["table_name", "partition_key"],
                    set_={"segment_id": stmt.excluded.segment_id, "updated_at": stmt.excluded.updated_at}
                )
            )

            if previous and previous != handle:
                await session.execute(
                    update(PartitionSegment)
                    .where(PartitionSegment.segment_id == previous)
                    .values(status=SegmentStatus.RETIRED)
                    .execution_options(synchronize_session=False)
                )

        self._in_flight.discard(handle)
        self._next_row.pop(handle, None)
        logger.info(f"Repointed {self.table_name}/{key} to segment {handle} (previous: {previous})")
        return previous

    # ------------------------------------------------------------------
    # Reclamation
    # ------------------------------------------------------------------

    async def delete(self, handle: str) -> None:
        not_live = ~exists().where(PartitionPointer.segment_id == handle)

        # No longer written once deletion is requested; if the delete fails
        # the segment becomes visible to the orphan sweep
        self._in_flight.discard(handle)
        self._next_row.pop(handle, None)

        async with self._transaction(StagingError, "delete", staging_handle=handle) as session:
            await session.execute(
                delete(SegmentRow)
                .where(SegmentRow.segment_id == handle, not_live)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                delete(PartitionSegment)
                .where(PartitionSegment.segment_id == handle, not_live)
                .execution_options(synchronize_session=False)
            )

        logger.debug(f"Deleted segment {handle}")

    async def drop(self, key: str) -> int:
        async with self._transaction(StagingError, "drop", partition_key=key) as session:
            await session.execute(
                delete(PartitionPointer)
                .where(
                    PartitionPointer.table_name == self.table_name,
                    PartitionPointer.partition_key == key
                )
                .execution_options(synchronize_session=False)
            )

            result = await session.execute(
                select(PartitionSegment.segment_id).where(
                    PartitionSegment.table_name == self.table_name,
                    PartitionSegment.partition_key == key
                )
            )
            handles = [h for h in result.scalars().all() if h not in self._in_flight]

            if handles:
                await session.execute(
                    delete(SegmentRow)
                    .where(SegmentRow.segment_id.in_(handles))
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    delete(PartitionSegment)
                    .where(PartitionSegment.segment_id.in_(handles))
                    .execution_options(synchronize_session=False)
                )

        logger.info(f"Dropped partition {self.table_name}/{key} ({len(handles)} segments)")
        return len(handles)

    async def list_orphans(self, exclude: Iterable[str] = (), skip_keys: Iterable[str] = ()) -> List[str]:
        skip = set(exclude) | self._in_flight
        skipped_keys = set(skip_keys)
        async with self._transaction(StagingError, "list_orphans") as session:
            result = await session.execute(
                select(PartitionSegment.segment_id, PartitionSegment.partition_key).where(
                    PartitionSegment.table_name == self.table_name,
                    ~exists().where(PartitionPointer.segment_id == PartitionSegment.segment_id)
                )
            )
            segments = result.all()

        return [
            handle for handle, key in segments
            if handle not in skip and key not in skipped_keys
        ]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_partition(
        self,
        key: str,
        offset: int = 0,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        query = (
            select(SegmentRow.payload)
            .join(PartitionPointer, PartitionPointer.segment_id == SegmentRow.segment_id)
            .where(
                PartitionPointer.table_name == self.table_name,
                PartitionPointer.partition_key == key
            )
            .order_by(SegmentRow.row_number)
        )
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        async with self._transaction(StagingError, "read_partition", partition_key=key) as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def live_segment(self, key: str) -> Optional[SegmentInfo]:
        async with self._transaction(StagingError, "live_segment", partition_key=key) as session:
            result = await session.execute(
                select(PartitionSegment)
                .join(PartitionPointer, PartitionPointer.segment_id == PartitionSegment.segment_id)
                .where(
                    PartitionPointer.table_name == self.table_name,
                    PartitionPointer.partition_key == key
                )
            )
            segment = result.scalar_one_or_none()

        if segment is None:
            return None

        return SegmentInfo(
            handle=segment.segment_id,
            key=segment.partition_key,
            source_fingerprint=segment.source_fingerprint,
            row_count=segment.row_count or 0,
            committed_at=segment.committed_at
        )
