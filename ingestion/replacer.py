"""
Atomic replacer: make staged content visible with a single repoint and
record the outcome of every attempt in the state store.

Ordering per attempt:
    1. storage.repoint(key, staging)      -- the only visibility change
    2. state store transition (committed / failed)
    3. background delete of the previous segment

A crash before (1) leaves the old content live and the staging segment
orphaned; a crash between (1) and (2) is reconciled on startup from the
live segment's fingerprint. Both leftovers are removed by reclaim_orphans().
"""

from typing import Iterable, Optional, Set
import asyncio
import logging

from core.clock import utcnow
from core.exceptions import CommitError, ETLException
from ingestion.state_store import PartitionStateStore
from ingestion.storage.base import StorageEngine
from models.base import PartitionStatus
from schemas.partition import CommitResult, LoadJob, PartitionState, StagingResult

logger = logging.getLogger(__name__)


class AtomicReplacer:
    """
    Commit protocol for partitions.

    Responsibilities:
    - commit(): repoint, then record the committed state
    - mark_failed(): record a failed attempt (load or commit)
    - asynchronous reclamation of replaced segments
    - reclaim_orphans(): sweep leftovers of crashed or aborted attempts
    - remove(): drop a partition that is no longer wanted
    """

    def __init__(self, storage: StorageEngine, state_store: PartitionStateStore, max_attempts: int = 3):
        self.storage = storage
        self.state_store = state_store
        self.max_attempts = max_attempts
        self._reclaim_tasks: Set[asyncio.Task] = set()

    async def commit(
        self,
        job: LoadJob,
        staging: StagingResult,
        state: PartitionState,
        run_id: Optional[str] = None,
        reset_budget: bool = False
    ) -> CommitResult:
        """
        Swap the partition to the staged segment and mark it committed.

        Raises:
            CommitError: If the repoint fails; the staging segment is
                discarded, the state is marked failed and the previously
                visible content stays live
        """
        key = staging.key

        try:
            previous = await self.storage.repoint(key, staging.staging_handle)
        except ETLException as e:
            error = e if isinstance(e, CommitError) else CommitError(
                f"Repoint failed for partition {key}",
                context={"partition_key": key, "staging_handle": staging.staging_handle},
                original_exception=e
            )
            logger.error(
                f"Commit of partition {key} failed, previous content stays live",
                extra={"error_context": error.to_dict()}
            )
            await self.discard(staging.staging_handle)
            await self.mark_failed(
                state, error, run_id=run_id,
                fingerprint=staging.fingerprint, reset_budget=reset_budget
            )
            raise error

        committed_at = utcnow()
        state.source_fingerprint = staging.fingerprint
        state.last_load_time = committed_at
        state.last_attempt_at = committed_at
        state.rows_committed = staging.rows_written
        state.attempt_count = 0
        state.failed_fingerprint = None
        state.error_message = None

        await self.state_store.transition(
            state,
            PartitionStatus.COMMITTED,
            run_id=run_id,
            detail=f"{staging.rows_written} rows committed"
        )

        job.staging_location = None
        if previous and previous != staging.staging_handle:
            self._schedule_reclaim(previous)

        return CommitResult(
            key=key,
            staging_handle=staging.staging_handle,
            previous_handle=previous,
            rows_committed=staging.rows_written,
            committed_at=committed_at
        )

    async def mark_failed(
        self,
        state: PartitionState,
        error: Exception,
        run_id: Optional[str] = None,
        fingerprint: Optional[str] = None,
        reset_budget: bool = False,
        exhaust_budget: bool = False
    ) -> PartitionState:
        """
        Record a failed attempt.

        attempt_count counts consecutive failures for the current source
        version: a failure right after the source changed starts a new
        budget at 1. Permanent failures (malformed data) exhaust the budget
        at once; only a change of the source re-arms the partition.
        """
        message = error.message if isinstance(error, ETLException) else str(error)
        base = 0 if reset_budget else state.attempt_count

        state.attempt_count = base + 1
        if exhaust_budget:
            state.attempt_count = max(state.attempt_count, self.max_attempts)
        state.last_attempt_at = utcnow()
        state.failed_fingerprint = fingerprint
        state.error_message = message[:2000]

        return await self.state_store.transition(
            state,
            PartitionStatus.FAILED,
            run_id=run_id,
            detail=message[:500]
        )

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def remove(self, state: PartitionState, run_id: Optional[str] = None) -> int:
        """
        Remove a partition: its visible content, its segments and its state.

        The state is first cleared back to PENDING, so an interrupted removal
        is finished by calling remove() again or, if the key is still
        enumerated, by a first load on the next cycle.

        Returns:
            Number of segments deleted
        """
        state.source_fingerprint = None
        state.last_load_time = None
        state.rows_committed = 0
        state.attempt_count = 0
        state.failed_fingerprint = None
        state.error_message = None
        await self.state_store.transition(
            state, PartitionStatus.PENDING, run_id=run_id, detail="partition removal requested"
        )

        dropped = await self.storage.drop(state.key)
        await self.state_store.delete(state.key)
        return dropped

    # ------------------------------------------------------------------
    # Reclamation
    # ------------------------------------------------------------------

    async def discard(self, handle: str) -> bool:
        """Delete a segment, leaving it to the orphan sweep if that fails"""
        try:
            await self.storage.delete(handle)
        except ETLException as e:
            logger.warning(
                f"Could not delete segment {handle}, leaving it to the orphan sweep",
                extra={"error_context": e.to_dict()}
            )
            return False
        return True

    def _schedule_reclaim(self, handle: str) -> None:
        task = asyncio.create_task(self.discard(handle), name=f"reclaim-{handle}")
        self._reclaim_tasks.add(task)
        task.add_done_callback(self._reclaim_tasks.discard)

    async def drain(self) -> None:
        """Wait for background reclamation started by earlier commits"""
        if self._reclaim_tasks:
            await asyncio.gather(*list(self._reclaim_tasks), return_exceptions=True)

    async def reclaim_orphans(self, skip_keys: Iterable[str] = ()) -> int:
        """
        Delete segments that no partition points at and no load is writing.

        Args:
            skip_keys: Partitions whose segments are left alone (leased by
                another worker that may still be staging)

        Returns:
            Number of segments deleted
        """
        orphans = await self.storage.list_orphans(skip_keys=skip_keys)
        reclaimed = 0
        for handle in orphans:
            if await self.discard(handle):
                reclaimed += 1

        if reclaimed:
            logger.info(f"Reclaimed {reclaimed} orphaned segments from {self.storage.table_name}")
        return reclaimed
