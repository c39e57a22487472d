"""
Refresh orchestrator: one cycle = enumerate, evaluate, refresh, reconcile.

Cycle state machine:

    IDLE -> ENUMERATING -> EVALUATING -> REFRESHING -> RECONCILING -> IDLE

Failure scope:
- EnumerationError ends the cycle before any partition is touched
- LoadError / CommitError are recorded on their partition only
- StateStoreError aborts the cycle and cancels the sibling pipelines
"""

from collections import defaultdict
from typing import Dict, List, Optional
import asyncio
import enum
import logging
import os
import socket
import uuid

from core.clock import utcnow
from core.exceptions import (
    CommitError,
    EnumerationError,
    ETLException,
    LoadError,
    PartitionBusyError,
    StateStoreError,
)
from ingestion.enumerators import PartitionEnumerator
from ingestion.executor import LoadExecutor
from ingestion.freshness import FreshnessEvaluator
from ingestion.replacer import AtomicReplacer
from ingestion.state_store import PartitionStateStore
from models.base import PartitionStatus, RunStatus, TriggerSource
from schemas.partition import (
    FreshnessDecision,
    LoadJob,
    PartitionOutcome,
    PartitionState,
    RunRecord,
)

logger = logging.getLogger(__name__)


class CyclePhase(str, enum.Enum):
    IDLE = "idle"
    ENUMERATING = "enumerating"
    EVALUATING = "evaluating"
    REFRESHING = "refreshing"
    RECONCILING = "reconciling"


def default_owner() -> str:
    """Lease owner id: host, pid and a per-instance suffix"""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class RefreshOrchestrator:
    """
    Drive refresh cycles for one target table.

    Responsibilities:
    - Run one cycle per trigger and record it as a RunRecord
    - Bound parallel partition pipelines with a semaphore
    - Serialize work per partition (in-process lock + state store lease)
    - Recover leftovers of a previous process on startup

    Only one cycle runs at a time; callers that need coalescing of
    concurrent triggers go through RefreshScheduler.
    """

    def __init__(
        self,
        enumerator: PartitionEnumerator,
        state_store: PartitionStateStore,
        evaluator: FreshnessEvaluator,
        executor: LoadExecutor,
        replacer: AtomicReplacer,
        max_concurrency: int = 4,
        owner: Optional[str] = None
    ):
        self.enumerator = enumerator
        self.state_store = state_store
        self.evaluator = evaluator
        self.executor = executor
        self.replacer = replacer
        self.max_concurrency = max(1, max_concurrency)
        self.owner = owner or default_owner()

        self.phase = CyclePhase.IDLE
        self._cycle_lock = asyncio.Lock()
        self._key_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._jobs: Dict[str, LoadJob] = {}

    @property
    def table_name(self) -> str:
        return self.state_store.table_name

    @property
    def in_flight(self) -> List[LoadJob]:
        """Load jobs currently running in this process"""
        return list(self._jobs.values())

    # ========================================================================
    # Cycle
    # ========================================================================

    async def run_cycle(
        self,
        trigger: TriggerSource = TriggerSource.MANUAL,
        force: bool = False
    ) -> RunRecord:
        """
        Run one orchestration cycle.

        Args:
            trigger: What started the cycle (cron tick or manual request)
            force: Refresh every enumerated partition regardless of freshness

        Returns:
            The finished RunRecord

        Raises:
            StateStoreError: If state can no longer be read or written
        """
        async with self._cycle_lock:
            run = await self.state_store.start_run(trigger, force)
            logger.info(
                f"Starting refresh cycle {run.run_id} for {self.table_name} "
                f"(trigger: {trigger.value}, force: {force})"
            )
            try:
                return await self._run(run, force)
            except StateStoreError as e:
                logger.error(
                    f"Refresh cycle {run.run_id} aborted: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                run.status = RunStatus.FAILED
                run.error_message = e.message
                await self._finish_aborted(run)
                raise
            finally:
                self.phase = CyclePhase.IDLE

    async def _run(self, run: RunRecord, force: bool) -> RunRecord:
        # Enumerating
        self.phase = CyclePhase.ENUMERATING
        try:
            keys = await self.enumerator.enumerate()
        except EnumerationError as e:
            logger.error(
                f"Enumeration failed, no partition touched: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            run.status = RunStatus.FAILED
            run.error_message = e.message
            return await self._finish(run)

        # Evaluating
        self.phase = CyclePhase.EVALUATING
        states = {state.key: state for state in await self.state_store.list_states()}
        for state in list(states.values()):
            # LOADING without a lease or a local job: an attempt of an aborted cycle
            if (
                state.status == PartitionStatus.LOADING
                and state.lease_owner is None
                and state.key not in self._jobs
            ):
                states[state.key] = await self._reconcile_interrupted(
                    state, run_id=run.run_id, reason="interrupted attempt"
                )

        decisions: List[FreshnessDecision] = []
        for key in keys:
            decisions.append(await self.evaluator.evaluate(key, states.get(key), force))

        # Refreshing
        self.phase = CyclePhase.REFRESHING
        stale = [d for d in decisions if d.stale]
        logger.info(f"{len(stale)} of {len(keys)} partitions need a refresh")
        outcomes = await self._refresh_all(stale, run.run_id)

        # Reconciling
        self.phase = CyclePhase.RECONCILING
        run.partitions_considered = len(keys)
        run.partitions_refreshed = sum(1 for o in outcomes.values() if o == PartitionOutcome.REFRESHED)
        run.partitions_failed = sum(1 for o in outcomes.values() if o == PartitionOutcome.FAILED)
        run.partitions_skipped = run.partitions_considered - run.partitions_refreshed - run.partitions_failed
        run.status = RunStatus.PARTIAL if run.partitions_failed else RunStatus.SUCCESS
        run.run_metadata = {
            "decisions": {d.key: d.reason.value for d in decisions},
            "outcomes": {key: outcome.value for key, outcome in outcomes.items()},
            "segments_reclaimed": await self._sweep(),
        }
        return await self._finish(run)

    async def _sweep(self) -> int:
        """Reclaim segments whose background delete or discard failed earlier"""
        await self.replacer.drain()
        leased = {s.key for s in await self.state_store.list_states() if s.lease_owner}
        try:
            return await self.replacer.reclaim_orphans(skip_keys=leased)
        except ETLException as e:
            logger.warning(
                f"Orphan sweep for {self.table_name} failed, retrying next cycle: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            return 0

    async def _finish(self, run: RunRecord) -> RunRecord:
        run.finished_at = utcnow()
        run.duration_seconds = (run.finished_at - run.started_at).total_seconds()
        await self.state_store.finish_run(run)

        logger.info(
            f"Refresh cycle {run.run_id} {run.status.value}: "
            f"considered={run.partitions_considered} refreshed={run.partitions_refreshed} "
            f"failed={run.partitions_failed} skipped={run.partitions_skipped}",
            extra={"run_record": run.model_dump(mode="json")}
        )
        return run

    async def _finish_aborted(self, run: RunRecord) -> None:
        try:
            await self._finish(run)
        except StateStoreError as e:
            logger.error(
                f"Could not record abort of cycle {run.run_id}",
                extra={"error_context": e.to_dict()}
            )

    # ========================================================================
    # Partition pipelines
    # ========================================================================

    async def _refresh_all(
        self,
        decisions: List[FreshnessDecision],
        run_id: str
    ) -> Dict[str, PartitionOutcome]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(decision: FreshnessDecision) -> PartitionOutcome:
            async with semaphore:
                return await self.refresh_partition(decision, run_id)

        tasks = [
            asyncio.create_task(bounded(d), name=f"refresh-{self.table_name}-{d.key}")
            for d in decisions
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return {d.key: outcome for d, outcome in zip(decisions, results)}

    async def refresh_partition(self, decision: FreshnessDecision, run_id: Optional[str] = None) -> PartitionOutcome:
        """
        Lease, load, commit and record one stale partition.

        Returns BUSY without touching anything if another worker holds the
        partition's lease.
        """
        key = decision.key

        async with self._key_locks[key]:
            if not await self.state_store.acquire(key, self.owner):
                return PartitionOutcome.BUSY
            try:
                state = await self.state_store.get(key) or PartitionState(key=key)
                return await self._attempt(decision, state, run_id)
            finally:
                await self.state_store.release(key, self.owner)

    async def _attempt(
        self,
        decision: FreshnessDecision,
        state: PartitionState,
        run_id: Optional[str]
    ) -> PartitionOutcome:
        key = decision.key
        job = LoadJob(key=key, run_id=run_id, fingerprint=decision.fingerprint)
        self._jobs[key] = job

        try:
            state.last_attempt_at = job.started_at
            await self.state_store.transition(
                state, PartitionStatus.LOADING, run_id=run_id,
                detail=f"refresh ({decision.reason.value})"
            )

            try:
                staging = await self.executor.load(key, decision.fingerprint, job=job)
            except LoadError as e:
                await self.replacer.mark_failed(
                    state, e, run_id=run_id,
                    fingerprint=decision.fingerprint,
                    reset_budget=decision.resets_budget,
                    exhaust_budget=not e.retryable
                )
                return PartitionOutcome.FAILED

            try:
                await self.replacer.commit(
                    job, staging, state, run_id=run_id,
                    reset_budget=decision.resets_budget
                )
            except CommitError:
                return PartitionOutcome.FAILED

            return PartitionOutcome.REFRESHED

        except StateStoreError:
            raise
        except asyncio.CancelledError:
            # Cycle aborted or shutting down: do not leave the partition LOADING
            if job.staging_location:
                await self.replacer.discard(job.staging_location)
            try:
                await self._reconcile_interrupted(state, run_id=run_id, reason="cancelled attempt")
            except StateStoreError as e:
                logger.warning(
                    f"Could not reconcile cancelled refresh of partition {key}, "
                    f"the next cycle will: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while refreshing partition {key}")
            await self.replacer.mark_failed(
                state, e, run_id=run_id,
                fingerprint=decision.fingerprint,
                reset_budget=decision.resets_budget
            )
            return PartitionOutcome.FAILED
        finally:
            self._jobs.pop(key, None)

    # ========================================================================
    # Recovery
    # ========================================================================

    async def _reconcile_interrupted(
        self,
        state: PartitionState,
        run_id: Optional[str] = None,
        reason: str = "interrupted attempt"
    ) -> PartitionState:
        """
        Settle a partition whose attempt ended without recording its outcome.

        If the staged segment went live, the committed fingerprint is
        recorded; otherwise the status the partition had before the attempt
        is restored (FAILED keeps its attempt count).
        """
        live = await self.replacer.storage.live_segment(state.key)
        committed_after_state = (
            live is not None
            and live.committed_at is not None
            and (state.last_load_time is None or live.committed_at > state.last_load_time)
        )

        if committed_after_state:
            state.source_fingerprint = live.source_fingerprint
            state.last_load_time = live.committed_at
            state.rows_committed = live.row_count
            state.attempt_count = 0
            state.failed_fingerprint = None
            state.error_message = None
            target = PartitionStatus.COMMITTED
            detail = f"{reason}: segment went live"
        elif state.attempt_count > 0:
            target = PartitionStatus.FAILED
            detail = f"{reason}: retry discarded"
        elif state.last_load_time is not None:
            target = PartitionStatus.COMMITTED
            detail = f"{reason}: refresh discarded"
        else:
            target = PartitionStatus.PENDING
            detail = f"{reason}: first load discarded"

        return await self.state_store.transition(state, target, run_id=run_id, detail=detail)

    async def recover(self) -> Dict[str, int]:
        """
        Repair what a previous process left behind.

        - Leases of dead workers are released
        - Partitions stuck in LOADING are reconciled against the storage
          engine (see _reconcile_interrupted)
        - Segments that are neither live nor in flight are reclaimed
        """
        released = await self.state_store.release_all_leases()
        reconciled = 0

        for state in await self.state_store.list_states():
            if state.status != PartitionStatus.LOADING:
                continue
            await self._reconcile_interrupted(state, reason="recovered after restart")
            reconciled += 1

        reclaimed = await self.replacer.reclaim_orphans()

        logger.info(
            f"Recovery for {self.table_name}: released {released} leases, "
            f"reconciled {reconciled} partitions, reclaimed {reclaimed} segments"
        )
        return {"leases_released": released, "partitions_reconciled": reconciled, "segments_reclaimed": reclaimed}

    # ========================================================================
    # Operator actions
    # ========================================================================

    async def _lease_for_operator(self, key: str) -> Optional[PartitionState]:
        """
        Take the lease of a known partition for an operator action.

        Returns:
            The current state, or None if the partition is not known

        Raises:
            PartitionBusyError: If a load holds the partition
        """
        if key in self._jobs:
            raise PartitionBusyError(
                f"Partition {key} is being refreshed",
                context={"partition_key": key}
            )
        if await self.state_store.get(key) is None:
            return None
        if not await self.state_store.acquire(key, self.owner):
            raise PartitionBusyError(
                f"Partition {key} is leased by another worker",
                context={"partition_key": key}
            )
        return await self.state_store.get(key)

    async def reset_partition(self, key: str) -> Optional[PartitionState]:
        """
        Clear the retry budget of a partition under its lease, so an
        in-flight attempt cannot overwrite the reset.

        Raises:
            PartitionBusyError: If the partition is being refreshed
        """
        async with self._key_locks[key]:
            if await self._lease_for_operator(key) is None:
                return None
            try:
                state = await self.state_store.reset(key)
            finally:
                await self.state_store.release(key, self.owner)

        logger.info(f"Retry budget of partition {self.table_name}/{key} reset")
        return state

    async def remove_partition(self, key: str) -> bool:
        """
        Drop a partition that is no longer wanted: its visible rows, its
        segments and its state. Transition events are kept.

        If the key is still enumerated, the next cycle loads it again.

        Returns:
            False if the partition is not known

        Raises:
            PartitionBusyError: If the partition is being refreshed
        """
        async with self._key_locks[key]:
            state = await self._lease_for_operator(key)
            if state is None:
                return False
            try:
                dropped = await self.replacer.remove(state)
            except BaseException:
                await self.state_store.release(key, self.owner)
                raise

        logger.info(f"Removed partition {self.table_name}/{key} ({dropped} segments deleted)")
        return True
