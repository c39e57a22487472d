"""
End-to-end refresh cycles over the SQLite-backed state store and storage engine
"""

import asyncio

import pytest

from core.exceptions import (
    PartitionBusyError,
    ProbeError,
    SourceFormatError,
    SourceUnavailableError,
    StagingError,
    StateStoreError,
)
from ingestion.enumerators import LocalDirectoryEnumerator
from ingestion.freshness import ProbeFailurePolicy
from ingestion.state_store import SqlPartitionStateStore
from ingestion.storage.sql_engine import SqlStorageEngine
from ingestion.transformers.normalizer import FieldNormalizer
from models.base import PartitionStatus, RunStatus, TriggerSource
from schemas.partition import PartitionState


class FlakyStateStore(SqlPartitionStateStore):
    """State store that loses its database when one partition transitions"""

    def __init__(self, engine, table_name, broken_key):
        super().__init__(engine, table_name)
        self.broken_key = broken_key

    async def _write_transition(self, state, previous_status, run_id, detail):
        if state.key == self.broken_key:
            raise StateStoreError("database is gone", context={"operation": "transition"})
        await super()._write_transition(state, previous_status, run_id, detail)


class InterruptingStateStore(SqlPartitionStateStore):
    """
    While armed: the outcome write of stalled_key hangs, and the commit of
    failing_key then fails once, aborting the cycle around the stalled load.
    """

    def __init__(self, engine, table_name, failing_key, stalled_key):
        super().__init__(engine, table_name)
        self.failing_key = failing_key
        self.stalled_key = stalled_key
        self.armed = False
        self.stalled = asyncio.Event()

    async def _write_transition(self, state, previous_status, run_id, detail):
        if self.armed and state.key == self.stalled_key and previous_status == PartitionStatus.LOADING:
            self.stalled.set()
            await asyncio.Event().wait()
        if self.armed and state.key == self.failing_key and state.status == PartitionStatus.COMMITTED:
            await self.stalled.wait()
            self.armed = False
            raise StateStoreError("connection reset", context={"operation": "transition"})
        await super()._write_transition(state, previous_status, run_id, detail)


class FlakyDeleteStorage(SqlStorageEngine):
    """Storage engine whose next `failures` segment deletes fail"""

    def __init__(self, engine, table_name, failures=0):
        super().__init__(engine, table_name)
        self.failures = failures

    async def delete(self, handle):
        if self.failures:
            self.failures -= 1
            raise StagingError("segment store unavailable", context={"staging_handle": handle})
        await super().delete(handle)


@pytest.mark.asyncio
async def test_first_cycle_loads_every_partition(make_orchestrator, state_store, storage, year_rows):
    run = await make_orchestrator().run_cycle()

    assert run.status == RunStatus.SUCCESS
    assert run.partitions_considered == 3
    assert run.partitions_refreshed == 3
    assert run.partitions_skipped == 0

    for year in ("2020", "2021", "2022"):
        assert await storage.read_partition(year) == year_rows(year)
        state = await state_store.get(year)
        assert state.status == PartitionStatus.COMMITTED
        assert state.source_fingerprint == "v1"
        assert state.rows_committed == 3
        assert state.last_load_time is not None


@pytest.mark.asyncio
async def test_only_new_partition_is_refreshed(make_orchestrator, source):
    await make_orchestrator(keys=["2020", "2021"]).run_cycle()

    run = await make_orchestrator().run_cycle()

    assert run.partitions_considered == 3
    assert run.partitions_refreshed == 1
    assert run.partitions_failed == 0
    assert run.partitions_skipped == 2
    assert run.run_metadata["decisions"] == {
        "2020": "unchanged",
        "2021": "unchanged",
        "2022": "first_load",
    }
    assert source.read_calls == {"2020": 1, "2021": 1, "2022": 1}


@pytest.mark.asyncio
async def test_repeated_cycle_is_a_no_op(make_orchestrator, source, storage, year_rows):
    orchestrator = make_orchestrator()
    await orchestrator.run_cycle()

    run = await orchestrator.run_cycle(TriggerSource.CRON)

    assert run.status == RunStatus.SUCCESS
    assert run.trigger_source == TriggerSource.CRON
    assert run.partitions_refreshed == 0
    assert run.partitions_skipped == 3
    assert sum(source.read_calls.values()) == 3
    assert await storage.read_partition("2021") == year_rows("2021")


@pytest.mark.asyncio
async def test_changed_partition_replaced_and_old_segment_reclaimed(make_orchestrator, source, state_store, storage):
    orchestrator = make_orchestrator()
    await orchestrator.run_cycle()

    new_rows = [{"year": "2021", "station": "S9", "value": 99}]
    source.set_partition("2021", new_rows, fingerprint="v2")
    run = await orchestrator.run_cycle()
    await orchestrator.replacer.drain()

    assert run.partitions_refreshed == 1
    assert run.run_metadata["decisions"]["2021"] == "fingerprint_changed"
    assert await storage.read_partition("2021") == new_rows
    assert (await state_store.get("2021")).source_fingerprint == "v2"
    assert await storage.list_orphans() == []


@pytest.mark.asyncio
async def test_failure_is_isolated_to_its_partition(make_orchestrator, source, state_store, storage, year_rows):
    source.fail_read("2021", SourceUnavailableError("read timed out"), after=1)

    run = await make_orchestrator().run_cycle()

    assert run.status == RunStatus.PARTIAL
    assert run.partitions_refreshed == 2
    assert run.partitions_failed == 1
    assert run.run_metadata["outcomes"]["2021"] == "failed"

    assert await storage.read_partition("2020") == year_rows("2020")
    assert await storage.read_partition("2022") == year_rows("2022")
    assert await storage.read_partition("2021") == []

    failed = await state_store.get("2021")
    assert failed.status == PartitionStatus.FAILED
    assert failed.attempt_count == 1
    assert failed.failed_fingerprint == "v1"
    assert "read timed out" in failed.error_message
    assert await storage.list_orphans() == []


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_content(make_orchestrator, source, state_store, storage, year_rows):
    orchestrator = make_orchestrator()
    await orchestrator.run_cycle()

    source.set_partition("2021", year_rows("2021", count=10), fingerprint="v2")
    source.fail_read("2021", SourceUnavailableError("connection reset"), after=5)
    run = await orchestrator.run_cycle()

    assert run.status == RunStatus.PARTIAL
    assert await storage.read_partition("2021") == year_rows("2021")

    state = await state_store.get("2021")
    assert state.status == PartitionStatus.FAILED
    assert state.source_fingerprint == "v1"
    assert state.failed_fingerprint == "v2"


@pytest.mark.asyncio
async def test_retries_stop_after_max_attempts(make_orchestrator, source, state_store):
    source.fail_read("2021", SourceUnavailableError("service unavailable"))
    orchestrator = make_orchestrator(max_attempts=3)

    runs = [await orchestrator.run_cycle() for _ in range(5)]

    assert source.read_calls["2021"] == 3
    assert [r.partitions_failed for r in runs] == [1, 1, 1, 0, 0]
    assert runs[3].run_metadata["decisions"]["2021"] == "retries_exhausted"
    assert runs[3].status == RunStatus.SUCCESS

    state = await state_store.get("2021")
    assert state.status == PartitionStatus.FAILED
    assert state.attempt_count == 3

    events = await state_store.list_events("2021")
    assert sum(1 for e in events if e.to_status == PartitionStatus.FAILED) == 3


@pytest.mark.asyncio
async def test_retry_succeeds_once_source_recovers(make_orchestrator, source, state_store, storage, year_rows):
    source.fail_read("2021", SourceUnavailableError("service unavailable"))
    orchestrator = make_orchestrator(max_attempts=3)
    await orchestrator.run_cycle()

    source.heal("2021")
    run = await orchestrator.run_cycle()

    assert run.run_metadata["decisions"]["2021"] == "retry"
    assert run.partitions_refreshed == 1
    state = await state_store.get("2021")
    assert state.status == PartitionStatus.COMMITTED
    assert state.attempt_count == 0
    assert state.failed_fingerprint is None
    assert await storage.read_partition("2021") == year_rows("2021")


@pytest.mark.asyncio
async def test_source_change_rearms_exhausted_partition(make_orchestrator, source, state_store, year_rows):
    source.fail_read("2021", SourceUnavailableError("service unavailable"))
    orchestrator = make_orchestrator(max_attempts=2)
    for _ in range(3):
        await orchestrator.run_cycle()
    assert (await state_store.get("2021")).attempt_count == 2

    # New source version, still broken: a fresh budget starts at 1
    source.set_partition("2021", year_rows("2021"), fingerprint="v2")
    run = await orchestrator.run_cycle()

    assert run.run_metadata["decisions"]["2021"] == "source_changed"
    state = await state_store.get("2021")
    assert state.attempt_count == 1
    assert state.failed_fingerprint == "v2"

    source.heal("2021")
    run = await orchestrator.run_cycle()
    assert run.partitions_refreshed == 1
    assert (await state_store.get("2021")).source_fingerprint == "v2"


@pytest.mark.asyncio
async def test_permanent_failure_exhausts_budget_at_once(make_orchestrator, source, state_store):
    source.fail_read("2021", SourceFormatError("malformed record", context={"line_number": 2}), after=1)
    orchestrator = make_orchestrator(max_attempts=3)

    await orchestrator.run_cycle()
    run = await orchestrator.run_cycle()

    assert source.read_calls["2021"] == 1
    assert run.run_metadata["decisions"]["2021"] == "retries_exhausted"
    assert (await state_store.get("2021")).attempt_count == 3


@pytest.mark.asyncio
async def test_operator_reset_allows_retry(make_orchestrator, source, state_store):
    source.fail_read("2021", SourceFormatError("malformed record"))
    orchestrator = make_orchestrator(max_attempts=3)
    await orchestrator.run_cycle()

    source.heal("2021")
    reset = await orchestrator.reset_partition("2021")
    assert reset.status == PartitionStatus.PENDING
    assert reset.lease_owner is None
    run = await orchestrator.run_cycle()

    assert run.partitions_refreshed == 1
    assert (await state_store.get("2021")).status == PartitionStatus.COMMITTED


@pytest.mark.asyncio
async def test_force_refreshes_everything(make_orchestrator, source):
    orchestrator = make_orchestrator()
    await orchestrator.run_cycle()

    run = await orchestrator.run_cycle(force=True)

    assert run.force is True
    assert run.partitions_refreshed == 3
    assert set(run.run_metadata["decisions"].values()) == {"forced"}
    assert source.read_calls == {"2020": 2, "2021": 2, "2022": 2}


@pytest.mark.asyncio
async def test_probe_failure_assume_stale_refreshes(make_orchestrator, source):
    orchestrator = make_orchestrator(probe_failure_policy=ProbeFailurePolicy.ASSUME_STALE)
    await orchestrator.run_cycle()

    source.probe_errors["2021"] = ProbeError("HEAD timed out")
    run = await orchestrator.run_cycle()

    assert run.run_metadata["decisions"]["2021"] == "probe_failed"
    assert run.partitions_refreshed == 1
    assert source.read_calls["2021"] == 2


@pytest.mark.asyncio
async def test_probe_failure_assume_fresh_skips(make_orchestrator, source):
    orchestrator = make_orchestrator(probe_failure_policy=ProbeFailurePolicy.ASSUME_FRESH)
    await orchestrator.run_cycle()

    source.probe_errors["2021"] = ProbeError("HEAD timed out")
    run = await orchestrator.run_cycle()

    assert run.run_metadata["decisions"]["2021"] == "probe_failed"
    assert run.partitions_refreshed == 0
    assert source.read_calls["2021"] == 1


@pytest.mark.asyncio
async def test_enumeration_failure_touches_nothing(make_orchestrator, state_store, tmp_path):
    enumerator = LocalDirectoryEnumerator(str(tmp_path / "missing"), r"year=(\d{4})")

    run = await make_orchestrator(enumerator=enumerator).run_cycle()

    assert run.status == RunStatus.FAILED
    assert run.error_message
    assert await state_store.list_states() == []
    assert (await state_store.get_run(run.run_id)).status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_state_store_failure_aborts_cycle(make_orchestrator, test_engine, state_store):
    flaky = FlakyStateStore(test_engine, "measurements", broken_key="2021")
    orchestrator = make_orchestrator(store=flaky, max_concurrency=1)

    with pytest.raises(StateStoreError):
        await orchestrator.run_cycle()

    runs = await state_store.list_runs()
    assert runs[0].status == RunStatus.FAILED
    assert runs[0].error_message == "database is gone"
    assert orchestrator.in_flight == []


@pytest.mark.asyncio
async def test_leased_partition_is_skipped(make_orchestrator, state_store):
    await state_store.acquire("2021", "other-worker")

    run = await make_orchestrator().run_cycle()

    assert run.status == RunStatus.SUCCESS
    assert run.partitions_refreshed == 2
    assert run.partitions_skipped == 1
    assert run.run_metadata["outcomes"]["2021"] == "busy"
    assert (await state_store.get("2021")).status == PartitionStatus.PENDING


@pytest.mark.asyncio
async def test_parallel_pipelines_are_bounded(make_orchestrator, source, year_rows):
    for year in ("2023", "2024", "2025"):
        source.set_partition(year, year_rows(year))
    source.read_delay = 0.05

    active = 0
    peak = 0
    read = source.read

    async def tracked_read(key):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        try:
            async for record in read(key):
                yield record
        finally:
            active -= 1

    source.read = tracked_read
    orchestrator = make_orchestrator(keys=["2020", "2021", "2022", "2023", "2024", "2025"], max_concurrency=2)

    run = await orchestrator.run_cycle()

    assert run.partitions_refreshed == 6
    assert peak == 2


@pytest.mark.asyncio
async def test_transformation_applied_to_committed_rows(make_orchestrator, storage):
    normalizer = FieldNormalizer(types={"year": "int", "station": "str", "value": "float"})

    await make_orchestrator(keys=["2020"], transformation=normalizer).run_cycle()

    rows = await storage.read_partition("2020")
    assert rows[0] == {"year": 2020, "station": "S0", "value": 0.0}


@pytest.mark.asyncio
async def test_concurrent_cycles_are_serialized(make_orchestrator, source):
    source.read_delay = 0.01
    orchestrator = make_orchestrator()

    first, second = await asyncio.gather(orchestrator.run_cycle(), orchestrator.run_cycle())

    assert first.partitions_refreshed == 3
    assert second.partitions_refreshed == 0
    assert sum(source.read_calls.values()) == 3


@pytest.mark.asyncio
async def test_existing_state_is_respected(make_orchestrator, state_store, source):
    await state_store.put(PartitionState(key="2020", status=PartitionStatus.COMMITTED, source_fingerprint="v1"))

    run = await make_orchestrator().run_cycle()

    assert run.run_metadata["decisions"]["2020"] == "unchanged"
    assert source.read_calls["2020"] == 0


@pytest.mark.asyncio
async def test_failed_reclaim_is_retried_by_next_cycle(make_orchestrator, test_engine, source, storage):
    flaky = FlakyDeleteStorage(test_engine, "measurements")
    orchestrator = make_orchestrator(storage_engine=flaky)
    await orchestrator.run_cycle()

    # Both the background delete and this cycle's sweep fail
    flaky.failures = 2
    source.set_partition("2021", [{"year": "2021", "station": "S9", "value": 99}], fingerprint="v2")
    run = await orchestrator.run_cycle()

    assert run.partitions_refreshed == 1
    assert run.run_metadata["segments_reclaimed"] == 0
    assert len(await storage.list_orphans()) == 1

    run = await orchestrator.run_cycle()

    assert run.partitions_refreshed == 0
    assert run.run_metadata["segments_reclaimed"] == 1
    assert await storage.list_orphans() == []


@pytest.mark.asyncio
async def test_cycle_sweep_skips_partitions_leased_elsewhere(make_orchestrator, test_engine, state_store, storage):
    orchestrator = make_orchestrator()
    await orchestrator.run_cycle()

    # Another worker is staging 2022
    other_worker = SqlStorageEngine(test_engine, "measurements")
    await state_store.acquire("2022", "other-worker")
    staging = await other_worker.open_staging("2022", "v2")

    run = await orchestrator.run_cycle()

    assert run.run_metadata["outcomes"] == {}
    assert run.run_metadata["segments_reclaimed"] == 0
    assert await storage.list_orphans() == [staging]


@pytest.mark.asyncio
async def test_attempt_left_loading_is_reconciled_before_evaluation(make_orchestrator, source, state_store):
    source.fail_read("2021", SourceUnavailableError("read timed out"))
    orchestrator = make_orchestrator(keys=["2021"], max_attempts=1)
    await orchestrator.run_cycle()

    # An aborted cycle left the exhausted partition LOADING
    state = await state_store.get("2021")
    await state_store.transition(state, PartitionStatus.LOADING)

    run = await orchestrator.run_cycle()

    assert run.run_metadata["decisions"] == {"2021": "retries_exhausted"}
    assert source.read_calls["2021"] == 1
    state = await state_store.get("2021")
    assert state.status == PartitionStatus.FAILED
    assert state.attempt_count == 1


@pytest.mark.asyncio
async def test_aborted_cycle_does_not_bypass_retry_budget(make_orchestrator, test_engine, source, storage):
    store = InterruptingStateStore(test_engine, "measurements", failing_key="2020", stalled_key="2021")
    source.fail_read("2021", SourceUnavailableError("read timed out"))
    orchestrator = make_orchestrator(store=store, max_attempts=1)
    await orchestrator.run_cycle()

    store.armed = True
    with pytest.raises(StateStoreError):
        await orchestrator.run_cycle(force=True)

    # The cancelled 2021 attempt is back to FAILED, not stuck in LOADING
    state = await store.get("2021")
    assert state.status == PartitionStatus.FAILED
    assert state.lease_owner is None

    run = await orchestrator.run_cycle()

    assert run.run_metadata["decisions"] == {
        "2020": "unchanged",
        "2021": "retries_exhausted",
        "2022": "unchanged",
    }
    assert source.read_calls["2021"] == 2
    # 2020 was repointed before its state write failed
    assert (await store.get("2020")).status == PartitionStatus.COMMITTED
    assert orchestrator.in_flight == []


@pytest.mark.asyncio
async def test_remove_partition(make_orchestrator, state_store, storage):
    orchestrator = make_orchestrator()
    await orchestrator.run_cycle()

    assert await orchestrator.remove_partition("2020") is True

    assert await state_store.get("2020") is None
    assert await storage.read_partition("2020") == []
    assert await storage.list_orphans() == []
    assert (await state_store.list_events("2020"))[0].to_status == PartitionStatus.PENDING
    assert await orchestrator.remove_partition("2020") is False

    # A dropped key is no longer enumerated
    run = await make_orchestrator(keys=["2021", "2022"]).run_cycle()
    assert run.partitions_considered == 2
    assert await state_store.get("2020") is None

    # A key that is still enumerated is loaded again
    run = await orchestrator.run_cycle()
    assert run.run_metadata["decisions"]["2020"] == "first_load"


@pytest.mark.asyncio
async def test_operator_actions_refused_while_partition_is_busy(
    make_orchestrator, source, state_store, storage, year_rows
):
    orchestrator = make_orchestrator()
    await orchestrator.run_cycle()

    await state_store.acquire("2021", "other-worker")
    with pytest.raises(PartitionBusyError):
        await orchestrator.reset_partition("2021")
    with pytest.raises(PartitionBusyError):
        await orchestrator.remove_partition("2021")
    assert await storage.read_partition("2021") == year_rows("2021")
    assert (await state_store.get("2021")).lease_owner == "other-worker"
    await state_store.release("2021", "other-worker")

    # Refused while this process is loading the partition
    source.read_delay = 0.01
    source.set_partition("2022", year_rows("2022"), fingerprint="v2")
    cycle = asyncio.create_task(orchestrator.run_cycle())
    while not orchestrator.in_flight:
        await asyncio.sleep(0.001)
    with pytest.raises(PartitionBusyError):
        await orchestrator.reset_partition("2022")
    run = await cycle

    assert run.partitions_refreshed == 1
    assert await orchestrator.reset_partition("1999") is None
    assert await orchestrator.remove_partition("1999") is False
    assert await state_store.get("1999") is None
