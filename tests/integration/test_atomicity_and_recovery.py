"""
Atomic replacement and crash recovery tests.

A "restart" is simulated with a fresh SqlStorageEngine and orchestrator over
the same database: nothing in memory survives, only what was persisted.
"""

import asyncio

import pytest

from core.exceptions import CommitError
from ingestion.storage.sql_engine import SqlStorageEngine
from models.base import PartitionStatus, RunStatus


class FailingRepointStorage(SqlStorageEngine):
    """Storage engine whose repoint fails for selected partitions"""

    def __init__(self, engine, table_name, fail_keys=()):
        super().__init__(engine, table_name)
        self.fail_keys = set(fail_keys)

    async def repoint(self, key, handle):
        if key in self.fail_keys:
            raise CommitError("pointer update rejected", context={"partition_key": key})
        return await super().repoint(key, handle)


class SlowRepointStorage(SqlStorageEngine):
    """Storage engine that pauses between staging and the pointer update"""

    def __init__(self, engine, table_name, delay=0.05):
        super().__init__(engine, table_name)
        self.delay = delay
        self.in_window = False

    async def repoint(self, key, handle):
        self.in_window = True
        await asyncio.sleep(self.delay)
        self.in_window = False
        return await super().repoint(key, handle)


def new_rows(count=40):
    return [{"year": "2021", "station": f"N{i}", "value": i * 10} for i in range(count)]


@pytest.mark.asyncio
async def test_readers_see_old_or_new_content_only(make_orchestrator, source, storage, year_rows):
    orchestrator = make_orchestrator(batch_size=2, buffer_rows=2)
    await orchestrator.run_cycle()
    old = year_rows("2021")

    source.set_partition("2021", new_rows(), fingerprint="v2")
    source.read_delay = 0.001
    observed = []
    done = asyncio.Event()

    async def reader():
        while not done.is_set():
            observed.append(await storage.read_partition("2021"))
            await asyncio.sleep(0)

    reader_task = asyncio.create_task(reader())
    run = await orchestrator.run_cycle()
    done.set()
    await reader_task

    assert run.partitions_refreshed == 1
    assert observed
    assert all(rows == old or rows == new_rows() for rows in observed)
    assert await storage.read_partition("2021") == new_rows()


@pytest.mark.asyncio
async def test_staged_content_stays_invisible_until_repoint(make_orchestrator, test_engine, source, year_rows):
    slow = SlowRepointStorage(test_engine, "measurements")
    orchestrator = make_orchestrator(storage_engine=slow)
    await orchestrator.run_cycle()

    source.set_partition("2021", new_rows(), fingerprint="v2")
    window_reads = []
    done = asyncio.Event()

    async def reader():
        while not done.is_set():
            started_in_window = slow.in_window
            rows = await slow.read_partition("2021")
            # Read entirely between end of staging and the pointer update
            if started_in_window and slow.in_window:
                window_reads.append(rows)
            await asyncio.sleep(0)

    reader_task = asyncio.create_task(reader())
    run = await orchestrator.run_cycle()
    done.set()
    await reader_task

    assert run.partitions_refreshed == 1
    assert window_reads
    assert all(rows == year_rows("2021") for rows in window_reads)
    assert await slow.read_partition("2021") == new_rows()


@pytest.mark.asyncio
async def test_commit_failure_keeps_previous_content(make_orchestrator, test_engine, source, state_store, year_rows):
    flaky = FailingRepointStorage(test_engine, "measurements")
    orchestrator = make_orchestrator(storage_engine=flaky)
    await orchestrator.run_cycle()

    flaky.fail_keys.add("2021")
    source.set_partition("2021", new_rows(), fingerprint="v2")
    run = await orchestrator.run_cycle()

    assert run.status == RunStatus.PARTIAL
    assert run.partitions_failed == 1
    assert await flaky.read_partition("2021") == year_rows("2021")
    assert await flaky.list_orphans() == []

    state = await state_store.get("2021")
    assert state.status == PartitionStatus.FAILED
    assert state.source_fingerprint == "v1"
    assert state.failed_fingerprint == "v2"
    assert state.attempt_count == 1


@pytest.mark.asyncio
async def test_crash_before_repoint(make_orchestrator, test_engine, source, state_store, year_rows):
    orchestrator = make_orchestrator()
    await orchestrator.run_cycle()

    # Staging written, process dies before the pointer moves
    source.set_partition("2021", new_rows(), fingerprint="v2")
    staged = await orchestrator.executor.load("2021", "v2")
    state = await state_store.get("2021")
    await state_store.transition(state, PartitionStatus.LOADING)
    await state_store.acquire("2021", "crashed-worker")

    restarted = make_orchestrator(storage_engine=SqlStorageEngine(test_engine, "measurements"))
    report = await restarted.recover()

    assert report == {"leases_released": 1, "partitions_reconciled": 1, "segments_reclaimed": 1}
    state = await state_store.get("2021")
    assert state.status == PartitionStatus.COMMITTED
    assert state.source_fingerprint == "v1"
    assert await restarted.replacer.storage.read_partition("2021") == year_rows("2021")
    assert staged.staging_handle not in await restarted.replacer.storage.list_orphans()

    run = await restarted.run_cycle()
    assert run.run_metadata["decisions"]["2021"] == "fingerprint_changed"
    assert await restarted.replacer.storage.read_partition("2021") == new_rows()


@pytest.mark.asyncio
async def test_crash_after_repoint(make_orchestrator, test_engine, source, state_store):
    orchestrator = make_orchestrator()
    await orchestrator.run_cycle()

    # Pointer moved, process dies before the state store records it
    source.set_partition("2021", new_rows(), fingerprint="v2")
    state = await state_store.get("2021")
    await state_store.transition(state, PartitionStatus.LOADING)
    staged = await orchestrator.executor.load("2021", "v2")
    await orchestrator.replacer.storage.repoint("2021", staged.staging_handle)

    restarted = make_orchestrator(storage_engine=SqlStorageEngine(test_engine, "measurements"))
    report = await restarted.recover()

    assert report["partitions_reconciled"] == 1
    # The retired v1 segment
    assert report["segments_reclaimed"] == 1

    state = await state_store.get("2021")
    assert state.status == PartitionStatus.COMMITTED
    assert state.source_fingerprint == "v2"
    assert state.rows_committed == 40

    run = await restarted.run_cycle()
    assert run.partitions_refreshed == 0
    assert source.read_calls["2021"] == 2


@pytest.mark.asyncio
async def test_interrupted_first_load_returns_to_pending(make_orchestrator, test_engine, state_store):
    orchestrator = make_orchestrator(keys=["2022"])
    await state_store.acquire("2022", "crashed-worker")
    state = await state_store.get("2022")
    await state_store.transition(state, PartitionStatus.LOADING)
    await orchestrator.executor.load("2022", "v1")

    restarted = make_orchestrator(keys=["2022"], storage_engine=SqlStorageEngine(test_engine, "measurements"))
    report = await restarted.recover()

    assert report["segments_reclaimed"] == 1
    assert (await state_store.get("2022")).status == PartitionStatus.PENDING

    run = await restarted.run_cycle()
    assert run.partitions_refreshed == 1


@pytest.mark.asyncio
async def test_interrupted_retry_stays_failed(make_orchestrator, test_engine, state_store):
    orchestrator = make_orchestrator(keys=["2021"])
    state = await state_store.get("2021")
    assert state is None

    await orchestrator.run_cycle()
    state = await state_store.get("2021")
    state.attempt_count = 2
    state.failed_fingerprint = "v1"
    await state_store.transition(state, PartitionStatus.LOADING)

    restarted = make_orchestrator(keys=["2021"], storage_engine=SqlStorageEngine(test_engine, "measurements"))
    await restarted.recover()

    state = await state_store.get("2021")
    assert state.status == PartitionStatus.FAILED
    assert state.attempt_count == 2


@pytest.mark.asyncio
async def test_recover_is_a_no_op_on_clean_store(make_orchestrator):
    orchestrator = make_orchestrator()
    await orchestrator.run_cycle()
    await orchestrator.replacer.drain()

    assert await orchestrator.recover() == {
        "leases_released": 0,
        "partitions_reconciled": 0,
        "segments_reclaimed": 0,
    }
