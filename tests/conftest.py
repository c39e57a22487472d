"""
Pytest configuration and fixtures
"""

import asyncio
from collections import Counter
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest
import pytest_asyncio

from core.database import create_engine
from core.exceptions import ProbeError, SourceNotFoundError
from ingestion.enumerators import StaticEnumerator
from ingestion.executor import LoadExecutor
from ingestion.freshness import FreshnessEvaluator, ProbeFailurePolicy, RetryPolicy
from ingestion.orchestrator import RefreshOrchestrator
from ingestion.replacer import AtomicReplacer
from ingestion.sources.base import PartitionSource
from ingestion.state_store import SqlPartitionStateStore
from ingestion.storage.sql_engine import SqlStorageEngine
from models import Base

TEST_TABLE = "measurements"


class ScriptedSource(PartitionSource):
    """
    In-memory partition source for tests.

    Each partition has a fingerprint and a list of records. Probe and read
    failures are scripted per key.
    """

    def __init__(self):
        super().__init__("memory://{key}")
        self.partitions: Dict[str, Dict[str, Any]] = {}
        self.probe_errors: Dict[str, Exception] = {}
        self.read_errors: Dict[str, Exception] = {}
        self.fail_after: Dict[str, int] = {}
        self.read_calls: Counter = Counter()
        self.read_delay: float = 0.0

    def set_partition(self, key: str, records: List[Dict[str, Any]], fingerprint: str = "v1"):
        self.partitions[key] = {"fingerprint": fingerprint, "records": list(records)}

    def fail_read(self, key: str, error: Exception, after: int = 0):
        """Raise error after `after` records of key were yielded"""
        self.read_errors[key] = error
        self.fail_after[key] = after

    def heal(self, key: str):
        self.read_errors.pop(key, None)
        self.fail_after.pop(key, None)

    async def probe(self, key: str) -> str:
        if key in self.probe_errors:
            raise self.probe_errors[key]
        if key not in self.partitions:
            raise ProbeError(f"No such partition {key}", context={"partition_key": key})
        return self.partitions[key]["fingerprint"]

    async def read(self, key: str) -> AsyncIterator[Dict[str, Any]]:
        self.read_calls[key] += 1
        if key not in self.partitions:
            raise SourceNotFoundError(f"No such partition {key}", context={"partition_key": key})

        for index, record in enumerate(self.partitions[key]["records"]):
            if key in self.read_errors and index >= self.fail_after[key]:
                raise self.read_errors[key]
            if self.read_delay:
                await asyncio.sleep(self.read_delay)
            else:
                await asyncio.sleep(0)
            yield dict(record)

        if key in self.read_errors and self.fail_after[key] >= len(self.partitions[key]["records"]):
            raise self.read_errors[key]


def build_year_rows(year: str, count: int = 3) -> List[Dict[str, Any]]:
    return [{"year": year, "station": f"S{i}", "value": i} for i in range(count)]


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite database with every table created"""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'refresh.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def state_store(test_engine):
    return SqlPartitionStateStore(test_engine, TEST_TABLE)


@pytest_asyncio.fixture
async def storage(test_engine):
    return SqlStorageEngine(test_engine, TEST_TABLE)


@pytest.fixture
def year_rows():
    """Factory of measurement rows for one year"""
    return build_year_rows


@pytest.fixture
def source():
    source = ScriptedSource()
    for year in ("2020", "2021", "2022"):
        source.set_partition(year, build_year_rows(year))
    return source


@pytest.fixture
def make_orchestrator(state_store, storage, source):
    """
    Build an orchestrator over the shared state store and storage engine.

    Keyword arguments override the defaults (keys, max_attempts, backoff,
    probe policy, transformation, concurrency, storage).
    """

    def factory(
        keys: Optional[List[str]] = None,
        enumerator=None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.0,
        probe_failure_policy: ProbeFailurePolicy = ProbeFailurePolicy.ASSUME_STALE,
        transformation=None,
        max_concurrency: int = 4,
        storage_engine=None,
        store=None,
        batch_size: int = 2,
        buffer_rows: int = 4
    ) -> RefreshOrchestrator:
        engine = storage_engine or storage
        store = store or state_store
        evaluator = FreshnessEvaluator(
            source,
            RetryPolicy(max_attempts=max_attempts, backoff_seconds=backoff_seconds, max_backoff_seconds=3600.0),
            probe_failure_policy
        )
        executor = LoadExecutor(source, engine, transformation, batch_size=batch_size, buffer_rows=buffer_rows)
        replacer = AtomicReplacer(engine, store, max_attempts=max_attempts)
        return RefreshOrchestrator(
            enumerator or StaticEnumerator(keys if keys is not None else ["2020", "2021", "2022"]),
            store,
            evaluator,
            executor,
            replacer,
            max_concurrency=max_concurrency,
            owner="test-worker"
        )

    return factory


@pytest.fixture
def make_source():
    """Factory of empty scripted sources"""
    return ScriptedSource
