"""
Runtime assembly: build every refresh component from Settings.

The API and the CLI both call build_runtime() once at startup; tests pass
their own engines, sources or enumerators to replace individual parts.
"""

from dataclasses import dataclass
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from core.config import Settings, settings as default_settings
from core.database import create_engine
from core.exceptions import ConfigurationError
from ingestion.enumerators import (
    LocalDirectoryEnumerator,
    PartitionEnumerator,
    S3PrefixEnumerator,
    SqlQueryEnumerator,
    StaticEnumerator,
)
from ingestion.executor import LoadExecutor
from ingestion.freshness import FreshnessEvaluator, ProbeFailurePolicy, RetryPolicy
from ingestion.orchestrator import RefreshOrchestrator
from ingestion.replacer import AtomicReplacer
from ingestion.scheduler import RefreshScheduler
from ingestion.sources.base import PartitionSource
from ingestion.sources.http_source import HttpPartitionSource
from ingestion.sources.local_source import LocalPartitionSource
from ingestion.sources.s3_source import S3PartitionSource, create_s3_client
from ingestion.state_store import PartitionStateStore, SqlPartitionStateStore
from ingestion.storage.base import StorageEngine
from ingestion.storage.sql_engine import SqlStorageEngine
from ingestion.transformers.base import Transformation, load_transformation

logger = logging.getLogger(__name__)


@dataclass
class RefreshRuntime:
    """Every long-lived component of one deployment"""
    settings: Settings
    state_engine: AsyncEngine
    storage_engine: AsyncEngine
    state_store: PartitionStateStore
    storage: StorageEngine
    source: PartitionSource
    enumerator: PartitionEnumerator
    transformation: Transformation
    evaluator: FreshnessEvaluator
    executor: LoadExecutor
    replacer: AtomicReplacer
    orchestrator: RefreshOrchestrator
    scheduler: RefreshScheduler

    async def dispose(self):
        """Close database connections"""
        await self.state_engine.dispose()
        if self.storage_engine is not self.state_engine:
            await self.storage_engine.dispose()


def build_source(config: Settings, s3_client=None) -> PartitionSource:
    """Select the partition source from SOURCE_TYPE"""
    source_type = config.SOURCE_TYPE.lower()

    if source_type == "local":
        return LocalPartitionSource(
            config.SOURCE_URI_TEMPLATE,
            record_format=config.SOURCE_FORMAT,
            batch_size=config.ETL_BATCH_SIZE
        )
    if source_type == "s3":
        return S3PartitionSource(
            config.SOURCE_URI_TEMPLATE,
            record_format=config.SOURCE_FORMAT,
            batch_size=config.ETL_BATCH_SIZE,
            s3_client=s3_client or create_s3_client(config.S3_ENDPOINT_URL, config.AWS_REGION)
        )
    if source_type == "http":
        return HttpPartitionSource(
            config.SOURCE_URI_TEMPLATE,
            record_format=config.SOURCE_FORMAT,
            batch_size=config.ETL_BATCH_SIZE,
            timeout=config.SOURCE_TIMEOUT_SECONDS
        )

    raise ConfigurationError(
        f"Unknown source type: {config.SOURCE_TYPE}",
        context={"supported": ["local", "s3", "http"]}
    )


def build_enumerator(config: Settings, engine: AsyncEngine, s3_client=None) -> PartitionEnumerator:
    """Select the partition enumerator from ENUMERATOR"""
    kind = config.ENUMERATOR.lower()

    if kind == "static":
        return StaticEnumerator(config.PARTITION_KEYS)
    if kind == "sql":
        return SqlQueryEnumerator(engine, config.ENUMERATION_QUERY or "")
    if kind in ("s3", "local"):
        if not config.ENUMERATION_LOCATION:
            raise ConfigurationError(
                f"ENUMERATION_LOCATION is required for the {kind} enumerator",
                context={"enumerator": kind}
            )
        if kind == "local":
            return LocalDirectoryEnumerator(config.ENUMERATION_LOCATION, config.ENUMERATION_PATTERN)
        return S3PrefixEnumerator(
            s3_client or create_s3_client(config.S3_ENDPOINT_URL, config.AWS_REGION),
            config.ENUMERATION_LOCATION,
            config.ENUMERATION_PATTERN
        )

    raise ConfigurationError(
        f"Unknown enumerator: {config.ENUMERATOR}",
        context={"supported": ["static", "sql", "s3", "local"]}
    )


def build_runtime(
    config: Optional[Settings] = None,
    state_engine: Optional[AsyncEngine] = None,
    storage_engine: Optional[AsyncEngine] = None,
    source: Optional[PartitionSource] = None,
    enumerator: Optional[PartitionEnumerator] = None,
    transformation: Optional[Transformation] = None,
    s3_client=None
) -> RefreshRuntime:
    """
    Build the orchestrator and everything it depends on.

    Raises:
        ConfigurationError: If a setting selects an unknown or incomplete component
    """
    config = config or default_settings

    try:
        probe_policy = ProbeFailurePolicy(config.PROBE_FAILURE_POLICY)
    except ValueError as e:
        raise ConfigurationError(
            f"Unknown probe failure policy: {config.PROBE_FAILURE_POLICY}",
            context={"supported": [p.value for p in ProbeFailurePolicy]},
            original_exception=e
        )

    state_engine = state_engine or create_engine(config.DATABASE_URL)
    if storage_engine is None:
        storage_engine = (
            create_engine(config.STORAGE_DATABASE_URL)
            if config.STORAGE_DATABASE_URL else state_engine
        )

    table = config.TARGET_TABLE
    state_store = SqlPartitionStateStore(state_engine, table)
    storage = SqlStorageEngine(storage_engine, table)

    source = source or build_source(config, s3_client)
    enumerator = enumerator or build_enumerator(config, storage_engine, s3_client)
    transformation = transformation or load_transformation(config.TRANSFORMATION)

    retry_policy = RetryPolicy(
        max_attempts=config.MAX_ATTEMPTS,
        backoff_seconds=config.RETRY_BACKOFF_SECONDS,
        max_backoff_seconds=config.RETRY_BACKOFF_MAX_SECONDS
    )
    evaluator = FreshnessEvaluator(source, retry_policy, probe_policy)
    executor = LoadExecutor(
        source,
        storage,
        transformation,
        batch_size=config.ETL_BATCH_SIZE,
        buffer_rows=config.LOAD_BUFFER_ROWS
    )
    replacer = AtomicReplacer(storage, state_store, max_attempts=config.MAX_ATTEMPTS)
    orchestrator = RefreshOrchestrator(
        enumerator,
        state_store,
        evaluator,
        executor,
        replacer,
        max_concurrency=config.MAX_CONCURRENCY
    )
    scheduler = RefreshScheduler(
        orchestrator,
        cron=config.REFRESH_CRON,
        timezone=config.SCHEDULER_TIMEZONE,
        shutdown_grace_seconds=config.SHUTDOWN_GRACE_SECONDS
    )

    logger.info(
        f"Built refresh runtime for '{table}': enumerator={enumerator.name}, "
        f"source={type(source).__name__}, transformation={transformation.name}, "
        f"max_concurrency={config.MAX_CONCURRENCY}"
    )

    return RefreshRuntime(
        settings=config,
        state_engine=state_engine,
        storage_engine=storage_engine,
        state_store=state_store,
        storage=storage,
        source=source,
        enumerator=enumerator,
        transformation=transformation,
        evaluator=evaluator,
        executor=executor,
        replacer=replacer,
        orchestrator=orchestrator,
        scheduler=scheduler
    )
