"""
Load executor: stream one partition from its source, transform it and stage
the result without making anything visible.

Pipeline:

    source.read(key) -> transformation -> bounded queue -> storage.write_staging

Memory is bounded by the queue size plus one write batch; a partition is
never materialized in full. Any failure discards the staging segment and
surfaces as LoadError, retryable or not depending on what aborted it.
"""

from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional
import asyncio
import logging

from core.clock import utcnow
from core.exceptions import ConfigurationError, ETLException, LoadError
from ingestion.sources.base import PartitionSource
from ingestion.storage.base import StorageEngine
from ingestion.transformers.base import IdentityTransformation, Transformation
from schemas.partition import LoadJob, StagingResult

logger = logging.getLogger(__name__)

_END = object()


class LoadExecutor:
    """
    Stage partitions from a source into a storage engine.

    Attributes:
        batch_size: Rows per staging write (default: 500)
        buffer_rows: Maximum transformed rows in flight between the read
            and write stages (default: 5000)
    """

    def __init__(
        self,
        source: PartitionSource,
        storage: StorageEngine,
        transformation: Optional[Transformation] = None,
        batch_size: int = 500,
        buffer_rows: int = 5000
    ):
        if batch_size < 1 or buffer_rows < 1:
            raise ConfigurationError(
                "batch_size and buffer_rows must be positive",
                context={"batch_size": batch_size, "buffer_rows": buffer_rows}
            )
        self.source = source
        self.storage = storage
        self.transformation = transformation or IdentityTransformation()
        self.batch_size = batch_size
        self.buffer_rows = buffer_rows

    async def load(
        self,
        key: str,
        fingerprint: Optional[str] = None,
        job: Optional[LoadJob] = None
    ) -> StagingResult:
        """
        Stage one partition.

        Args:
            key: Partition key
            fingerprint: Source fingerprint observed by the freshness probe
            job: In-flight job record updated as the load progresses

        Returns:
            StagingResult describing the staged (invisible) content

        Raises:
            LoadError: If reading, transforming or staging fails
        """
        started_at = utcnow()
        progress = {"rows_read": 0, "rows_written": 0}
        logger.info(f"Loading partition {key} (fingerprint: {fingerprint})")

        try:
            async with aclosing(self._batches(key, progress, job)) as batches:
                handle = await self.storage.write_staging(key, batches, fingerprint)
        except LoadError:
            raise
        except ETLException as e:
            if job is not None:
                job.error = e.message
            error = LoadError(
                f"Load of partition {key} failed: {e.message}",
                context={"partition_key": key, "cause": type(e).__name__},
                original_exception=e,
                retryable=e.retryable
            )
            logger.error(str(error), extra={"error_context": error.to_dict()})
            raise error

        if job is not None:
            job.staging_location = handle
            job.rows_written = progress["rows_written"]

        finished_at = utcnow()
        logger.info(
            f"Staged partition {key}: {progress['rows_read']} records read, "
            f"{progress['rows_written']} rows written "
            f"in {(finished_at - started_at).total_seconds():.2f}s"
        )
        return StagingResult(
            key=key,
            staging_handle=handle,
            fingerprint=fingerprint,
            rows_read=progress["rows_read"],
            rows_written=progress["rows_written"],
            started_at=started_at,
            finished_at=finished_at
        )

    async def _batches(
        self,
        key: str,
        progress: Dict[str, int],
        job: Optional[LoadJob]
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Run the read/transform producer and yield its rows in write batches.

        The producer fills a bounded queue; the next batch is only assembled
        once the staging writer has consumed the previous one.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.buffer_rows)
        failures: List[BaseException] = []

        async def produce() -> None:
            try:
                async with aclosing(self.source.read(key)) as records:
                    async for record in records:
                        progress["rows_read"] += 1
                        for row in self.transformation(record):
                            await queue.put(row)
            except Exception as e:
                # Re-raised by the consumer once it has drained the queue
                failures.append(e)
            await queue.put(_END)

        producer = asyncio.create_task(produce(), name=f"load-producer-{key}")
        batch: List[Dict[str, Any]] = []

        try:
            while True:
                row = await queue.get()
                if row is _END:
                    break
                batch.append(row)
                if len(batch) >= self.batch_size:
                    yield batch
                    progress["rows_written"] += len(batch)
                    if job is not None:
                        job.rows_written = progress["rows_written"]
                    batch = []

            if failures:
                raise failures[0]

            if batch:
                yield batch
                progress["rows_written"] += len(batch)
        finally:
            if not producer.done():
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
