"""
Filesystem partition source (local development, mounted buckets)
"""

from pathlib import Path
from typing import Any, AsyncIterator, Dict
import asyncio
import logging

import pandas as pd

from core.exceptions import (
    ProbeError,
    SourceNotFoundError,
    SourceUnavailableError,
)
from ingestion.sources.base import (
    PartitionSource,
    csv_records,
    decode_json_lines,
    iterate_in_thread,
)

logger = logging.getLogger(__name__)


class LocalPartitionSource(PartitionSource):
    """
    Read partitions from files laid out by key, e.g. ``/data/year={key}/data.csv``.

    Fingerprint: file size and modification time in nanoseconds.
    """

    def path(self, key: str) -> Path:
        return Path(self.location(key))

    async def probe(self, key: str) -> str:
        path = self.path(key)
        try:
            stat = await asyncio.to_thread(path.stat)
        except OSError as e:
            raise ProbeError(
                f"Cannot stat partition file {path}",
                context={"partition_key": key, "path": str(path)},
                original_exception=e
            )
        return f"size={stat.st_size};mtime_ns={stat.st_mtime_ns}"

    async def read(self, key: str) -> AsyncIterator[Dict[str, Any]]:
        path = self.path(key)
        if not await asyncio.to_thread(path.is_file):
            raise SourceNotFoundError(
                f"Partition file not found: {path}",
                context={"partition_key": key, "path": str(path)}
            )

        logger.info(f"Reading partition {key} from {path}")

        try:
            if self.record_format == "csv":
                records = csv_records(
                    lambda **kwargs: pd.read_csv(path, **kwargs),
                    key,
                    self.batch_size
                )
                async for record in iterate_in_thread(records, self.batch_size):
                    yield record
            else:
                with open(path, "rb") as handle:
                    lines = iterate_in_thread(iter(handle), self.batch_size)
                    async for record in decode_json_lines(lines, key):
                        yield record
        except OSError as e:
            raise SourceUnavailableError(
                f"I/O error while reading {path}",
                context={"partition_key": key, "path": str(path)},
                original_exception=e
            )
