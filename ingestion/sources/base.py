"""
Abstract object storage reader and shared record decoding
"""

from abc import ABC, abstractmethod
from itertools import islice
from typing import Any, AsyncIterator, Callable, Dict, Iterator, Optional
import asyncio
import json
import logging

import pandas as pd

from core.exceptions import ConfigurationError, SourceFormatError

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("jsonl", "csv")


class PartitionSource(ABC):
    """
    Abstract base class for partition sources.

    Responsibilities:
    - probe(): cheap fingerprint of a partition's content, from metadata only
    - read(): stream raw records of a partition

    Errors are classified through core.exceptions: SourceUnavailableError is
    retryable, SourceNotFoundError / SourceAccessError / SourceFormatError
    are permanent, ProbeError is reserved for probe().
    """

    def __init__(self, uri_template: str, record_format: str = "jsonl", batch_size: int = 500):
        if record_format not in SUPPORTED_FORMATS:
            raise ConfigurationError(
                f"Unsupported source format: {record_format}",
                context={"supported": SUPPORTED_FORMATS}
            )
        self.uri_template = uri_template
        self.record_format = record_format
        self.batch_size = batch_size

    def location(self, key: str) -> str:
        """Object location of a partition"""
        return self.uri_template.format(key=key)

    @abstractmethod
    async def probe(self, key: str) -> str:
        """
        Fingerprint a partition without transferring its data.

        Raises:
            ProbeError: If the metadata call fails
        """
        pass

    @abstractmethod
    def read(self, key: str) -> AsyncIterator[Dict[str, Any]]:
        """Stream raw records of a partition"""
        pass


# ============================================================================
# Helpers
# ============================================================================

async def iterate_in_thread(iterator: Iterator[Any], batch_size: int) -> AsyncIterator[Any]:
    """
    Drain a blocking iterator (file handle, boto3 body, pandas chunks) from
    a worker thread, one batch at a time, so the event loop never blocks.
    """
    while True:
        batch = await asyncio.to_thread(lambda: list(islice(iterator, batch_size)))
        if not batch:
            return
        for item in batch:
            yield item


def decode_json_line(line: Any, key: str, line_number: int) -> Optional[Dict[str, Any]]:
    """Decode one JSON line. Blank lines are skipped (None)"""
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SourceFormatError(
                "Record is not valid UTF-8",
                context={"partition_key": key, "line_number": line_number},
                original_exception=e
            )

    line = line.strip()
    if not line:
        return None

    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        raise SourceFormatError(
            "Malformed JSON record",
            context={"partition_key": key, "line_number": line_number},
            original_exception=e
        )

    if not isinstance(record, dict):
        raise SourceFormatError(
            "JSON record is not an object",
            context={"partition_key": key, "line_number": line_number}
        )
    return record


async def decode_json_lines(lines: AsyncIterator[Any], key: str) -> AsyncIterator[Dict[str, Any]]:
    line_number = 0
    async for line in lines:
        line_number += 1
        record = decode_json_line(line, key, line_number)
        if record is not None:
            yield record


def csv_records(open_csv: Callable[..., Any], key: str, batch_size: int) -> Iterator[Dict[str, Any]]:
    """
    Blocking generator of CSV records, read with pandas in bounded chunks.

    Values are kept as strings; type coercion belongs to the transformation.
    Missing values become None.
    """
    try:
        with open_csv(dtype=str, chunksize=batch_size) as reader:
            for frame in reader:
                frame.columns = frame.columns.str.strip()
                frame = frame.astype(object).where(pd.notna(frame), None)
                for record in frame.to_dict(orient="records"):
                    yield record
    except pd.errors.EmptyDataError:
        # A zero-byte object is an empty partition
        return
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise SourceFormatError(
            "Malformed CSV content",
            context={"partition_key": key},
            original_exception=e
        )
