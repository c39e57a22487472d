"""
Partition enumerators: the authoritative list of partition keys for a table.

Enumeration runs at the start of every cycle and is never cached, so newly
added partitions are picked up by the next cycle. Keys keep the order of
the backing source; duplicates collapse to their first occurrence.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence
import asyncio
import logging
import re

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from core.exceptions import ConfigurationError, EnumerationError, ETLException
from core.s3_uri import parse_s3_uri

logger = logging.getLogger(__name__)


class PartitionEnumerator(ABC):
    """
    Abstract base class for partition enumeration.

    Subclasses implement _list_keys(); enumerate() adds de-duplication and
    turns any backing-source failure into EnumerationError.
    """

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def _list_keys(self) -> Sequence[str]:
        pass

    async def enumerate(self) -> List[str]:
        """
        Return the ordered, de-duplicated list of partition keys.

        Raises:
            EnumerationError: If the backing source cannot be listed
        """
        try:
            raw_keys = await self._list_keys()
        except EnumerationError:
            raise
        except (ETLException, SQLAlchemyError, ClientError, BotoCoreError, OSError) as e:
            raise EnumerationError(
                f"Partition enumeration failed in {self.name}",
                context={"enumerator": self.name},
                original_exception=e
            )

        seen = set()
        keys: List[str] = []
        for raw in raw_keys:
            if raw is None:
                continue
            key = str(raw)
            if key in seen:
                continue
            seen.add(key)
            keys.append(key)

        logger.info(f"{self.name} enumerated {len(keys)} partitions")
        return keys


def _key_pattern(pattern: str) -> "re.Pattern[str]":
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise ConfigurationError(
            f"Invalid partition key pattern: {pattern}",
            context={"pattern": pattern},
            original_exception=e
        )
    if compiled.groups < 1:
        raise ConfigurationError(
            "Partition key pattern needs one capture group",
            context={"pattern": pattern}
        )
    return compiled


def _extract_keys(names: Sequence[str], pattern: "re.Pattern[str]") -> List[str]:
    keys = []
    for name in names:
        match = pattern.search(name)
        if match:
            keys.append(match.group(1))
    return sorted(keys)


class StaticEnumerator(PartitionEnumerator):
    """Fixed key list from configuration"""

    def __init__(self, keys: Sequence[str]):
        self.keys = list(keys)

    async def _list_keys(self) -> Sequence[str]:
        return self.keys


class SqlQueryEnumerator(PartitionEnumerator):
    """
    Keys from a SQL query; the first column of each row is the key.

    Example:
        SELECT DISTINCT year FROM raw.measurements ORDER BY year
    """

    def __init__(self, engine: AsyncEngine, query: str):
        if not query or not query.strip():
            raise ConfigurationError("SqlQueryEnumerator requires a query")
        self.engine = engine
        self.query = query

    async def _list_keys(self) -> Sequence[str]:
        async with self.engine.connect() as conn:
            result = await conn.execute(text(self.query))
            return [row[0] for row in result]


class S3PrefixEnumerator(PartitionEnumerator):
    """
    Keys from the common prefixes under an S3 location.

    ``s3://bucket/measurements/`` with pattern ``year=(\\d{4})`` turns
    ``measurements/year=2021/`` into key ``2021``. Keys are sorted.
    """

    def __init__(self, s3_client, location: str, pattern: str, delimiter: str = "/"):
        parsed = parse_s3_uri(location, allow_empty_key=True)
        self.s3_client = s3_client
        self.bucket = parsed.bucket
        self.prefix = parsed.key
        if self.prefix and not self.prefix.endswith(delimiter):
            self.prefix += delimiter
        self.delimiter = delimiter
        self.pattern = _key_pattern(pattern)

    def _list_prefixes(self) -> List[str]:
        paginator = self.s3_client.get_paginator("list_objects_v2")
        names: List[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix, Delimiter=self.delimiter):
            for entry in page.get("CommonPrefixes", []):
                names.append(entry["Prefix"][len(self.prefix):])
            for obj in page.get("Contents", []):
                names.append(obj["Key"][len(self.prefix):])
        return names

    async def _list_keys(self) -> Sequence[str]:
        names = await asyncio.to_thread(self._list_prefixes)
        return _extract_keys(names, self.pattern)


class LocalDirectoryEnumerator(PartitionEnumerator):
    """Keys from the entry names of a local directory, sorted"""

    def __init__(self, root: str, pattern: str):
        self.root = Path(root)
        self.pattern = _key_pattern(pattern)

    def _list_names(self) -> List[str]:
        if not self.root.is_dir():
            raise EnumerationError(
                f"Partition directory does not exist: {self.root}",
                context={"enumerator": self.name, "root": str(self.root)}
            )
        return [entry.name for entry in self.root.iterdir()]

    async def _list_keys(self) -> Sequence[str]:
        names = await asyncio.to_thread(self._list_names)
        return _extract_keys(names, self.pattern)
