"""
Abstract analytical storage engine with staged writes and atomic repoint
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, AsyncIterable, Iterable, List, Optional
from datetime import datetime
from pydantic import BaseModel
import logging

from core.exceptions import ETLException

logger = logging.getLogger(__name__)


class SegmentInfo(BaseModel):
    """Metadata of the segment a partition currently resolves to"""
    handle: str
    key: str
    source_fingerprint: Optional[str] = None
    row_count: int = 0
    committed_at: Optional[datetime] = None


class StorageEngine(ABC):
    """
    Storage engine contract used by the load executor and atomic replacer.

    Content is written into staging segments that readers cannot see. A
    partition switches to a new segment through a single metadata update
    (repoint), so readers observe either the old or the new content.
    """

    def __init__(self, table_name: str):
        self.table_name = table_name

    @abstractmethod
    async def open_staging(self, key: str, fingerprint: Optional[str] = None) -> str:
        """Create an empty staging segment for key and return its handle"""
        pass

    @abstractmethod
    async def append_staging(self, handle: str, rows: List[Dict[str, Any]]) -> int:
        """Append a batch of rows to a staging segment. Returns rows written"""
        pass

    async def write_staging(
        self,
        key: str,
        batches: AsyncIterable[List[Dict[str, Any]]],
        fingerprint: Optional[str] = None
    ) -> str:
        """
        Stage a stream of row batches as a new segment for key.

        The segment is discarded if the stream or a write fails, or if the
        caller is cancelled. Nothing becomes visible until repoint().

        Returns:
            Staging handle
        """
        handle = await self.open_staging(key, fingerprint)
        try:
            async for rows in batches:
                if rows:
                    await self.append_staging(handle, rows)
        except BaseException:
            try:
                await self.delete(handle)
            except ETLException as e:
                logger.warning(f"Could not discard staging segment {handle} for {key}: {e}")
            raise
        return handle

    @abstractmethod
    async def repoint(self, key: str, handle: str) -> Optional[str]:
        """
        Make handle the live content of key in one step.

        Returns:
            Handle of the previously live segment, if any
        """
        pass

    @abstractmethod
    async def delete(self, handle: str) -> None:
        """Delete a segment that is not live (staging or retired)"""
        pass

    @abstractmethod
    async def drop(self, key: str) -> int:
        """
        Remove a partition entirely: its pointer and every segment of key
        that is not being written. Readers see an empty partition afterwards.

        Returns:
            Number of segments deleted
        """
        pass

    @abstractmethod
    async def read_partition(
        self,
        key: str,
        offset: int = 0,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Rows currently visible for key, in load order"""
        pass

    @abstractmethod
    async def live_segment(self, key: str) -> Optional[SegmentInfo]:
        """Segment key currently resolves to"""
        pass

    @abstractmethod
    async def list_orphans(self, exclude: Iterable[str] = (), skip_keys: Iterable[str] = ()) -> List[str]:
        """
        Segments that are neither live nor being written by this process.

        skip_keys leaves out every segment of those partitions, e.g. the
        ones another worker holds a lease on.
        """
        pass
