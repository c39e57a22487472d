"""
SQLAlchemy ORM models for database tables.

This package defines the persisted layout of the refresh service:

Models:
    base: Base declarative class and shared enums (PartitionStatus, TriggerSource, RunStatus)
    partition_state: Per-partition watermark, retry bookkeeping and lease
    run_record: Append-only log of refresh cycles
    partition_event: Partition state transition events
    segment: Storage engine segments, their rows, and the live pointers

Database Schema:
    All models inherit from the Base declarative class and use portable
    column types (JSON rather than JSONB) so the same schema runs on
    PostgreSQL in deployment and SQLite in tests.

Usage:
    from models.partition_state import PartitionStateRecord
    from models.base import PartitionStatus

Relationships:
    - RunRecordRow → PartitionEvent (one-to-many via run_id)
    - PartitionPointer → PartitionSegment (one live segment per partition)
    - PartitionSegment → SegmentRow (one-to-many)
"""

from models.base import Base, PartitionStatus, TriggerSource, RunStatus, SegmentStatus
from models.partition_state import PartitionStateRecord
from models.run_record import RunRecordRow
from models.partition_event import PartitionEvent
from models.segment import PartitionSegment, SegmentRow, PartitionPointer

__all__ = [
    "Base",
    "PartitionStatus",
    "TriggerSource",
    "RunStatus",
    "SegmentStatus",
    "PartitionStateRecord",
    "RunRecordRow",
    "PartitionEvent",
    "PartitionSegment",
    "SegmentRow",
    "PartitionPointer",
]
