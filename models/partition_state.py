from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index, BigInteger
from core.clock import utcnow
from models.base import Base, BigIntegerPK, PartitionStatus


class PartitionStateRecord(Base):
    """
    Tracks refresh state per partition of a target table.

    Purpose:
    - Skip partitions whose source has not changed (watermark)
    - Resume after a crash without reloading unchanged partitions
    - Bound retries of failing partitions across cycles
    - Per-key mutual exclusion between workers (lease columns)

    Design:
    - One row per (table_name, partition_key)
    - source_fingerprint always describes the committed content
    - failed_fingerprint remembers which source version last failed
    """
    __tablename__ = "partition_states"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)

    # Partition identification
    table_name = Column(String(100), nullable=False)
    partition_key = Column(String(255), nullable=False)

    # Watermark
    status = Column(Enum(PartitionStatus), default=PartitionStatus.PENDING, nullable=False, index=True)
    source_fingerprint = Column(String(512), nullable=True)
    last_load_time = Column(DateTime, nullable=True)
    rows_committed = Column(BigInteger, default=0, nullable=False)

    # Retry bookkeeping
    attempt_count = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    failed_fingerprint = Column(String(512), nullable=True)
    error_message = Column(Text, nullable=True)

    # Lease held by the worker currently loading this partition
    lease_owner = Column(String(64), nullable=True)
    lease_acquired_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_partition_state_key", "table_name", "partition_key", unique=True),
    )
