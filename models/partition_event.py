from sqlalchemy import Column, String, Enum, DateTime, Integer, Text, Index
from core.clock import utcnow
from models.base import Base, BigIntegerPK, PartitionStatus


class PartitionEvent(Base):
    """
    One row per partition state transition.

    Consumed by external logging/metrics and by the /partitions/{key}/events
    endpoint. A failing partition keeps emitting failed transitions here
    instead of silently falling behind.
    """
    __tablename__ = "partition_events"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    run_id = Column(String(36), nullable=True, index=True)

    table_name = Column(String(100), nullable=False)
    partition_key = Column(String(255), nullable=False)

    from_status = Column(Enum(PartitionStatus), nullable=True)
    to_status = Column(Enum(PartitionStatus), nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    detail = Column(Text, nullable=True)

    occurred_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_partition_event_key", "table_name", "partition_key", "occurred_at"),
    )
