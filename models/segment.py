from sqlalchemy import Column, String, Enum, DateTime, Integer, Index, ForeignKey, JSON, BigInteger
from core.clock import utcnow
from models.base import Base, BigIntegerPK, SegmentStatus


class PartitionSegment(Base):
    """
    A self-contained copy of one partition's content.

    Staging writes always go to a fresh segment. A segment only becomes
    visible once a PartitionPointer references it, so half-written segments
    are never read by consumers.
    """
    __tablename__ = "partition_segments"

    segment_id = Column(String(36), primary_key=True)

    table_name = Column(String(100), nullable=False)
    partition_key = Column(String(255), nullable=False)

    status = Column(Enum(SegmentStatus), default=SegmentStatus.STAGING, nullable=False, index=True)
    source_fingerprint = Column(String(512), nullable=True)
    row_count = Column(BigInteger, default=0, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    committed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_segment_partition", "table_name", "partition_key"),
    )


class SegmentRow(Base):
    """Transformed rows belonging to a segment"""
    __tablename__ = "partition_segment_rows"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    segment_id = Column(String(36), ForeignKey("partition_segments.segment_id"), nullable=False, index=True)
    row_number = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False)


class PartitionPointer(Base):
    """
    Which segment a partition identifier currently resolves to.

    Replacing a partition is a single UPDATE of this row.
    """
    __tablename__ = "partition_pointers"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    table_name = Column(String(100), nullable=False)
    partition_key = Column(String(255), nullable=False)
    segment_id = Column(String(36), ForeignKey("partition_segments.segment_id"), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_pointer_partition", "table_name", "partition_key", unique=True),
    )
