from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, Index, Boolean, JSON
from core.clock import utcnow
from models.base import Base, BigIntegerPK, RunStatus, TriggerSource
import uuid


class RunRecordRow(Base):
    """
    Append-only audit trail of refresh cycles.

    Purpose:
    - One row per orchestration cycle, cron or manual
    - Monotonically increasing id gives the run log order
    - Aggregated per-partition outcome counts
    """
    __tablename__ = "refresh_runs"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    run_id = Column(String(36), default=lambda: str(uuid.uuid4()), unique=True, nullable=False, index=True)

    table_name = Column(String(100), nullable=False, index=True)
    trigger_source = Column(Enum(TriggerSource), nullable=False)
    force = Column(Boolean, default=False, nullable=False)

    status = Column(Enum(RunStatus), default=RunStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    finished_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    partitions_considered = Column(Integer, default=0, nullable=False)
    partitions_refreshed = Column(Integer, default=0, nullable=False)
    partitions_failed = Column(Integer, default=0, nullable=False)
    partitions_skipped = Column(Integer, default=0, nullable=False)

    # Error tracking
    error_message = Column(Text, nullable=True)
    run_metadata = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("idx_refresh_run_table_started", "table_name", "started_at"),
    )
