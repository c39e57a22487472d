from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")


# ============================================================================
# ENUMS
# ============================================================================

class PartitionStatus(str, enum.Enum):
    """Partition lifecycle status"""
    PENDING = "pending"
    LOADING = "loading"
    COMMITTED = "committed"
    FAILED = "failed"


class TriggerSource(str, enum.Enum):
    """What started a refresh cycle"""
    CRON = "cron"
    MANUAL = "manual"


class RunStatus(str, enum.Enum):
    """Refresh cycle outcome"""
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class SegmentStatus(str, enum.Enum):
    """Storage engine segment lifecycle"""
    STAGING = "staging"
    LIVE = "live"
    RETIRED = "retired"
