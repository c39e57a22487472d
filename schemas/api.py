"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from core.clock import utcnow
from models.base import PartitionStatus, TriggerSource
from schemas.partition import PartitionState, RunRecord, TransitionEvent


# ============================================================================
# Health Check Schemas
# ============================================================================

class SchedulerStatus(BaseModel):
    """Trigger loop status"""
    running: bool
    cycle_running: bool
    phase: str
    pending_request: bool
    next_cron_run: Optional[datetime] = None
    cron: str


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(default="healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    table_name: str
    partitions_by_status: Dict[str, int] = Field(default_factory=dict)
    total_partitions: int = 0
    failed_partitions: int = 0
    last_run: Optional[RunRecord] = None
    scheduler: Optional[SchedulerStatus] = None

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.total_partitions == 0 or self.failed_partitions == 0:
            self.status = "healthy"
        elif self.failed_partitions < self.total_partitions:
            self.status = "degraded"
        else:
            self.status = "unhealthy"
        return self

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "status": "degraded",
            "timestamp": "2024-01-15T10:30:00Z",
            "database_connected": True,
            "table_name": "measurements",
            "partitions_by_status": {"committed": 2, "failed": 1},
            "total_partitions": 3,
            "failed_partitions": 1
        }
    })


# ============================================================================
# Partition Schemas
# ============================================================================

class PartitionListResponse(BaseModel):
    """All partitions of the target table"""
    table_name: str
    total: int
    partitions: List[PartitionState]


class PartitionEventsResponse(BaseModel):
    key: str
    events: List[TransitionEvent]


class PartitionRowsResponse(BaseModel):
    """Live content of a partition, paginated"""
    key: str
    total_rows: int
    offset: int
    limit: int
    rows: List[Dict[str, Any]]


class PartitionResetResponse(BaseModel):
    key: str
    status: PartitionStatus
    attempt_count: int


class PartitionRemovedResponse(BaseModel):
    key: str
    removed: bool = True


# ============================================================================
# Run Schemas
# ============================================================================

class RunTriggerRequest(BaseModel):
    """Manual run request"""
    force: bool = Field(default=False, description="Refresh every partition regardless of freshness")


class RunTriggerResponse(BaseModel):
    """Receipt for a manual trigger; the cycle itself runs in the background"""
    accepted: bool = True
    trigger_source: TriggerSource
    force: bool
    coalesced: bool = Field(..., description="True if merged into an already pending request")
    cycle_running: bool
    requested_at: datetime


class RunListResponse(BaseModel):
    runs: List[RunRecord]


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "Resource not found",
            "detail": "Partition '2031' is not known",
            "timestamp": "2024-01-15T10:30:00Z"
        }
    })
