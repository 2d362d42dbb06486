"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import EntityType, SyncMode, SyncStatus

# ============================================================================
# Health Check Schemas
# ============================================================================

class CheckpointInfo(BaseModel):
    """Per-entity cursor and last run status for health check"""
    entity_type: EntityType
    status: Optional[SyncStatus]
    last_run_at: Optional[datetime]
    last_success_at: Optional[datetime]
    last_failure_at: Optional[datetime]
    checkpoint_value: Optional[str]
    total_records_processed: int = 0
    last_records_processed: int = 0
    error_message: Optional[str] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    checkpoints: List[CheckpointInfo] = Field(default_factory=list)
    total_entities: int = 0
    failed_entities: int = 0
    running_tasks: List[str] = Field(default_factory=list)
    # Declared last: the validator reads the fields above
    status: str = Field(..., description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        failed = values.get("failed_entities", 0)
        total = values.get("total_entities", 0)

        if total == 0 or failed == 0:
            return "healthy"
        elif failed < total:
            return "degraded"
        else:
            return "unhealthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "total_entities": 2,
                "failed_entities": 0,
                "running_tasks": ["enrollments"],
                "checkpoints": [
                    {
                        "entity_type": "users",
                        "status": "completed",
                        "last_run_at": "2024-01-15T10:00:00Z",
                        "last_success_at": "2024-01-15T10:00:00Z",
                        "checkpoint_value": "2024-01-15T09:58:12",
                        "total_records_processed": 1500,
                        "last_records_processed": 25
                    }
                ]
            }
        }

# ============================================================================
# Sync Run Schemas
# ============================================================================

class SyncRunResponse(BaseModel):
    """One pipeline run record"""
    run_id: str
    entity_type: EntityType
    mode: SyncMode
    status: SyncStatus
    dry_run: bool = False
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    checkpoint_before: Optional[str] = None
    checkpoint_after: Optional[str] = None
    error_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_orm(cls, run):
        """Custom from_orm to explicitly convert UUID to string"""
        return cls(
            run_id=str(run.run_id),
            entity_type=run.entity_type,
            mode=run.mode,
            status=run.status,
            dry_run=run.dry_run,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
            records_processed=run.records_processed or 0,
            records_created=run.records_created or 0,
            records_updated=run.records_updated or 0,
            records_failed=run.records_failed or 0,
            records_skipped=run.records_skipped or 0,
            checkpoint_before=run.checkpoint_before,
            checkpoint_after=run.checkpoint_after,
            error_message=run.error_message,
            details=run.details,
        )

    class Config:
        use_enum_values = True


class SyncRunListResponse(BaseModel):
    runs: List[SyncRunResponse]
    total: int
    filters_applied: Dict[str, Any] = Field(default_factory=dict)

# ============================================================================
# Scheduled Task Schemas
# ============================================================================

class ScheduledTaskResponse(BaseModel):
    task_type: EntityType
    enabled: bool
    interval_minutes: int
    mode: SyncMode = SyncMode.INCREMENTAL
    running: bool = False
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_status: Optional[SyncStatus] = None
    last_error: Optional[str] = None
    last_duration_seconds: Optional[float] = None
    run_count: int = 0
    fail_count: int = 0

    @classmethod
    def from_orm(cls, task, running: bool = False):
        return cls(
            task_type=task.task_type,
            enabled=task.enabled,
            interval_minutes=task.interval_minutes,
            mode=(task.config or {}).get("mode", SyncMode.INCREMENTAL.value),
            running=running,
            last_run_at=task.last_run_at,
            next_run_at=task.next_run_at,
            last_status=task.last_status,
            last_error=task.last_error,
            last_duration_seconds=task.last_duration_seconds,
            run_count=task.run_count or 0,
            fail_count=task.fail_count or 0,
        )

    class Config:
        use_enum_values = True


class TaskUpdateRequest(BaseModel):
    """Partial update of a task's schedule"""
    enabled: Optional[bool] = None
    interval_minutes: Optional[int] = Field(None, ge=1, le=10080)
    mode: Optional[SyncMode] = None

# ============================================================================
# Cache Schemas
# ============================================================================

class CacheRebuildResponse(BaseModel):
    rows: int
    attribution: str
    duration_seconds: float
