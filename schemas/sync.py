"""
Pydantic schemas describing pipeline run outcomes
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from models.base import EntityType, SyncMode, SyncStatus


class RunSummary(BaseModel):
    """
    Outcome of one pipeline run.
    
    Returned by the manual trigger path and stored (as JSON) on the
    scheduler audit log.
    """
    run_id: Optional[str] = None
    entity_type: EntityType
    mode: SyncMode = SyncMode.INCREMENTAL
    status: SyncStatus
    dry_run: bool = False
    
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    duration_seconds: float = 0.0
    
    checkpoint_before: Optional[str] = None
    checkpoint_after: Optional[str] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    
    class Config:
        use_enum_values = True
    
    @property
    def succeeded(self) -> bool:
        return self.status == SyncStatus.COMPLETED
