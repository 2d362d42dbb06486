from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Float, Text, Boolean, Index, Uuid
from datetime import datetime
import uuid
from models.base import Base, EntityType, SyncMode, SyncStatus, JSONType


class SyncRun(Base):
    """
    Tracks metadata for each pipeline execution.
    
    Lifecycle:
    - Created as RUNNING when the pipeline starts
    - Moves exactly once to COMPLETED or FAILED
    - The recovery supervisor may force a RUNNING row to STALE or CANCELLED
    """
    __tablename__ = "sync_runs"
    
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    run_id = Column(Uuid, default=uuid.uuid4, unique=True, nullable=False, index=True)
    
    entity_type = Column(Enum(EntityType), nullable=False, index=True)
    mode = Column(Enum(SyncMode), nullable=False, default=SyncMode.INCREMENTAL)
    status = Column(Enum(SyncStatus), default=SyncStatus.RUNNING, nullable=False, index=True)
    dry_run = Column(Boolean, nullable=False, default=False)
    
    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    
    # Statistics
    records_processed = Column(Integer, default=0)
    records_created = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    records_skipped = Column(Integer, default=0)
    
    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)
    
    # Cursor before/after
    checkpoint_before = Column(String(64), nullable=True)
    checkpoint_after = Column(String(64), nullable=True)
    
    # Pipeline specific output (not-found lists, link counts, ...)
    details = Column(JSONType, nullable=True)
    
    __table_args__ = (
        Index("idx_sync_run_entity_started", "entity_type", "started_at"),
        Index("idx_sync_run_status", "status", "started_at"),
    )
