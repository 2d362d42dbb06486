from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Float, Boolean
from datetime import datetime
from models.base import Base, EntityType, SyncStatus, JSONType


class ScheduledTask(Base):
    """
    Per-entity-type scheduling control record.
    
    config holds the run options, e.g. {"mode": "incremental"}.
    """
    __tablename__ = "scheduled_tasks"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    task_type = Column(Enum(EntityType), nullable=False, unique=True)
    enabled = Column(Boolean, nullable=False, default=True)
    interval_minutes = Column(Integer, nullable=False, default=60)
    config = Column(JSONType, nullable=True)
    
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True, index=True)
    last_status = Column(Enum(SyncStatus), nullable=True)
    last_error = Column(Text, nullable=True)
    last_duration_seconds = Column(Float, nullable=True)
    
    run_count = Column(Integer, nullable=False, default=0)
    fail_count = Column(Integer, nullable=False, default=0)
    
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class TaskRunHistory(Base):
    """Audit log entry written by the scheduler for every task execution."""
    __tablename__ = "task_run_history"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    task_type = Column(Enum(EntityType), nullable=False, index=True)
    status = Column(Enum(SyncStatus), nullable=False, default=SyncStatus.RUNNING)
    triggered_by = Column(String(20), nullable=False, default="scheduler")
    
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    
    result = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)
