from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, BigInteger
from datetime import datetime
from models.base import Base, EntityType, SyncStatus


class SyncCheckpoint(Base):
    """
    Tracks the incremental cursor per entity type.
    
    Purpose:
    - Bound incremental fetches to records modified after the last success
    - Avoid reprocessing unchanged remote data
    
    Design:
    - One row per entity type
    - checkpoint_value is the max remote updated_at (ISO 8601) seen by the
      last successful run; it only moves forward on success
    """
    __tablename__ = "sync_checkpoints"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(Enum(EntityType), nullable=False, unique=True)
    
    checkpoint_value = Column(String(64), nullable=True)
    
    # Statistics
    last_run_at = Column(DateTime, nullable=True, index=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    
    total_runs = Column(Integer, default=0)
    total_records_processed = Column(BigInteger, default=0)
    last_records_processed = Column(Integer, default=0)
    
    status = Column(Enum(SyncStatus), nullable=True)
    error_message = Column(Text, nullable=True)
    
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
