from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from datetime import datetime
from models.base import Base


class Lead(Base):
    """PRM lead; partner_id is null when the owning account is not local."""
    __tablename__ = "leads"
    
    id = Column(String(64), primary_key=True)
    partner_id = Column(Integer, ForeignKey("partners.id"), nullable=True, index=True)
    prm_account_id = Column(String(64), nullable=True)
    
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    company_name = Column(String(255), nullable=True)
    status = Column(String(100), nullable=True)
    source = Column(String(100), nullable=True)
    
    lead_created_at = Column(DateTime, nullable=True, index=True)
    remote_updated_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=datetime.utcnow)
