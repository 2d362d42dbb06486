from sqlalchemy import Column, Integer, DateTime, ForeignKey
from datetime import datetime
from models.base import Base


class PartnerCreditCache(Base):
    """
    Per-partner credit rollup.
    
    Derived data only: the whole table is rebuilt from enrollments,
    courses and the configured attribution path.
    """
    __tablename__ = "partner_credit_cache"
    
    partner_id = Column(Integer, ForeignKey("partners.id", ondelete="CASCADE"), primary_key=True)
    active_credits = Column(Integer, nullable=False, default=0)
    expired_credits = Column(Integer, nullable=False, default=0)
    total_certifications = Column(Integer, nullable=False, default=0)
    certified_users = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, nullable=False, default=datetime.utcnow)
