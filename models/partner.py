from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, JSONType


class Partner(Base):
    """
    Partner organization mirrored from the PRM.
    
    crm_id keeps the identifier exactly as the PRM sent it (15 or 18
    characters). crm_key is its canonical 15-character form and is the
    column every cross-system match goes through.
    """
    __tablename__ = "partners"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    
    # Identity
    crm_id = Column(String(18), nullable=True)
    crm_key = Column(String(18), nullable=True, unique=True, index=True)
    prm_account_id = Column(String(64), nullable=True, unique=True, index=True)
    
    # Attributes
    name = Column(String(255), nullable=False, index=True)
    tier = Column(String(50), nullable=True, index=True)
    region = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True)
    owner_name = Column(String(255), nullable=True)
    owner_email = Column(String(255), nullable=True)
    partner_type = Column(String(100), nullable=True)
    website = Column(String(500), nullable=True)
    domains = Column(JSONType, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    
    # Lead rollups
    lead_count = Column(Integer, nullable=False, default=0)
    leads_last_30_days = Column(Integer, nullable=False, default=0)
    
    # Timestamps
    remote_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    contacts = relationship("Contact", back_populates="partner")


class Contact(Base):
    """
    PRM user belonging to a partner, optionally linked to one LMS user.
    
    The link is owned here (contacts.lms_user_id); looking up the contact
    of an LMS user goes through the index on that column.
    """
    __tablename__ = "contacts"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    prm_user_id = Column(String(64), nullable=True, unique=True)
    email = Column(String(255), nullable=False, unique=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    title = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    
    partner_id = Column(Integer, ForeignKey("partners.id"), nullable=False, index=True)
    lms_user_id = Column(String(64), ForeignKey("lms_users.id"), nullable=True)
    
    remote_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    partner = relationship("Partner", back_populates="contacts")
    
    __table_args__ = (
        Index("idx_contact_lms_user", "lms_user_id"),
    )
