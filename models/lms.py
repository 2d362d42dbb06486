from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Float, Enum, ForeignKey, Index, UniqueConstraint
)
from datetime import datetime
from models.base import Base, UserStatus, EnrollmentStatus


class LmsUser(Base):
    """LMS person. Primary key is the LMS id."""
    __tablename__ = "lms_users"
    
    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=False, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    status = Column(Enum(UserStatus), nullable=False, default=UserStatus.ACTIVE, index=True)
    
    last_active_at = Column(DateTime, nullable=True)
    deactivated_at = Column(DateTime, nullable=True)
    remote_created_at = Column(DateTime, nullable=True)
    remote_updated_at = Column(DateTime, nullable=True)
    
    enrollments_synced_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class LmsGroup(Base):
    """LMS group; partner_id is set when the group maps onto a partner."""
    __tablename__ = "lms_groups"
    
    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(String(1000), nullable=True)
    user_count = Column(Integer, nullable=False, default=0)
    partner_id = Column(Integer, ForeignKey("partners.id"), nullable=True, index=True)
    
    remote_updated_at = Column(DateTime, nullable=True)
    members_synced_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class LmsGroupMember(Base):
    __tablename__ = "lms_group_members"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(String(64), ForeignKey("lms_groups.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), ForeignKey("lms_users.id", ondelete="CASCADE"), nullable=False, index=True)
    added_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )


class Course(Base):
    """Catalog item; credit_value is the per-course credit (NPCU) number."""
    __tablename__ = "lms_courses"
    
    id = Column(String(64), primary_key=True)
    name = Column(String(500), nullable=False)
    status = Column(String(50), nullable=True)
    category = Column(String(100), nullable=True)
    credit_value = Column(Integer, nullable=False, default=0)
    is_certification = Column(Boolean, nullable=False, default=False)
    
    remote_updated_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Enrollment(Base):
    """
    One transcript entry. Primary key is the LMS transcript id, so
    re-delivery of the same entry always merges into the same row.
    """
    __tablename__ = "lms_enrollments"
    
    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), ForeignKey("lms_users.id"), nullable=False, index=True)
    course_id = Column(String(64), ForeignKey("lms_courses.id"), nullable=False, index=True)
    
    status = Column(Enum(EnrollmentStatus), nullable=False, default=EnrollmentStatus.ENROLLED)
    progress_percent = Column(Integer, nullable=False, default=0)
    score = Column(Float, nullable=True)
    
    enrolled_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    
    __table_args__ = (
        Index("idx_enrollment_user_course", "user_id", "course_id"),
        Index("idx_enrollment_status", "status"),
    )
