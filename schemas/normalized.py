"""
Pydantic schemas for normalized remote records with validation
"""

from pydantic import BaseModel, Field, validator
from typing import Optional
from datetime import datetime
from models.base import UserStatus, EnrollmentStatus

# Completion status → progress percent when the LMS sends no explicit progress
STATUS_PROGRESS = {
    EnrollmentStatus.COMPLETED: 100,
    EnrollmentStatus.IN_PROGRESS: 50,
}

MAX_CREDIT_VALUE = 2


class PartnerRecord(BaseModel):
    """PRM Account normalized for the partners table"""
    
    prm_account_id: Optional[str] = None
    crm_id: Optional[str] = Field(None, max_length=18)
    crm_key: Optional[str] = Field(None, max_length=18)
    name: str = Field(..., min_length=1, max_length=255)
    tier: Optional[str] = None
    account_status: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    owner_name: Optional[str] = None
    owner_email: Optional[str] = None
    partner_type: Optional[str] = None
    website: Optional[str] = None
    remote_updated_at: Optional[datetime] = None
    
    @validator("name")
    def clean_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Partner name cannot be empty after stripping")
        return v


class ContactRecord(BaseModel):
    """PRM User normalized for the contacts table"""
    
    prm_user_id: Optional[str] = None
    email: str = Field(..., min_length=3, max_length=255)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    title: Optional[str] = None
    phone: Optional[str] = None
    account_name: Optional[str] = None
    prm_account_id: Optional[str] = None
    contact_status: Optional[str] = None
    is_active: bool = True
    remote_updated_at: Optional[datetime] = None
    
    @validator("email")
    def normalize_email(cls, v):
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError(f"Invalid email: {v}")
        return v


class LmsUserRecord(BaseModel):
    id: str = Field(..., min_length=1)
    email: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_active_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    remote_created_at: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None
    status: UserStatus = UserStatus.ACTIVE
    
    @validator("email", pre=True)
    def normalize_email(cls, v):
        return (v or "").strip().lower()
    
    @validator("status", pre=True, always=True)
    def derive_status(cls, v, values):
        if values.get("deactivated_at"):
            return UserStatus.DEACTIVATED
        return UserStatus.ACTIVE


class GroupRecord(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    description: Optional[str] = None
    user_count: int = 0
    remote_updated_at: Optional[datetime] = None
    
    @validator("user_count", pre=True)
    def default_user_count(cls, v):
        return v or 0


class CourseRecord(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    status: Optional[str] = "active"
    category: Optional[str] = None
    remote_updated_at: Optional[datetime] = None


class CoursePropertyRecord(BaseModel):
    """
    Course credit properties.
    
    Credit values outside 0..MAX_CREDIT_VALUE or unparseable values are
    treated as 0.
    """
    
    course_id: str = Field(..., min_length=1)
    name: Optional[str] = None
    credit_value: int = 0
    
    @validator("credit_value", pre=True, always=True)
    def clamp_credit_value(cls, v):
        if v is None or v == "":
            return 0
        try:
            value = int(float(v))
        except (TypeError, ValueError):
            return 0
        if value < 0 or value > MAX_CREDIT_VALUE:
            return 0
        return value
    
    @property
    def is_certification(self) -> bool:
        return self.credit_value > 0


class EnrollmentRecord(BaseModel):
    """
    Transcript entry normalized for the enrollments table.
    
    status must be declared before progress_percent: the progress
    validator reads the already-validated status.
    """
    
    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    course_id: str = Field(..., min_length=1)
    status: EnrollmentStatus = EnrollmentStatus.ENROLLED
    progress_percent: Optional[int] = None
    score: Optional[float] = None
    enrolled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    
    @validator("status", pre=True, always=True)
    def normalize_status(cls, v):
        if isinstance(v, EnrollmentStatus):
            return v
        try:
            return EnrollmentStatus((v or "").strip().lower())
        except ValueError:
            return EnrollmentStatus.ENROLLED
    
    @validator("progress_percent", pre=True, always=True)
    def derive_progress(cls, v, values):
        if v is not None and v != "":
            try:
                return max(0, min(100, int(round(float(v)))))
            except (TypeError, ValueError):
                pass
        return STATUS_PROGRESS.get(values.get("status"), 0)


class LeadRecord(BaseModel):
    id: str = Field(..., min_length=1)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    company_name: Optional[str] = None
    status: Optional[str] = None
    source: Optional[str] = None
    prm_account_id: Optional[str] = None
    lead_created_at: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None
    
    @validator("email", pre=True)
    def normalize_email(cls, v):
        if not v:
            return None
        return str(v).strip().lower()
