from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class EntityType(str, enum.Enum):
    """Sync pipeline entity types"""
    PARTNERS = "partners"
    CONTACTS = "contacts"
    USERS = "users"
    GROUPS = "groups"
    GROUP_MEMBERS = "group_members"
    COURSES = "courses"
    COURSE_PROPERTIES = "course_properties"
    ENROLLMENTS = "enrollments"
    LEADS = "leads"
    PARTNER_PUSH = "partner_push"


class SyncMode(str, enum.Enum):
    """Pipeline run mode"""
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, enum.Enum):
    """Sync run status"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STALE = "stale"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    SyncStatus.COMPLETED,
    SyncStatus.FAILED,
    SyncStatus.STALE,
    SyncStatus.CANCELLED,
)


class UserStatus(str, enum.Enum):
    """LMS user status"""
    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    DELETED = "deleted"


class EnrollmentStatus(str, enum.Enum):
    """Transcript progress status"""
    ENROLLED = "enrolled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
