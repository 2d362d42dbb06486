"""
SQLAlchemy ORM models for database tables.

This package defines the store schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (EntityType, SyncStatus, ...)
    partner: Partners and PRM contacts
    lms: LMS users, groups, group members, courses and enrollments
    lead: PRM leads
    cache: Per-partner credit rollup (derived, rebuildable)
    sync_run: Pipeline execution tracking
    checkpoint: Incremental cursor per entity type
    scheduled_task: Scheduler control records and the task audit log

Usage:
    from models import Partner, Enrollment, SyncRun
    from models.base import EntityType, SyncStatus

Relationships:
    - Contact → Partner (required) and Contact → LmsUser (optional)
    - LmsGroup → Partner (optional), LmsGroupMember → LmsGroup / LmsUser
    - Enrollment → LmsUser / Course
    - PartnerCreditCache → Partner (one row per partner)
"""

from models.base import Base, EntityType, SyncMode, SyncStatus, UserStatus, EnrollmentStatus
from models.partner import Partner, Contact
from models.lms import LmsUser, LmsGroup, LmsGroupMember, Course, Enrollment
from models.lead import Lead
from models.cache import PartnerCreditCache
from models.sync_run import SyncRun
from models.checkpoint import SyncCheckpoint
from models.scheduled_task import ScheduledTask, TaskRunHistory

__all__ = [
    "Base",
    "EntityType",
    "SyncMode",
    "SyncStatus",
    "UserStatus",
    "EnrollmentStatus",
    "Partner",
    "Contact",
    "LmsUser",
    "LmsGroup",
    "LmsGroupMember",
    "Course",
    "Enrollment",
    "Lead",
    "PartnerCreditCache",
    "SyncRun",
    "SyncCheckpoint",
    "ScheduledTask",
    "TaskRunHistory",
]
