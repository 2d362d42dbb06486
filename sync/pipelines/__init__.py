"""
Entity pipelines, keyed by the entity type they sync
"""

from models.base import EntityType
from sync.pipelines.base import SyncPipeline
from sync.pipelines.partners import PartnersPipeline
from sync.pipelines.contacts import ContactsPipeline
from sync.pipelines.users import UsersPipeline
from sync.pipelines.groups import GroupsPipeline
from sync.pipelines.group_members import GroupMembersPipeline
from sync.pipelines.courses import CoursesPipeline
from sync.pipelines.course_properties import CoursePropertiesPipeline
from sync.pipelines.enrollments import EnrollmentsPipeline
from sync.pipelines.leads import LeadsPipeline
from sync.pipelines.partner_push import PartnerPushPipeline

PIPELINES = {
    EntityType.PARTNERS: PartnersPipeline,
    EntityType.CONTACTS: ContactsPipeline,
    EntityType.USERS: UsersPipeline,
    EntityType.GROUPS: GroupsPipeline,
    EntityType.GROUP_MEMBERS: GroupMembersPipeline,
    EntityType.COURSES: CoursesPipeline,
    EntityType.COURSE_PROPERTIES: CoursePropertiesPipeline,
    EntityType.ENROLLMENTS: EnrollmentsPipeline,
    EntityType.LEADS: LeadsPipeline,
    EntityType.PARTNER_PUSH: PartnerPushPipeline,
}

LMS_ENTITIES = {
    EntityType.USERS,
    EntityType.GROUPS,
    EntityType.GROUP_MEMBERS,
    EntityType.COURSES,
    EntityType.COURSE_PROPERTIES,
    EntityType.ENROLLMENTS,
}

__all__ = ["SyncPipeline", "PIPELINES", "LMS_ENTITIES"]
