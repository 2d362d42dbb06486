"""
Per-partner certification credit cache.

The cache is a pure function of the store: rebuild() recomputes every
row from contacts or group memberships, enrollments and course credit
values, replacing the previous contents in one transaction.
"""

from typing import Dict, Optional
from datetime import datetime
from sqlalchemy import select, delete, insert, func, case, and_, distinct, literal, DateTime
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.exceptions import SyncException
from models.base import EnrollmentStatus
from models.cache import PartnerCreditCache
from models.lms import Course, Enrollment, LmsGroup, LmsGroupMember
from models.partner import Contact, Partner
import logging

logger = logging.getLogger(__name__)

ATTRIBUTION_GROUP = "group"
ATTRIBUTION_CONTACT = "contact"
ATTRIBUTIONS = (ATTRIBUTION_GROUP, ATTRIBUTION_CONTACT)


def attribution_pairs(attribution: str):
    """
    Distinct (partner_id, user_id) pairs under one attribution path.

    "group": members of LMS groups linked to a partner.
    "contact": LMS users linked from a partner's contacts.
    """
    if attribution == ATTRIBUTION_GROUP:
        return (
            select(LmsGroup.partner_id.label("partner_id"), LmsGroupMember.user_id.label("user_id"))
            .join(LmsGroupMember, LmsGroupMember.group_id == LmsGroup.id)
            .where(LmsGroup.partner_id.isnot(None))
            .distinct()
        )
    if attribution == ATTRIBUTION_CONTACT:
        return (
            select(Contact.partner_id.label("partner_id"), Contact.lms_user_id.label("user_id"))
            .where(Contact.lms_user_id.isnot(None))
            .distinct()
        )
    raise SyncException(
        f"Unknown attribution path: {attribution}",
        context={"allowed": list(ATTRIBUTIONS)}
    )


def credit_rows(attribution: str, now: datetime):
    """One row per (partner, completed credit-bearing enrollment)."""
    pairs = attribution_pairs(attribution).subquery("pairs")
    expired = and_(Enrollment.expires_at.isnot(None), Enrollment.expires_at < now)
    return (
        select(
            pairs.c.partner_id,
            pairs.c.user_id,
            Enrollment.id.label("enrollment_id"),
            Course.credit_value,
            Course.category,
            case((expired, 1), else_=0).label("expired"),
        )
        .join(Enrollment, Enrollment.user_id == pairs.c.user_id)
        .join(Course, Course.id == Enrollment.course_id)
        .where(
            Enrollment.status == EnrollmentStatus.COMPLETED,
            Course.credit_value > 0,
        )
    )


class AggregationCacheBuilder:
    """
    Build partner_credit_cache.

    For each partner:
    - active_credits: credit of completed enrollments not yet expired
    - expired_credits: credit of completed enrollments past expires_at
    - total_certifications: distinct completed credit-bearing enrollments
    - certified_users: distinct users holding at least one of them

    Every partner gets a row, zero-valued when nothing is attributed.
    """

    def __init__(self, db_session: AsyncSession, attribution: Optional[str] = None):
        self.db = db_session
        self.attribution = attribution or settings.AGGREGATION_ATTRIBUTION
        if self.attribution not in ATTRIBUTIONS:
            raise SyncException(
                f"Unknown attribution path: {self.attribution}",
                context={"allowed": list(ATTRIBUTIONS)}
            )

    def build_select(self, now: datetime):
        credits = credit_rows(self.attribution, now).subquery("credits")
        totals = (
            select(
                credits.c.partner_id,
                func.sum(case((credits.c.expired == 0, credits.c.credit_value), else_=0)).label("active"),
                func.sum(case((credits.c.expired == 1, credits.c.credit_value), else_=0)).label("expired"),
                func.count(distinct(credits.c.enrollment_id)).label("certifications"),
                func.count(distinct(credits.c.user_id)).label("users"),
            )
            .group_by(credits.c.partner_id)
            .subquery("totals")
        )
        return (
            select(
                Partner.id,
                func.coalesce(totals.c.active, 0),
                func.coalesce(totals.c.expired, 0),
                func.coalesce(totals.c.certifications, 0),
                func.coalesce(totals.c.users, 0),
                literal(now, type_=DateTime),
            )
            .select_from(Partner)
            .outerjoin(totals, totals.c.partner_id == Partner.id)
        )

    async def rebuild(self, now: Optional[datetime] = None) -> int:
        """
        Replace the cache contents. Returns the number of rows written.

        Delete and repopulate share one transaction, so readers see either
        the old cache or the new one.
        """
        now = now or datetime.utcnow()
        try:
            await self.db.execute(delete(PartnerCreditCache))
            await self.db.execute(
                insert(PartnerCreditCache).from_select(
                    [
                        "partner_id",
                        "active_credits",
                        "expired_credits",
                        "total_certifications",
                        "certified_users",
                        "last_updated",
                    ],
                    self.build_select(now),
                )
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        count = await self.db.scalar(select(func.count()).select_from(PartnerCreditCache))
        logger.info(f"Rebuilt partner credit cache ({self.attribution} attribution): {count} partners")
        return count

    async def get(self, partner_id: int) -> Optional[PartnerCreditCache]:
        result = await self.db.execute(
            select(PartnerCreditCache).where(PartnerCreditCache.partner_id == partner_id)
        )
        return result.scalar_one_or_none()


async def certifications_by_category(
    db_session: AsyncSession,
    attribution: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[int, Dict[str, int]]:
    """partner_id → {course category: unexpired certification count}."""
    credits = credit_rows(attribution or settings.AGGREGATION_ATTRIBUTION, now or datetime.utcnow()).subquery("credits")
    result = await db_session.execute(
        select(credits.c.partner_id, credits.c.category, func.count(distinct(credits.c.enrollment_id)))
        .where(credits.c.expired == 0, credits.c.category.isnot(None))
        .group_by(credits.c.partner_id, credits.c.category)
    )
    counts: Dict[int, Dict[str, int]] = {}
    for partner_id, category, count in result.all():
        counts.setdefault(partner_id, {})[category] = count
    return counts
