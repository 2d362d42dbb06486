"""
Integration tests for the partner credit cache
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy import select
from core.exceptions import SyncException
from models.base import EnrollmentStatus
from models.cache import PartnerCreditCache
from models.lms import Course, Enrollment, LmsGroup, LmsGroupMember, LmsUser
from models.partner import Contact, Partner
from sync.aggregation import AggregationCacheBuilder, certifications_by_category


NOW = datetime(2024, 6, 1)


async def seed(db_session):
    """
    Acme: u1 completed c1 (5) and c2 (10) and holds an expired c3 (2),
    plus an in-progress c1 for u2. Beta has nobody.
    """
    acme = Partner(name="Acme")
    beta = Partner(name="Beta")
    db_session.add_all([acme, beta])
    await db_session.flush()

    db_session.add_all([
        LmsUser(id="u1", email="u1@example.com"),
        LmsUser(id="u2", email="u2@example.com"),
        LmsGroup(id="g1", name="ptr_Acme", partner_id=acme.id),
        Course(id="c1", name="K2 Developer", category="nintex_k2", credit_value=5),
        Course(id="c2", name="Automation Cloud Admin", category="nintex_ce", credit_value=10),
        Course(id="c3", name="RPA Basics", category="nintex_ce", credit_value=2),
        Course(id="c4", name="Intro", credit_value=0),
    ])
    await db_session.flush()

    db_session.add_all([
        LmsGroupMember(group_id="g1", user_id="u1"),
        LmsGroupMember(group_id="g1", user_id="u2"),
        Contact(email="u1@example.com", partner_id=acme.id, lms_user_id="u1"),
        Enrollment(id="e1", user_id="u1", course_id="c1", status=EnrollmentStatus.COMPLETED),
        Enrollment(id="e2", user_id="u1", course_id="c2", status=EnrollmentStatus.COMPLETED,
                   expires_at=NOW + timedelta(days=30)),
        Enrollment(id="e3", user_id="u1", course_id="c3", status=EnrollmentStatus.COMPLETED,
                   expires_at=NOW - timedelta(days=1)),
        Enrollment(id="e4", user_id="u1", course_id="c4", status=EnrollmentStatus.COMPLETED),
        Enrollment(id="e5", user_id="u2", course_id="c1", status=EnrollmentStatus.IN_PROGRESS),
    ])
    await db_session.commit()
    return acme.id, beta.id


async def cache_row(db_session, partner_id):
    return (await db_session.execute(
        select(
            PartnerCreditCache.active_credits,
            PartnerCreditCache.expired_credits,
            PartnerCreditCache.total_certifications,
            PartnerCreditCache.certified_users,
        ).where(PartnerCreditCache.partner_id == partner_id)
    )).one()


class TestAggregationCacheBuilder:
    """Test cache rebuilds"""

    @pytest.mark.asyncio
    async def test_sums_completed_credit(self, db_session):
        acme_id, _ = await seed(db_session)

        await AggregationCacheBuilder(db_session, "group").rebuild(now=NOW)

        row = await cache_row(db_session, acme_id)
        assert row.active_credits == 15
        assert row.expired_credits == 2
        assert row.total_certifications == 3
        assert row.certified_users == 1

    @pytest.mark.asyncio
    async def test_every_partner_gets_a_row(self, db_session):
        _, beta_id = await seed(db_session)

        rows = await AggregationCacheBuilder(db_session, "group").rebuild(now=NOW)

        assert rows == 2
        assert tuple(await cache_row(db_session, beta_id)) == (0, 0, 0, 0)

    @pytest.mark.asyncio
    async def test_rebuild_is_idempotent(self, db_session):
        acme_id, _ = await seed(db_session)
        builder = AggregationCacheBuilder(db_session, "group")

        await builder.rebuild(now=NOW)
        first = tuple(await cache_row(db_session, acme_id))
        await builder.rebuild(now=NOW)

        assert tuple(await cache_row(db_session, acme_id)) == first

    @pytest.mark.asyncio
    async def test_rebuild_reflects_store_changes(self, db_session):
        acme_id, _ = await seed(db_session)
        builder = AggregationCacheBuilder(db_session, "group")
        await builder.rebuild(now=NOW)

        await db_session.delete(await db_session.get(Enrollment, "e2"))
        await db_session.commit()
        await builder.rebuild(now=NOW)

        assert (await cache_row(db_session, acme_id)).active_credits == 5

    @pytest.mark.asyncio
    async def test_contact_attribution(self, db_session):
        acme_id, _ = await seed(db_session)
        # Membership is irrelevant under contact attribution
        await db_session.delete(await db_session.get(LmsGroup, "g1"))
        await db_session.commit()

        await AggregationCacheBuilder(db_session, "contact").rebuild(now=NOW)

        assert (await cache_row(db_session, acme_id)).active_credits == 15

    @pytest.mark.asyncio
    async def test_user_in_two_groups_counted_once(self, db_session):
        acme_id, _ = await seed(db_session)
        db_session.add(LmsGroup(id="g2", name="Acme Sales", partner_id=acme_id))
        await db_session.flush()
        db_session.add(LmsGroupMember(group_id="g2", user_id="u1"))
        await db_session.commit()

        await AggregationCacheBuilder(db_session, "group").rebuild(now=NOW)

        assert (await cache_row(db_session, acme_id)).active_credits == 15

    @pytest.mark.asyncio
    async def test_get(self, db_session):
        acme_id, _ = await seed(db_session)
        builder = AggregationCacheBuilder(db_session, "group")

        assert await builder.get(acme_id) is None
        await builder.rebuild(now=NOW)
        assert (await builder.get(acme_id)).partner_id == acme_id

    def test_unknown_attribution_rejected(self):
        with pytest.raises(SyncException):
            AggregationCacheBuilder(None, "region")


class TestCertificationsByCategory:

    @pytest.mark.asyncio
    async def test_unexpired_counts_per_category(self, db_session):
        acme_id, beta_id = await seed(db_session)

        counts = await certifications_by_category(db_session, "group", now=NOW)

        assert counts[acme_id] == {"nintex_k2": 1, "nintex_ce": 1}
        assert beta_id not in counts
