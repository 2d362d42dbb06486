"""
LMS transcripts → lms_enrollments, per partner user
"""

from typing import List, Optional, Tuple
from datetime import datetime, timedelta
from sqlalchemy import select, update, exists, or_, and_
from core.config import settings
from core.exceptions import APIFetchError, FetchError, ResourceNotFoundError
from models.base import EntityType, SyncMode, UserStatus
from models.lms import Enrollment, LmsGroup, LmsGroupMember, LmsUser, Course
from models.partner import Contact
from sync.fetchers.lms_client import transcripts_path
from sync.pipelines.base import SyncPipeline
from sync.transformers.normalizer import is_course_transcript
import logging

logger = logging.getLogger(__name__)

UPDATE_FIELDS = [
    "status",
    "progress_percent",
    "score",
    "enrolled_at",
    "started_at",
    "completed_at",
    "expires_at",
    "synced_at",
]


def partner_user_clause():
    """Users reachable from a partner via a contact link or a linked group."""
    via_contact = exists().where(
        and_(Contact.lms_user_id == LmsUser.id, Contact.partner_id.isnot(None))
    )
    via_group = exists().where(
        and_(
            LmsGroupMember.user_id == LmsUser.id,
            LmsGroupMember.group_id == LmsGroup.id,
            LmsGroup.partner_id.isnot(None),
        )
    )
    return or_(via_contact, via_group)


class EnrollmentsPipeline(SyncPipeline):
    """
    Sync transcripts for partner users.

    Full passes visit every active partner user. Incremental passes visit
    only users that were never synced, were active since their last sync,
    joined a partner group since their last sync, or have not been synced
    for ENROLLMENT_STALE_DAYS. Only course transcript entries are kept.

    A user whose transcript cannot be fetched is counted and skipped;
    the run aborts once API errors reach ENROLLMENT_MAX_API_ERRORS and
    outnumber the users processed.
    """

    entity_type = EntityType.ENROLLMENTS
    supports_incremental = False

    def __init__(self, *args, stale_days: Optional[int] = None, max_api_errors: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.stale_days = settings.ENROLLMENT_STALE_DAYS if stale_days is None else stale_days
        self.max_api_errors = settings.ENROLLMENT_MAX_API_ERRORS if max_api_errors is None else max_api_errors

    async def select_users(self, full: bool) -> List[Tuple[str, str]]:
        stmt = select(LmsUser.id, LmsUser.email).where(
            LmsUser.status == UserStatus.ACTIVE,
            partner_user_clause(),
        )
        if not full:
            stale_before = datetime.utcnow() - timedelta(days=self.stale_days)
            joined_since = exists().where(
                and_(
                    LmsGroupMember.user_id == LmsUser.id,
                    LmsGroupMember.group_id == LmsGroup.id,
                    LmsGroup.partner_id.isnot(None),
                    LmsGroupMember.added_at > LmsUser.enrollments_synced_at,
                )
            )
            stmt = stmt.where(
                or_(
                    LmsUser.enrollments_synced_at.is_(None),
                    LmsUser.last_active_at > LmsUser.enrollments_synced_at,
                    LmsUser.enrollments_synced_at < stale_before,
                    joined_since,
                )
            )
        result = await self.db.execute(stmt.order_by(LmsUser.id))
        return [tuple(row) for row in result.all()]

    async def sync(self, since: Optional[datetime]):
        users = await self.select_users(full=self.mode == SyncMode.FULL)
        self.total = len(users)
        logger.info(f"Syncing enrollments for {len(users)} partner users")

        known_courses = set()
        if self.dry_run:
            known_courses = set((await self.db.execute(select(Course.id))).scalars().all())

        users_processed = 0
        users_not_found = 0
        api_errors = 0
        discarded = 0

        for user_id, email in users:
            rows = []
            try:
                async for batch in self.lms.iter_transcripts(user_id):
                    now = datetime.utcnow()
                    for item in batch.items:
                        if isinstance(item, dict) and not is_course_transcript(item):
                            discarded += 1
                            continue
                        record = self.normalize(self.normalizer.enrollment, item, user_id)
                        if record is None:
                            continue
                        row = record.dict()
                        row["synced_at"] = now
                        rows.append(row)
            except ResourceNotFoundError:
                users_not_found += 1
                continue
            except FetchError as e:
                api_errors += 1
                if len(self.errors) < 50:
                    self.errors.append({"key": user_id, "email": email, "error": e.message[:300]})
                logger.warning(f"Transcript fetch failed for LMS user {user_id}: {e.message}")
                if api_errors >= self.max_api_errors and api_errors > users_processed:
                    self.details["abort_reason"] = "Too many API errors"
                    raise APIFetchError(
                        f"Too many API errors ({api_errors}) fetching transcripts",
                        context={"api_url": transcripts_path(user_id), "source_name": "lms"},
                        original_exception=e,
                    )
                continue

            self.processed += len(rows)
            if self.dry_run:
                unknown = [r for r in rows if r["course_id"] not in known_courses]
                self.skipped_fk += len(unknown)
                rows = [r for r in rows if r["course_id"] in known_courses]
            await self.upsert(Enrollment, rows, "id", UPDATE_FIELDS)

            users_processed += 1
            if not self.dry_run:
                await self.db.execute(
                    update(LmsUser).where(LmsUser.id == user_id).values(enrollments_synced_at=datetime.utcnow())
                )
                await self.db.commit()

            await self.report_progress(processed=users_processed)
            await self.pause_between_batches()

        self.details.update({
            "users_total": len(users),
            "users_processed": users_processed,
            "users_not_found": users_not_found,
            "api_errors": api_errors,
            "non_course_discarded": discarded,
        })
