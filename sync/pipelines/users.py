"""
LMS people → lms_users
"""

from typing import Optional, Set
from datetime import datetime
from sqlalchemy import select, update
from models.base import EntityType, UserStatus
from models.lms import LmsUser
from sync.fetchers.lms_client import PEOPLE_PATH
from sync.identity import link_contacts_to_lms_users
from sync.pipelines.base import SyncPipeline
import logging

logger = logging.getLogger(__name__)

UPDATE_FIELDS = [
    "email",
    "first_name",
    "last_name",
    "status",
    "last_active_at",
    "deactivated_at",
    "remote_created_at",
    "remote_updated_at",
    "synced_at",
]


class UsersPipeline(SyncPipeline):
    """
    Mirror LMS people.

    A full pass also marks users the LMS no longer returns as deleted.
    After every pass unlinked contacts are matched to users by email.
    """

    entity_type = EntityType.USERS

    async def sync(self, since: Optional[datetime]):
        seen: Set[str] = set()
        unchanged = 0

        async for batch in self.lms.iter_pages(PEOPLE_PATH, since=since):
            now = datetime.utcnow()
            rows = []
            for item in batch.items:
                record = self.normalize(self.normalizer.lms_user, item)
                if record is None:
                    continue
                seen.add(record.id)
                self.observe_cursor(record.remote_updated_at)
                if not self.is_newer(record.remote_updated_at, since):
                    unchanged += 1
                    continue

                self.processed += 1
                row = record.dict()
                row["synced_at"] = now
                rows.append(row)

            await self.upsert(LmsUser, rows, "id", UPDATE_FIELDS)
            await self.report_progress(batch.total)
            await self.pause_between_batches()

        self.details["unchanged"] = unchanged

        if since is None:
            self.details["marked_deleted"] = await self.mark_missing_deleted(seen)

        if not self.dry_run:
            self.details["contacts_linked"] = await link_contacts_to_lms_users(self.db)

    async def mark_missing_deleted(self, seen: Set[str]) -> int:
        """Flag local users absent from a complete listing."""
        result = await self.db.execute(
            select(LmsUser.id).where(LmsUser.status != UserStatus.DELETED)
        )
        missing = [user_id for user_id in result.scalars().all() if user_id not in seen]
        if not missing or self.dry_run:
            return len(missing)

        for i in range(0, len(missing), 500):
            await self.db.execute(
                update(LmsUser)
                .where(LmsUser.id.in_(missing[i:i + 500]))
                .values(status=UserStatus.DELETED, synced_at=datetime.utcnow())
            )
        await self.db.commit()
        logger.info(f"Marked {len(missing)} LMS users deleted")
        return len(missing)
