"""
LMS group memberships → lms_group_members
"""

from typing import Dict, List, Optional, Set, Tuple
from datetime import datetime
from sqlalchemy import select, delete, insert, update, func, or_
from sqlalchemy.exc import SQLAlchemyError
from core.exceptions import ResourceNotFoundError
from models.base import EntityType, SyncMode
from models.lms import LmsGroup, LmsGroupMember, LmsUser
from sync.pipelines.base import SyncPipeline
import logging

logger = logging.getLogger(__name__)

ALL_PARTNERS_GROUP = "all partners"


def membership_user_id(item: Dict) -> Optional[str]:
    person = ((item.get("relationships") or {}).get("person") or {}).get("data") or {}
    user_id = person.get("id") or (item.get("attributes") or {}).get("person_id")
    return str(user_id) if user_id else None


class GroupMembersPipeline(SyncPipeline):
    """
    Replace the member list of partner groups.

    Only groups linked to a partner (plus the "All Partners" group) are
    synced. Incremental passes skip groups whose stored member count
    already matches the count the LMS reported for the group. Each group
    is replaced in a single transaction and existing added_at values are
    preserved.
    """

    entity_type = EntityType.GROUP_MEMBERS
    supports_incremental = False

    async def sync(self, since: Optional[datetime]):
        groups = await self.select_groups(full=self.mode == SyncMode.FULL)
        self.total = len(groups)
        known_users = set((await self.db.execute(select(LmsUser.id))).scalars().all())

        synced = 0
        removed = 0
        missing_groups: List[str] = []

        for index, (group_id, group_name) in enumerate(groups, start=1):
            try:
                user_ids: List[str] = []
                async for batch in self.lms.iter_group_memberships(group_id):
                    for item in batch.items:
                        user_id = membership_user_id(item)
                        if user_id and user_id not in user_ids:
                            user_ids.append(user_id)
            except ResourceNotFoundError:
                missing_groups.append(group_name)
                logger.warning(f"Group {group_name} ({group_id}) no longer exists in the LMS")
                continue

            removed += await self.replace_members(group_id, user_ids, known_users)
            synced += 1
            await self.report_progress(processed=index)
            await self.pause_between_batches()

        self.details.update({
            "groups_checked": len(groups),
            "groups_synced": synced,
            "members_removed": removed,
        })
        if missing_groups:
            self.details["groups_not_found"] = missing_groups

    async def select_groups(self, full: bool) -> List[Tuple[str, str]]:
        stmt = select(LmsGroup.id, LmsGroup.name, LmsGroup.user_count, LmsGroup.members_synced_at).where(
            or_(LmsGroup.partner_id.isnot(None), func.lower(LmsGroup.name) == ALL_PARTNERS_GROUP)
        ).order_by(LmsGroup.name)
        groups = (await self.db.execute(stmt)).all()
        if full:
            return [(g.id, g.name) for g in groups]

        counts = dict(
            (await self.db.execute(
                select(LmsGroupMember.group_id, func.count(LmsGroupMember.id)).group_by(LmsGroupMember.group_id)
            )).all()
        )
        selected = []
        for g in groups:
            if g.members_synced_at is None or counts.get(g.id, 0) != (g.user_count or 0):
                selected.append((g.id, g.name))
        self.details["groups_unchanged"] = len(groups) - len(selected)
        return selected

    async def replace_members(self, group_id: str, user_ids: List[str], known_users: Set[str]) -> int:
        """Swap the stored member list for user_ids; returns members removed."""
        existing = dict(
            (await self.db.execute(
                select(LmsGroupMember.user_id, LmsGroupMember.added_at).where(LmsGroupMember.group_id == group_id)
            )).all()
        )

        now = datetime.utcnow()
        rows = []
        kept = 0
        for user_id in user_ids:
            self.processed += 1
            if user_id not in known_users:
                self.skipped_fk += 1
                continue
            if user_id in existing:
                kept += 1
            rows.append({"group_id": group_id, "user_id": user_id, "added_at": existing.get(user_id, now)})

        removed = len(existing) - kept
        if self.dry_run:
            self.created += len(rows) - kept
            self.updated += kept
            return removed

        try:
            await self.db.execute(delete(LmsGroupMember).where(LmsGroupMember.group_id == group_id))
            if rows:
                await self.db.execute(insert(LmsGroupMember), rows)
            await self.db.execute(
                update(LmsGroup)
                .where(LmsGroup.id == group_id)
                .values(user_count=len(rows), members_synced_at=now)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.failed += len(rows)
            self.errors.append({"key": group_id, "error": str(e)[:300]})
            logger.error(f"Failed to replace members of group {group_id}: {str(e)}")
            return 0

        self.created += len(rows) - kept
        self.updated += kept
        return removed
