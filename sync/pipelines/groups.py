"""
LMS groups → lms_groups
"""

from typing import Optional
from datetime import datetime
from models.base import EntityType
from models.lms import LmsGroup
from sync.fetchers.lms_client import GROUPS_PATH
from sync.identity import link_groups_to_partners
from sync.pipelines.base import SyncPipeline
from sync.transformers.filters import accept_group

# partner_id and members_synced_at are owned locally
UPDATE_FIELDS = ["name", "description", "user_count", "remote_updated_at", "synced_at"]


class GroupsPipeline(SyncPipeline):
    entity_type = EntityType.GROUPS

    async def sync(self, since: Optional[datetime]):
        filtered = 0

        async for batch in self.lms.iter_pages(GROUPS_PATH, since=since):
            now = datetime.utcnow()
            rows = []
            for item in batch.items:
                record = self.normalize(self.normalizer.group, item)
                if record is None:
                    continue
                self.observe_cursor(record.remote_updated_at)
                if not self.is_newer(record.remote_updated_at, since):
                    continue
                if not accept_group(record):
                    filtered += 1
                    continue

                self.processed += 1
                row = record.dict()
                row["synced_at"] = now
                rows.append(row)

            await self.upsert(LmsGroup, rows, "id", UPDATE_FIELDS)
            await self.report_progress(batch.total)
            await self.pause_between_batches()

        self.details["filtered"] = filtered
        if not self.dry_run:
            self.details["groups_linked"] = await link_groups_to_partners(self.db)
