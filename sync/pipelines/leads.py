"""
PRM leads → leads, plus per-partner lead rollups
"""

from typing import Dict, Optional
from datetime import datetime, timedelta
from sqlalchemy import select, update, func, case
from models.base import EntityType
from models.lead import Lead
from models.partner import Partner
from sync.fetchers.prm_client import updated_since_filter
from sync.pipelines.base import SyncPipeline
import logging

logger = logging.getLogger(__name__)

LEAD_FIELDS = [
    "Id",
    "FirstName",
    "LastName",
    "Email",
    "CompanyName",
    "Status",
    "Source",
    "PartnerAccountId",
    "Created",
    "Updated",
]

UPDATE_FIELDS = [
    "partner_id",
    "prm_account_id",
    "first_name",
    "last_name",
    "email",
    "company_name",
    "status",
    "source",
    "lead_created_at",
    "remote_updated_at",
    "synced_at",
]

RECENT_LEAD_DAYS = 30


class LeadsPipeline(SyncPipeline):
    """
    Mirror PRM leads.

    A lead whose partner account is not local is still stored, without a
    partner. Partner lead_count and leads_last_30_days are recomputed
    after every pass.
    """

    entity_type = EntityType.LEADS

    async def sync(self, since: Optional[datetime]):
        result = await self.db.execute(
            select(Partner.prm_account_id, Partner.id).where(Partner.prm_account_id.isnot(None))
        )
        partner_by_account: Dict[str, int] = dict(result.all())

        filter_expr = updated_since_filter(since) if since is not None else None
        unattributed = 0

        async for batch in self.prm.iter_pages("Lead", LEAD_FIELDS, filter_expr=filter_expr):
            now = datetime.utcnow()
            rows = []
            for item in batch.items:
                record = self.normalize(self.normalizer.lead, item)
                if record is None:
                    continue
                self.observe_cursor(record.remote_updated_at)
                if not self.is_newer(record.remote_updated_at, since):
                    continue

                self.processed += 1
                partner_id = partner_by_account.get(record.prm_account_id)
                if partner_id is None:
                    unattributed += 1

                row = record.dict()
                row["partner_id"] = partner_id
                row["synced_at"] = now
                rows.append(row)

            await self.upsert(Lead, rows, "id", UPDATE_FIELDS)
            await self.report_progress(batch.total)
            await self.pause_between_batches()

        self.details["unattributed"] = unattributed
        if not self.dry_run:
            self.details["partners_with_leads"] = await self.refresh_lead_counts()

    async def refresh_lead_counts(self) -> int:
        recent_after = datetime.utcnow() - timedelta(days=RECENT_LEAD_DAYS)
        result = await self.db.execute(
            select(
                Lead.partner_id,
                func.count(Lead.id),
                func.sum(case((Lead.lead_created_at >= recent_after, 1), else_=0)),
            )
            .where(Lead.partner_id.isnot(None))
            .group_by(Lead.partner_id)
        )
        counts = {partner_id: (total, recent or 0) for partner_id, total, recent in result.all()}

        await self.db.execute(update(Partner).values(lead_count=0, leads_last_30_days=0))
        for partner_id, (total, recent) in counts.items():
            await self.db.execute(
                update(Partner)
                .where(Partner.id == partner_id)
                .values(lead_count=total, leads_last_30_days=recent)
            )
        await self.db.commit()
        logger.info(f"Refreshed lead counts for {len(counts)} partners")
        return len(counts)
