"""
PRM accounts → partners
"""

from typing import Any, Dict, Optional
from datetime import datetime
from sqlalchemy import select, insert, update
from models.base import EntityType
from models.partner import Partner
from schemas.normalized import PartnerRecord
from sync.fetchers.prm_client import updated_since_filter
from sync.loaders.store import LoadResult
from sync.pipelines.base import SyncPipeline
from sync.transformers.filters import accept_partner
import logging

logger = logging.getLogger(__name__)

ACCOUNT_FIELDS = [
    "Id",
    "Name",
    "CrmId",
    "Partner_Tier__cf",
    "Account_Status__cf",
    "Region",
    "MailingCountry",
    "Website",
    "Account_Owner__cf",
    "Account_Owner_Email__cf",
    "Partner_Type__cf",
    "Updated",
]


class PartnersPipeline(SyncPipeline):
    """
    Mirror partner accounts from the PRM.

    Accounts are matched to local partners by canonical CRM key, then by
    PRM account id, then by name. Accounts failing the inclusion rules are
    not imported; a local partner whose account stops qualifying is
    deactivated.
    """

    entity_type = EntityType.PARTNERS

    async def load_lookup(self):
        result = await self.db.execute(
            select(Partner.id, Partner.crm_key, Partner.prm_account_id, Partner.name)
        )
        self.by_key: Dict[str, int] = {}
        self.by_account: Dict[str, int] = {}
        self.by_name: Dict[str, int] = {}
        for partner_id, crm_key, prm_account_id, name in result.all():
            self.remember(partner_id, crm_key, prm_account_id, name)

    def remember(self, partner_id: int, crm_key: Optional[str], prm_account_id: Optional[str], name: str):
        if crm_key:
            self.by_key[crm_key] = partner_id
        if prm_account_id:
            self.by_account[prm_account_id] = partner_id
        self.by_name.setdefault(name.lower(), partner_id)

    def match(self, record: PartnerRecord) -> Optional[int]:
        if record.crm_key and record.crm_key in self.by_key:
            return self.by_key[record.crm_key]
        if record.prm_account_id and record.prm_account_id in self.by_account:
            return self.by_account[record.prm_account_id]
        return self.by_name.get(record.name.lower())

    @staticmethod
    def values(record: PartnerRecord) -> Dict[str, Any]:
        values = {
            "name": record.name,
            "tier": record.tier,
            "region": record.region,
            "country": record.country,
            "owner_name": record.owner_name,
            "owner_email": record.owner_email,
            "partner_type": record.partner_type,
            "website": record.website,
            "is_active": True,
            "remote_updated_at": record.remote_updated_at,
            "updated_at": datetime.utcnow(),
        }
        # Never blank out identity columns the PRM did not send
        if record.crm_key:
            values["crm_id"] = record.crm_id
            values["crm_key"] = record.crm_key
        if record.prm_account_id:
            values["prm_account_id"] = record.prm_account_id
        return values

    async def sync(self, since: Optional[datetime]):
        await self.load_lookup()
        filter_expr = updated_since_filter(since) if since is not None else None
        filtered = 0
        deactivated = 0

        async for batch in self.prm.iter_pages("Account", ACCOUNT_FIELDS, filter_expr=filter_expr):
            for account in batch.items:
                record = self.normalize(self.normalizer.partner, account)
                if record is None:
                    continue
                self.observe_cursor(record.remote_updated_at)
                if not self.is_newer(record.remote_updated_at, since):
                    continue

                partner_id = self.match(record)
                if not accept_partner(record):
                    filtered += 1
                    if partner_id is not None and await self.deactivate(partner_id):
                        deactivated += 1
                    continue

                self.processed += 1
                await self.write(record, partner_id)

            await self.report_progress(batch.total)
            await self.pause_between_batches()

        self.details["filtered"] = filtered
        self.details["deactivated"] = deactivated

    async def write(self, record: PartnerRecord, partner_id: Optional[int]):
        if self.dry_run:
            if partner_id is None:
                self.created += 1
            else:
                self.updated += 1
            return

        result = LoadResult()
        values = self.values(record)
        if partner_id is not None:
            stmt = update(Partner).where(Partner.id == partner_id).values(**values)
            if await self.loader.write_row(stmt, record.name, Partner.__tablename__, result) is not None:
                result.updated += 1
        else:
            stmt = insert(Partner).values(**values).returning(Partner.id)
            outcome = await self.loader.write_row(stmt, record.name, Partner.__tablename__, result)
            if outcome is not None:
                result.created += 1
                self.remember(outcome.scalar_one(), record.crm_key, record.prm_account_id, record.name)
        if result.rejected:
            self.hold_cursor(record.remote_updated_at)
        self.apply(result)

    async def deactivate(self, partner_id: int) -> bool:
        if self.dry_run:
            return True
        result = await self.db.execute(
            update(Partner)
            .where(Partner.id == partner_id, Partner.is_active.is_(True))
            .values(is_active=False, updated_at=datetime.utcnow())
        )
        await self.db.commit()
        return result.rowcount == 1
