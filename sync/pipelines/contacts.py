"""
PRM users → contacts
"""

from typing import Dict, Optional
from datetime import datetime
from sqlalchemy import select
from core.exceptions import ForeignKeySkip
from models.base import EntityType
from models.partner import Contact, Partner
from schemas.normalized import ContactRecord
from sync.fetchers.prm_client import updated_since_filter
from sync.identity import link_contacts_to_lms_users
from sync.pipelines.base import SyncPipeline
from sync.transformers.filters import accept_contact

USER_FIELDS = [
    "Id",
    "Email",
    "FirstName",
    "LastName",
    "Title",
    "Phone",
    "AccountId",
    "AccountName",
    "IsActive",
    "Contact_Status__cf",
    "Updated",
]

# lms_user_id is owned by the email linker
UPDATE_FIELDS = [
    "prm_user_id",
    "first_name",
    "last_name",
    "title",
    "phone",
    "is_active",
    "partner_id",
    "remote_updated_at",
    "updated_at",
]


class ContactsPipeline(SyncPipeline):
    """
    Mirror PRM users onto contacts of known partners.

    Users whose account is not a local partner are counted as foreign-key
    skips. Contacts are keyed by lowercased email.
    """

    entity_type = EntityType.CONTACTS

    async def load_partners(self):
        result = await self.db.execute(select(Partner.id, Partner.prm_account_id, Partner.name))
        self.by_account: Dict[str, int] = {}
        self.by_name: Dict[str, int] = {}
        for partner_id, prm_account_id, name in result.all():
            if prm_account_id:
                self.by_account[prm_account_id] = partner_id
            self.by_name.setdefault(name.lower(), partner_id)

    def resolve_partner(self, record: ContactRecord) -> int:
        if record.prm_account_id and record.prm_account_id in self.by_account:
            return self.by_account[record.prm_account_id]
        if record.account_name and record.account_name.lower() in self.by_name:
            return self.by_name[record.account_name.lower()]
        raise ForeignKeySkip(
            f"No local partner for contact {record.email}",
            context={"table_name": Contact.__tablename__, "record_id": record.email},
        )

    async def sync(self, since: Optional[datetime]):
        await self.load_partners()
        filter_expr = updated_since_filter(since) if since is not None else None
        filtered = 0

        async for batch in self.prm.iter_pages("User", USER_FIELDS, filter_expr=filter_expr):
            now = datetime.utcnow()
            rows = {}
            for user in batch.items:
                record = self.normalize(self.normalizer.contact, user)
                if record is None:
                    continue
                self.observe_cursor(record.remote_updated_at)
                if not self.is_newer(record.remote_updated_at, since):
                    continue
                if not accept_contact(record):
                    filtered += 1
                    continue

                self.processed += 1
                try:
                    partner_id = self.resolve_partner(record)
                except ForeignKeySkip:
                    self.skipped_fk += 1
                    self.hold_cursor(record.remote_updated_at)
                    continue

                # Last occurrence of an email within a page wins
                rows[record.email] = {
                    "prm_user_id": record.prm_user_id,
                    "email": record.email,
                    "first_name": record.first_name,
                    "last_name": record.last_name,
                    "title": record.title,
                    "phone": record.phone,
                    "is_active": record.is_active,
                    "partner_id": partner_id,
                    "remote_updated_at": record.remote_updated_at,
                    "updated_at": now,
                }

            await self.upsert(Contact, list(rows.values()), "email", UPDATE_FIELDS)
            await self.report_progress(batch.total)
            await self.pause_between_batches()

        self.details["filtered"] = filtered
        if not self.dry_run:
            self.details["lms_users_linked"] = await link_contacts_to_lms_users(self.db)
