"""
Push partner certification rollups back to PRM accounts
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
from sqlalchemy import select
from core.config import settings
from core.exceptions import FetchError
from models.base import EntityType, SyncMode
from models.cache import PartnerCreditCache
from models.partner import Partner
from sync.aggregation import certifications_by_category
from sync.fetchers.prm_client import field_equals_any
from sync.identity import CrmIdentityIndex, canonical_crm_key, extend_crm_id, prm_field
from sync.pipelines.base import SyncPipeline
import logging

logger = logging.getLogger(__name__)

CATEGORY_FIELDS = {
    "nintex_ce": "Nintex_CE_Certifications__cf",
    "nintex_k2": "Nintex_K2_Certifications__cf",
    "nintex_salesforce": "Nintex_for_Salesforce_Certifications__cf",
    "go_to_market": "Nintex_GTM_Certifications__cf",
}
TOTAL_CREDITS_FIELD = "Total_NPCU__cf"
LMS_ACCOUNT_FIELD = "LMS_Account_ID__cf"
PREVIEW_LIMIT = 20


def build_payload(account_id: Any, partner_id: int, active_credits: int, categories: Dict[str, int]) -> Dict[str, Any]:
    payload = {
        "Id": account_id,
        TOTAL_CREDITS_FIELD: active_credits,
        LMS_ACCOUNT_FIELD: str(partner_id),
    }
    for category, field in CATEGORY_FIELDS.items():
        payload[field] = categories.get(category, 0)
    return payload


class PartnerPushPipeline(SyncPipeline):
    """
    Write cached credit totals and per-category certification counts to
    the PRM account of every active partner with a CRM id.

    Accounts are resolved through a canonical CRM key index. Full passes
    scan the whole PRM account collection; incremental passes look up
    only the local partners' ids, in batches. Partners with no matching
    account are listed in the run details, never matched by name.
    """

    entity_type = EntityType.PARTNER_PUSH
    supports_incremental = False

    def __init__(self, *args, batch_size: Optional[int] = None, lookup_batch_size: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.batch_size = batch_size or settings.PRM_PUSH_BATCH_SIZE
        self.lookup_batch_size = lookup_batch_size or settings.PRM_LOOKUP_BATCH_SIZE

    async def build_index(self, crm_ids: List[str]) -> CrmIdentityIndex:
        if self.mode == SyncMode.FULL:
            return await CrmIdentityIndex.from_prm(self.prm, fields=["Id", "Name", "CrmId"])

        index = CrmIdentityIndex()
        for i in range(0, len(crm_ids), self.lookup_batch_size):
            chunk = crm_ids[i:i + self.lookup_batch_size]
            # The PRM may store either id form
            candidates = []
            for crm_id in chunk:
                for form in (crm_id, canonical_crm_key(crm_id), extend_crm_id(crm_id)):
                    if form and form not in candidates:
                        candidates.append(form)
            async for batch in self.prm.iter_pages(
                "Account", ["Id", "Name", "CrmId"], filter_expr=field_equals_any("CrmId", candidates)
            ):
                for account in batch.items:
                    index.add(account)
        return index

    async def sync(self, since: Optional[datetime]):
        result = await self.db.execute(
            select(Partner.id, Partner.name, Partner.crm_id, PartnerCreditCache.active_credits)
            .outerjoin(PartnerCreditCache, PartnerCreditCache.partner_id == Partner.id)
            .where(Partner.is_active.is_(True), Partner.crm_id.isnot(None))
            .order_by(Partner.id)
        )
        partners = result.all()
        self.total = len(partners)

        categories = await certifications_by_category(self.db)
        index = await self.build_index([p.crm_id for p in partners])

        payloads: List[Dict[str, Any]] = []
        not_found: List[Dict[str, Any]] = []
        for partner in partners:
            account = index.resolve(partner.crm_id)
            if account is None:
                not_found.append({"partner_id": partner.id, "name": partner.name, "crm_id": partner.crm_id})
                continue
            payloads.append(
                build_payload(
                    prm_field(account, "Id"),
                    partner.id,
                    partner.active_credits or 0,
                    categories.get(partner.id, {}),
                )
            )

        self.processed = len(partners)
        self.details["not_found_count"] = len(not_found)
        if not_found:
            self.details["not_found"] = not_found
            logger.warning(f"{len(not_found)} partners have no PRM account for their CRM id")

        if self.dry_run:
            self.details["would_update"] = len(payloads)
            self.details["preview"] = payloads[:PREVIEW_LIMIT]
            return

        for i in range(0, len(payloads), self.batch_size):
            chunk = payloads[i:i + self.batch_size]
            try:
                results = await self.prm.patch("Account", chunk)
            except FetchError as e:
                self.failed += len(chunk)
                self.errors.append({"batch": i // self.batch_size, "error": e.message[:300]})
                logger.error(f"PRM update batch {i // self.batch_size} failed: {e.message}")
                continue

            for payload, outcome in zip(chunk, results):
                if outcome.get("success", True):
                    self.updated += 1
                else:
                    self.failed += 1
                    self.errors.append({"key": str(payload["Id"]), "error": str(outcome)[:300]})

            # Records the PRM returned no result for were not confirmed
            unanswered = chunk[len(results):]
            if unanswered:
                self.failed += len(unanswered)
                for payload in unanswered:
                    self.errors.append({"key": str(payload["Id"]), "error": "No result returned by PRM"})
                logger.warning(
                    f"PRM update batch {i // self.batch_size} returned {len(results)} results "
                    f"for {len(chunk)} records"
                )

            await self.report_progress(processed=min(i + self.batch_size, len(payloads)))
            await self.pause_between_batches()
