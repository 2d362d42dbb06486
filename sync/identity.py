"""
Cross-system identity resolution.

CRM account ids arrive as 15-character case-sensitive ids or as their
18-character case-insensitive variants. Both forms collapse onto the
same canonical key: the first 15 characters. All matching between the
PRM, the local partners table and CRM-keyed lookups goes through that key.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple
from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession
from models.partner import Partner, Contact
from models.lms import LmsUser, LmsGroup
from models.base import UserStatus
import logging

logger = logging.getLogger(__name__)

CANONICAL_KEY_LENGTH = 15
EXTENDED_KEY_LENGTH = 18


def canonical_crm_key(crm_id: Optional[str]) -> Optional[str]:
    """
    Map a CRM identifier to its canonical 15-character key.
    
    18-character ids are truncated to their 15-character prefix; any
    other value is returned stripped. canonical_crm_key(canonical_crm_key(x))
    always equals canonical_crm_key(x).
    """
    if crm_id is None:
        return None
    
    value = str(crm_id).strip()
    if not value:
        return None
    
    if len(value) == EXTENDED_KEY_LENGTH:
        return value[:CANONICAL_KEY_LENGTH]
    return value


CHECKSUM_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ012345"


def extend_crm_id(crm_id: Optional[str]) -> Optional[str]:
    """
    Return the 18-character form of a 15-character CRM id.
    
    Each 5-character chunk contributes one suffix character whose index
    is the bitmask of the uppercase letters in that chunk. Values that
    are not 15 characters long are returned canonicalized but unextended.
    """
    key = canonical_crm_key(crm_id)
    if key is None or len(key) != CANONICAL_KEY_LENGTH:
        return key
    
    suffix = ""
    for start in range(0, CANONICAL_KEY_LENGTH, 5):
        chunk = key[start:start + 5]
        bits = 0
        for position, char in enumerate(chunk):
            if "A" <= char <= "Z":
                bits |= 1 << position
        suffix += CHECKSUM_ALPHABET[bits]
    return key + suffix


def prm_field(record: Dict[str, Any], name: str, default: Any = None) -> Any:
    """
    Read a PRM object field.
    
    The PRM echoes requested fields in camelCase ("crmId" for "CrmId"),
    so both spellings are accepted.
    """
    if name in record:
        return record[name]
    camel = name[:1].lower() + name[1:]
    return record.get(camel, default)


class CrmIdentityIndex:
    """
    Canonical CRM key → PRM account record.
    
    Built once per reconciliation pass. Lookups are exact on the
    canonical key; there is no name-based fallback.
    """
    
    def __init__(self):
        self._by_key: Dict[str, Dict[str, Any]] = {}
        self.duplicates: List[str] = []
    
    def __len__(self) -> int:
        return len(self._by_key)
    
    def __contains__(self, crm_id: str) -> bool:
        return self.resolve(crm_id) is not None
    
    def add(self, account: Dict[str, Any]) -> Optional[str]:
        key = canonical_crm_key(prm_field(account, "CrmId"))
        if key is None:
            return None
        
        if key in self._by_key:
            # First record wins so resolution does not depend on later pages
            self.duplicates.append(key)
            logger.warning(f"Duplicate canonical CRM key {key} in PRM accounts, keeping first")
            return key
        
        self._by_key[key] = account
        return key
    
    @classmethod
    def build(cls, accounts: Iterable[Dict[str, Any]]) -> "CrmIdentityIndex":
        index = cls()
        for account in accounts:
            index.add(account)
        logger.info(f"Built CRM identity index with {len(index)} keys")
        return index
    
    @classmethod
    async def from_prm(
        cls,
        client,
        fields: Optional[List[str]] = None,
        filter_expr: Optional[str] = None,
    ) -> "CrmIdentityIndex":
        """Scan the PRM Account collection (optionally filtered) into a fresh index."""
        index = cls()
        async for batch in client.iter_pages(
            "Account", fields or ["Id", "Name", "CrmId"], filter_expr=filter_expr
        ):
            for account in batch.items:
                index.add(account)
        logger.info(f"Built CRM identity index with {len(index)} keys from PRM")
        return index
    
    def resolve(self, crm_id: Optional[str]) -> Optional[Dict[str, Any]]:
        key = canonical_crm_key(crm_id)
        if key is None:
            return None
        return self._by_key.get(key)
    
    def resolve_many(
        self, crm_ids: Iterable[str]
    ) -> Tuple[Dict[str, Dict[str, Any]], List[str]]:
        """Return (crm_id → account, crm_ids with no match)."""
        found: Dict[str, Dict[str, Any]] = {}
        not_found: List[str] = []
        for crm_id in crm_ids:
            account = self.resolve(crm_id)
            if account is None:
                not_found.append(crm_id)
            else:
                found[crm_id] = account
        return found, not_found


# ============================================================================
# Store-side linkage
# ============================================================================

async def find_partner_by_crm_id(session: AsyncSession, crm_id: Optional[str]) -> Optional[Partner]:
    key = canonical_crm_key(crm_id)
    if key is None:
        return None
    result = await session.execute(select(Partner).where(Partner.crm_key == key))
    return result.scalar_one_or_none()


async def link_contacts_to_lms_users(session: AsyncSession) -> int:
    """
    Set contacts.lms_user_id by case-insensitive email match.
    
    Only unlinked contacts are touched and deleted LMS users are ignored.
    Returns the number of contacts linked.
    """
    rows = await session.execute(
        select(Contact.id, LmsUser.id)
        .join(LmsUser, func.lower(LmsUser.email) == func.lower(Contact.email))
        .where(
            and_(
                Contact.lms_user_id.is_(None),
                LmsUser.status != UserStatus.DELETED,
            )
        )
    )
    
    linked = 0
    seen = set()
    for contact_id, lms_user_id in rows.all():
        if contact_id in seen:
            continue
        seen.add(contact_id)
        await session.execute(
            update(Contact).where(Contact.id == contact_id).values(lms_user_id=lms_user_id)
        )
        linked += 1
    
    await session.commit()
    if linked:
        logger.info(f"Linked {linked} contacts to LMS users by email")
    return linked


def strip_group_prefix(name: str) -> str:
    if name.lower().startswith("ptr_"):
        return name[4:]
    return name


async def link_groups_to_partners(session: AsyncSession) -> int:
    """
    Link unlinked LMS groups to partners by name.
    
    The group name, with any ptr_ prefix removed, must equal the partner
    name case-insensitively. Returns the number of groups linked.
    """
    partners = await session.execute(select(Partner.id, Partner.name))
    partner_by_name = {name.lower(): pid for pid, name in partners.all()}
    
    groups = await session.execute(
        select(LmsGroup).where(LmsGroup.partner_id.is_(None))
    )
    
    linked = 0
    for group in groups.scalars().all():
        partner_id = partner_by_name.get(group.name.lower()) or partner_by_name.get(
            strip_group_prefix(group.name).lower()
        )
        if partner_id:
            group.partner_id = partner_id
            linked += 1
    
    await session.commit()
    if linked:
        logger.info(f"Linked {linked} LMS groups to partners by name")
    return linked
