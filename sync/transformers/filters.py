"""
Inclusion rules applied to remote records before they are upserted
"""

from typing import Iterable, Optional
from schemas.normalized import PartnerRecord, ContactRecord, GroupRecord
from core.config import settings

EXCLUDED_ACCOUNT_STATUSES = ("inactive",)
VALID_CONTACT_STATUSES = ("active",)
EXCLUDED_GROUP_TERMS = ("admin", "internal", "test")


def accept_partner(
    record: PartnerRecord,
    valid_tiers: Optional[Iterable[str]] = None,
    excluded_name_terms: Optional[Iterable[str]] = None,
) -> bool:
    """Valid tier, not Inactive, and no excluded term in the name."""
    valid_tiers = valid_tiers if valid_tiers is not None else settings.PARTNER_VALID_TIERS
    excluded_name_terms = (
        excluded_name_terms if excluded_name_terms is not None else settings.PARTNER_EXCLUDED_NAME_TERMS
    )
    
    if (record.account_status or "").lower() in EXCLUDED_ACCOUNT_STATUSES:
        return False
    
    tier = (record.tier or "").lower()
    if not any(t.lower() == tier for t in valid_tiers):
        return False
    
    name = record.name.lower()
    return not any(term.lower() in name for term in excluded_name_terms)


def accept_contact(
    record: ContactRecord,
    excluded_domains: Optional[Iterable[str]] = None,
    excluded_local_parts: Optional[Iterable[str]] = None,
) -> bool:
    """Active, with an email that is neither an excluded domain nor a role mailbox."""
    excluded_domains = excluded_domains if excluded_domains is not None else settings.CONTACT_EXCLUDED_DOMAINS
    excluded_local_parts = (
        excluded_local_parts if excluded_local_parts is not None else settings.CONTACT_EXCLUDED_LOCAL_PARTS
    )
    
    if not record.is_active:
        return False
    if record.contact_status and record.contact_status.lower() not in VALID_CONTACT_STATUSES:
        return False
    
    local_part, _, domain = record.email.partition("@")
    if any(domain == d.lower() for d in excluded_domains):
        return False
    return not any(p.lower() in local_part for p in excluded_local_parts)


def accept_group(record: GroupRecord) -> bool:
    name = record.name.lower()
    if not name or name == "all users":
        return False
    if name == "all partners" or name.startswith("ptr_"):
        return True
    return not any(term in name for term in EXCLUDED_GROUP_TERMS)
