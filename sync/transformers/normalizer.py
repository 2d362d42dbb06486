"""
Transform remote LMS and PRM payloads into validated record schemas
"""

from typing import Dict, Any, Optional, List, Tuple
from datetime import datetime, timezone
from schemas.normalized import (
    PartnerRecord,
    ContactRecord,
    LmsUserRecord,
    GroupRecord,
    CourseRecord,
    CoursePropertyRecord,
    EnrollmentRecord,
    LeadRecord,
)
from core.exceptions import DataFormatError
from sync.identity import canonical_crm_key, prm_field
import logging

logger = logging.getLogger(__name__)

# (category, pattern, priority); higher priority rules are tried first
CATEGORY_RULES: List[Tuple[str, str, int]] = [
    ("nintex_k2", "K2", 100),
    ("nintex_k2", "Automation K2", 100),
    ("nintex_salesforce", "Salesforce", 90),
    ("nintex_salesforce", "DocGen for Salesforce", 90),
    ("go_to_market", "Go to Market", 80),
    ("go_to_market", "GTM", 80),
    ("go_to_market", "Sales Professional", 80),
    ("go_to_market", "Sales Enablement", 80),
    ("nintex_ce", "Automation Cloud", 50),
    ("nintex_ce", "Process Manager", 50),
    ("nintex_ce", "Promapp", 50),
    ("nintex_ce", "RPA", 50),
    ("nintex_ce", "eSign", 50),
    ("nintex_ce", "Apps", 50),
]


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp into a naive UTC datetime.
    
    The store keeps naive UTC everywhere; offsets are normalized away.
    Unparseable values yield None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def categorize_course(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    lowered = name.lower()
    for category, pattern, _priority in sorted(CATEGORY_RULES, key=lambda r: -r[2]):
        if pattern.lower() in lowered:
            return category
    return None


def _attributes(item: Dict[str, Any]) -> Dict[str, Any]:
    """LMS items are JSON:API resources; flat dicts are accepted as-is."""
    if not isinstance(item, dict):
        raise DataFormatError(
            f"Expected an object, got {type(item).__name__}",
            context={"item": str(item)[:100]},
        )
    attrs = item.get("attributes")
    return attrs if isinstance(attrs, dict) else item


def is_course_transcript(item: Dict[str, Any]) -> bool:
    return _attributes(item).get("resource_type") == "course"


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class RecordNormalizer:
    """
    Normalize remote payloads into record schemas.
    
    Handles:
    - JSON:API attribute unwrapping (LMS)
    - camelCase field echoing (PRM)
    - Timestamp parsing to naive UTC
    - Discarding records the store never keeps (returns None)
    """
    
    # ------------------------------------------------------------------
    # PRM
    # ------------------------------------------------------------------
    
    def partner(self, account: Dict[str, Any]) -> PartnerRecord:
        crm_id = _text(prm_field(account, "CrmId"))
        return PartnerRecord(
            prm_account_id=_text(prm_field(account, "Id")),
            crm_id=crm_id,
            crm_key=canonical_crm_key(crm_id),
            name=prm_field(account, "Name") or "",
            tier=_text(prm_field(account, "Partner_Tier__cf")),
            account_status=_text(prm_field(account, "Account_Status__cf")),
            region=_text(prm_field(account, "Region")) or _text(prm_field(account, "MailingCountry")),
            country=_text(prm_field(account, "MailingCountry")),
            owner_name=_text(prm_field(account, "Account_Owner__cf")),
            owner_email=_text(prm_field(account, "Account_Owner_Email__cf")),
            partner_type=_text(prm_field(account, "Partner_Type__cf")),
            website=_text(prm_field(account, "Website")),
            remote_updated_at=parse_datetime(prm_field(account, "Updated")),
        )
    
    def contact(self, user: Dict[str, Any]) -> ContactRecord:
        account_id = prm_field(user, "AccountId")
        if account_id is None and isinstance(prm_field(user, "Account"), dict):
            account_id = prm_field(user, "Account").get("id")
        is_active = prm_field(user, "IsActive")
        return ContactRecord(
            prm_user_id=_text(prm_field(user, "Id")),
            email=prm_field(user, "Email") or "",
            first_name=_text(prm_field(user, "FirstName")),
            last_name=_text(prm_field(user, "LastName")),
            title=_text(prm_field(user, "Title")),
            phone=_text(prm_field(user, "Phone")),
            account_name=_text(prm_field(user, "AccountName")),
            prm_account_id=_text(account_id),
            contact_status=_text(prm_field(user, "Contact_Status__cf")),
            is_active=True if is_active is None else bool(is_active),
            remote_updated_at=parse_datetime(prm_field(user, "Updated")),
        )
    
    def lead(self, lead: Dict[str, Any]) -> LeadRecord:
        return LeadRecord(
            id=str(prm_field(lead, "Id", "")),
            first_name=_text(prm_field(lead, "FirstName")),
            last_name=_text(prm_field(lead, "LastName")),
            email=prm_field(lead, "Email"),
            company_name=_text(prm_field(lead, "CompanyName")),
            status=_text(prm_field(lead, "Status")),
            source=_text(prm_field(lead, "Source")),
            prm_account_id=_text(prm_field(lead, "PartnerAccountId")),
            lead_created_at=parse_datetime(prm_field(lead, "Created")),
            remote_updated_at=parse_datetime(prm_field(lead, "Updated")),
        )
    
    # ------------------------------------------------------------------
    # LMS
    # ------------------------------------------------------------------
    
    def lms_user(self, item: Dict[str, Any]) -> LmsUserRecord:
        attrs = _attributes(item)
        return LmsUserRecord(
            id=str(item.get("id", "")),
            email=attrs.get("email"),
            first_name=_text(attrs.get("first_name")),
            last_name=_text(attrs.get("last_name")),
            last_active_at=parse_datetime(attrs.get("last_active_at")),
            deactivated_at=parse_datetime(attrs.get("deactivated_at")),
            remote_created_at=parse_datetime(attrs.get("created_at")),
            remote_updated_at=parse_datetime(attrs.get("updated_at")),
        )
    
    def group(self, item: Dict[str, Any]) -> GroupRecord:
        attrs = _attributes(item)
        return GroupRecord(
            id=str(item.get("id", "")),
            name=(attrs.get("name") or "").strip(),
            description=attrs.get("description"),
            user_count=attrs.get("user_count"),
            remote_updated_at=parse_datetime(attrs.get("updated_at")),
        )
    
    def course(self, item: Dict[str, Any]) -> CourseRecord:
        attrs = _attributes(item)
        name = (attrs.get("name") or attrs.get("title") or "").strip()
        return CourseRecord(
            id=str(item.get("id", "")),
            name=name,
            status=attrs.get("status") or "active",
            category=categorize_course(name),
            remote_updated_at=parse_datetime(attrs.get("updated_at")),
        )
    
    def course_property(self, item: Dict[str, Any]) -> CoursePropertyRecord:
        attrs = _attributes(item)
        properties = attrs.get("properties") or {}
        return CoursePropertyRecord(
            course_id=str(item.get("id", "")),
            name=properties.get("name"),
            credit_value=properties.get("npcu"),
        )
    
    def enrollment(self, item: Dict[str, Any], user_id: Optional[str] = None) -> Optional[EnrollmentRecord]:
        """
        Normalize a transcript entry.
        
        Returns None for every resource type other than "course".
        """
        if not is_course_transcript(item):
            return None
        
        attrs = _attributes(item)
        progress = attrs.get("progress_percent", attrs.get("progress"))
        return EnrollmentRecord(
            id=str(item.get("id", "")),
            user_id=str(user_id or attrs.get("user_id") or attrs.get("person_id") or ""),
            course_id=str(attrs.get("resource_id") or ""),
            status=attrs.get("progress_status") or "enrolled",
            progress_percent=progress,
            score=attrs.get("score"),
            enrolled_at=parse_datetime(attrs.get("enrolled_at")),
            started_at=parse_datetime(attrs.get("started_at")),
            completed_at=parse_datetime(attrs.get("completed_at")),
            expires_at=parse_datetime(attrs.get("expires_at")),
        )
