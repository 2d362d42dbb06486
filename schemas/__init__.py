"""
Pydantic schemas for data validation and serialization.

Schemas:
    normalized: Validated records produced from LMS and PRM payloads
    sync: Pipeline run summaries
    api: API endpoint request/response schemas

Usage:
    from schemas.normalized import EnrollmentRecord
    from schemas.sync import RunSummary

Example:
    # Progress is derived from status when the LMS sends none
    record = EnrollmentRecord(id="t1", user_id="u1", course_id="c1", status="completed")
    assert record.progress_percent == 100

Validation:
    - Emails are lowercased and must contain "@"
    - Credit values outside 0..2 become 0
    - Unknown enrollment statuses become "enrolled"
"""

__all__ = [
    "PartnerRecord",
    "ContactRecord",
    "LmsUserRecord",
    "GroupRecord",
    "CourseRecord",
    "CoursePropertyRecord",
    "EnrollmentRecord",
    "LeadRecord",
    "RunSummary",
]
