"""
LMS course properties → lms_courses.credit_value
"""

from typing import Optional
from datetime import datetime
from sqlalchemy import update
from models.base import EntityType
from models.lms import Course
from sync.fetchers.lms_client import COURSE_PROPERTIES_PATH
from sync.pipelines.base import SyncPipeline
from sync.transformers.normalizer import categorize_course
from sync.loaders.store import LoadResult
import logging

logger = logging.getLogger(__name__)

ARCHIVED_STATUS = "archived"
CREDIT_FIELDS = ["credit_value", "is_certification"]


class CoursePropertiesPipeline(SyncPipeline):
    """
    Apply per-course credit values.

    Properties for courses the catalog no longer lists still matter for
    historical enrollments: when such a property carries credit, an
    archived course row is created for it. Creditless properties for
    unknown courses are ignored.
    """

    entity_type = EntityType.COURSE_PROPERTIES
    supports_incremental = False

    async def sync(self, since: Optional[datetime]):
        archived = 0
        ignored = 0

        async for batch in self.lms.iter_pages(COURSE_PROPERTIES_PATH):
            records = []
            for item in batch.items:
                record = self.normalize(self.normalizer.course_property, item)
                if record is not None:
                    records.append(record)

            known = await self.loader.existing_values(
                Course, "id", [r.course_id for r in records], CREDIT_FIELDS
            )
            now = datetime.utcnow()
            archive_rows = []

            for record in records:
                self.processed += 1
                if record.course_id in known:
                    credit = {"credit_value": record.credit_value, "is_certification": record.is_certification}
                    if not self.loader.has_changes(known[record.course_id], credit):
                        self.unchanged += 1
                        continue
                    await self.apply_credit(record.course_id, record.credit_value, record.is_certification)
                    known[record.course_id] = credit
                elif record.credit_value > 0:
                    name = record.name or f"Archived course {record.course_id}"
                    archive_rows.append({
                        "id": record.course_id,
                        "name": name,
                        "status": ARCHIVED_STATUS,
                        "category": categorize_course(name),
                        "credit_value": record.credit_value,
                        "is_certification": True,
                        "synced_at": now,
                    })
                else:
                    ignored += 1

            if archive_rows:
                result = await self.upsert(
                    Course, archive_rows, "id", ["credit_value", "is_certification", "synced_at"]
                )
                archived += result.created

            await self.report_progress(batch.total)
            await self.pause_between_batches()

        self.details["archived_courses_created"] = archived
        self.details["ignored_unknown"] = ignored

    async def apply_credit(self, course_id: str, credit_value: int, is_certification: bool):
        if self.dry_run:
            self.updated += 1
            return

        result = LoadResult()
        stmt = (
            update(Course)
            .where(Course.id == course_id)
            .values(credit_value=credit_value, is_certification=is_certification, synced_at=datetime.utcnow())
        )
        if await self.loader.write_row(stmt, course_id, Course.__tablename__, result) is not None:
            result.updated += 1
        self.apply(result)
