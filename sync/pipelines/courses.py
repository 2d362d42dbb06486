"""
LMS catalog → lms_courses
"""

from typing import Optional
from datetime import datetime
from models.base import EntityType
from models.lms import Course
from sync.fetchers.lms_client import COURSES_PATH
from sync.pipelines.base import SyncPipeline

# credit_value and is_certification belong to the course-properties pipeline
UPDATE_FIELDS = ["name", "status", "category", "remote_updated_at", "synced_at"]


class CoursesPipeline(SyncPipeline):
    entity_type = EntityType.COURSES

    async def sync(self, since: Optional[datetime]):
        async for batch in self.lms.iter_pages(COURSES_PATH, since=since):
            now = datetime.utcnow()
            rows = []
            for item in batch.items:
                record = self.normalize(self.normalizer.course, item)
                if record is None:
                    continue
                self.observe_cursor(record.remote_updated_at)
                if not self.is_newer(record.remote_updated_at, since):
                    continue

                self.processed += 1
                row = record.dict()
                row["synced_at"] = now
                rows.append(row)

            await self.upsert(Course, rows, "id", UPDATE_FIELDS)
            await self.report_progress(batch.total)
            await self.pause_between_batches()
