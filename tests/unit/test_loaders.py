"""
Unit tests for the store loader
"""

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from models.lms import Course, Enrollment, LmsUser
from sync.loaders.store import StoreLoader, LoadResult, is_foreign_key_violation


def course_row(course_id, name="Course", credit_value=0):
    return {"id": course_id, "name": name, "credit_value": credit_value}


class TestForeignKeyDetection:

    def test_sqlite_message(self):
        error = IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))
        assert is_foreign_key_violation(error)

    def test_postgres_message(self):
        error = IntegrityError("INSERT", {}, Exception('insert or update on table "x" violates foreign key constraint'))
        assert is_foreign_key_violation(error)

    def test_unique_violation_is_not_foreign_key(self):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: lms_courses.id"))
        assert not is_foreign_key_violation(error)


class TestStoreLoader:
    """Test idempotent upserts against the test database"""

    @pytest.mark.asyncio
    async def test_insert_then_update(self, db_session):
        loader = StoreLoader(db_session)

        first = await loader.upsert(Course, [course_row("c1"), course_row("c2")], "id", ["name"])
        second = await loader.upsert(Course, [course_row("c1", name="Renamed")], "id", ["name"])

        assert (first.created, first.updated) == (2, 0)
        assert (second.created, second.updated) == (0, 1)

        course = await db_session.get(Course, "c1")
        await db_session.refresh(course)
        assert course.name == "Renamed"

    @pytest.mark.asyncio
    async def test_identical_row_counted_unchanged(self, db_session):
        loader = StoreLoader(db_session)
        await loader.upsert(Course, [course_row("c1", credit_value=2)], "id", ["name", "credit_value", "synced_at"])

        again = await loader.upsert(
            Course,
            [course_row("c1", credit_value=2), course_row("c1", credit_value=3)],
            "id",
            ["name", "credit_value", "synced_at"],
        )

        assert (again.created, again.updated, again.unchanged) == (0, 1, 1)

    @pytest.mark.asyncio
    async def test_repeated_upsert_keeps_one_row(self, db_session):
        loader = StoreLoader(db_session)

        for _ in range(3):
            await loader.upsert(Course, [course_row("c1")], "id", ["name"])

        count = await db_session.scalar(select(func.count()).select_from(Course))
        assert count == 1

    @pytest.mark.asyncio
    async def test_only_listed_fields_updated(self, db_session):
        loader = StoreLoader(db_session)
        await loader.upsert(Course, [course_row("c1", credit_value=2)], "id", ["name"])

        await loader.upsert(Course, [course_row("c1", name="New", credit_value=0)], "id", ["name"])

        credit = await db_session.scalar(select(Course.credit_value).where(Course.id == "c1"))
        assert credit == 2

    @pytest.mark.asyncio
    async def test_missing_reference_skipped(self, db_session):
        """A row pointing at an unknown user is skipped; the batch continues"""
        loader = StoreLoader(db_session)
        await loader.upsert(Course, [course_row("c1")], "id", ["name"])
        await loader.upsert(LmsUser, [{"id": "u1", "email": "u1@example.com"}], "id", ["email"])

        result = await loader.upsert(
            Enrollment,
            [
                {"id": "t1", "user_id": "missing", "course_id": "c1"},
                {"id": "t2", "user_id": "u1", "course_id": "c1"},
            ],
            "id",
            ["progress_percent"],
        )

        assert result.skipped_fk == 1
        assert result.created == 1
        assert result.failed == 0
        assert result.rejected == ["t1"]
        count = await db_session.scalar(select(func.count()).select_from(Enrollment))
        assert count == 1

    @pytest.mark.asyncio
    async def test_other_integrity_error_counted_failed(self, db_session):
        loader = StoreLoader(db_session)

        result = await loader.upsert(
            Course, [{"id": "c1", "name": None}, course_row("c2")], "id", ["name"]
        )

        assert result.failed == 1
        assert result.created == 1
        assert result.errors[0]["key"] == "c1"
        assert result.rejected == ["c1"]

    @pytest.mark.asyncio
    async def test_empty_rows(self, db_session):
        result = await StoreLoader(db_session).upsert(Course, [], "id", ["name"])
        assert (result.created, result.updated, result.failed) == (0, 0, 0)


class TestLoadResult:

    def test_merge(self):
        a = LoadResult()
        a.created, a.skipped_fk = 2, 1
        b = LoadResult()
        b.updated, b.failed = 3, 1
        b.errors.append({"key": "x"})

        merged = a.merge(b)

        assert (merged.created, merged.updated, merged.skipped_fk, merged.failed) == (2, 3, 1, 1)
        assert merged.errors == [{"key": "x"}]
