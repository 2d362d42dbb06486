"""
Idempotent per-row upserts into the relational store
"""

from typing import Any, Dict, Iterable, List, Optional, Set
from sqlalchemy import select, Result
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.dialects import postgresql, sqlite
from core.exceptions import DatabaseError
import logging

logger = logging.getLogger(__name__)

FOREIGN_KEY_MARKERS = ("foreign key", "foreignkeyviolation", "violates foreign key")

# Bookkeeping timestamps; a row whose other columns match is unchanged
UNCOMPARED_FIELDS = {"synced_at", "updated_at"}


def is_foreign_key_violation(error: IntegrityError) -> bool:
    message = f"{type(error.orig).__name__} {error.orig}".lower()
    return any(marker in message for marker in FOREIGN_KEY_MARKERS)


def dialect_insert(session: AsyncSession, model):
    """INSERT construct with ON CONFLICT support for the bound dialect."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise DatabaseError(
        f"Upsert is not supported on dialect {dialect}",
        context={"operation": "UPSERT", "table_name": model.__tablename__}
    )


class LoadResult:
    """Per-batch write counters"""
    
    def __init__(self):
        self.created = 0
        self.updated = 0
        self.unchanged = 0
        self.skipped_fk = 0
        self.failed = 0
        self.errors: List[Dict[str, Any]] = []
        # Keys of rows the store did not accept (skipped or failed)
        self.rejected: List[Any] = []
    
    def merge(self, other: "LoadResult") -> "LoadResult":
        self.created += other.created
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.skipped_fk += other.skipped_fk
        self.failed += other.failed
        self.errors.extend(other.errors)
        self.rejected.extend(other.rejected)
        return self


class StoreLoader:
    """
    Load records into the store with idempotent upsert operations.
    
    Ensures:
    - No duplicate rows on repeated runs (INSERT ... ON CONFLICT UPDATE)
    - Only the listed mutable columns change on conflict
    - An existing row counts as updated only when a compared column
      actually changes value
    - Each row is its own transaction; a referential failure skips the
      row and the batch continues
    """
    
    def __init__(self, db_session: AsyncSession):
        self.db = db_session
    
    async def existing_keys(self, model, key: str, values: Iterable[Any]) -> Set[Any]:
        return set(await self.existing_values(model, key, values, []))
    
    async def existing_values(
        self, model, key: str, values: Iterable[Any], fields: List[str]
    ) -> Dict[Any, Dict[str, Any]]:
        """Current values of fields for every stored row whose key is in values."""
        values = [v for v in values if v is not None]
        if not values:
            return {}
        column = getattr(model, key)
        columns = [column] + [getattr(model, f) for f in fields]
        found: Dict[Any, Dict[str, Any]] = {}
        # Chunked to stay under bind-parameter limits
        for i in range(0, len(values), 500):
            result = await self.db.execute(select(*columns).where(column.in_(values[i:i + 500])))
            for row in result.all():
                found[row[0]] = dict(zip(fields, row[1:]))
        return found
    
    @staticmethod
    def compared_fields(update_fields: List[str]) -> List[str]:
        return [f for f in update_fields if f not in UNCOMPARED_FIELDS]
    
    @staticmethod
    def has_changes(current: Dict[str, Any], row: Dict[str, Any]) -> bool:
        return any(field in row and row[field] != value for field, value in current.items())
    
    @classmethod
    def count_outcome(cls, existing: Dict[Any, Dict[str, Any]], row: Dict[str, Any], key: str, fields: List[str], result: LoadResult):
        """Classify one accepted row and remember its new values for later rows of the batch."""
        current = existing.get(row[key])
        if current is None:
            result.created += 1
            existing[row[key]] = {f: row.get(f) for f in fields}
        elif cls.has_changes(current, row):
            result.updated += 1
            current.update({f: row[f] for f in fields if f in row})
        else:
            result.unchanged += 1
    
    async def classify(self, model, rows: List[Dict[str, Any]], key: str, update_fields: List[str]) -> LoadResult:
        """Count what upsert() would do without writing anything."""
        result = LoadResult()
        fields = self.compared_fields(update_fields)
        existing = await self.existing_values(model, key, [row[key] for row in rows], fields)
        for row in rows:
            self.count_outcome(existing, row, key, fields, result)
        return result
    
    async def write_row(self, stmt, record_key: Any, table_name: str, result: LoadResult) -> Optional[Result]:
        """
        Execute and commit one statement.
        
        Returns the (buffered) result, or None when the row was skipped; an IntegrityError caused by
        a missing referenced row is counted in result.skipped_fk, anything
        else the store rejects in result.failed. Either way the key is
        added to result.rejected.
        """
        try:
            outcome = await self.db.execute(stmt)
            await self.db.commit()
            return outcome
        
        except IntegrityError as e:
            await self.db.rollback()
            result.rejected.append(record_key)
            if is_foreign_key_violation(e):
                result.skipped_fk += 1
                logger.debug(f"Foreign key skip for {table_name} {record_key}")
            else:
                result.failed += 1
                result.errors.append({"key": str(record_key), "error": str(e.orig)[:300]})
                logger.warning(f"Integrity error upserting {table_name} {record_key}: {e.orig}")
            return None
        
        except SQLAlchemyError as e:
            await self.db.rollback()
            result.rejected.append(record_key)
            result.failed += 1
            result.errors.append({"key": str(record_key), "error": str(e)[:300]})
            logger.error(f"Failed to upsert {table_name} {record_key}: {str(e)}")
            return None
    
    async def upsert(
        self,
        model,
        rows: List[Dict[str, Any]],
        key: str,
        update_fields: List[str],
    ) -> LoadResult:
        """
        Upsert rows keyed by a single unique column.
        
        Args:
            model: Target ORM model
            rows: Column dicts; every row must contain key
            key: Unique column used as the conflict target
            update_fields: Columns overwritten when the key already exists
        
        Returns:
            LoadResult with created/updated/unchanged/skipped_fk/failed counts
        """
        result = LoadResult()
        if not rows:
            return result
        
        compared = self.compared_fields(update_fields)
        existing = await self.existing_values(model, key, [row[key] for row in rows], compared)
        
        for row in rows:
            stmt = dialect_insert(self.db, model).values(**row)
            fields = [f for f in update_fields if f in row]
            if fields:
                stmt = stmt.on_conflict_do_update(
                    index_elements=[key],
                    set_={f: stmt.excluded[f] for f in fields}
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=[key])
            
            if await self.write_row(stmt, row[key], model.__tablename__, result) is not None:
                self.count_outcome(existing, row, key, compared, result)
        
        logger.debug(
            f"Upserted {model.__tablename__}: created={result.created} updated={result.updated} "
            f"unchanged={result.unchanged} fk_skips={result.skipped_fk} failed={result.failed}"
        )
        return result
