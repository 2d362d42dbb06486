"""
Abstract base class for entity sync pipelines with cursor and run tracking
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timedelta
import asyncio
import inspect
import uuid
from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.exceptions import SyncException, FetchError, TransformationError
from models.base import EntityType, SyncMode, SyncStatus
from models.checkpoint import SyncCheckpoint
from models.sync_run import SyncRun
from schemas.sync import RunSummary
from sync.loaders.store import StoreLoader, LoadResult
from sync.transformers.normalizer import RecordNormalizer, parse_datetime
import logging

logger = logging.getLogger(__name__)

# progress(entity_type, processed_so_far, total_known_so_far); may be async
ProgressCallback = Callable[[EntityType, int, Optional[int]], Any]

# Distance kept below a held row; incremental filters compare strictly
CURSOR_HOLD_MARGIN = timedelta(seconds=1)


class SyncPipeline(ABC):
    """
    Abstract base class for all entity pipelines.
    
    Responsibilities:
    - SyncRun lifecycle (running → completed | failed, exactly once)
    - Cursor management (advanced only after a successful run)
    - Dry-run handling for every write
    - Per-page progress reporting
    
    Subclasses implement sync(since) and use upsert()/count_* to record
    what happened. Nothing raised inside sync() escapes run().
    """
    
    entity_type: EntityType
    supports_incremental = True
    # Row column holding the remote modification time
    cursor_field = "remote_updated_at"
    
    def __init__(
        self,
        db_session: AsyncSession,
        lms=None,
        prm=None,
        progress: Optional[ProgressCallback] = None,
        batch_delay: Optional[float] = None,
    ):
        self.db = db_session
        self.lms = lms
        self.prm = prm
        self.progress = progress
        self.batch_delay = settings.UPSERT_BATCH_DELAY_MS / 1000.0 if batch_delay is None else batch_delay
        self.upsert_batch_size = settings.UPSERT_BATCH_SIZE
        self.loader = StoreLoader(db_session)
        self.normalizer = RecordNormalizer()
        self._reset()
    
    def _reset(self):
        self.mode = SyncMode.INCREMENTAL
        self.dry_run = False
        self.run_pk: Optional[int] = None
        self.run_uuid: Optional[uuid.UUID] = None
        self.processed = 0
        self.created = 0
        self.updated = 0
        self.failed = 0
        self.unchanged = 0
        self.skipped_fk = 0
        self.total: Optional[int] = None
        self.max_cursor: Optional[datetime] = None
        self.cursor_hold: Optional[datetime] = None
        self.details: Dict[str, Any] = {}
        self.errors: List[Dict[str, Any]] = []
    
    @abstractmethod
    async def sync(self, since: Optional[datetime]) -> None:
        """
        Fetch, transform and upsert.
        
        Args:
            since: Previous successful cursor in incremental mode, None in
                full mode or when no cursor exists yet
        """
        pass
    
    # ------------------------------------------------------------------
    # Checkpoint
    # ------------------------------------------------------------------
    
    async def get_checkpoint(self) -> Optional[SyncCheckpoint]:
        result = await self.db.execute(
            select(SyncCheckpoint).where(SyncCheckpoint.entity_type == self.entity_type)
        )
        return result.scalar_one_or_none()
    
    async def save_checkpoint(
        self,
        checkpoint_value: Optional[str],
        status: SyncStatus,
        error_message: Optional[str] = None
    ):
        checkpoint = await self.get_checkpoint()
        now = datetime.utcnow()
        
        if checkpoint is None:
            checkpoint = SyncCheckpoint(
                entity_type=self.entity_type,
                total_runs=0,
                total_records_processed=0
            )
            self.db.add(checkpoint)
        
        checkpoint.checkpoint_value = checkpoint_value
        checkpoint.status = status
        checkpoint.last_run_at = now
        checkpoint.total_runs = (checkpoint.total_runs or 0) + 1
        checkpoint.total_records_processed = (checkpoint.total_records_processed or 0) + self.processed
        checkpoint.last_records_processed = self.processed
        checkpoint.error_message = error_message
        
        if status == SyncStatus.COMPLETED:
            checkpoint.last_success_at = now
        else:
            checkpoint.last_failure_at = now
        
        await self.db.commit()
    
    # ------------------------------------------------------------------
    # Run record
    # ------------------------------------------------------------------
    
    async def start_run(self, checkpoint_before: Optional[str]) -> int:
        run = SyncRun(
            run_id=uuid.uuid4(),
            entity_type=self.entity_type,
            mode=self.mode,
            status=SyncStatus.RUNNING,
            dry_run=self.dry_run,
            started_at=datetime.utcnow(),
            checkpoint_before=checkpoint_before
        )
        self.db.add(run)
        await self.db.commit()
        self.run_pk = run.id
        self.run_uuid = run.run_id
        return self.run_pk
    
    async def complete_run(
        self,
        status: SyncStatus,
        started_at: datetime,
        checkpoint_after: Optional[str] = None,
        error: Optional[Exception] = None
    ) -> bool:
        """
        Move the run to its terminal state.
        
        Only a row still RUNNING is updated, so a run the supervisor has
        already marked stale keeps that status. Returns whether the
        transition happened.
        """
        completed_at = datetime.utcnow()
        error_details = None
        if isinstance(error, SyncException):
            error_details = error.to_dict()
        elif error is not None:
            error_details = {"error_type": type(error).__name__, "message": str(error)}
        
        result = await self.db.execute(
            update(SyncRun)
            .where(SyncRun.id == self.run_pk, SyncRun.status == SyncStatus.RUNNING)
            .values(
                status=status,
                completed_at=completed_at,
                duration_seconds=(completed_at - started_at).total_seconds(),
                records_processed=self.processed,
                records_created=self.created,
                records_updated=self.updated,
                records_failed=self.failed,
                records_skipped=self.skipped_fk,
                checkpoint_after=checkpoint_after,
                error_message=str(error)[:2000] if error is not None else None,
                error_details=error_details,
                details=self.details_payload()
            )
        )
        await self.db.commit()
        return result.rowcount == 1
    
    def details_payload(self) -> Dict[str, Any]:
        payload = dict(self.details)
        if self.skipped_fk:
            payload["foreign_key_skips"] = self.skipped_fk
        if self.unchanged:
            payload["records_unchanged"] = self.unchanged
        if self.errors:
            payload["errors"] = self.errors[:50]
        if self.dry_run:
            payload["dry_run"] = True
        return payload
    
    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------
    
    def observe_cursor(self, value: Optional[datetime]):
        if value is not None and (self.max_cursor is None or value > self.max_cursor):
            self.max_cursor = value
    
    def hold_cursor(self, value: Optional[datetime]):
        """
        Keep the next cursor below a row that was fetched but not stored.
        
        The row is then fetched again by the next incremental run, once
        whatever it references has been synced.
        """
        if value is not None and (self.cursor_hold is None or value < self.cursor_hold):
            self.cursor_hold = value
    
    def next_cursor(self) -> Optional[datetime]:
        cursor = self.max_cursor
        if cursor is not None and self.cursor_hold is not None:
            cursor = min(cursor, self.cursor_hold - CURSOR_HOLD_MARGIN)
        return cursor
    
    @staticmethod
    def is_newer(value: Optional[datetime], since: Optional[datetime]) -> bool:
        """Incremental filter: strictly after the previous cursor."""
        if since is None or value is None:
            return True
        return value > since
    
    def normalize(self, fn: Callable, *args, **kwargs):
        """Run a normalizer, counting validation failures instead of raising."""
        try:
            return fn(*args, **kwargs)
        except (ValidationError, TransformationError) as e:
            self.failed += 1
            self.errors.append({"phase": "normalization", "error": str(e)[:300]})
            logger.warning(f"Normalization failed for {self.entity_type.value}: {str(e)[:200]}")
            return None
    
    def apply(self, result: LoadResult):
        self.created += result.created
        self.updated += result.updated
        self.unchanged += result.unchanged
        self.skipped_fk += result.skipped_fk
        self.failed += result.failed
        self.errors.extend(result.errors)
    
    async def upsert(self, model, rows: List[Dict[str, Any]], key: str, update_fields: List[str]) -> LoadResult:
        """
        Upsert through the loader, or only classify rows on a dry run.
        
        Rows the store rejects hold the cursor at their cursor_field value.
        """
        if self.dry_run:
            result = await self.loader.classify(model, rows, key, update_fields)
        else:
            result = LoadResult()
            for i in range(0, len(rows), self.upsert_batch_size):
                if i:
                    await self.pause_between_batches()
                result.merge(await self.loader.upsert(model, rows[i:i + self.upsert_batch_size], key, update_fields))
            if result.rejected:
                by_key = {row[key]: row for row in rows}
                for rejected_key in result.rejected:
                    self.hold_cursor(by_key.get(rejected_key, {}).get(self.cursor_field))
        self.apply(result)
        return result
    
    async def report_progress(self, total: Optional[int] = None, processed: Optional[int] = None):
        if total is not None:
            self.total = total
        if self.progress is None:
            return
        done = self.processed if processed is None else processed
        outcome = self.progress(self.entity_type, done, self.total)
        if inspect.isawaitable(outcome):
            await outcome
    
    async def pause_between_batches(self):
        if self.batch_delay > 0:
            await asyncio.sleep(self.batch_delay)
    
    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    
    async def run(self, mode: SyncMode = SyncMode.INCREMENTAL, dry_run: bool = False) -> RunSummary:
        """
        Execute the pipeline with run tracking and cursor management.
        
        Returns:
            RunSummary; status is COMPLETED or FAILED, never raises
        """
        self._reset()
        self.mode = SyncMode(mode)
        self.dry_run = dry_run
        
        checkpoint = await self.get_checkpoint()
        checkpoint_before = checkpoint.checkpoint_value if checkpoint else None
        since = None
        if self.mode == SyncMode.INCREMENTAL and self.supports_incremental:
            since = parse_datetime(checkpoint_before)
        
        logger.info(
            f"Starting {self.mode.value} sync for {self.entity_type.value} "
            f"(cursor: {checkpoint_before}, dry_run: {dry_run})"
        )
        
        started_at = datetime.utcnow()
        await self.start_run(checkpoint_before)
        
        error: Optional[Exception] = None
        try:
            await self.sync(since)
            status = SyncStatus.COMPLETED
        except Exception as e:
            error = e
            status = SyncStatus.FAILED
            await self.db.rollback()
            if isinstance(e, FetchError):
                self.details["pages_retrieved"] = e.pages_retrieved
                self.details["items_retrieved"] = e.items_retrieved
            if isinstance(e, SyncException):
                logger.error(
                    f"Sync failed for {self.entity_type.value}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
            else:
                logger.exception(f"Unexpected error in {self.entity_type.value} sync")
        
        checkpoint_after = checkpoint_before
        if status == SyncStatus.COMPLETED and not dry_run:
            previous = parse_datetime(checkpoint_before)
            cursor = self.next_cursor()
            # A held cursor may move back so the held row is fetched again
            if cursor is not None and (previous is None or cursor > previous or self.cursor_hold is not None):
                checkpoint_after = cursor.isoformat()
        
        transitioned = await self.complete_run(status, started_at, checkpoint_after, error)
        if not transitioned:
            logger.warning(f"Run {self.run_uuid} was no longer running when it finished")
        
        if not dry_run:
            await self.save_checkpoint(
                checkpoint_after,
                status,
                error_message=str(error)[:2000] if error is not None else None
            )
        
        summary = RunSummary(
            run_id=str(self.run_uuid),
            entity_type=self.entity_type,
            mode=self.mode,
            status=status,
            dry_run=dry_run,
            records_processed=self.processed,
            records_created=self.created,
            records_updated=self.updated,
            records_failed=self.failed,
            records_skipped=self.skipped_fk,
            duration_seconds=(datetime.utcnow() - started_at).total_seconds(),
            checkpoint_before=checkpoint_before,
            checkpoint_after=checkpoint_after,
            error_message=str(error) if error is not None else None,
            details=self.details_payload()
        )
        
        logger.info(
            f"Sync {status.value} for {self.entity_type.value}: processed={self.processed} "
            f"created={self.created} updated={self.updated} failed={self.failed} "
            f"fk_skips={self.skipped_fk}"
        )
        return summary
