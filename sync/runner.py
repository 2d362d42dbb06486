# ============================================================================
# File: sync/runner.py
# Description: Pipeline orchestrator with single-flight protection
# ============================================================================
"""
Sync Runner - Runs one entity pipeline end to end.

This module provides:
- Entity type resolution and the pipeline registry
- At most one running pipeline per entity type (in-process and in the store)
- Remote client lifecycle per run
- Aggregation cache rebuild after enrollment and credit changes
"""

from typing import Callable, Optional, Set, Union
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import logging

from core.config import settings
from core.exceptions import TaskAlreadyRunningError, UnknownPipelineError
from models.base import EntityType, SyncMode, SyncStatus
from models.sync_run import SyncRun
from schemas.sync import RunSummary
from sync.aggregation import AggregationCacheBuilder
from sync.fetchers import LmsClient, PrmClient
from sync.pipelines import PIPELINES, LMS_ENTITIES
from sync.pipelines.base import ProgressCallback

logger = logging.getLogger(__name__)

# Successful non-dry runs of these entity types refresh the credit cache
CACHE_DEPENDENCIES = {EntityType.ENROLLMENTS, EntityType.COURSE_PROPERTIES}


def resolve_entity_type(name: Union[str, EntityType]) -> EntityType:
    if isinstance(name, EntityType):
        return name
    try:
        return EntityType(str(name).strip().lower())
    except ValueError:
        raise UnknownPipelineError(
            f"Unknown entity type: {name}",
            context={"allowed": [e.value for e in EntityType]}
        )


class SyncRunner:
    """
    Pipeline orchestrator.

    Responsibilities:
    - Reject a run while another run of the same entity type is active
    - Create and close the remote clients a pipeline needs
    - Rebuild the aggregation cache after the runs it depends on
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        lms_factory: Callable[[], LmsClient] = LmsClient,
        prm_factory: Callable[[], PrmClient] = PrmClient,
        progress: Optional[ProgressCallback] = None,
        attribution: Optional[str] = None,
    ):
        self.session_maker = session_maker
        self.lms_factory = lms_factory
        self.prm_factory = prm_factory
        self.progress = progress
        self.attribution = attribution or settings.AGGREGATION_ATTRIBUTION
        self._active: Set[EntityType] = set()

    def is_active(self, entity_type: EntityType) -> bool:
        return entity_type in self._active

    @staticmethod
    async def has_running_record(session: AsyncSession, entity_type: EntityType) -> bool:
        count = await session.scalar(
            select(func.count(SyncRun.id)).where(
                SyncRun.entity_type == entity_type,
                SyncRun.status == SyncStatus.RUNNING,
            )
        )
        return bool(count)

    async def run_pipeline(
        self,
        name: Union[str, EntityType],
        mode: Union[str, SyncMode, None] = None,
        dry_run: bool = False,
    ) -> RunSummary:
        """
        Run one pipeline.

        Raises:
            UnknownPipelineError: name is not an entity type
            TaskAlreadyRunningError: a run of this entity type is active
        """
        entity_type = resolve_entity_type(name)
        mode = SyncMode(mode) if mode is not None else SyncMode.INCREMENTAL

        if entity_type in self._active:
            raise TaskAlreadyRunningError(
                f"{entity_type.value} sync is already running",
                context={"entity_type": entity_type.value}
            )
        self._active.add(entity_type)

        try:
            async with self.session_maker() as session:
                if await self.has_running_record(session, entity_type):
                    raise TaskAlreadyRunningError(
                        f"{entity_type.value} sync has a running record",
                        context={"entity_type": entity_type.value}
                    )
                return await self._run(session, entity_type, mode, dry_run)
        finally:
            self._active.discard(entity_type)

    async def _run(self, session: AsyncSession, entity_type: EntityType, mode: SyncMode, dry_run: bool) -> RunSummary:
        lms = self.lms_factory() if entity_type in LMS_ENTITIES else None
        prm = self.prm_factory() if entity_type not in LMS_ENTITIES else None

        try:
            pipeline = PIPELINES[entity_type](session, lms=lms, prm=prm, progress=self.progress)
            summary = await pipeline.run(mode=mode, dry_run=dry_run)
        finally:
            for client in (lms, prm):
                if client is not None:
                    await client.aclose()

        if summary.succeeded and not dry_run and entity_type in CACHE_DEPENDENCIES:
            try:
                summary.details["cache_rows"] = await AggregationCacheBuilder(session, self.attribution).rebuild()
            except Exception as e:
                logger.error(f"Cache rebuild after {entity_type.value} sync failed: {str(e)}")
                summary.details["cache_error"] = str(e)

        return summary

    async def rebuild_cache(self) -> int:
        async with self.session_maker() as session:
            return await AggregationCacheBuilder(session, self.attribution).rebuild()
