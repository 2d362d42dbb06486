"""
Cross-system sync components.

Modules:
    identity: Canonical CRM keys, the PRM identity index and store-side linkage
    aggregation: Per-partner certification credit cache
    runner: Pipeline orchestrator with single-flight protection
    scheduler: APScheduler integration for periodic task dispatch
    supervisor: Stale, orphaned and duplicate run recovery

Subpackages:
    fetchers: Paginated LMS and PRM clients with retry and rate limiting
    transformers: Payload normalization and inclusion filters
    loaders: Idempotent per-row upserts
    pipelines: One incremental pipeline per entity type

Usage:
    from core.database import async_session_maker
    from sync.runner import SyncRunner

    runner = SyncRunner(async_session_maker)
    summary = await runner.run_pipeline("enrollments", mode="incremental")
    print(summary.status, summary.records_created)
"""

__all__ = [
    "SyncRunner",
    "SyncScheduler",
    "RecoverySupervisor",
    "AggregationCacheBuilder",
    "CrmIdentityIndex",
]
