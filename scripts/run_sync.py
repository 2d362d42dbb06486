"""
Script to run one sync pipeline from the command line
"""

import argparse
import asyncio
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.logging import setup_logging
from core.database import engine, async_session_maker
from core.exceptions import SyncException
from models.base import EntityType, SyncMode
from sync.runner import SyncRunner

setup_logging()
logger = logging.getLogger(__name__)


def log_progress(entity_type: EntityType, processed: int, total):
    logger.info(f"{entity_type.value}: {processed}/{total if total is not None else '?'}")


async def run_sync(entity: str, mode: str, dry_run: bool, rebuild_cache: bool) -> int:
    runner = SyncRunner(async_session_maker, progress=log_progress)

    try:
        summary = await runner.run_pipeline(entity, mode=mode, dry_run=dry_run)
        print(json.dumps(summary.dict(), indent=2, default=str))

        if rebuild_cache and summary.succeeded and not dry_run:
            rows = await runner.rebuild_cache()
            logger.info(f"Partner credit cache rebuilt: {rows} rows")

        return 0 if summary.succeeded else 1

    except SyncException as e:
        logger.error(f"Sync could not start: {e.message}", extra={"error_context": e.to_dict()})
        return 1
    finally:
        await engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one LMS/PRM sync pipeline")
    parser.add_argument("entity", choices=[e.value for e in EntityType], help="Entity type to sync")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in SyncMode],
        default=SyncMode.INCREMENTAL.value,
        help="full refetches everything, incremental resumes from the last cursor"
    )
    parser.add_argument("--dry-run", action="store_true", help="Fetch and classify without writing")
    parser.add_argument("--rebuild-cache", action="store_true", help="Rebuild the partner credit cache afterwards")
    args = parser.parse_args()

    return asyncio.run(run_sync(args.entity, args.mode, args.dry_run, args.rebuild_cache))


if __name__ == "__main__":
    sys.exit(main())
