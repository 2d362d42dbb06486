"""
Script to rebuild the partner credit cache
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.logging import setup_logging
from core.database import engine, async_session_maker
from sync.aggregation import AggregationCacheBuilder, ATTRIBUTIONS

setup_logging()
logger = logging.getLogger(__name__)


async def rebuild(attribution: str) -> int:
    try:
        async with async_session_maker() as session:
            rows = await AggregationCacheBuilder(session, attribution).rebuild()
        logger.info(f"Rebuilt partner credit cache: {rows} partners ({attribution} attribution)")
        return 0
    except Exception as e:
        logger.error(f"Cache rebuild failed: {str(e)}")
        return 1
    finally:
        await engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Rebuild the per-partner credit cache")
    parser.add_argument(
        "--attribution",
        choices=list(ATTRIBUTIONS),
        default=None,
        help="How users are attributed to partners (defaults to AGGREGATION_ATTRIBUTION)"
    )
    args = parser.parse_args()

    from core.config import settings
    return asyncio.run(rebuild(args.attribution or settings.AGGREGATION_ATTRIBUTION))


if __name__ == "__main__":
    sys.exit(main())
