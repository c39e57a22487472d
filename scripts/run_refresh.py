"""
Script to run refresh cycles from the command line.

Usage:
    python scripts/run_refresh.py            # one manual cycle
    python scripts/run_refresh.py --force    # refresh every partition
    python scripts/run_refresh.py --cron     # stay up and follow REFRESH_CRON
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import ETLException
from core.logging import setup_logging
from ingestion.factory import build_runtime
from models.base import RunStatus

logger = logging.getLogger(__name__)


async def run_refresh(force: bool, cron: bool) -> int:
    """Run one cycle (or the scheduler until signalled); returns the exit code"""
    runtime = build_runtime(settings)

    try:
        await runtime.orchestrator.recover()

        if cron:
            runtime.scheduler.start(install_signal_handlers=True)
            if force:
                runtime.scheduler.request_run(force=True)
            # Returns once SIGTERM/SIGINT stopped the scheduler
            while runtime.scheduler.running:
                await asyncio.sleep(1)
            return 0

        run = await runtime.scheduler.run_once(force=force)
        await runtime.replacer.drain()

        logger.info("=" * 60)
        logger.info(f"Run {run.run_id}: {run.status.value}")
        logger.info(f"  considered: {run.partitions_considered}")
        logger.info(f"  refreshed:  {run.partitions_refreshed}")
        logger.info(f"  failed:     {run.partitions_failed}")
        logger.info(f"  skipped:    {run.partitions_skipped}")
        logger.info("=" * 60)

        return 0 if run.status == RunStatus.SUCCESS else 1

    except ETLException as e:
        logger.error(f"Refresh failed: {e}", extra={"error_context": e.to_dict()})
        return 2
    finally:
        await runtime.dispose()


def main():
    parser = argparse.ArgumentParser(description="Run partition refresh cycles")
    parser.add_argument("--force", action="store_true", help="Refresh every partition regardless of freshness")
    parser.add_argument("--cron", action="store_true", help="Run the cron scheduler until SIGTERM/SIGINT")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run_refresh(args.force, args.cron)))


if __name__ == "__main__":
    main()
