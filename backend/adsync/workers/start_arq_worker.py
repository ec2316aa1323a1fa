#!/usr/bin/env python3
"""Start the ARQ refresh worker.

USAGE:
    python -m adsync.workers.start_arq_worker

    Or directly:
    arq adsync.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    from adsync.utils.env import load_env_file, require_env

    load_env_file()
    require_env(["DATABASE_URL", "REDIS_URL"])

    # Imported after the env check: WorkerSettings reads REDIS_URL at import
    from adsync.telemetry import init_sentry
    from adsync.workers.arq_worker import WorkerSettings

    init_sentry()
    logger.info("Starting ARQ refresh worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
