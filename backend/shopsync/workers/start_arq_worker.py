#!/usr/bin/env python3
"""Start ARQ worker for Shopify sync jobs.

USAGE:
    python -m shopsync.workers.start_arq_worker            # default queue
    python -m shopsync.workers.start_arq_worker priority   # order batches

    Or directly:
    arq shopsync.workers.arq_worker.WorkerSettings
"""

import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    from arq import run_worker
    from shopsync.workers.arq_worker import PriorityWorkerSettings, WorkerSettings

    settings = PriorityWorkerSettings if "priority" in sys.argv[1:] else WorkerSettings
    logger.info("Starting ARQ worker on %s...", settings.queue_name)
    run_worker(settings)


if __name__ == "__main__":
    main()
