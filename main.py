"""
Main entry point for the regwatch daemon: scheduled crawls, run monitoring
and background AI judging.
"""

import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv

# Add project root to PYTHONPATH so imports work when running this script directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from regwatch.config import load_config
from regwatch.orchestrator import Orchestrator


async def main():
    """Start the orchestrator and run until SIGINT/SIGTERM."""
    load_dotenv()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    )
    logger = logging.getLogger(__name__)

    config = load_config()
    orchestrator = Orchestrator(config)

    logger.info(f"Database: {config.database.path}")
    logger.info(f"Scheduler timezone: {config.scheduler.timezone}")
    for definition in orchestrator.crawlers.list():
        state = "enabled" if definition.enabled else "disabled"
        logger.info(f"  - {definition.name} [{state}] {definition.description}")

    # Setup graceful shutdown
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    try:
        await orchestrator.run_until(stop_event)
    except Exception as e:
        logger.error(f"Error in main loop: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutdown complete")


def run_platform():
    """Entry point that can be called from other scripts."""
    asyncio.run(main())


if __name__ == "__main__":
    run_platform()
