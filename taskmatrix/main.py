from __future__ import annotations

import asyncio
import logging
import os

from taskmatrix.bootstrap import build_coordinator
from taskmatrix.config import load_settings
from taskmatrix.domain.tasks.classifier import quadrant_label


async def main() -> None:
    """
    Open the task matrix for the configured actor and log what it holds.

    Backend selection happens once here: with TASKMATRIX_REMOTE set the
    remote store is tried first and the local SQLite store is the fallback.
    """
    pid = os.getpid()
    settings = load_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - [PID:%(process)d] - %(message)s'
    )
    logger = logging.getLogger(__name__)
    logger.info("Task matrix starting - PID: %s", pid)

    coordinator = None
    try:
        coordinator, selection = await build_coordinator(settings)
        if selection.fell_back:
            logger.warning("Running on the local store; changes stay on this device")
        await coordinator.start()

        for quadrant, tasks in coordinator.list_by_quadrant().items():
            logger.info("%-10s %s open", quadrant_label(quadrant), len(tasks))
        logger.info("Completed: %s", len(coordinator.list_completed()))
    except Exception:
        logger.error("Task matrix crashed - PID: %s", pid, exc_info=True)
        raise
    finally:
        if coordinator is not None:
            await coordinator.close()
            await coordinator.backend.close()
        logger.info("Task matrix shutdown complete - PID: %s", pid)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
