#!/usr/bin/env python3
import asyncio

from adspend.core.logging_config import get_logger
from adspend.core.scheduler import start_scheduler, stop_scheduler
from adspend.db import create_db_and_tables
from adspend.services.wiring import load_collaborators

logger = get_logger("scheduler_worker")


async def main():
    logger.info("scheduler_worker_starting")
    create_db_and_tables()
    load_collaborators()
    start_scheduler()
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        logger.info("scheduler_worker_shutting_down")
    finally:
        stop_scheduler()


if __name__ == "__main__":
    asyncio.run(main())
