# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from convoflow.config.settings import settings
from convoflow.jobs.delay_resumer import resume_due_executions
from convoflow.services.workflow_service import workflow_engine
from convoflow.utils.logging import setup_logging

logger = logging.getLogger("SchedulerService")


async def run_delay_resumer():
    await resume_due_executions(workflow_engine, limit=settings.delay_resume_batch_size)


async def main():
    setup_logging()
    scheduler = AsyncIOScheduler(timezone="UTC")

    # Job 1: Resume executions whose DELAY step has elapsed
    scheduler.add_job(
        run_delay_resumer,
        'interval',
        seconds=settings.delay_poll_interval_seconds,
        id="delay_resumer_job",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info(f"Scheduled job: run_delay_resumer (every {settings.delay_poll_interval_seconds} seconds).")

    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()

if __name__ == "__main__":
    asyncio.run(main())
