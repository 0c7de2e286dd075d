# /convoflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from convoflow.utils.logging import setup_logging
from convoflow.utils.alerting import alerting_service
from convoflow.services.cache_service import lease_manager
from convoflow.services.db_service import db_service
from convoflow.services.webhook_service import webhook_service

# Startup: logging and indexes. Shutdown: close every outbound client.

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")

    await db_service.create_indexes()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    await webhook_service.cleanup()
    await alerting_service.cleanup()
    await lease_manager.close()
    if db_service.client:
        db_service.client.close()
