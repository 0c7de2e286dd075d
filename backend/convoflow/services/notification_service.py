# /convoflow/services/notification_service.py

import uuid
import logging
from datetime import datetime, timezone
from typing import List, Optional
from pymongo.errors import PyMongoError

from convoflow.workflows.errors import CapabilityError

logger = logging.getLogger(__name__)


class NotificationService:
    """Agent-facing notifications raised by flows (e.g. "customer asked for a human")."""

    def __init__(self, db):
        self.db = db

    async def send_notification(
        self,
        tenant_id: str,
        message: str,
        idempotency_key: str,
        recipients: Optional[List[str]] = None,
        notification_type: str = "info",
    ):
        try:
            await self.db.notifications.update_one(
                {"idempotency_key": idempotency_key},
                {"$setOnInsert": {
                    "_id": uuid.uuid4().hex,
                    "tenant_id": tenant_id,
                    "type": notification_type,
                    "message": message,
                    "recipients": recipients or [],
                    "read": False,
                    "created_at": datetime.now(timezone.utc),
                }},
                upsert=True,
            )
        except PyMongoError as e:
            logger.error(f"Notification dispatch failed for tenant {tenant_id}: {e}")
            raise CapabilityError(f"Notification dispatch failed: {e}") from e
