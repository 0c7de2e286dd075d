# /convoflow/services/conversation_service.py

import logging
from datetime import datetime, timezone
from pymongo.errors import PyMongoError

from convoflow.workflows.errors import CapabilityError

logger = logging.getLogger(__name__)

CONVERSATION_STATUSES = {"ACTIVE", "WAITING", "CLOSED"}


class ConversationService:
    """Conversation ownership and status mutations. Both are plain $set writes, so replays are harmless."""

    def __init__(self, db):
        self.db = db

    async def _update(self, tenant_id: str, conversation_id: str, fields: dict):
        try:
            result = await self.db.conversations.update_one(
                {"_id": conversation_id, "tenant_id": tenant_id},
                {"$set": {**fields, "updated_at": datetime.now(timezone.utc)}}
            )
        except PyMongoError as e:
            logger.error(f"Conversation update failed for {conversation_id}: {e}")
            raise CapabilityError(f"Conversation update failed: {e}") from e

        if result.matched_count == 0:
            raise CapabilityError(f"Conversation '{conversation_id}' not found")

    async def assign_conversation(self, tenant_id: str, conversation_id: str, user_id: str):
        await self._update(tenant_id, conversation_id, {"assigned_to": user_id})
        logger.info(f"Conversation {conversation_id} assigned to {user_id}")

    async def update_status(self, tenant_id: str, conversation_id: str, status: str) -> str:
        status = (status or "").upper()
        if status not in CONVERSATION_STATUSES:
            raise CapabilityError(f"Invalid conversation status '{status}'")
        await self._update(tenant_id, conversation_id, {"status": status})
        logger.info(f"Conversation {conversation_id} status set to {status}")
        return status
