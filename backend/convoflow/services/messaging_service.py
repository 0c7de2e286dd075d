# /convoflow/services/messaging_service.py

import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from convoflow.workflows.errors import CapabilityError

# Outbound bot messages are written to the conversation's message log; the
# channel adapters pick them up from there and own the actual transport.

logger = logging.getLogger(__name__)


class MessageService:
    def __init__(self, db):
        self.db = db

    async def send_message(
        self,
        conversation_id: str,
        channel: str,
        content: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Queues a bot message for delivery. Redelivery with the same
        idempotency_key returns the id of the message already queued.
        """
        document = {
            "_id": uuid.uuid4().hex,
            "conversation_id": conversation_id,
            "channel": channel,
            "content": content,
            "type": "TEXT",
            "sender": "BOT",
            "status": "queued",
            "metadata": metadata or {},
            "created_at": datetime.now(timezone.utc),
        }
        try:
            stored = await self.db.messages.find_one_and_update(
                {"idempotency_key": idempotency_key},
                {"$setOnInsert": {**document, "idempotency_key": idempotency_key}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error(f"message_queue_failed for conversation {conversation_id}: {e}")
            raise CapabilityError(f"Message delivery failed: {e}") from e

        logger.info(f"Bot message queued for conversation {conversation_id} on {channel}, id: {stored['_id']}")
        return stored["_id"]
