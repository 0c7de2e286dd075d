# /convoflow/services/ticket_service.py

import uuid
import logging
from datetime import datetime, timezone
from typing import Optional
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from convoflow.workflows.errors import CapabilityError

logger = logging.getLogger(__name__)


class TicketService:
    def __init__(self, db):
        self.db = db

    async def create_ticket(
        self,
        tenant_id: str,
        conversation_id: str,
        title: str,
        idempotency_key: str,
        description: Optional[str] = None,
        priority: str = "normal",
    ) -> str:
        """Opens a support ticket for a conversation. Returns the existing ticket id on redelivery."""
        now = datetime.now(timezone.utc)
        try:
            ticket = await self.db.tickets.find_one_and_update(
                {"idempotency_key": idempotency_key},
                {"$setOnInsert": {
                    "_id": uuid.uuid4().hex,
                    "idempotency_key": idempotency_key,
                    "tenant_id": tenant_id,
                    "conversation_id": conversation_id,
                    "title": title,
                    "description": description,
                    "priority": priority,
                    "status": "open",
                    "created_at": now,
                }},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error(f"Ticket creation failed for conversation {conversation_id}: {e}")
            raise CapabilityError(f"Ticket creation failed: {e}") from e

        logger.info(f"Ticket {ticket['_id']} ready for conversation {conversation_id}")
        return ticket["_id"]
