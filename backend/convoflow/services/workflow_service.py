# /convoflow/services/workflow_service.py

import tenacity

from convoflow.config.settings import settings
from convoflow.services.cache_service import lease_manager
from convoflow.services.conversation_service import ConversationService
from convoflow.services.db_service import db_service
from convoflow.services.messaging_service import MessageService
from convoflow.services.notification_service import NotificationService
from convoflow.services.ticket_service import TicketService
from convoflow.services.webhook_service import webhook_service
from convoflow.utils.alerting import alerting_service
from convoflow.workflows.dispatcher import StepDispatcher
from convoflow.workflows.engine import ExecutionEngine

# Wires the engine to its production collaborators. Routes and jobs import
# `workflow_engine` from here.

step_dispatcher = StepDispatcher(
    message_service=MessageService(db_service.db),
    conversation_service=ConversationService(db_service.db),
    ticket_service=TicketService(db_service.db),
    webhook_service=webhook_service,
    notification_service=NotificationService(db_service.db),
)

# Globally accessible instance
workflow_engine = ExecutionEngine(
    store=db_service,
    dispatcher=step_dispatcher,
    leases=lease_manager,
    checkpoint_attempts=settings.checkpoint_max_attempts,
    retry_wait=tenacity.wait_exponential(
        multiplier=settings.checkpoint_backoff_min,
        min=settings.checkpoint_backoff_min,
        max=settings.checkpoint_backoff_max,
    ),
    alerting=alerting_service,
)
