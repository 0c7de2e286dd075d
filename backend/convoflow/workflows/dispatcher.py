# /convoflow/workflows/dispatcher.py

"""
Step dispatcher: one handler per StepType, one collaborator call per ACTION kind.

Handlers return a patch that the engine merges into the execution data.
Any failure inside a handler surfaces as StepExecutionError; the dispatcher
never retries.
"""

import time
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from convoflow.models.flow import (
    ActionConfig,
    ActionKind,
    ConditionConfig,
    DelayConfig,
    EntityConfig,
    IntentConfig,
    MessageConfig,
    Step,
    StepType,
)
from convoflow.utils.metrics import step_duration_histogram
from convoflow.workflows import conditions, templates
from convoflow.workflows.errors import (
    StepExecutionError,
    UnsupportedActionError,
)

logger = logging.getLogger(__name__)

SKIPPED_STEPS_KEY = "skippedSteps"

IntentClassifier = Callable[[Dict[str, Any], IntentConfig], Awaitable[Dict[str, Any]]]
EntityExtractor = Callable[[Dict[str, Any], EntityConfig], Awaitable[Dict[str, Any]]]


@dataclass
class ExecutionContext:
    execution_id: str
    flow_id: str
    conversation_id: str
    tenant_id: str
    step_index: int
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def idempotency_key(self, step: Step) -> str:
        return f"{self.execution_id}:{step.id}"


def _render_value(value: Any, data: Dict[str, Any]) -> Any:
    if isinstance(value, str):
        return templates.render(value, data)
    if isinstance(value, dict):
        return {key: _render_value(item, data) for key, item in value.items()}
    if isinstance(value, list):
        return [_render_value(item, data) for item in value]
    return value


class StepDispatcher:
    def __init__(
        self,
        message_service,
        conversation_service,
        ticket_service,
        webhook_service,
        notification_service,
        intent_classifier: Optional[IntentClassifier] = None,
        entity_extractor: Optional[EntityExtractor] = None,
    ):
        self.message_service = message_service
        self.conversation_service = conversation_service
        self.ticket_service = ticket_service
        self.webhook_service = webhook_service
        self.notification_service = notification_service
        self.intent_classifier = intent_classifier
        self.entity_extractor = entity_extractor

        self._handlers = {
            StepType.MESSAGE: self._execute_message,
            StepType.CONDITION: self._execute_condition,
            StepType.ACTION: self._execute_action,
            StepType.DELAY: self._execute_delay,
            StepType.INTENT: self._execute_intent,
            StepType.ENTITY: self._execute_entity,
        }
        self._actions = {
            ActionKind.ASSIGN_CONVERSATION: self._assign_conversation,
            ActionKind.UPDATE_CONVERSATION_STATUS: self._update_conversation_status,
            ActionKind.CREATE_TICKET: self._create_ticket,
            ActionKind.TRIGGER_WEBHOOK: self._trigger_webhook,
            ActionKind.SET_VARIABLE: self._set_variable,
            ActionKind.SEND_NOTIFICATION: self._send_notification,
        }

    async def execute(self, step: Step, data: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        handler = self._handlers[step.type]
        started = time.perf_counter()
        try:
            return await handler(step, data, ctx)
        except StepExecutionError:
            raise
        except Exception as e:
            raise StepExecutionError(step.id, e) from e
        finally:
            step_duration_histogram.labels(step_type=step.type.value).observe(time.perf_counter() - started)

    # ==================== Step Handlers ====================

    async def _execute_message(self, step: Step, data: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        config = MessageConfig.model_validate(step.config)
        content = templates.render(config.message, data)
        await self.message_service.send_message(
            conversation_id=ctx.conversation_id,
            channel=config.channel,
            content=content,
            idempotency_key=ctx.idempotency_key(step),
            metadata={"workflow_step": step.name or step.id, "workflow_execution": ctx.execution_id},
        )
        return {"messageSent": True, "content": content}

    async def _execute_condition(self, step: Step, data: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        config = ConditionConfig.model_validate(step.config)
        outcome = conditions.evaluate(config.conditions, data)

        patch: Dict[str, Any] = {"conditionResult": outcome}
        branch = config.true_branch if outcome else config.false_branch
        if branch is not None:
            patch["branch"] = branch
        if not outcome and config.skip_if_false:
            skipped = list(data.get(SKIPPED_STEPS_KEY) or [])
            if config.skip_if_false not in skipped:
                skipped.append(config.skip_if_false)
            patch[SKIPPED_STEPS_KEY] = skipped
        return patch

    async def _execute_action(self, step: Step, data: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        try:
            config = ActionConfig.model_validate(step.config)
        except ValidationError as e:
            if any(err.get("loc") == ("action",) for err in e.errors()):
                raise UnsupportedActionError(f"Unsupported action: {step.config.get('action')!r}") from e
            raise

        action = self._actions.get(config.action)
        if action is None:
            raise UnsupportedActionError(f"Unsupported action: {config.action}")
        parameters = _render_value(config.parameters, data)
        return await action(parameters, step, data, ctx)

    async def _execute_delay(self, step: Step, data: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        config = DelayConfig.model_validate(step.config)
        resume_at = ctx.now + timedelta(seconds=config.duration)
        return {"delayed": True, "duration": config.duration, "resumeAt": resume_at.isoformat()}

    async def _execute_intent(self, step: Step, data: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        config = IntentConfig.model_validate(step.config)
        if self.intent_classifier is not None:
            return await self.intent_classifier(data, config)
        return {"detectedIntent": config.intent, "confidence": config.confidence, "entities": []}

    async def _execute_entity(self, step: Step, data: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        config = EntityConfig.model_validate(step.config)
        if self.entity_extractor is not None:
            return await self.entity_extractor(data, config)
        return {"extractedEntity": config.entity, "value": _render_value(config.value, data), "confidence": 0.9}

    # ==================== Actions ====================

    async def _assign_conversation(self, parameters, step, data, ctx) -> Dict[str, Any]:
        user_id = parameters.get("userId")
        if not user_id:
            raise ValueError("assign_conversation requires 'userId'")
        conversation_id = parameters.get("conversationId") or ctx.conversation_id
        await self.conversation_service.assign_conversation(ctx.tenant_id, conversation_id, user_id)
        return {"assigned": True, "userId": user_id}

    async def _update_conversation_status(self, parameters, step, data, ctx) -> Dict[str, Any]:
        status = parameters.get("status")
        if not status:
            raise ValueError("update_conversation_status requires 'status'")
        conversation_id = parameters.get("conversationId") or ctx.conversation_id
        stored_status = await self.conversation_service.update_status(ctx.tenant_id, conversation_id, status)
        return {"statusUpdated": True, "status": stored_status}

    async def _create_ticket(self, parameters, step, data, ctx) -> Dict[str, Any]:
        ticket_id = await self.ticket_service.create_ticket(
            tenant_id=ctx.tenant_id,
            conversation_id=parameters.get("conversationId") or ctx.conversation_id,
            title=parameters.get("title") or step.name or "Workflow ticket",
            idempotency_key=ctx.idempotency_key(step),
            description=parameters.get("description"),
            priority=parameters.get("priority", "normal"),
        )
        return {"ticketCreated": True, "ticketId": ticket_id}

    async def _trigger_webhook(self, parameters, step, data, ctx) -> Dict[str, Any]:
        url = parameters.get("url")
        if not url:
            raise ValueError("trigger_webhook requires 'url'")
        payload = parameters.get("body")
        if payload is None:
            payload = {
                "execution_id": ctx.execution_id,
                "flow_id": ctx.flow_id,
                "conversation_id": ctx.conversation_id,
                "data": data,
            }
        response = await self.webhook_service.invoke(
            url=url,
            payload=payload,
            idempotency_key=ctx.idempotency_key(step),
            method=parameters.get("method", "POST"),
            headers=parameters.get("headers"),
        )
        return {"webhookCalled": True, "webhookStatus": response["status_code"]}

    async def _set_variable(self, parameters, step, data, ctx) -> Dict[str, Any]:
        name = parameters.get("name")
        if not name:
            raise ValueError("set_variable requires 'name'")
        return {name: parameters.get("value")}

    async def _send_notification(self, parameters, step, data, ctx) -> Dict[str, Any]:
        message = parameters.get("message")
        if not message:
            raise ValueError("send_notification requires 'message'")
        await self.notification_service.send_notification(
            tenant_id=ctx.tenant_id,
            message=message,
            idempotency_key=ctx.idempotency_key(step),
            recipients=parameters.get("recipients"),
            notification_type=parameters.get("type", "info"),
        )
        return {"notificationSent": True}
