# /convoflow/models/flow.py

from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict


class StepType(str, Enum):
    """Closed set of step kinds the dispatcher knows how to run."""
    MESSAGE = "MESSAGE"
    CONDITION = "CONDITION"
    ACTION = "ACTION"
    DELAY = "DELAY"
    INTENT = "INTENT"
    ENTITY = "ENTITY"


class ActionKind(str, Enum):
    ASSIGN_CONVERSATION = "assign_conversation"
    UPDATE_CONVERSATION_STATUS = "update_conversation_status"
    CREATE_TICKET = "create_ticket"
    TRIGGER_WEBHOOK = "trigger_webhook"
    SET_VARIABLE = "set_variable"
    SEND_NOTIFICATION = "send_notification"


class Predicate(BaseModel):
    """A single field/operator/value guard. `field` is a dotted path into the data context."""
    field: str = Field(..., description="Dotted path into the execution data")
    operator: str = Field(..., description="equals, not_equals, contains, greater_than, less_than, exists, not_exists")
    value: Any = Field(default=None, description="Comparand (ignored by exists/not_exists)")


class Step(BaseModel):
    """
    One entry of a flow's straight-line program.

    `config` is kept as a raw mapping on the definition and parsed into the
    matching typed config model by the dispatcher at execution time.
    """
    id: str = Field(..., description="Step identifier, unique within the flow")
    name: str = Field(default="", description="Human readable label")
    type: StepType
    order: int = Field(..., description="Position; strictly increasing within a flow")
    config: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[Predicate] = Field(default_factory=list, description="Guards evaluated before execution")


# --- Per-type step configuration ---

class MessageConfig(BaseModel):
    message: str
    channel: str = "whatsapp"


class ConditionConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conditions: List[Predicate] = Field(default_factory=list)
    true_branch: Optional[str] = Field(default=None, alias="trueBranch")
    false_branch: Optional[str] = Field(default=None, alias="falseBranch")
    skip_if_false: Optional[str] = Field(default=None, alias="skipIfFalse")


class ActionConfig(BaseModel):
    action: ActionKind
    parameters: Dict[str, Any] = Field(default_factory=dict)


class DelayConfig(BaseModel):
    duration: float = Field(..., ge=0, description="Delay in seconds")


class IntentConfig(BaseModel):
    intent: Optional[str] = None
    confidence: float = 0.8


class EntityConfig(BaseModel):
    entity: str
    value: Any = None


STEP_CONFIG_MODELS = {
    StepType.MESSAGE: MessageConfig,
    StepType.CONDITION: ConditionConfig,
    StepType.ACTION: ActionConfig,
    StepType.DELAY: DelayConfig,
    StepType.INTENT: IntentConfig,
    StepType.ENTITY: EntityConfig,
}


class Flow(BaseModel):
    """Tenant-owned automation definition. Executions snapshot `steps` at creation."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    tenant_id: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    priority: int = 0
    is_active: bool = True
    steps: List[Step] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def ordered_steps(self) -> List[Step]:
        return sorted(self.steps, key=lambda s: s.order)
