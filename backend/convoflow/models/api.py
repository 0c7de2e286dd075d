# /convoflow/models/api.py

from pydantic import BaseModel, Field
from typing import Dict, Optional, Any
from datetime import datetime

# Request and response bodies for the workflow execution endpoints.

class ExecuteFlowRequest(BaseModel):
    flow_id: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)

class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: str
