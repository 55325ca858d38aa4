from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class ActionType(str, Enum):
    AI_PROMPT = "ai-prompt"
    WEBHOOK = "webhook"
    SEND_EMAIL = "send-email"
    RUN_CODE = "run-code"
    GENERATE_REPORT = "generate-report"
    CHAIN = "chain"
    WEB_SCRAPE = "web-scrape"
    FILE_OPERATION = "file-operation"
    GOOGLE_WORKSPACE = "google-workspace"


class ActionSpec(BaseModel):
    """
    The unit of work a task performs: a type tag plus an opaque configuration
    payload that is validated against the schema registered for the type.
    """
    type: ActionType = Field(..., description="Action type tag")
    config: Dict[str, Any] = Field(default_factory=dict, description="Configuration payload for the action handler")
