from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field

from task_engine.domain.action import ActionSpec, ActionType
from task_engine.domain.condition import Condition


class PromptConfig(BaseModel):
    prompt: str = Field(..., description="Prompt sent to the language model")
    model: Optional[str] = Field(None, description="Model identifier; the handler default applies when omitted")


class WebhookConfig(BaseModel):
    url: str = Field(..., description="The URL to make the HTTP request to")
    method: str = Field(default="POST", description="The HTTP method to use (e.g. GET, POST, PUT, DELETE)")
    headers: Dict[str, str] = Field(default={}, description="Optional headers to include in the request")
    body: Optional[Any] = Field(default=None, description="Optional JSON body for the request")
    params: Dict[str, str] = Field(default={}, description="Optional query parameters for the request")


class SendEmailConfig(BaseModel):
    to: str
    subject: str
    body: str


class RunCodeConfig(BaseModel):
    language: Literal["python", "javascript"]
    code: str


class GenerateReportConfig(BaseModel):
    config: Dict[str, Any] = Field(default_factory=dict)


class WebScrapeConfig(BaseModel):
    url: str
    selector: Optional[str] = None


class FileOperationConfig(BaseModel):
    operation: str
    path: str


class GoogleWorkspaceConfig(BaseModel):
    service: str
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


class ChainStep(BaseModel):
    name: Optional[str] = Field(None, description="Step name referenced by upstream-result conditions; defaults to the step index")
    action: ActionSpec
    conditions: List[Condition] = Field(default_factory=list, description="Gates evaluated against the context and previous step outputs")


class ChainConfig(BaseModel):
    steps: List[ChainStep] = Field(..., min_length=1, description="Sub-actions run in order")


ACTION_SCHEMAS: Dict[ActionType, Type[BaseModel]] = {
    ActionType.AI_PROMPT: PromptConfig,
    ActionType.WEBHOOK: WebhookConfig,
    ActionType.SEND_EMAIL: SendEmailConfig,
    ActionType.RUN_CODE: RunCodeConfig,
    ActionType.GENERATE_REPORT: GenerateReportConfig,
    ActionType.CHAIN: ChainConfig,
    ActionType.WEB_SCRAPE: WebScrapeConfig,
    ActionType.FILE_OPERATION: FileOperationConfig,
    ActionType.GOOGLE_WORKSPACE: GoogleWorkspaceConfig,
}
