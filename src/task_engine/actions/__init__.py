from .chain import ChainActionHandler
from .http import WebhookActionHandler
from .protocol import ActionHandler
from .registry import ActionRegistry
from .schemas import ACTION_SCHEMAS, ChainConfig, ChainStep, WebhookConfig

__all__ = [
    "ActionHandler", "ActionRegistry", "ChainActionHandler", "WebhookActionHandler",
    "ACTION_SCHEMAS", "ChainConfig", "ChainStep", "WebhookConfig",
]
