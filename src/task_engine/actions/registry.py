from typing import Dict, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from task_engine.actions.protocol import ActionHandler
from task_engine.actions.schemas import ACTION_SCHEMAS, ChainConfig
from task_engine.domain.action import ActionSpec, ActionType


class ActionRegistry:
    """
    Binds each action type to its configuration schema and a registered handler.
    """
    def __init__(self, schemas: Optional[Dict[ActionType, Type[BaseModel]]] = None):
        self._schemas: Dict[ActionType, Type[BaseModel]] = dict(schemas or ACTION_SCHEMAS)
        self._handlers: Dict[ActionType, ActionHandler] = {}

    @property
    def supported_schemas(self) -> Dict[ActionType, Type[BaseModel]]:
        return self._schemas

    def register(self, handler: ActionHandler) -> None:
        """
        Register a handler for the action type it supports.

        Args:
            handler (ActionHandler): The handler instance to register.

        Raises:
            ValueError: If the type has no schema or already has a handler.
        """
        action_type = handler.supported_type()
        if action_type not in self._schemas:
            raise ValueError(f"Action type '{action_type.value}' is not supported")
        if action_type in self._handlers:
            raise ValueError(f"A handler for action type '{action_type.value}' is already registered")
        self._handlers[action_type] = handler

    def has_handler(self, action_type: ActionType) -> bool:
        return action_type in self._handlers

    def validate(self, action: ActionSpec) -> BaseModel:
        """
        Validate an action's configuration payload against its schema.

        Chains are validated recursively so a bad sub-action is rejected at
        task creation rather than mid-chain.

        Raises:
            KeyError: If the action type has no schema.
            ValueError: If the payload is invalid for the schema.
        """
        if action.type not in self._schemas:
            raise KeyError(f"No schema registered for action type '{action.type.value}'")
        schema_class = self._schemas[action.type]
        try:
            config = schema_class.model_validate(action.config)
        except ValidationError as e:
            raise ValueError(f"Invalid config for action '{action.type.value}': {str(e)}")
        if isinstance(config, ChainConfig):
            for step in config.steps:
                self.validate(step.action)
        return config

    def resolve(self, action: ActionSpec) -> Tuple[ActionHandler, BaseModel]:
        """
        Get the handler for an action together with its validated configuration.

        Raises:
            KeyError: If no handler is registered for the action type.
            ValueError: If the payload is invalid for the schema.
        """
        config = self.validate(action)
        if action.type not in self._handlers:
            raise KeyError(f"No handler registered for action type '{action.type.value}'")
        return self._handlers[action.type], config
