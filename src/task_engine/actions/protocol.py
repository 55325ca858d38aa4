import asyncio
from typing import Any, Protocol

from pydantic import BaseModel

from task_engine.domain.action import ActionType
from task_engine.domain.condition import EvaluationContext


class ActionHandler(Protocol):
    """
    Protocol class for action handlers.

    A handler is bound to exactly one action type. It is invoked with the
    action's validated configuration, the evaluation context the task's
    conditions were checked against, and a cancel signal. Handlers must stop
    promptly once the signal is set; the engine forces the execution to a
    terminal state after a grace period regardless.
    """

    async def invoke(self, config: BaseModel, context: EvaluationContext, cancel_signal: asyncio.Event) -> Any:
        """
        Run the action.

        Args:
            config (BaseModel): Configuration validated against the schema of the action type.
            context (EvaluationContext): Variables and upstream outputs available to the action.
            cancel_signal (asyncio.Event): Set when the execution should stop.

        Returns:
            Any: The success payload recorded on the execution.

        Raises:
            ActionInvocationError: If the action failed.
        """
        ...

    @staticmethod
    def supported_type() -> ActionType:
        """
        Return the action type this handler supports.
        """
        ...
