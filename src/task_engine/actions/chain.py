import asyncio
import logging
from typing import Any, Dict, List, Optional

from task_engine.actions.registry import ActionRegistry
from task_engine.actions.schemas import ChainConfig
from task_engine.conditions import ConditionEvaluator
from task_engine.domain.action import ActionType
from task_engine.domain.condition import EvaluationContext, format_diagnostics
from task_engine.errors import ActionInvocationError

logger = logging.getLogger(__name__)


class ChainActionHandler:
    """
    Runs a list of sub-actions in order. Not a graph: each step sees the
    outputs of the steps before it, and the first failing step stops the chain.
    """

    def __init__(self, registry: ActionRegistry, evaluator: Optional[ConditionEvaluator] = None):
        self.registry = registry
        self.evaluator = evaluator or ConditionEvaluator()

    @staticmethod
    def supported_type() -> ActionType:
        return ActionType.CHAIN

    async def invoke(self, config: ChainConfig, context: EvaluationContext, cancel_signal: asyncio.Event) -> Dict[str, Any]:
        steps: List[Dict[str, Any]] = []
        for index, step in enumerate(config.steps):
            name = step.name or str(index)
            if cancel_signal.is_set():
                raise ActionInvocationError("Chain cancelled", details={"completed_steps": steps})

            passed, diagnostics = self.evaluator.evaluate(step.conditions, context)
            if not passed:
                logger.debug("Chain step %s skipped: %s", name, format_diagnostics(diagnostics))
                steps.append({"step": name, "skipped": True, "reason": format_diagnostics(diagnostics)})
                continue

            try:
                handler, step_config = self.registry.resolve(step.action)
                output = await handler.invoke(step_config, context, cancel_signal)
            except ActionInvocationError as e:
                raise ActionInvocationError(
                    f"Chain step '{name}' failed: {e}",
                    details={"failed_step": name, "completed_steps": steps, **e.details},
                )
            except (KeyError, ValueError) as e:
                raise ActionInvocationError(
                    f"Chain step '{name}' could not be dispatched: {e}",
                    details={"failed_step": name, "completed_steps": steps},
                )

            context = context.with_upstream(name, output)
            steps.append({"step": name, "skipped": False, "output": output})
        return {"steps": steps, "outputs": context.upstream}
