from datetime import datetime
from typing import Any, List, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from task_engine.domain.condition import (
    ComparisonOperator,
    Condition,
    ConditionDiagnostic,
    ConditionType,
    EvaluationContext,
    TimeWindowCondition,
    UpstreamResultCondition,
    VariableCondition,
)

_MISSING = object()


class ConditionEvaluator:
    """
    Evaluates a task's pre-execution gates against a caller supplied context.

    Evaluation is pure: it never performs I/O and never raises for bad data. A
    condition that cannot be evaluated (missing key, incomparable types, unknown
    timezone) is simply false and explains itself in the diagnostic trail.
    """

    def evaluate(self, conditions: Sequence[Condition], context: EvaluationContext) -> Tuple[bool, List[ConditionDiagnostic]]:
        """
        AND all conditions together.

        Every condition is evaluated, even after the first failure, so the
        diagnostic trail is complete.

        Returns:
            Tuple[bool, List[ConditionDiagnostic]]: Whether all conditions hold, and one diagnostic per condition.
        """
        diagnostics: List[ConditionDiagnostic] = []
        for index, condition in enumerate(conditions):
            passed, reason = self._evaluate_one(condition, context)
            diagnostics.append(ConditionDiagnostic(
                index=index,
                type=ConditionType(condition.type),
                passed=passed,
                reason=reason,
            ))
        return all(d.passed for d in diagnostics), diagnostics

    def _evaluate_one(self, condition: Condition, context: EvaluationContext) -> Tuple[bool, str]:
        if isinstance(condition, TimeWindowCondition):
            return self._evaluate_time_window(condition, context.now)
        if isinstance(condition, VariableCondition):
            actual = lookup(context.variables, condition.key)
            if actual is _MISSING:
                return False, f"variable '{condition.key}' is not in the context"
            return compare(actual, condition.operator, condition.value, label=f"variable '{condition.key}'")
        if isinstance(condition, UpstreamResultCondition):
            if condition.step not in context.upstream:
                return False, f"step '{condition.step}' has no recorded output"
            output = context.upstream[condition.step]
            label = f"step '{condition.step}'"
            if condition.key:
                output = lookup(output, condition.key)
                label = f"{label} output '{condition.key}'"
                if output is _MISSING:
                    return False, f"{label} is missing"
            return compare(output, condition.operator, condition.value, label=label)
        return False, f"unsupported condition {type(condition).__name__}"

    def _evaluate_time_window(self, condition: TimeWindowCondition, now: datetime) -> Tuple[bool, str]:
        try:
            tz = ZoneInfo(condition.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return False, f"unknown timezone '{condition.timezone}'"
        local = now.astimezone(tz).time().replace(tzinfo=None)
        start, end = condition.start, condition.end
        if start <= end:
            inside = start <= local < end
        else:
            inside = local >= start or local < end
        window = f"[{start.isoformat()}, {end.isoformat()}) {condition.timezone}"
        if inside:
            return True, f"{local.isoformat()} is within {window}"
        return False, f"{local.isoformat()} is outside {window}"


def lookup(source: Any, path: str) -> Any:
    """
    Resolve a dotted path through nested mappings and sequences.
    """
    current = source
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def compare(actual: Any, operator: ComparisonOperator, expected: Any, label: str = "value") -> Tuple[bool, str]:
    if operator == ComparisonOperator.EXISTS:
        return True, f"{label} exists"
    try:
        if operator == ComparisonOperator.EQUALS:
            passed = actual == expected
        elif operator == ComparisonOperator.CONTAINS:
            passed = expected in actual
        elif operator == ComparisonOperator.GREATER:
            passed = actual > expected
        elif operator == ComparisonOperator.LESS:
            passed = actual < expected
        else:
            return False, f"unsupported operator {operator}"
    except TypeError as e:
        return False, f"{label} cannot be compared with {operator.value}: {e}"
    verdict = "holds" if passed else "does not hold"
    return bool(passed), f"{label} {operator.value} {expected!r} {verdict} (actual {actual!r})"
