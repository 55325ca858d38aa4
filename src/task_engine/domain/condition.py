from datetime import datetime, time
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class ConditionType(str, Enum):
    TIME_WINDOW = "time"
    VARIABLE = "variable"
    UPSTREAM_RESULT = "upstream"


class ComparisonOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    GREATER = "greater"
    LESS = "less"
    EXISTS = "exists"


class TimeWindowCondition(BaseModel):
    """
    Holds when the evaluation time falls within [start, end) of the local day.
    A window whose start is after its end wraps past midnight.
    """
    type: Literal["time"] = "time"
    start: time = Field(..., description="Inclusive local start of the window")
    end: time = Field(..., description="Exclusive local end of the window")
    timezone: str = Field(default="UTC", description="IANA timezone the window is expressed in")


class VariableCondition(BaseModel):
    """
    Compares a named value from the evaluation context.
    """
    type: Literal["variable"] = "variable"
    key: str = Field(..., description="Dotted path of the variable in the evaluation context")
    operator: ComparisonOperator = Field(..., description="Comparison to apply")
    value: Any = Field(None, description="Operand; ignored by the 'exists' operator")


class UpstreamResultCondition(BaseModel):
    """
    Compares the output of a previous step in a chained action.
    """
    type: Literal["upstream"] = "upstream"
    step: str = Field(..., description="Name of the upstream step")
    key: Optional[str] = Field(None, description="Dotted path into the step output; the whole output when omitted")
    operator: ComparisonOperator = Field(..., description="Comparison to apply")
    value: Any = Field(None, description="Operand; ignored by the 'exists' operator")


Condition = Annotated[
    Union[TimeWindowCondition, VariableCondition, UpstreamResultCondition],
    Field(discriminator="type"),
]


class EvaluationContext(BaseModel):
    """
    Everything a condition may look at. Evaluation never reads anything else.
    """
    now: datetime = Field(..., description="Evaluation instant")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Caller supplied variables")
    upstream: Dict[str, Any] = Field(default_factory=dict, description="Outputs of previous chain steps, keyed by step name")

    def with_upstream(self, step: str, output: Any) -> "EvaluationContext":
        return self.model_copy(update={"upstream": {**self.upstream, step: output}})


class ConditionDiagnostic(BaseModel):
    """
    One line of the evaluation trail. A failed condition is a skip reason, not an error.
    """
    index: int
    type: ConditionType
    passed: bool
    reason: str


def format_diagnostics(diagnostics: List[ConditionDiagnostic]) -> str:
    return "; ".join(f"#{d.index} {d.type.value}: {d.reason}" for d in diagnostics if not d.passed)
