from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


StepStatus = Literal["pending", "running", "completed", "error"]
Complexity = Literal["low", "medium", "high"]

TERMINAL_STATUSES = {"completed", "error"}
STEP_TRANSITIONS: Dict[str, set] = {
    "pending": {"running", "error"},
    "running": {"completed", "error"},
    "completed": set(),
    "error": set(),
}

_WIRE_CONFIG = {"alias_generator": to_camel, "populate_by_name": True}


class ToolCall(BaseModel):
    name: str
    output: str = ""

    model_config = {**_WIRE_CONFIG}


class PlanStep(BaseModel):
    id: str
    description: str
    status: StepStatus = "pending"
    output: Optional[str] = None
    error: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)

    model_config = {**_WIRE_CONFIG}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(
        self,
        status: StepStatus,
        *,
        output: Optional[str] = None,
        error: Optional[str] = None,
        tool_calls: Optional[List[ToolCall]] = None,
    ) -> "PlanStep":
        """Return a copy of the step moved to ``status``; statuses never move backwards."""
        if status not in STEP_TRANSITIONS[self.status]:
            raise ValueError(f"Step {self.id} cannot move from {self.status} to {status}")
        update: Dict[str, Any] = {"status": status}
        if status == "completed":
            update["output"] = output or ""
            update["tool_calls"] = list(tool_calls or [])
        elif status == "error":
            update["error"] = error or "Unknown error"
        return self.model_copy(update=update, deep=True)


class SearchPlan(BaseModel):
    id: str
    query: str
    complexity: Complexity
    steps: List[PlanStep] = Field(default_factory=list)
    summary: Optional[str] = None
    conversation_turn: Optional[int] = None
    created_at: Optional[str] = None

    model_config = {**_WIRE_CONFIG}

    @property
    def is_finished(self) -> bool:
        return all(step.is_terminal for step in self.steps)

    def status_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for step in self.steps:
            counts[step.status] = counts.get(step.status, 0) + 1
        return counts

    def with_step(self, index: int, step: PlanStep) -> "SearchPlan":
        current = self.steps[index]
        if step.id != current.id:
            raise ValueError(f"Step id mismatch at index {index}: {current.id} != {step.id}")
        steps = [s.model_copy(deep=True) for s in self.steps]
        steps[index] = step.model_copy(deep=True)
        return self.model_copy(update={"steps": steps}, deep=True)

    def with_summary(self, summary: str) -> "SearchPlan":
        if self.summary is not None:
            raise ValueError(f"Plan {self.id} already has a summary")
        if not self.is_finished:
            raise ValueError(f"Plan {self.id} still has unfinished steps")
        return self.model_copy(update={"summary": summary}, deep=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PlanDraftStep(BaseModel):
    description: str = Field(description="A detailed description of what this step will accomplish")


class PlanDraft(BaseModel):
    steps: List[PlanDraftStep]
    complexity: Complexity


class SummaryResult(BaseModel):
    summary: str = Field(description="A comprehensive summary of all the findings from the search steps")


class ToolResult(BaseModel):
    tool_name: str = "unknown"
    result: str = ""


class ChatResult(BaseModel):
    text: str = ""
    tool_results: List[ToolResult] = Field(default_factory=list)
    model: Optional[str] = None


class DeepSearchRequest(BaseModel):
    # Loosely typed so validation errors surface as 400s from the handler.
    query: Any = None
    orchestrator_model: Optional[str] = None
    worker_model: Optional[str] = None
    execute_all: bool = True
    conversation_turn: Optional[int] = None

    model_config = {**_WIRE_CONFIG}


class ExecutePlanRequest(BaseModel):
    plan_id: Any = None
    orchestrator_model: Optional[str] = None

    model_config = {**_WIRE_CONFIG}


class PlanStatusRequest(BaseModel):
    plan_id: Any = None

    model_config = {**_WIRE_CONFIG}
