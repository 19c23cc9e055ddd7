from __future__ import annotations
import hashlib
import json
from enum import Enum
from string import Template
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from advisor.errors import PlanConstructionError


class IntentCategory(str, Enum):
    MARKET_ANALYSIS = "market_analysis"
    FINANCIAL_MODELING = "financial_modeling"
    GO_TO_MARKET = "go_to_market"
    CUSTOMER_PROFILING = "customer_profiling"
    COMPETITOR_ANALYSIS = "competitor_analysis"
    REVENUE_PRICING = "revenue_pricing"
    LEGAL_COMPLIANCE = "legal_compliance"
    OPERATIONS = "operations"
    FUNDING = "funding"
    BUSINESS_PLAN = "business_plan"
    GENERAL = "general"


class ExecutionType(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    MIXED = "mixed"


class Intent(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: IntentCategory = IntentCategory.GENERAL
    entities: Dict[str, str] = {}
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    request: str = ""
    reasoning: str = ""

    def fingerprint(self) -> str:
        """Stable hash of the intent, used as the plan cache key."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class AgentDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    name: str
    specialization: str
    skills: FrozenSet[str]
    prompt_template: str = Field(min_length=1)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=2000, gt=0)
    # Skills whose outputs this agent needs before it can run
    consumes: FrozenSet[str] = frozenset()
    generalist: bool = False

    @field_validator("skills")
    @classmethod
    def _skills_not_empty(cls, v):
        if not v:
            raise ValueError("an agent needs at least one skill")
        return v

    def render_prompt(self, **values: Any) -> str:
        """Fill `$name` placeholders in the template; unknown ones are left as-is."""
        return Template(self.prompt_template).safe_substitute(
            {k: str(v) for k, v in values.items()}
        )


class Task(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    agent_id: str
    inputs: Dict[str, Any] = {}
    depends_on: FrozenSet[str] = frozenset()


def dependency_levels(tasks: Sequence[Task]) -> List[List[str]]:
    """Group task ids into levels where each level only depends on earlier ones.

    Raises PlanConstructionError on duplicate ids, self-references, dangling
    references or cycles.
    """
    ids = [t.id for t in tasks]
    if len(set(ids)) != len(ids):
        raise PlanConstructionError("duplicate task ids in plan")
    known = set(ids)
    for t in tasks:
        if t.id in t.depends_on:
            raise PlanConstructionError(f"task {t.id} depends on itself")
        dangling = t.depends_on - known
        if dangling:
            raise PlanConstructionError(
                f"task {t.id} depends on unknown tasks: {sorted(dangling)}"
            )

    remaining = {t.id: set(t.depends_on) for t in tasks}
    done: set[str] = set()
    levels: List[List[str]] = []
    while remaining:
        level = [tid for tid in ids if tid in remaining and remaining[tid] <= done]
        if not level:
            raise PlanConstructionError(
                f"dependency cycle between tasks: {sorted(remaining)}"
            )
        for tid in level:
            del remaining[tid]
        done.update(level)
        levels.append(level)
    return levels


def classify_execution_type(tasks: Sequence[Task]) -> ExecutionType:
    levels = dependency_levels(tasks)
    if not any(t.depends_on for t in tasks):
        return ExecutionType.PARALLEL
    if all(len(level) == 1 for level in levels):
        return ExecutionType.SEQUENTIAL
    return ExecutionType.MIXED


class ExecutionPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    tasks: Tuple[Task, ...] = ()
    execution_type: ExecutionType = ExecutionType.PARALLEL
    estimated_duration_seconds: int = 0

    @model_validator(mode="after")
    def _check_graph(self):
        try:
            dependency_levels(self.tasks)
        except PlanConstructionError as e:
            raise ValueError(str(e)) from e
        if self.execution_type == ExecutionType.PARALLEL and any(t.depends_on for t in self.tasks):
            raise ValueError("a plan with dependency edges cannot be parallel")
        return self

    @classmethod
    def build(cls, tasks: Sequence[Task], seconds_per_level: int = 10) -> "ExecutionPlan":
        levels = dependency_levels(tasks)
        return cls(
            tasks=tuple(tasks),
            execution_type=classify_execution_type(tasks),
            estimated_duration_seconds=len(levels) * seconds_per_level,
        )

    def task(self, task_id: str) -> Task:
        for t in self.tasks:
            if t.id == task_id:
                return t
        raise KeyError(task_id)

    @property
    def agent_ids(self) -> List[str]:
        return [t.agent_id for t in self.tasks]


class AgentOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    agent_id: str
    output: str = ""
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    skipped: bool = False
    tokens_used: int = 0
    latency_ms: int = 0
    backend: Optional[str] = None


class SynthesisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    source_outputs: List[AgentOutput] = []
    execution_type: ExecutionType = ExecutionType.PARALLEL
    degraded: bool = False
    metadata: Dict[str, Any] = {}


class InvocationParams(BaseModel):
    temperature: float = 0.3
    max_tokens: int = 2000
    system: Optional[str] = None
    json_mode: bool = False


class Completion(BaseModel):
    text: str
    tokens_used: int = 0
    latency_ms: int = 0
    backend: str = ""


class EventStatus(str, Enum):
    ANALYZING_INTENT = "analyzing_intent"
    INTENT_ANALYZED = "intent_analyzed"
    PLAN_CREATED = "plan_created"
    EXECUTING_AGENTS = "executing_agents"
    AGENT_COMPLETED = "agent_completed"
    EXECUTION_COMPLETE = "execution_complete"
    SYNTHESIZING = "synthesizing"
    SYNTHESIS_DELTA = "synthesis_delta"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressEvent(BaseModel):
    status: EventStatus
    message: Optional[str] = None
    data: Dict[str, Any] = {}

    def to_dict(self) -> dict:
        """Flat, JSON-ready shape for transports (`{"status": ..., **data}`)."""
        out: Dict[str, Any] = {"status": self.status.value}
        if self.message:
            out["message"] = self.message
        out.update(self.data)
        return out
