import re
from typing import Any, Dict, FrozenSet, List, NamedTuple, Optional, Tuple

from advisor.models import AgentDefinition, ExecutionPlan, Intent, IntentCategory, Task
from advisor.utils.logger import logger
from .registry import AgentRegistry

SECONDS_PER_LEVEL = 10

# Skills an intent category asks for. Any agent holding one of them is selected.
CATEGORY_SKILLS: Dict[IntentCategory, FrozenSet[str]] = {
    IntentCategory.MARKET_ANALYSIS: frozenset({"market_sizing", "market_research"}),
    IntentCategory.FINANCIAL_MODELING: frozenset({"financial_projection", "unit_economics", "revenue_modeling"}),
    IntentCategory.GO_TO_MARKET: frozenset({"go_to_market", "channel_strategy", "customer_segmentation"}),
    IntentCategory.CUSTOMER_PROFILING: frozenset({"customer_segmentation", "persona_development"}),
    IntentCategory.COMPETITOR_ANALYSIS: frozenset({"competitor_analysis"}),
    IntentCategory.REVENUE_PRICING: frozenset({"pricing_strategy", "revenue_modeling"}),
    IntentCategory.LEGAL_COMPLIANCE: frozenset({"legal_structure", "compliance"}),
    IntentCategory.OPERATIONS: frozenset({"operations_planning", "team_structure"}),
    IntentCategory.FUNDING: frozenset({"fundraising", "financial_projection"}),
    IntentCategory.BUSINESS_PLAN: frozenset({
        "business_planning",
        "market_sizing",
        "customer_segmentation",
        "financial_projection",
        "go_to_market",
    }),
    IntentCategory.GENERAL: frozenset({"general_planning"}),
}


def required_skills(category: IntentCategory) -> FrozenSet[str]:
    return CATEGORY_SKILLS.get(category, frozenset())


class Shortcut(NamedTuple):
    """A context-driven route that skips intent classification."""

    name: str
    # None routes to the registry's generalist
    agent_id: Optional[str]
    goal: str


ONBOARDING_AGENT_ID = "context_collector"
_ONBOARDING_PHASE = re.compile(r"\bphase\s*1\b", re.IGNORECASE)


def _first(context: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = context.get(key)
        if value not in (None, ""):
            return value
    return None


def match_shortcut(context: Optional[Dict[str, Any]]) -> Optional[Shortcut]:
    """Pick a fixed single-agent route from the conversation context, if one applies.

    Checked in order: an explicit suggestion request, the onboarding phase,
    then a known next question in a guided Q&A flow.
    """
    if not context:
        return None
    if _first(context, "request_type", "requestType") == "suggestion":
        return Shortcut(
            "suggestion",
            None,
            "Give three or four short, specific brainstorming ideas that answer the user's question.",
        )
    phase = str(_first(context, "current_phase", "currentPhase") or "")
    if _ONBOARDING_PHASE.search(phase) or phase.strip() == "1":
        return Shortcut(
            "onboarding",
            ONBOARDING_AGENT_ID,
            "Collect the founder's basic information and business idea.",
        )
    next_question = _first(context, "next_question", "nextQuestion")
    if next_question:
        return Shortcut(
            "next_question",
            None,
            f"Respond briefly to the user's answer, then ask this next question: {next_question}",
        )
    return None


class Planner:
    """Maps an Intent onto an ExecutionPlan over the agent registry.

    Planning does no I/O: the same intent and registry always give the same
    plan. A selected agent depends on every earlier selected agent that
    provides a skill it consumes, so edges only point backwards in
    declaration order and the graph cannot cycle.
    """

    def __init__(self, registry: AgentRegistry, cache_enabled: bool = False):
        self.registry = registry
        self.cache_enabled = cache_enabled
        self._cache: Dict[str, ExecutionPlan] = {}

    def create_plan(self, intent: Intent) -> ExecutionPlan:
        key = intent.fingerprint() if self.cache_enabled else None
        if key and key in self._cache:
            logger.debug("plan_cache_hit", fingerprint=key[:12])
            return self._cache[key]

        agents = self.select_agents(intent)
        tasks = self._build_tasks(agents, intent)
        plan = ExecutionPlan.build(tasks, seconds_per_level=SECONDS_PER_LEVEL)

        logger.info(
            "plan_created",
            category=intent.category.value,
            agents=plan.agent_ids,
            execution_type=plan.execution_type.value,
        )
        if key:
            self._cache[key] = plan
        return plan

    def create_shortcut_plan(self, shortcut: Shortcut, message: str) -> Tuple[Intent, ExecutionPlan]:
        """Build the intent and one-task plan for a context shortcut."""
        if shortcut.agent_id and shortcut.agent_id in self.registry:
            agent = self.registry.get(shortcut.agent_id)
        else:
            agent = self.registry.generalist()
            if shortcut.agent_id:
                logger.warning("shortcut_agent_missing", shortcut=shortcut.name, agent=shortcut.agent_id)
        intent = Intent(
            category=IntentCategory.GENERAL,
            confidence=1.0,
            request=message,
            reasoning=f"Context shortcut: {shortcut.name}",
        )
        tasks = self._build_tasks([agent], intent)
        tasks = [tasks[0].model_copy(update={"inputs": {**tasks[0].inputs, "goal": shortcut.goal}})]
        plan = ExecutionPlan.build(tasks, seconds_per_level=SECONDS_PER_LEVEL)
        logger.info("plan_created", shortcut=shortcut.name, agents=plan.agent_ids)
        return intent, plan

    def select_agents(self, intent: Intent) -> List[AgentDefinition]:
        wanted = required_skills(intent.category)
        selected = [a for a in self.registry.all() if a.skills & wanted]
        if not selected:
            generalist = self.registry.generalist()
            logger.info("plan_generalist_fallback", category=intent.category.value, agent=generalist.id)
            selected = [generalist]
        return selected

    @staticmethod
    def _build_tasks(agents: List[AgentDefinition], intent: Intent) -> List[Task]:
        tasks: List[Task] = []
        for i, agent in enumerate(agents, start=1):
            depends_on = frozenset(
                task.id
                for task, provider in zip(tasks, agents)
                if provider.skills & agent.consumes
            )
            tasks.append(Task(
                id=f"task-{i:02d}-{agent.id}",
                agent_id=agent.id,
                inputs={
                    "request": intent.request,
                    "category": intent.category.value,
                    "entities": dict(intent.entities),
                },
                depends_on=depends_on,
            ))
        return tasks
