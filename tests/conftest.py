import pytest

from advisor.agents.registry import AgentRegistry
from advisor.config import Config
from tests.fakes import make_agent


@pytest.fixture
def config():
    return Config(
        agent_task_timeout_seconds=1.0,
        intent_timeout_seconds=1.0,
        synthesis_timeout_seconds=1.0,
        request_timeout_seconds=5.0,
        local_llm_enabled=False,
    )


@pytest.fixture
def registry():
    return AgentRegistry.load()


@pytest.fixture
def small_registry():
    return AgentRegistry([
        make_agent("market_analyst", {"market_sizing", "market_research"}),
        make_agent("financial_modeler", {"financial_projection"}, consumes={"market_sizing"}),
        make_agent("gtm_strategist", {"go_to_market"}, consumes={"customer_segmentation"}),
        make_agent("customer_profiler", {"customer_segmentation", "market_research"}),
        make_agent("business_planner_lead", {"general_planning"}, generalist=True),
    ])
