import pytest

from advisor.agents.prompts import ALL_FAILED_TEXT
from advisor.agents.synthesizer import Synthesizer
from advisor.errors import BackendUnavailable, SynthesisFailed
from advisor.models import AgentOutput, ExecutionType
from tests.fakes import FakeGateway


def _ok(task_id, agent_id, text):
    return AgentOutput(task_id=task_id, agent_id=agent_id, output=text, success=True)


def _failed(task_id, agent_id):
    return AgentOutput(task_id=task_id, agent_id=agent_id, success=False, error="down", error_code="BACKEND_UNAVAILABLE")


@pytest.mark.asyncio
async def test_all_failed_short_circuits_without_model_call(config):
    gateway = FakeGateway()
    outputs = [_failed("t1", "market_analyst"), _failed("t2", "customer_profiler")]

    result = await Synthesizer(gateway, config).synthesize(outputs, "Analyze the market")
    again = await Synthesizer(gateway, config).synthesize(outputs, "Analyze the market")

    assert gateway.calls == []
    assert result.text == ALL_FAILED_TEXT == again.text
    assert result.degraded
    assert result.source_outputs == outputs


@pytest.mark.asyncio
async def test_prompt_orders_by_task_id_and_omits_failures(config):
    gateway = FakeGateway(lambda prompt, params: "Merged")
    outputs = [
        _ok("task-02-customer_profiler", "customer_profiler", "SEGMENTS"),
        _failed("task-03-gtm_strategist", "gtm_strategist"),
        _ok("task-01-market_analyst", "market_analyst", "TAM"),
    ]

    result = await Synthesizer(gateway, config).synthesize(outputs, "Analyze", ExecutionType.PARALLEL)

    prompt, params, timeout = gateway.calls[0]
    assert prompt.index("TAM") < prompt.index("SEGMENTS")
    assert "gtm_strategist" not in prompt
    assert params.max_tokens == config.synthesis_max_tokens
    assert timeout == config.synthesis_timeout_seconds
    assert result.text == "Merged"
    assert not result.degraded
    assert len(result.source_outputs) == 3
    assert result.metadata["agents_failed"] == ["gtm_strategist"]


@pytest.mark.asyncio
async def test_single_success_is_synthesized(config):
    gateway = FakeGateway(lambda prompt, params: "Based on the market analysis")
    outputs = [_ok("t1", "market_analyst", "TAM $4B"), _failed("t2", "customer_profiler")]

    result = await Synthesizer(gateway, config).synthesize(outputs, "Analyze")

    assert "TAM $4B" in gateway.calls[0][0]
    assert result.text == "Based on the market analysis"


@pytest.mark.asyncio
async def test_failed_call_falls_back_to_deterministic_merge(config):
    gateway = FakeGateway(lambda prompt, params: BackendUnavailable("down"))
    outputs = [_ok("t1", "market_analyst", "TAM $4B"), _ok("t2", "customer_profiler", "SMBs")]

    result = await Synthesizer(gateway, config).synthesize(outputs, "Analyze")

    assert result.degraded
    assert "TAM $4B" in result.text and "SMBs" in result.text
    assert result.metadata["fallback"] == "merge"
    assert result.metadata["cause"] == "BACKEND_UNAVAILABLE"


@pytest.mark.asyncio
async def test_failed_call_raises_when_merge_disabled(config):
    config.synthesis_merge_fallback = False
    gateway = FakeGateway(lambda prompt, params: BackendUnavailable("down"))

    with pytest.raises(SynthesisFailed) as exc:
        await Synthesizer(gateway, config).synthesize([_ok("t1", "market_analyst", "TAM")], "Analyze")
    assert exc.value.metadata["cause"] == "BACKEND_UNAVAILABLE"


@pytest.mark.asyncio
async def test_streaming_forwards_every_chunk(config):
    gateway = FakeGateway(lambda prompt, params: "one two three")
    chunks = []

    result = await Synthesizer(gateway, config).synthesize(
        [_ok("t1", "market_analyst", "TAM")], "Analyze", on_token=chunks.append
    )

    assert "".join(chunks) == result.text
    assert len(chunks) == 3
    assert result.metadata["synthesis_backend"] == "fake"
    assert result.metadata["synthesis_tokens"] == 10


class _BrokenStreamGateway(FakeGateway):
    """Streams a couple of words, then loses the backend."""

    async def stream(self, prompt, params=None, timeout=None, stats=None):
        yield "Partial "
        yield "answer "
        raise BackendUnavailable("openrouter failed mid-stream")


@pytest.mark.asyncio
async def test_stream_failure_after_tokens_marks_streamed_text_discarded(config):
    chunks = []
    outputs = [_ok("t1", "market_analyst", "TAM $4B")]

    result = await Synthesizer(_BrokenStreamGateway(), config).synthesize(
        outputs, "Analyze", on_token=chunks.append
    )

    assert chunks == ["Partial ", "answer "]
    assert result.degraded
    assert result.metadata["fallback"] == "merge"
    assert result.metadata["streamed_text_discarded"] is True
    assert "TAM $4B" in result.text


@pytest.mark.asyncio
async def test_language_instruction_in_synthesis_prompt(config):
    gateway = FakeGateway(lambda prompt, params: "नमस्ते")

    await Synthesizer(gateway, config).synthesize(
        [_ok("t1", "market_analyst", "TAM")], "Analyze", language="Hindi"
    )

    assert "Write the whole answer in simple, everyday Hindi" in gateway.calls[0][0]
