import asyncio
import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from advisor.config import Config
from advisor.errors import BackendRateLimited, BackendTimeout, BackendUnavailable, ConfigurationError
from advisor.models import InvocationParams
from advisor.providers.base_provider import (
    BaseProvider,
    ProviderAuthError,
    ProviderQuotaError,
    ProviderTransientError,
)
from advisor.providers.gateway import AvailabilityCache, ModelGateway
from advisor.providers.groq_provider import GroqProvider
from advisor.providers.openrouter_provider import OpenRouterProvider


def _adapter(name, local=False, output="ok", probe=True):
    adapter = MagicMock(spec=BaseProvider)
    adapter.provider_name = name
    adapter.local = local
    adapter.build_payload.return_value = {"messages": []}
    adapter.request = AsyncMock(return_value={"output": output, "usage": {"total_tokens": 7}})
    adapter.probe = AsyncMock(return_value=probe)
    return adapter


def _gateway(local=None, remotes=(), **kwargs):
    kwargs.setdefault("retries", 0)
    kwargs.setdefault("retry_delay", 0)
    return ModelGateway(local, remotes, **kwargs)


@pytest.mark.asyncio
async def test_local_backend_preferred_when_available():
    local = _adapter("ollama", local=True, output="local answer")
    remote = _adapter("groq")
    gateway = _gateway(local, [remote])

    completion = await gateway.invoke("hi", InvocationParams(), timeout=1)

    assert completion.text == "local answer"
    assert completion.backend == "ollama"
    assert completion.tokens_used == 7
    remote.request.assert_not_called()


@pytest.mark.asyncio
async def test_unreachable_local_falls_through_and_probe_is_cached():
    local = _adapter("ollama", local=True, probe=False)
    remote = _adapter("groq", output="remote answer")
    gateway = _gateway(local, [remote])

    first = await gateway.invoke("hi", timeout=1)
    second = await gateway.invoke("hi again", timeout=1)

    assert first.backend == second.backend == "groq"
    assert local.probe.await_count == 1
    local.request.assert_not_called()


@pytest.mark.asyncio
async def test_quota_error_puts_backend_in_cooldown():
    """A throttled backend is skipped until its cooldown ends."""
    now = [100.0]
    throttled = _adapter("groq")
    throttled.request.side_effect = ProviderQuotaError("429")
    backup = _adapter("openrouter", output="backup")
    gateway = _gateway(None, [throttled, backup], rate_limit_cooldown=60, clock=lambda: now[0])

    assert (await gateway.invoke("a", timeout=1)).backend == "openrouter"
    assert (await gateway.invoke("b", timeout=1)).backend == "openrouter"
    assert throttled.request.await_count == 1

    now[0] += 61
    await gateway.invoke("c", timeout=1)
    assert throttled.request.await_count == 2


@pytest.mark.asyncio
async def test_all_backends_throttled_raises_rate_limited():
    remote = _adapter("groq")
    remote.request.side_effect = ProviderQuotaError("429")
    gateway = _gateway(None, [remote])

    with pytest.raises(BackendRateLimited):
        await gateway.invoke("hi", timeout=1)
    # Still cooling down on the next call
    with pytest.raises(BackendRateLimited):
        await gateway.invoke("hi", timeout=1)


@pytest.mark.asyncio
async def test_auth_failure_and_transient_failure_raise_unavailable():
    bad_key = _adapter("groq")
    bad_key.request.side_effect = ProviderAuthError("401")
    flaky = _adapter("openrouter")
    flaky.request.side_effect = ProviderTransientError("502")
    gateway = _gateway(None, [bad_key, flaky])

    with pytest.raises(BackendUnavailable) as exc:
        await gateway.invoke("hi", timeout=1)
    assert "groq" in str(exc.value) and "openrouter" in str(exc.value)


@pytest.mark.asyncio
async def test_transient_error_is_retried():
    remote = _adapter("groq")
    remote.request.side_effect = [ProviderTransientError("timeout"), {"output": "ok", "usage": {}}]
    gateway = _gateway(None, [remote], retries=1, retry_delay=0)

    completion = await gateway.invoke("hi", timeout=1)

    assert completion.text == "ok"
    assert remote.request.await_count == 2


@pytest.mark.asyncio
async def test_local_failure_marks_it_unavailable():
    local = _adapter("ollama", local=True)
    local.request.side_effect = ProviderTransientError("connection refused")
    remote = _adapter("groq", output="remote")
    gateway = _gateway(local, [remote])

    assert (await gateway.invoke("a", timeout=1)).backend == "groq"
    assert (await gateway.invoke("b", timeout=1)).backend == "groq"
    assert local.request.await_count == 1


@pytest.mark.asyncio
async def test_no_backend_fails_fast_with_configuration_error():
    gateway = _gateway(None, [])
    assert not gateway.configured
    with pytest.raises(ConfigurationError):
        await gateway.invoke("hi", timeout=1)


@pytest.mark.asyncio
async def test_deadline_covers_whole_call():
    async def slow(payload):
        await asyncio.sleep(5)

    remote = _adapter("groq")
    remote.request.side_effect = slow
    gateway = _gateway(None, [remote])

    with pytest.raises(BackendTimeout):
        await gateway.invoke("hi", timeout=0.05)


@pytest.mark.asyncio
async def test_usage_snapshot_counts_calls_and_failures():
    throttled = _adapter("groq")
    throttled.request.side_effect = ProviderQuotaError("429")
    ok = _adapter("openrouter")
    gateway = _gateway(None, [throttled, ok])

    await gateway.invoke("hi", timeout=1)
    snapshot = gateway.usage_snapshot()

    assert snapshot["groq"] == {"calls": 1, "failures": 1, "tokens": 0, "latency_ms": 0}
    assert snapshot["openrouter"]["calls"] == 1
    assert snapshot["openrouter"]["tokens"] == 7
    snapshot["openrouter"]["calls"] = 99
    assert gateway.usage_snapshot()["openrouter"]["calls"] == 1


@pytest.mark.asyncio
async def test_stream_falls_back_before_first_chunk():
    async def broken(payload, usage=None):
        raise ProviderTransientError("502")
        yield  # pragma: no cover

    async def working(payload, usage=None):
        for chunk in ("a", "b"):
            yield chunk

    first = _adapter("groq")
    first.stream = broken
    second = _adapter("openrouter")
    second.stream = working
    gateway = _gateway(None, [first, second])

    chunks = [c async for c in gateway.stream("hi", timeout=1)]

    assert chunks == ["a", "b"]


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_probe():
    calls = 0

    async def probe():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return True

    cache = AvailabilityCache(probe, ttl_seconds=30)
    results = await asyncio.gather(*(cache.is_available() for _ in range(10)))

    assert all(results)
    assert calls == 1


@pytest.mark.asyncio
async def test_availability_expires_after_ttl():
    now = [0.0]
    probe = AsyncMock(side_effect=[False, True])
    cache = AvailabilityCache(probe, ttl_seconds=30, clock=lambda: now[0])

    assert await cache.is_available() is False
    now[0] = 29
    assert await cache.is_available() is False
    now[0] = 31
    assert await cache.is_available() is True
    assert probe.await_count == 2


@pytest.mark.asyncio
async def test_probe_error_counts_as_unavailable():
    cache = AvailabilityCache(AsyncMock(side_effect=ProviderTransientError("boom")), ttl_seconds=30)
    assert await cache.is_available() is False


def test_from_config_enables_remotes_with_keys(monkeypatch):
    for name in ("GROQ_API_KEY", "OPENROUTER_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
    monkeypatch.setenv("GOOGLE_API_KEY", "g-test")

    gateway = ModelGateway.from_config(Config(local_llm_enabled=False))

    assert [r.provider_name for r in gateway.remotes] == ["groq", "gemini"]
    assert gateway.local is None


@pytest.mark.asyncio
async def test_from_config_without_anything_is_unconfigured(monkeypatch):
    for name in ("GROQ_API_KEY", "OPENROUTER_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    gateway = ModelGateway.from_config(Config(local_llm_enabled=False))
    assert not gateway.configured
    with pytest.raises(ConfigurationError):
        await gateway.ensure_configured()


@pytest.mark.asyncio
async def test_html_error_page_falls_through_to_next_backend():
    def html(request):
        return httpx.Response(200, text="<html>Bad gateway</html>", headers={"content-type": "text/html"})

    def healthy(request):
        body = {"choices": [{"message": {"content": "from openrouter"}}], "usage": {"total_tokens": 3}}
        return httpx.Response(200, json=body)

    groq = GroqProvider("gsk", transport=httpx.MockTransport(html))
    openrouter = OpenRouterProvider("or", transport=httpx.MockTransport(healthy))
    gateway = _gateway(None, [groq, openrouter])

    completion = await gateway.invoke("hi", timeout=1)

    assert completion.backend == "openrouter"
    assert completion.text == "from openrouter"
    assert gateway.usage_snapshot()["groq"]["failures"] == 1


@pytest.mark.asyncio
async def test_unexpected_adapter_error_falls_through():
    broken = _adapter("gemini")
    broken.request.side_effect = RuntimeError("sdk exploded")
    backup = _adapter("groq", output="backup")
    gateway = _gateway(None, [broken, backup])

    assert (await gateway.invoke("hi", timeout=1)).text == "backup"


@pytest.mark.asyncio
async def test_unexpected_error_on_every_backend_is_unavailable():
    broken = _adapter("gemini")
    broken.request.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
    gateway = _gateway(None, [broken])

    with pytest.raises(BackendUnavailable, match="gemini"):
        await gateway.invoke("hi", timeout=1)


@pytest.mark.asyncio
async def test_ensure_configured_probes_when_local_is_the_only_backend():
    local = _adapter("ollama", local=True, probe=False)
    gateway = _gateway(local, [])

    with pytest.raises(ConfigurationError) as exc:
        await gateway.ensure_configured()
    assert "unreachable" in exc.value.message
    local.request.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_configured_accepts_live_local_backend():
    local = _adapter("ollama", local=True, probe=True)
    gateway = _gateway(local, [])

    await gateway.ensure_configured()
    await gateway.ensure_configured()

    assert local.probe.await_count == 1


@pytest.mark.asyncio
async def test_ensure_configured_skips_probe_with_remote_keys():
    local = _adapter("ollama", local=True, probe=False)
    gateway = _gateway(local, [_adapter("groq")])

    await gateway.ensure_configured()

    local.probe.assert_not_called()


@pytest.mark.asyncio
async def test_stream_reports_serving_backend_and_tokens():
    async def working(payload, usage=None):
        yield "hello "
        usage.update({"prompt_tokens": 4, "completion_tokens": 2})
        yield "world"

    remote = _adapter("openrouter")
    remote.stream = working
    gateway = _gateway(None, [remote])
    stats = {}

    chunks = [c async for c in gateway.stream("hi", timeout=1, stats=stats)]

    assert "".join(chunks) == "hello world"
    assert stats == {"backend": "openrouter", "tokens": 6}
    assert gateway.usage_snapshot()["openrouter"]["tokens"] == 6


@pytest.mark.asyncio
async def test_stream_failure_after_first_chunk_is_not_retried_elsewhere():
    async def dies(payload, usage=None):
        yield "partial"
        raise ValueError("bad chunk")

    first = _adapter("groq")
    first.stream = dies
    second = _adapter("openrouter")
    gateway = _gateway(None, [first, second])
    received = []

    with pytest.raises(BackendUnavailable, match="mid-stream"):
        async for chunk in gateway.stream("hi", timeout=1):
            received.append(chunk)
    assert received == ["partial"]
