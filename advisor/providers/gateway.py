from __future__ import annotations
import asyncio
import copy
import time
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional

from advisor.config import Config
from advisor.errors import (
    BackendRateLimited,
    BackendTimeout,
    BackendUnavailable,
    ConfigurationError,
)
from advisor.models import Completion, InvocationParams
from advisor.utils.logger import logger
from advisor.utils.retry import retry
from .base_provider import (
    BaseProvider,
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    ProviderTransientError,
)
from .gemini_provider import GeminiProvider
from .groq_provider import GroqProvider
from .ollama_provider import OllamaProvider
from .openrouter_provider import OpenRouterProvider


def _total_tokens(usage: Optional[dict]) -> int:
    if not usage:
        return 0
    # Handle different usage metadata shapes
    tokens = usage.get("total_tokens") or usage.get("total_token_count")
    if tokens:
        return int(tokens)
    return int(usage.get("prompt_tokens", 0) or 0) + int(usage.get("completion_tokens", 0) or 0)


class AvailabilityCache:
    """Cached liveness flag for one backend.

    The probe runs at most once per `ttl_seconds`; concurrent callers that find
    the flag stale wait on the same lock and reuse the fresh result.
    """

    def __init__(self, probe: Callable, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._probe = probe
        self.ttl = ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._available: Optional[bool] = None
        self._checked_at: Optional[float] = None
        self.probe_count = 0

    def _fresh(self) -> bool:
        return self._checked_at is not None and (self._clock() - self._checked_at) < self.ttl

    async def is_available(self) -> bool:
        if self._fresh():
            return bool(self._available)
        async with self._lock:
            if self._fresh():
                return bool(self._available)
            return await self._refresh_locked()

    async def refresh(self) -> bool:
        async with self._lock:
            return await self._refresh_locked()

    async def _refresh_locked(self) -> bool:
        self.probe_count += 1
        try:
            available = bool(await self._probe())
        except ProviderError as e:
            logger.warning("availability_probe_failed", error=str(e))
            available = False
        self._available = available
        self._checked_at = self._clock()
        logger.info("availability_probed", available=available, probe_count=self.probe_count)
        return available

    def mark_unavailable(self) -> None:
        self._available = False
        self._checked_at = self._clock()


class ModelGateway:
    """Uniform entry point to the configured text-generation backends.

    The local backend is preferred while its cached availability flag is up;
    remote backends follow in priority order. Throttled backends cool down for
    `rate_limit_cooldown` seconds, transient errors are retried before falling
    through, and every call runs under one deadline covering the whole chain.
    """

    def __init__(
        self,
        local: Optional[BaseProvider] = None,
        remotes: Iterable[BaseProvider] = (),
        *,
        availability_ttl: float = 30.0,
        rate_limit_cooldown: float = 60.0,
        retries: int = 1,
        retry_delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.local = local
        self.remotes: List[BaseProvider] = list(remotes)
        self.rate_limit_cooldown = rate_limit_cooldown
        self.retries = retries
        self.retry_delay = retry_delay
        self._clock = clock
        self.availability = AvailabilityCache(local.probe, availability_ttl, clock) if local else None
        self._cooldown_until: Dict[str, float] = {}
        self._stats: Dict[str, Dict[str, int]] = {}

    @classmethod
    def from_config(cls, config: Config) -> "ModelGateway":
        local = None
        if config.local_llm_enabled:
            local = OllamaProvider(
                base_url=config.local_base_url,
                model=config.local_model,
                probe_timeout=config.local_probe_timeout_seconds,
            )
        remotes = []
        for name in config.remote_provider_priority:
            api_key = config.api_key_for(_normalize_provider(name))
            if not api_key:
                logger.debug("remote_backend_skipped_no_key", provider=name)
                continue
            remotes.append(_make_adapter(name, api_key, config.remote_models))
        logger.info(
            "gateway_configured",
            local=bool(local),
            remotes=[r.provider_name for r in remotes],
        )
        return cls(
            local,
            remotes,
            availability_ttl=config.availability_ttl_seconds,
            rate_limit_cooldown=config.rate_limit_cooldown_seconds,
            retries=config.backend_retries,
            retry_delay=config.backend_retry_delay_seconds,
        )

    @property
    def configured(self) -> bool:
        return self.local is not None or bool(self.remotes)

    def _require_backend(self) -> None:
        if not self.configured:
            raise ConfigurationError(
                "No model backend configured: enable a local LLM or set a remote API key"
            )

    async def ensure_configured(self) -> None:
        """Fail fast when no backend can serve a request.

        Remote backends count as soon as they have a key. A local backend that
        is the only option must also answer its liveness probe.
        """
        self._require_backend()
        if self.remotes:
            return
        if not await self.availability.is_available():
            url = getattr(self.local, "base_url", None)
            raise ConfigurationError(
                "Local model backend is unreachable and no remote API key is set",
                metadata={"local_url": url},
            )

    async def refresh_local_availability(self) -> Optional[bool]:
        if self.availability is None:
            return None
        return await self.availability.refresh()

    def usage_snapshot(self) -> Dict[str, Dict[str, int]]:
        return copy.deepcopy(self._stats)

    async def invoke(
        self,
        prompt: str,
        params: Optional[InvocationParams] = None,
        timeout: Optional[float] = None,
    ) -> Completion:
        """Run one completion, falling back across backends within `timeout` seconds."""
        self._require_backend()
        params = params or InvocationParams()
        try:
            return await asyncio.wait_for(self._invoke_with_fallback(prompt, params), timeout)
        except asyncio.TimeoutError as e:
            logger.warning("gateway_deadline_exceeded", timeout=timeout)
            raise BackendTimeout(
                f"Model call exceeded its {timeout}s deadline",
                metadata={"timeout_seconds": timeout},
            ) from e

    async def stream(
        self,
        prompt: str,
        params: Optional[InvocationParams] = None,
        timeout: Optional[float] = None,
        stats: Optional[dict] = None,
    ) -> AsyncIterator[str]:
        """Yield completion chunks from the first backend that starts streaming.

        Falling back is only possible before the first chunk; a failure after
        that surfaces as a backend error. When given, `stats` receives the
        serving backend's name and the token count it reported.
        """
        self._require_backend()
        params = params or InvocationParams()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        candidates = await self._candidates()
        failures: List[str] = []
        rate_limited = 0

        for provider in candidates:
            name = provider.provider_name
            usage: dict = {}
            chunks = provider.stream(provider.build_payload(prompt, params), usage)
            started = False
            began = time.perf_counter()
            try:
                while True:
                    remaining = None if deadline is None else deadline - loop.time()
                    if remaining is not None and remaining <= 0:
                        raise asyncio.TimeoutError()
                    try:
                        chunk = await asyncio.wait_for(chunks.__anext__(), remaining)
                    except StopAsyncIteration:
                        break
                    started = True
                    yield chunk
            except asyncio.TimeoutError as e:
                raise BackendTimeout(
                    f"Streaming call exceeded its {timeout}s deadline",
                    metadata={"timeout_seconds": timeout},
                ) from e
            except ProviderError as e:
                self._record_failure(name)
                if started:
                    raise BackendUnavailable(f"{name} failed mid-stream: {e}") from e
                if isinstance(e, ProviderQuotaError):
                    rate_limited += 1
                self._handle_provider_failure(provider, e)
                failures.append(f"{name}: {e}")
                continue
            except Exception as e:
                self._record_failure(name)
                if started:
                    raise BackendUnavailable(f"{name} failed mid-stream: {e}") from e
                self._handle_unexpected_failure(provider, e)
                failures.append(f"{name}: {e}")
                continue
            finally:
                await chunks.aclose()
            tokens = _total_tokens(usage)
            self._record_success(name, tokens, int((time.perf_counter() - began) * 1000))
            if stats is not None:
                stats.update(backend=name, tokens=tokens)
            return

        self._raise_exhausted(failures, rate_limited)

    async def _candidates(self) -> List[BaseProvider]:
        now = self._clock()
        out: List[BaseProvider] = []
        if self.local is not None and not self._cooling_down(self.local, now):
            if await self.availability.is_available():
                out.append(self.local)
        out.extend(r for r in self.remotes if not self._cooling_down(r, now))
        if not out:
            if any(until > now for until in self._cooldown_until.values()):
                raise BackendRateLimited("Every model backend is cooling down after throttling")
            raise BackendUnavailable("No model backend is reachable")
        return out

    def _cooling_down(self, provider: BaseProvider, now: float) -> bool:
        return self._cooldown_until.get(provider.provider_name, 0.0) > now

    async def _invoke_with_fallback(self, prompt: str, params: InvocationParams) -> Completion:
        candidates = await self._candidates()
        failures: List[str] = []
        rate_limited = 0

        for provider in candidates:
            name = provider.provider_name
            payload = provider.build_payload(prompt, params)
            request = retry(
                exceptions=(ProviderTransientError,),
                max_retries=self.retries,
                initial_delay=self.retry_delay,
                label=f"{name}.request",
            )(provider.request)
            began = time.perf_counter()
            try:
                resp = await request(payload)
            except (ProviderQuotaError, ProviderAuthError, ProviderTransientError) as e:
                self._record_failure(name)
                if isinstance(e, ProviderQuotaError):
                    rate_limited += 1
                self._handle_provider_failure(provider, e)
                failures.append(f"{name}: {e}")
                continue
            except Exception as e:
                self._record_failure(name)
                self._handle_unexpected_failure(provider, e)
                failures.append(f"{name}: {e}")
                continue

            latency_ms = int((time.perf_counter() - began) * 1000)
            tokens = _total_tokens(resp.get("usage"))
            self._record_success(name, tokens, latency_ms)
            return Completion(
                text=resp.get("output") or "",
                tokens_used=tokens,
                latency_ms=latency_ms,
                backend=name,
            )

        self._raise_exhausted(failures, rate_limited)

    def _handle_provider_failure(self, provider: BaseProvider, error: ProviderError) -> None:
        name = provider.provider_name
        if isinstance(error, (ProviderQuotaError, ProviderAuthError)):
            reason = "rate_limited" if isinstance(error, ProviderQuotaError) else "auth_failed"
            self._cooldown_until[name] = self._clock() + self.rate_limit_cooldown
            logger.warning("backend_cooling_down", provider=name, reason=reason, seconds=self.rate_limit_cooldown)
        else:
            logger.warning("backend_failed_trying_next", provider=name, error=str(error))
        if provider.local and self.availability is not None:
            self.availability.mark_unavailable()

    def _handle_unexpected_failure(self, provider: BaseProvider, error: Exception) -> None:
        # Adapter faults outside the provider error hierarchy fall through like transient ones
        logger.error(
            "backend_unexpected_error",
            provider=provider.provider_name,
            error_type=type(error).__name__,
            error=str(error),
        )
        if provider.local and self.availability is not None:
            self.availability.mark_unavailable()

    def _raise_exhausted(self, failures: List[str], rate_limited: int) -> None:
        if failures and rate_limited == len(failures):
            raise BackendRateLimited("Every model backend is throttling requests")
        raise BackendUnavailable("All model backends failed: " + "; ".join(failures))

    def _entry(self, name: str) -> Dict[str, int]:
        return self._stats.setdefault(name, {"calls": 0, "failures": 0, "tokens": 0, "latency_ms": 0})

    def _record_success(self, name: str, tokens: int, latency_ms: int) -> None:
        entry = self._entry(name)
        entry["calls"] += 1
        entry["tokens"] += tokens
        entry["latency_ms"] += latency_ms

    def _record_failure(self, name: str) -> None:
        entry = self._entry(name)
        entry["calls"] += 1
        entry["failures"] += 1


def _normalize_provider(name: str) -> str:
    """Normalize provider name aliases to canonical provider keys."""
    if not name:
        return ""
    n = name.lower()
    if n in ("google", "gemini"):
        return "gemini"
    return n


def _make_adapter(name: str, api_key: str, models: Dict[str, str]) -> BaseProvider:
    p = _normalize_provider(name)
    if p == "gemini":
        return GeminiProvider(api_key, model=models.get("gemini", "gemini-2.0-flash"))
    if p == "openrouter":
        return OpenRouterProvider(api_key, model=models.get("openrouter", "meta-llama/llama-3.3-70b-instruct"))
    if p == "groq":
        return GroqProvider(api_key, model=models.get("groq", "llama-3.3-70b-versatile"))
    raise ConfigurationError(f"Unknown remote provider: {name}")
