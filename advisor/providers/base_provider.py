from __future__ import annotations
import abc
import json
from typing import Any, AsyncIterator

import httpx

from advisor.models import InvocationParams


class ProviderError(Exception):
    pass


class ProviderAuthError(ProviderError):
    pass


class ProviderQuotaError(ProviderError):
    pass


class ProviderTransientError(ProviderError):
    pass


class BaseProvider(abc.ABC):
    """Abstract backend adapter.

    Concrete providers implement `request` (one completion), `stream`
    (completion chunks as they arrive) and `probe` (cheap liveness check).
    `request` returns `{"output": str, "usage": dict, "raw_response": ...}`.
    """

    local = False

    def __init__(
        self,
        api_key: str,
        provider_name: str,
        model: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.provider_name = provider_name
        self.model = model
        # Injected in tests to replace the network
        self.transport = transport

    def build_payload(self, prompt: str, params: InvocationParams) -> dict:
        """OpenAI-style chat payload; adapters with another wire format translate it."""
        messages = []
        if params.system:
            messages.append({"role": "system", "content": params.system})
        messages.append({"role": "user", "content": prompt})
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
        }
        if params.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def _client(self, timeout: float | None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    @abc.abstractmethod
    async def request(self, payload: dict) -> dict:
        """Send a completion request and return a parsed response dict."""

    @abc.abstractmethod
    async def stream(self, payload: dict, usage: dict | None = None) -> AsyncIterator[str]:
        """Streaming generator yielding chunks of text; fills `usage` when the backend reports it."""

    @abc.abstractmethod
    async def probe(self) -> bool:
        """Return True when the backend is reachable and accepts our credentials."""


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Map an HTTP status onto the provider error hierarchy."""
    if response.status_code in (401, 403):
        raise ProviderAuthError(f"{provider} auth failed ({response.status_code})")
    if response.status_code == 429:
        raise ProviderQuotaError(f"{provider} rate limited")
    if response.status_code >= 400:
        raise ProviderTransientError(f"{provider} HTTP error {response.status_code}")


def read_json(response: httpx.Response, provider: str) -> dict:
    """Decode a 2xx body; a page that is not a JSON object counts as a transient backend fault."""
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderTransientError(
            f"{provider} returned a non-JSON body ({response.headers.get('content-type', 'unknown type')})"
        ) from e
    if not isinstance(data, dict):
        raise ProviderTransientError(f"{provider} returned JSON that is not an object")
    return data


def parse_chat_completion(data: dict) -> dict:
    output = ""
    choices = data.get("choices") or []
    if choices and isinstance(choices[0], dict):
        choice = choices[0]
        if "message" in choice:
            output = (choice.get("message") or {}).get("content") or ""
        else:
            output = choice.get("text", "") or ""
    if not isinstance(output, str):
        raise ProviderTransientError("completion content is not text")
    return {
        "output": output,
        "usage": data.get("usage") or {},
        "raw_response": data,
    }


async def iter_sse_content(response: httpx.Response, usage: dict | None = None) -> AsyncIterator[str]:
    """Yield content deltas from an OpenAI-compatible `text/event-stream` body.

    When `usage` is given it is filled from the final chunk's usage block,
    which Groq nests under `x_groq`.
    """
    async for line in response.aiter_lines():
        if not line.startswith("data: "):
            continue
        data = line[6:]
        if data == "[DONE]":
            break
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            continue
        if not isinstance(parsed, dict):
            continue
        if usage is not None:
            chunk_usage = parsed.get("usage") or (parsed.get("x_groq") or {}).get("usage")
            if chunk_usage:
                usage.update(chunk_usage)
        choices = parsed.get("choices") or []
        if not choices:
            continue
        content = (choices[0].get("delta") or {}).get("content")
        if content:
            yield content
