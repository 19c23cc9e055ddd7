from .base_provider import (
    BaseProvider,
    ProviderError,
    ProviderTransientError,
    iter_sse_content,
    parse_chat_completion,
    read_json,
    raise_for_provider_status,
)
import os
import httpx
from advisor.utils.logger import logger


class GroqProvider(BaseProvider):
    def __init__(self, api_key: str, model: str = "llama-3.3-70b-versatile", transport=None):
        super().__init__(api_key, "groq", model, transport)
        # Groq OpenAI-compatible base URL
        self.base_url = os.environ.get("GROQ_BASE_URL", "https://api.groq.com/openai")

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def request(self, payload: dict) -> dict:
        url = f"{self.base_url}/v1/chat/completions"
        async with self._client(timeout=60.0) as client:
            try:
                r = await client.post(url, json=payload, headers=self._headers())
            except httpx.HTTPError as e:
                logger.warning("groq_request_network_error", error=str(e))
                raise ProviderTransientError(f"Groq network error: {e}") from e
            raise_for_provider_status(r, "groq")
            return parse_chat_completion(read_json(r, "groq"))

    async def stream(self, payload: dict, usage: dict | None = None):
        url = f"{self.base_url}/v1/chat/completions"
        payload = {**payload, "stream": True}
        async with self._client(timeout=None) as client:
            try:
                async with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                    raise_for_provider_status(resp, "groq")
                    async for content in iter_sse_content(resp, usage):
                        yield content
            except httpx.HTTPError as e:
                raise ProviderTransientError(f"Groq stream error: {e}") from e

    async def probe(self) -> bool:
        async with self._client(timeout=10.0) as client:
            try:
                r = await client.get(f"{self.base_url}/v1/models", headers=self._headers())
                raise_for_provider_status(r, "groq")
                return True
            except (httpx.HTTPError, ProviderError) as e:
                logger.warning("groq_probe_failed", error=str(e))
                return False
