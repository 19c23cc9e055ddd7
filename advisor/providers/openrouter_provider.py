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


class OpenRouterProvider(BaseProvider):
    def __init__(self, api_key: str, model: str = "meta-llama/llama-3.3-70b-instruct", transport=None):
        super().__init__(api_key, "openrouter", model, transport)
        self.base_url = os.environ.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api")

    async def request(self, payload: dict) -> dict:
        url = f"{self.base_url}/v1/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with self._client(timeout=60.0) as client:
            try:
                r = await client.post(url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                raise ProviderTransientError(f"OpenRouter network error: {e}") from e
            logger.debug("openrouter_request", url=url, status=r.status_code)
            raise_for_provider_status(r, "openrouter")
            return parse_chat_completion(read_json(r, "openrouter"))

    async def stream(self, payload: dict, usage: dict | None = None):
        url = f"{self.base_url}/v1/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        payload = {**payload, "stream": True}
        async with self._client(timeout=None) as client:
            try:
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    logger.debug("openrouter_stream_start", url=url, status=resp.status_code)
                    raise_for_provider_status(resp, "openrouter")
                    async for content in iter_sse_content(resp, usage):
                        yield content
            except httpx.HTTPError as e:
                raise ProviderTransientError(f"OpenRouter stream error: {e}") from e

    async def probe(self) -> bool:
        # GET /v1/models is cheap and does not consume quota
        async with self._client(timeout=10.0) as client:
            url = f"{self.base_url}/v1/models"
            headers = {"Authorization": f"Bearer {self.api_key}"}
            try:
                r = await client.get(url, headers=headers)
                raise_for_provider_status(r, "openrouter")
                return True
            except (httpx.HTTPError, ProviderError) as e:
                logger.warning("openrouter_probe_failed", error=str(e))
                return False
