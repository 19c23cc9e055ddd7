from .base_provider import (
    BaseProvider,
    ProviderTransientError,
    iter_sse_content,
    parse_chat_completion,
    read_json,
    raise_for_provider_status,
)
import httpx
from advisor.utils.logger import logger


class OllamaProvider(BaseProvider):
    """Local Ollama server, spoken to through its OpenAI-compatible endpoint.

    Liveness is checked with `GET /api/tags`, which answers instantly when the
    daemon is up and needs no model to be loaded.
    """

    local = True

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3",
        probe_timeout: float = 2.0,
        transport=None,
    ):
        # Ollama does not check the key, but the OpenAI-compatible route wants one
        super().__init__("ollama", "ollama", model, transport)
        self.base_url = base_url.rstrip("/")
        if self.base_url.endswith("/v1"):
            self.base_url = self.base_url[: -len("/v1")]
        self.probe_timeout = probe_timeout

    async def request(self, payload: dict) -> dict:
        url = f"{self.base_url}/v1/chat/completions"
        async with self._client(timeout=None) as client:
            try:
                r = await client.post(url, json=payload)
            except httpx.HTTPError as e:
                raise ProviderTransientError(f"Ollama unreachable: {e}") from e
            raise_for_provider_status(r, "ollama")
            return parse_chat_completion(read_json(r, "ollama"))

    async def stream(self, payload: dict, usage: dict | None = None):
        url = f"{self.base_url}/v1/chat/completions"
        payload = {**payload, "stream": True}
        async with self._client(timeout=None) as client:
            try:
                async with client.stream("POST", url, json=payload) as resp:
                    raise_for_provider_status(resp, "ollama")
                    async for content in iter_sse_content(resp, usage):
                        yield content
            except httpx.HTTPError as e:
                raise ProviderTransientError(f"Ollama stream error: {e}") from e

    async def probe(self) -> bool:
        async with self._client(timeout=self.probe_timeout) as client:
            try:
                r = await client.get(f"{self.base_url}/api/tags")
            except httpx.HTTPError as e:
                logger.info("ollama_probe_unreachable", url=self.base_url, error=str(e))
                return False
            return r.status_code == 200
