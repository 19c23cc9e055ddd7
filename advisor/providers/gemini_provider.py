from .base_provider import BaseProvider, ProviderAuthError, ProviderError, ProviderQuotaError, ProviderTransientError
import asyncio
from typing import Any, AsyncGenerator, Dict

from google import genai
from google.genai import errors, types

from advisor.utils.logger import logger


def _map_api_error(e: "errors.APIError", what: str) -> Exception:
    # google.genai errors carry the HTTP status in `.code`
    code = getattr(e, "code", None) or getattr(e, "status_code", 500)
    if code in (401, 403):
        return ProviderAuthError(f"Gemini auth failed: {e}")
    if code == 429:
        return ProviderQuotaError(f"Gemini quota exceeded: {e}")
    return ProviderTransientError(f"Gemini {what} error ({code}): {e}")


class GeminiProvider(BaseProvider):
    """Google Gemini through the `google-genai` SDK.

    The SDK speaks its own content format, so the OpenAI-style payload built by
    `BaseProvider.build_payload` is translated here.
    """

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash", transport=None):
        super().__init__(api_key, "gemini", model, transport)
        self._genai_client: "genai.Client | None" = None

    def _get_client(self) -> "genai.Client":
        if self._genai_client is None:
            self._genai_client = genai.Client(api_key=self.api_key)
        return self._genai_client

    def _translate(self, payload: Dict[str, Any]):
        system = None
        parts = []
        for m in payload.get("messages", []):
            if m.get("role") == "system":
                system = m.get("content")
            else:
                parts.append(m.get("content", ""))
        config = types.GenerateContentConfig(
            system_instruction=system,
            temperature=payload.get("temperature"),
            max_output_tokens=payload.get("max_tokens"),
            response_mime_type="application/json" if payload.get("response_format") else None,
        )
        return payload.get("model") or self.model, "\n\n".join(parts), config

    def _usage(self, metadata) -> Dict[str, int]:
        return {
            "prompt_tokens": getattr(metadata, "prompt_token_count", 0) or 0,
            "completion_tokens": getattr(metadata, "candidates_token_count", 0) or 0,
            "total_tokens": getattr(metadata, "total_token_count", 0) or 0,
        }

    async def request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = self._get_client()
        model, contents, config = self._translate(payload)
        loop = asyncio.get_running_loop()
        try:
            # The sync SDK call runs in the default executor to keep the loop free
            response = await loop.run_in_executor(
                None,
                lambda: client.models.generate_content(model=model, contents=contents, config=config),
            )
            text = response.text or ""
        except errors.APIError as e:
            raise _map_api_error(e, "request") from e
        except Exception as e:
            # Transport and response-parsing failures inside the SDK
            raise ProviderTransientError(f"Gemini request failed: {e}") from e

        return {
            "output": text,
            "usage": self._usage(response.usage_metadata),
            "raw_response": response,
        }

    async def stream(self, payload: Dict[str, Any], usage: Dict[str, int] | None = None) -> AsyncGenerator[str, None]:
        client = self._get_client()
        model, contents, config = self._translate(payload)
        try:
            chunks = await client.aio.models.generate_content_stream(
                model=model, contents=contents, config=config
            )
            async for chunk in chunks:
                if usage is not None and getattr(chunk, "usage_metadata", None) is not None:
                    usage.update(self._usage(chunk.usage_metadata))
                if chunk.text:
                    yield chunk.text
        except errors.APIError as e:
            raise _map_api_error(e, "stream") from e
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderTransientError(f"Gemini stream failed: {e}") from e

    async def probe(self) -> bool:
        client = self._get_client()
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, lambda: list(client.models.list()))
            return True
        except Exception as e:
            logger.warning("gemini_probe_failed", error=str(e))
            return False
