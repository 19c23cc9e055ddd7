import json
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from advisor.config import Config
from advisor.errors import BackendError
from advisor.models import Intent, IntentCategory, InvocationParams
from advisor.utils.logger import logger
from .prompts import INTENT_CORRECTION_PROMPT, INTENT_SYSTEM_PROMPT, build_intent_prompt

INTENT_TEMPERATURE = 0.2


def extract_json_object(text: str) -> Dict[str, Any]:
    """Pull the outermost JSON object out of a model reply that may carry prose around it."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise ValueError("response contains no JSON object")
    data = json.loads(text[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("response JSON is not an object")
    return data


class IntentParser:
    """Turns a free-text request into an `Intent` with one classification call.

    Malformed replies get one corrective retry; after that, or when the
    backends fail, the request is treated as `general` with zero confidence so
    the planner can still build a broad plan.
    """

    def __init__(self, gateway, config: Config | None = None):
        self.gateway = gateway
        self.config = config or Config()

    async def parse(self, message: str, context: Optional[Dict[str, Any]] = None) -> Intent:
        base_prompt = build_intent_prompt(message, context)
        prompt = base_prompt
        params = InvocationParams(
            temperature=INTENT_TEMPERATURE,
            max_tokens=self.config.intent_max_tokens,
            system=INTENT_SYSTEM_PROMPT,
            json_mode=True,
        )

        for attempt in range(2):
            try:
                completion = await self.gateway.invoke(
                    prompt, params, timeout=self.config.intent_timeout_seconds
                )
            except BackendError as e:
                logger.warning("intent_backend_failed", attempt=attempt, code=e.code, error=str(e))
                return self.fallback(message, f"backend failure: {e.code}")

            try:
                intent = self._to_intent(completion.text, message)
            except (ValueError, PydanticValidationError) as e:
                logger.warning("intent_malformed", attempt=attempt, error=str(e)[:300])
                prompt = base_prompt + "\n" + INTENT_CORRECTION_PROMPT.format(error=str(e)[:500])
                continue

            logger.info(
                "intent_parsed",
                category=intent.category.value,
                confidence=intent.confidence,
                entities=len(intent.entities),
            )
            return intent

        return self.fallback(message, "classification output stayed malformed")

    @staticmethod
    def fallback(message: str, reason: str) -> Intent:
        logger.info("intent_fallback", reason=reason)
        return Intent(
            category=IntentCategory.GENERAL,
            confidence=0.0,
            request=message,
            reasoning=f"Fallback intent ({reason})",
        )

    @staticmethod
    def _to_intent(text: str, message: str) -> Intent:
        data = extract_json_object(text)
        category = str(data.get("category", "")).strip().lower()
        raw_entities = data.get("entities") or {}
        if not isinstance(raw_entities, dict):
            raise ValueError("'entities' must be an object")
        # Models like to emit numbers and nulls; the intent keeps strings only
        entities = {str(k): str(v) for k, v in raw_entities.items() if v not in (None, "")}
        return Intent.model_validate({
            "category": category,
            "entities": entities,
            "confidence": data.get("confidence", 0.0),
            "request": message,
            "reasoning": str(data.get("reasoning") or ""),
        })
