from __future__ import annotations
import json
from typing import Any, Dict, Iterable, Optional

from advisor.models import AgentOutput, IntentCategory

INTENT_SYSTEM_PROMPT = """
You classify business advisory requests. Read the request and answer with ONLY a
valid JSON object of this shape:
{
  "category": "<one of: %(categories)s>",
  "entities": {"industry": "...", "location": "...", "target_market": "...", "business_model": "..."},
  "confidence": 0.0,
  "reasoning": "One sentence on why this category fits"
}

Rules:
1. Pick the single category that best matches what the user wants produced.
2. Use "business_plan" when the user wants a complete plan covering several areas.
3. Use "general" when nothing else fits.
4. "entities" holds only details stated or clearly implied in the request; values are strings.
5. "confidence" is a number between 0 and 1.
""" % {"categories": ", ".join(c.value for c in IntentCategory)}

INTENT_CORRECTION_PROMPT = """
Your previous answer could not be used: {error}

Answer again with ONLY the JSON object described above. No prose, no markdown fences.
"""

AGENT_SYSTEM_PROMPT = """
You are {name}, one specialist on a business advisory team ({specialization}).
Answer only within your specialization, be concrete, show numbers with their assumptions, and keep the
answer under {max_words} words. Another step merges the team's answers.
"""

SYNTHESIS_SYSTEM_PROMPT = """
You are the lead advisor. Merge the specialist analyses below into one coherent
answer to the user's request. Keep every concrete figure, resolve contradictions
explicitly, credit each point to the specialist it came from, and end with the
three most important next steps.
"""

ALL_FAILED_TEXT = (
    "Sorry, none of the specialist analyses could be completed for this request. "
    "The model backends did not return a usable answer. Please try again shortly."
)

# Locale codes the front end sends; anything else is used as the language name as-is
LANGUAGE_NAMES = {
    "en-US": "English",
    "en-IN": "English",
    "hi-IN": "Hindi",
    "te-IN": "Telugu",
    "ta-IN": "Tamil",
    "kn-IN": "Kannada",
    "ml-IN": "Malayalam",
    "mr-IN": "Marathi",
    "bn-IN": "Bengali",
    "gu-IN": "Gujarati",
}

LANGUAGE_INSTRUCTION = (
    "The user has chosen {language} as their language. Write the whole answer in simple, "
    "everyday {language}, not formal or literary {language}. Business terms may stay in English."
)


def build_intent_prompt(message: str, context: Optional[Dict[str, Any]] = None) -> str:
    prompt = f"Request: {message}"
    if context:
        prompt += "\n\nAdditional context (JSON):\n" + json.dumps(context, default=str, sort_keys=True)
    return prompt


def response_language(context: Optional[Dict[str, Any]]) -> Optional[str]:
    """Language the answer must be written in, or None for English and when nothing is set."""
    if not context:
        return None
    answers = context.get("all_answers") or context.get("allAnswers") or {}
    code = context.get("language") or (answers.get("language") if isinstance(answers, dict) else None)
    if not code or not isinstance(code, str):
        return None
    name = LANGUAGE_NAMES.get(code, code)
    return None if name.lower() == "english" else name


def format_entities(entities: Dict[str, str]) -> str:
    if not entities:
        return "none given"
    return ", ".join(f"{k}={v}" for k, v in sorted(entities.items()))


def build_task_prompt(
    agent_prompt: str,
    request: str,
    upstream: Iterable[AgentOutput] = (),
    context: Optional[Dict[str, Any]] = None,
    goal: Optional[str] = None,
    language: Optional[str] = None,
) -> str:
    """User-turn prompt for one task: the agent's instructions, the request and teammate results."""
    parts = []
    if language:
        parts += [LANGUAGE_INSTRUCTION.format(language=language), ""]
    parts += [agent_prompt.strip(), "", f"User request: {request}"]
    if goal:
        parts += ["", f"Goal for this answer: {goal}"]
    if context:
        parts += ["", "Context provided by the user (JSON):", json.dumps(context, default=str, sort_keys=True)]
    upstream = sorted(upstream, key=lambda o: o.task_id)
    if upstream:
        parts += ["", "Results from teammates you depend on:"]
        for out in upstream:
            parts += [f"--- {out.agent_id} ({out.task_id}) ---", out.output.strip()]
    if language:
        parts += ["", f"Reminder: answer only in {language}."]
    return "\n".join(parts)


def build_synthesis_prompt(
    request: str,
    outputs: Iterable[AgentOutput],
    language: Optional[str] = None,
) -> str:
    parts = [f"User request: {request}", "", "Specialist analyses:"]
    for out in outputs:
        parts += ["", f"### {out.agent_id} ({out.task_id})", out.output.strip()]
    parts += [""]
    if language:
        parts += [LANGUAGE_INSTRUCTION.format(language=language)]
    parts += ["Write the merged answer now."]
    return "\n".join(parts)


def merge_outputs(request: str, outputs: Iterable[AgentOutput]) -> str:
    """Deterministic merge used when the synthesis call is unavailable."""
    sections = [f"Summary of specialist analyses for: {request}"]
    for out in outputs:
        title = out.agent_id.replace("_", " ").title()
        sections.append(f"## {title}\n\n{out.output.strip()}")
    return "\n\n".join(sections)
