import inspect
from typing import Any, Callable, Iterable, List, Optional

from advisor.config import Config
from advisor.errors import BackendError, SynthesisFailed
from advisor.models import AgentOutput, ExecutionType, InvocationParams, SynthesisResult
from advisor.utils.logger import logger
from .prompts import ALL_FAILED_TEXT, SYNTHESIS_SYSTEM_PROMPT, build_synthesis_prompt, merge_outputs


class Synthesizer:
    """Merges agent outputs and the original request into the final answer."""

    def __init__(self, gateway, config: Config | None = None):
        self.gateway = gateway
        self.config = config or Config()

    async def synthesize(
        self,
        outputs: Iterable[AgentOutput],
        original_message: str,
        execution_type: ExecutionType = ExecutionType.PARALLEL,
        on_token: Optional[Callable[[str], Any]] = None,
        language: Optional[str] = None,
    ) -> SynthesisResult:
        outputs = list(outputs)
        # Completion order is arbitrary; the prompt is keyed by task id
        successful = sorted((o for o in outputs if o.success), key=lambda o: o.task_id)
        metadata = {
            "agents_used": [o.agent_id for o in successful],
            "agents_failed": sorted(o.agent_id for o in outputs if not o.success),
        }

        if not successful:
            logger.warning("synthesis_skipped_all_failed", outputs=len(outputs))
            return SynthesisResult(
                text=ALL_FAILED_TEXT,
                source_outputs=outputs,
                execution_type=execution_type,
                degraded=True,
                metadata={**metadata, "fallback": "all_failed"},
            )

        prompt = build_synthesis_prompt(original_message, successful, language)
        params = InvocationParams(
            temperature=self.config.synthesis_temperature,
            max_tokens=self.config.synthesis_max_tokens,
            system=SYNTHESIS_SYSTEM_PROMPT,
        )
        streamed: List[str] = []
        try:
            if on_token is not None:
                text, tokens, backend = await self._stream(prompt, params, on_token, streamed)
            else:
                completion = await self.gateway.invoke(
                    prompt, params, timeout=self.config.synthesis_timeout_seconds
                )
                text, tokens, backend = completion.text, completion.tokens_used, completion.backend
            if not text.strip():
                raise SynthesisFailed("Synthesis call returned an empty response")
        except (BackendError, SynthesisFailed) as e:
            if streamed:
                # Deltas already sent to the caller do not belong to the merged text
                metadata["streamed_text_discarded"] = True
            return self._degrade(e, outputs, successful, original_message, execution_type, metadata)

        logger.info("synthesis_completed", sources=len(successful), tokens=tokens, backend=backend)
        return SynthesisResult(
            text=text,
            source_outputs=outputs,
            execution_type=execution_type,
            metadata={**metadata, "synthesis_tokens": tokens, "synthesis_backend": backend},
        )

    async def _stream(self, prompt: str, params: InvocationParams, on_token, chunks: List[str]) -> tuple:
        stats: dict = {}
        async for chunk in self.gateway.stream(
            prompt, params, timeout=self.config.synthesis_timeout_seconds, stats=stats
        ):
            chunks.append(chunk)
            result = on_token(chunk)
            if inspect.isawaitable(result):
                await result
        return "".join(chunks), int(stats.get("tokens", 0)), stats.get("backend", "unknown")

    def _degrade(self, error, outputs, successful, original_message, execution_type, metadata) -> SynthesisResult:
        code = getattr(error, "code", "SYNTHESIS_FAILED")
        logger.warning("synthesis_call_failed", code=code, error=str(error))
        if not self.config.synthesis_merge_fallback:
            if isinstance(error, SynthesisFailed):
                raise error
            raise SynthesisFailed(
                f"Synthesis call failed: {error}",
                metadata={"cause": code},
            ) from error
        return SynthesisResult(
            text=merge_outputs(original_message, successful),
            source_outputs=outputs,
            execution_type=execution_type,
            degraded=True,
            metadata={**metadata, "fallback": "merge", "cause": code},
        )
