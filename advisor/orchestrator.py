"""Request orchestration: intent, plan, execution and synthesis as one state machine."""

from __future__ import annotations
import asyncio
import time
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .agents.executor import Executor
from .agents.intent_parser import IntentParser
from .agents.planner import Planner, match_shortcut
from .agents.prompts import response_language
from .agents.registry import AgentRegistry
from .agents.synthesizer import Synthesizer
from .config import Config
from .errors import AdvisorError, BackendTimeout, OrchestrationFailed, ValidationError
from .live.progress_stream import ProgressStream
from .models import (
    AgentOutput,
    EventStatus,
    ExecutionPlan,
    ExecutionType,
    Intent,
    ProgressEvent,
    SynthesisResult,
)
from .providers.gateway import ModelGateway
from .scheduler import start_scheduler
from .utils.logger import bind_run, logger

Emit = Callable[[ProgressEvent], None]


class RunState(str, Enum):
    RECEIVED = "received"
    INTENT_PARSED = "intent_parsed"
    PLANNED = "planned"
    EXECUTING = "executing"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    ERROR = "error"


_TRANSITIONS = {
    RunState.RECEIVED: {RunState.INTENT_PARSED},
    RunState.INTENT_PARSED: {RunState.PLANNED},
    RunState.PLANNED: {RunState.EXECUTING},
    RunState.EXECUTING: {RunState.SYNTHESIZING},
    RunState.SYNTHESIZING: {RunState.COMPLETE},
    RunState.COMPLETE: set(),
    RunState.ERROR: set(),
}


class OrchestrationRun:
    """State of one request. Runs are not resumable; a failed request starts over."""

    def __init__(self):
        self.id = uuid.uuid4().hex[:12]
        self.state = RunState.RECEIVED
        self.history: List[RunState] = [RunState.RECEIVED]
        self.started_at = time.perf_counter()

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)

    def advance(self, state: RunState):
        # error is reachable from every state except itself
        allowed = _TRANSITIONS[self.state] | ({RunState.ERROR} if self.state != RunState.ERROR else set())
        if state not in allowed:
            raise OrchestrationFailed(
                f"Illegal state transition {self.state.value} -> {state.value}",
                metadata={"run_id": self.id},
            )
        logger.debug("run_state_changed", run_id=self.id, previous=self.state.value, state=state.value)
        self.state = state
        self.history.append(state)

    def fail(self):
        if self.state != RunState.ERROR:
            self.advance(RunState.ERROR)


def _event(status: EventStatus, message: str | None = None, **data: Any) -> ProgressEvent:
    return ProgressEvent(status=status, message=message, data=data)


class Orchestrator:
    """Facade over the intent parser, planner, executor and synthesizer.

    `process_request` runs a request to completion; `stream` yields one
    progress event per phase and per finished task. The step-wise methods are
    exposed for callers that drive the phases themselves.
    """

    def __init__(
        self,
        config: Config | None = None,
        gateway: ModelGateway | None = None,
        registry: AgentRegistry | None = None,
    ):
        self.config = config or Config.load()
        self.gateway = gateway if gateway is not None else ModelGateway.from_config(self.config)
        self.registry = registry or AgentRegistry.load(
            self.config.agents_path, generalist_id=self.config.generalist_agent_id
        )
        self.intent_parser = IntentParser(self.gateway, self.config)
        self.planner = Planner(self.registry, cache_enabled=self.config.plan_cache_enabled)
        self.executor = Executor(self.gateway, self.registry, self.config)
        self.synthesizer = Synthesizer(self.gateway, self.config)
        self.last_run: Optional[OrchestrationRun] = None
        self._scheduler = None

    async def start(self):
        """Start the background availability probe if one is configured."""
        if self._scheduler is None:
            self._scheduler = start_scheduler(self.gateway, self.config)

    async def close(self):
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

    async def __aenter__(self) -> "Orchestrator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def validate_message(self, message: Any) -> str:
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message must be a non-empty string")
        limit = self.config.max_message_length
        if len(message) > limit:
            raise ValidationError(
                f"Message is too long ({len(message)} characters, maximum {limit})",
                metadata={"length": len(message), "max_length": limit},
            )
        return message.strip()

    # Step-wise primitives

    async def parse_intent(self, message: str, context: Optional[Dict[str, Any]] = None) -> Intent:
        return await self.intent_parser.parse(message, context)

    def create_plan(self, intent: Intent) -> ExecutionPlan:
        return self.planner.create_plan(intent)

    async def execute(self, plan: ExecutionPlan, on_output=None, context: Optional[Dict[str, Any]] = None) -> List[AgentOutput]:
        return await self.executor.execute(plan, on_output=on_output, context=context)

    async def synthesize(
        self,
        outputs: List[AgentOutput],
        original_message: str,
        execution_type: ExecutionType = ExecutionType.PARALLEL,
        on_token=None,
        language: Optional[str] = None,
    ) -> SynthesisResult:
        return await self.synthesizer.synthesize(
            outputs, original_message, execution_type, on_token=on_token, language=language
        )

    # Full pipeline

    async def process_request(self, message: str, context: Optional[Dict[str, Any]] = None) -> SynthesisResult:
        run = OrchestrationRun()
        self.last_run = run
        with bind_run(run.id):
            try:
                message = self.validate_message(message)
                await self.gateway.ensure_configured()
                logger.info("request_received", length=len(message))
                return await asyncio.wait_for(
                    self._run(run, message, context), self.config.request_timeout_seconds
                )
            except asyncio.CancelledError:
                run.fail()
                raise
            except Exception as e:
                error = self._failure(run, e)
                if error is e:
                    raise
                raise error from e

    async def stream(self, message: str, context: Optional[Dict[str, Any]] = None) -> AsyncIterator[ProgressEvent]:
        """Yield progress events for one request, ending with `complete` or `error`.

        Closing the generator early cancels the pipeline and every model call
        still in flight.
        """
        run = OrchestrationRun()
        self.last_run = run
        try:
            message = self.validate_message(message)
            await self.gateway.ensure_configured()
        except AdvisorError as e:
            yield self._error_event(self._failure(run, e))
            return

        progress = ProgressStream()

        async def pipeline():
            with bind_run(run.id):
                try:
                    logger.info("request_received", length=len(message), streaming=True)
                    await asyncio.wait_for(
                        self._run(run, message, context, emit=progress.emit, stream_tokens=self.config.stream_synthesis_tokens),
                        self.config.request_timeout_seconds,
                    )
                except asyncio.CancelledError:
                    run.fail()
                    raise
                except Exception as e:
                    progress.emit(self._error_event(self._failure(run, e)))
                finally:
                    progress.close()

        job = asyncio.create_task(pipeline())
        try:
            async for event in progress.events():
                yield event
        finally:
            if not job.done():
                logger.info("orchestration_stream_cancelled", run_id=run.id, state=run.state.value)
                job.cancel()
            await asyncio.gather(job, return_exceptions=True)

    async def _run(
        self,
        run: OrchestrationRun,
        message: str,
        context: Optional[Dict[str, Any]],
        emit: Optional[Emit] = None,
        stream_tokens: bool = False,
    ) -> SynthesisResult:
        emit = emit or (lambda event: None)

        emit(_event(EventStatus.ANALYZING_INTENT, "Analyzing your request"))
        shortcut = match_shortcut(context) if self.config.context_shortcuts_enabled else None
        if shortcut is not None:
            logger.info("intent_shortcut", shortcut=shortcut.name)
            intent, plan = self.planner.create_shortcut_plan(shortcut, message)
        else:
            intent = await self.parse_intent(message, context)
        run.advance(RunState.INTENT_PARSED)
        emit(_event(EventStatus.INTENT_ANALYZED, intent=intent.model_dump(mode="json")))

        if shortcut is None:
            plan = self.create_plan(intent)
        run.advance(RunState.PLANNED)
        emit(_event(EventStatus.PLAN_CREATED, plan=plan.model_dump(mode="json")))

        run.advance(RunState.EXECUTING)
        emit(_event(EventStatus.EXECUTING_AGENTS, f"Running {len(plan.tasks)} agent(s)", agents=plan.agent_ids))
        outputs = await self.execute(
            plan,
            on_output=lambda out: emit(_event(EventStatus.AGENT_COMPLETED, output=out.model_dump(mode="json"))),
            context=context,
        )
        emit(_event(
            EventStatus.EXECUTION_COMPLETE,
            agent_outputs=[o.model_dump(mode="json") for o in outputs],
        ))

        run.advance(RunState.SYNTHESIZING)
        emit(_event(EventStatus.SYNTHESIZING, "Combining the analyses"))
        on_token = None
        if stream_tokens:
            on_token = lambda text: emit(_event(EventStatus.SYNTHESIS_DELTA, text=text))  # noqa: E731
        result = await self.synthesize(
            outputs, message, plan.execution_type, on_token=on_token, language=response_language(context)
        )

        run.advance(RunState.COMPLETE)
        metadata = {
            **result.metadata,
            "run_id": run.id,
            "execution_time_ms": run.elapsed_ms,
            "agents_executed": len(outputs),
            "agents_succeeded": sum(1 for o in outputs if o.success),
            "tokens_used": sum(o.tokens_used for o in outputs) + int(result.metadata.get("synthesis_tokens", 0)),
            "intent": intent.model_dump(mode="json"),
            "execution_type": plan.execution_type.value,
            "degraded": result.degraded,
        }
        result = result.model_copy(update={"metadata": metadata})
        logger.info(
            "request_complete",
            execution_time_ms=metadata["execution_time_ms"],
            agents_succeeded=metadata["agents_succeeded"],
            degraded=result.degraded,
        )
        emit(_event(EventStatus.COMPLETE, synthesis=result.text, degraded=result.degraded, metadata=metadata))
        return result

    def _failure(self, run: OrchestrationRun, exc: BaseException) -> AdvisorError:
        """Map a pipeline exception onto the error taxonomy and record it on the run."""
        if isinstance(exc, AdvisorError):
            error = exc
        elif isinstance(exc, asyncio.TimeoutError):
            timeout = self.config.request_timeout_seconds
            error = BackendTimeout(
                f"Request exceeded its {timeout}s deadline",
                metadata={"timeout_seconds": timeout},
            )
        else:
            logger.exception("orchestration_unexpected_error", run_id=run.id)
            error = OrchestrationFailed(f"Unexpected orchestration failure: {exc}")
        error.metadata.setdefault("elapsed_ms", run.elapsed_ms)
        error.metadata.setdefault("state", run.state.value)
        error.metadata.setdefault("run_id", run.id)
        run.fail()
        logger.error(
            "orchestration_failed",
            run_id=run.id,
            code=error.code,
            state=error.metadata["state"],
            elapsed_ms=error.metadata["elapsed_ms"],
            error=error.message,
        )
        return error

    @staticmethod
    def _error_event(error: AdvisorError) -> ProgressEvent:
        return _event(EventStatus.ERROR, error.message, code=error.code, metadata=error.metadata)
