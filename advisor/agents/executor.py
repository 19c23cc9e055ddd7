import asyncio
import inspect
import time
from typing import Any, Callable, Dict, List, Optional

from advisor.config import Config
from advisor.errors import BackendError, BackendTimeout, PlanConstructionError, PlanExhausted
from advisor.models import AgentOutput, ExecutionPlan, InvocationParams, Task
from advisor.utils.logger import logger
from .prompts import AGENT_SYSTEM_PROMPT, build_task_prompt, format_entities, response_language
from .registry import AgentRegistry

DEPENDENCY_FAILED = "DEPENDENCY_FAILED"
EMPTY_OUTPUT = "EMPTY_OUTPUT"
AGENT_ERROR = "AGENT_ERROR"

OutputCallback = Callable[[AgentOutput], Any]


class Executor:
    """Runs the tasks of an ExecutionPlan against the model gateway.

    A task starts as soon as every task it depends on has an output, with at
    most `max_concurrent_tasks` calls in flight. Backend failures become failed
    outputs and siblings keep running; dependents of a failed task are recorded
    as skipped. Exactly one output is produced per task.
    """

    def __init__(self, gateway, registry: AgentRegistry, config: Config | None = None):
        self.gateway = gateway
        self.registry = registry
        self.config = config or Config()

    async def execute(
        self,
        plan: ExecutionPlan,
        on_output: Optional[OutputCallback] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[AgentOutput]:
        for task in plan.tasks:
            self.registry.get(task.agent_id)
        if not plan.tasks:
            return []

        outputs: Dict[str, AgentOutput] = {}
        pending: Dict[str, Task] = {t.id: t for t in plan.tasks}
        running: Dict[asyncio.Task, str] = {}
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_tasks))

        async def record(output: AgentOutput):
            outputs[output.task_id] = output
            if on_output is not None:
                result = on_output(output)
                if inspect.isawaitable(result):
                    await result

        async def schedule():
            # Skips can unlock further skips, so repeat until nothing changes
            progressed = True
            while progressed:
                progressed = False
                for task_id, task in list(pending.items()):
                    if not task.depends_on.issubset(outputs):
                        continue
                    del pending[task_id]
                    deps = sorted(task.depends_on)
                    failed = [d for d in deps if not outputs[d].success]
                    if failed and self.config.skip_dependents_on_failure:
                        logger.info("agent_task_skipped", task_id=task_id, failed_dependencies=failed)
                        await record(self._skipped(task, failed))
                        progressed = True
                        continue
                    upstream = [outputs[d] for d in deps if outputs[d].success]
                    job = asyncio.create_task(self._run_task(task, upstream, semaphore, context))
                    running[job] = task_id

        logger.info(
            "plan_execution_started",
            tasks=len(plan.tasks),
            execution_type=plan.execution_type.value,
            max_concurrent=self.config.max_concurrent_tasks,
        )
        try:
            await schedule()
            while running:
                done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
                for job in done:
                    running.pop(job)
                    await record(job.result())
                await schedule()
        finally:
            if running:
                for job in running:
                    job.cancel()
                await asyncio.gather(*running, return_exceptions=True)
                logger.info("plan_execution_cancelled", cancelled=len(running))

        if pending:
            raise PlanConstructionError(f"Unschedulable tasks left in plan: {sorted(pending)}")

        ordered = [outputs[t.id] for t in plan.tasks]
        succeeded = sum(1 for o in ordered if o.success)
        logger.info("plan_execution_finished", tasks=len(ordered), succeeded=succeeded)
        if not succeeded:
            raise PlanExhausted(f"All {len(ordered)} tasks in the plan failed", outputs=ordered)
        return ordered

    async def _run_task(
        self,
        task: Task,
        upstream: List[AgentOutput],
        semaphore: asyncio.Semaphore,
        context: Optional[Dict[str, Any]],
    ) -> AgentOutput:
        agent = self.registry.get(task.agent_id)
        request = str(task.inputs.get("request", ""))
        agent_prompt = agent.render_prompt(
            request=request,
            entities=format_entities(task.inputs.get("entities") or {}),
        )
        prompt = build_task_prompt(
            agent_prompt,
            request,
            upstream,
            context,
            goal=task.inputs.get("goal"),
            language=response_language(context),
        )
        params = InvocationParams(
            temperature=agent.temperature,
            max_tokens=agent.max_output_tokens,
            system=AGENT_SYSTEM_PROMPT.format(
                name=agent.name,
                specialization=agent.specialization,
                max_words=int(agent.max_output_tokens * 0.75),
            ),
        )
        timeout = self.config.agent_task_timeout_seconds

        async with semaphore:
            began = time.perf_counter()
            logger.debug("agent_task_started", task_id=task.id, agent_id=agent.id)
            try:
                completion = await asyncio.wait_for(
                    self.gateway.invoke(prompt, params, timeout=timeout), timeout
                )
            except asyncio.TimeoutError:
                return self._failed(task, BackendTimeout(f"Task exceeded its {timeout}s deadline"), began)
            except BackendError as e:
                return self._failed(task, e, began)
            except Exception as e:
                # Any other fault stays local to this task
                logger.exception("agent_task_crashed", task_id=task.id, agent_id=agent.id)
                return self._failed(task, e, began, code=AGENT_ERROR)

        if not completion.text.strip():
            logger.warning("agent_task_empty_output", task_id=task.id, backend=completion.backend)
            return AgentOutput(
                task_id=task.id,
                agent_id=task.agent_id,
                success=False,
                error="Backend returned an empty response",
                error_code=EMPTY_OUTPUT,
                tokens_used=completion.tokens_used,
                latency_ms=completion.latency_ms,
                backend=completion.backend,
            )

        logger.info(
            "agent_task_completed",
            task_id=task.id,
            backend=completion.backend,
            tokens=completion.tokens_used,
            latency_ms=completion.latency_ms,
        )
        return AgentOutput(
            task_id=task.id,
            agent_id=task.agent_id,
            output=completion.text,
            success=True,
            tokens_used=completion.tokens_used,
            latency_ms=completion.latency_ms,
            backend=completion.backend,
        )

    @staticmethod
    def _failed(task: Task, error: Exception, began: float, code: str | None = None) -> AgentOutput:
        code = code or getattr(error, "code", AGENT_ERROR)
        logger.warning("agent_task_failed", task_id=task.id, code=code, error=str(error))
        return AgentOutput(
            task_id=task.id,
            agent_id=task.agent_id,
            success=False,
            error=str(error) or type(error).__name__,
            error_code=code,
            latency_ms=int((time.perf_counter() - began) * 1000),
        )

    @staticmethod
    def _skipped(task: Task, failed_dependencies: List[str]) -> AgentOutput:
        return AgentOutput(
            task_id=task.id,
            agent_id=task.agent_id,
            success=False,
            skipped=True,
            error="Skipped: upstream task(s) failed: " + ", ".join(failed_dependencies),
            error_code=DEPENDENCY_FAILED,
        )
