"""
Assistant orchestrator - planned, bounded, read-only question answering.

This module drives one `ask` request through an explicit state machine:

    PLANNING -> EXECUTING -> SYNTHESIZING -> DONE
                    |  (MissingArgumentsError, once)
                    v
                REPLANNING -> EXECUTING_REMAINING -> SYNTHESIZING
    PLANNING (no plan) -> FALLBACK -> SYNTHESIZING

Guarantees:
- At most MAX_STEPS tool steps per request, re-planning included
- Re-planning happens at most once
- Stop conditions are checked before the first step and between steps
- Tool failures never abort the request; they reach synthesis as {"error"} payloads
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from django.conf import settings
from django.utils import timezone

from apps.assistant.executor import MissingArgumentsError, StepExecutor, StepResult
from apps.assistant.llm_client import LLMConfigError, LLMError, LLMMessage, get_llm_client
from apps.assistant.memory import WorkingMemory
from apps.assistant.planner import Plan, PlanStep, generate_plan
from apps.assistant.registry import ToolRegistry
from apps.assistant.replanner import generate_replan
from apps.assistant.status import AskStage, publish_status
from apps.assistant.stop_conditions import should_stop
from apps.assistant.synthesizer import (
    UNAVAILABLE_MESSAGE,
    Citation,
    build_citations,
    normalize_history,
    synthesize,
)
from apps.assistant.tools import build_default_registry

logger = logging.getLogger(__name__)

# ============================================================================
# Hard limits
# ============================================================================
MAX_STEPS = 5
MAX_QUERY_LENGTH = 1000
FALLBACK_TIMEOUT = 30


class PipelineState(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    REPLANNING = "replanning"
    EXECUTING_REMAINING = "executing_remaining"
    FALLBACK = "fallback"
    SYNTHESIZING = "synthesizing"
    DONE = "done"


class TraceType(str, Enum):
    PLAN = "plan"
    TOOL_CALL = "tool_call"
    SKIPPED = "skipped"
    STOP = "stop"
    REPLAN = "replan"
    FALLBACK = "fallback"
    FINAL = "final"
    ERROR = "error"


@dataclass
class TraceEntry:
    """Single entry in the execution trace."""
    type: TraceType
    tool: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    output_summary: Optional[str] = None
    steps: Optional[List[str]] = None
    notes: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, omitting None fields for minimal trace."""
        result = {"type": self.type.value}
        if self.tool:
            result["tool"] = self.tool
        if self.input:
            result["input"] = self.input
        if self.output_summary:
            result["outputSummary"] = self.output_summary
        if self.steps:
            result["steps"] = self.steps
        if self.notes:
            result["notes"] = self.notes
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class AskResult:
    """Result of one `ask` call."""
    text: str
    citations: List[Citation] = field(default_factory=list)
    trace: List[TraceEntry] = field(default_factory=list)

    def to_dict(self, include_trace: bool = False) -> Dict[str, Any]:
        result: Dict[str, Any] = {"text": self.text}
        if self.citations:
            result["citations"] = [c.to_dict() for c in self.citations]
        if include_trace:
            result["trace"] = [t.to_dict() for t in self.trace]
        return result


class AssistantError(Exception):
    """Raised for caller errors such as an empty question."""
    pass


def build_system_prompt(now: Optional[datetime] = None) -> str:
    now = now or timezone.now()
    return (
        "You are the assistant of a personal workspace (projects, tasks, notes, "
        "note sessions, links, files, people, teams, alarms). You can only read data "
        "through the provided tools. Never invent data and never reveal internal "
        "identifiers.\n"
        f"Current date and time (UTC): {now.strftime('%Y-%m-%d %H:%M')} "
        f"({now.strftime('%A')})."
    )


_default_registry: Optional[ToolRegistry] = None


def get_default_registry() -> ToolRegistry:
    global _default_registry
    if _default_registry is None:
        _default_registry = build_default_registry()
    return _default_registry


class AssistantOrchestrator:
    """Runs one request. Create a new instance per request; it owns the working memory."""

    def __init__(
        self,
        registry: Optional[ToolRegistry] = None,
        executor: Optional[StepExecutor] = None,
        max_steps: Optional[int] = None,
        request_id: Optional[str] = None,
        memory: Optional[WorkingMemory] = None,
    ):
        self.registry = registry if registry is not None else get_default_registry()
        self.executor = executor or StepExecutor(self.registry)
        self.max_steps = int(max_steps or getattr(settings, 'ASSISTANT_MAX_STEPS', MAX_STEPS))
        self.retries = int(getattr(settings, 'ASSISTANT_TOOL_RETRIES', 3))
        self.request_id = request_id
        self.memory = memory or WorkingMemory()

        self.system_prompt = build_system_prompt()
        self.query = ''
        self.history: Sequence[Any] = ()
        self.state = PipelineState.PLANNING
        self.plan: Optional[Plan] = None
        self.pending: List[PlanStep] = []
        self.stop_when: List[str] = []
        self.results: List[StepResult] = []
        self.trace: List[TraceEntry] = []
        self.steps_run = 0
        self.replanned = False
        self.failure: Optional[MissingArgumentsError] = None
        self.failed_step: Optional[PlanStep] = None
        self.failed_call_id: Optional[str] = None
        self.text: Optional[str] = None

    @property
    def remaining_steps(self) -> int:
        return max(0, self.max_steps - self.steps_run)

    async def run(self, query: str, history: Optional[Sequence[Any]] = None) -> AskResult:
        self.query = query
        self.history = history or ()

        handlers = {
            PipelineState.PLANNING: self._plan,
            PipelineState.EXECUTING: self._execute,
            PipelineState.REPLANNING: self._replan,
            PipelineState.EXECUTING_REMAINING: self._execute_remaining,
            PipelineState.FALLBACK: self._fallback,
            PipelineState.SYNTHESIZING: self._synthesize,
        }

        while self.state != PipelineState.DONE:
            logger.debug(f"Pipeline state: {self.state.value}")
            self.state = await handlers[self.state]()

        citations = build_citations(self.memory)
        self.trace.append(TraceEntry(
            type=TraceType.FINAL,
            notes=f"{self.steps_run} step(s), {len(citations)} citation(s)",
        ))
        await publish_status(self.request_id, AskStage.DONE, "Done")
        logger.info(
            f"Ask completed: steps={self.steps_run}, replanned={self.replanned}, "
            f"citations={len(citations)}"
        )
        return AskResult(text=self.text or UNAVAILABLE_MESSAGE, citations=citations, trace=self.trace)

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _plan(self) -> PipelineState:
        await publish_status(self.request_id, AskStage.PLANNING, "Planning")
        plan = await generate_plan(self.system_prompt, self.query, self.registry.names())

        if plan is None:
            self.trace.append(TraceEntry(type=TraceType.ERROR, error="Planning failed, using fallback"))
            return PipelineState.FALLBACK

        self.plan = plan
        self.pending = list(plan.steps[:self.max_steps])
        self.stop_when = list(plan.stop_when)
        self.trace.append(TraceEntry(
            type=TraceType.PLAN,
            steps=plan.describe(),
            notes=f"stopWhen={plan.stop_when}" if plan.stop_when else None,
        ))
        await publish_status(
            self.request_id, AskStage.PLANNING, "Plan ready",
            tools=[s.tool for s in plan.steps],
        )
        return PipelineState.EXECUTING

    async def _execute(self) -> PipelineState:
        return await self._run_pending(skip_on_missing=False)

    async def _execute_remaining(self) -> PipelineState:
        return await self._run_pending(skip_on_missing=True)

    async def _replan(self) -> PipelineState:
        self.replanned = True
        failure = self.failure
        await publish_status(self.request_id, AskStage.REPLANNING, "Looking for another way to get the data")

        # The failed step already spent its unit of budget
        self._record_skipped(self.failed_step, self.failed_call_id, failure.missing)

        plan = await generate_replan(
            self.system_prompt,
            self.query,
            self.registry.names(),
            self.memory,
            failure,
            self.remaining_steps,
        )
        if plan is None:
            self.trace.append(TraceEntry(
                type=TraceType.REPLAN,
                error="No replacement plan; continuing with the remaining steps",
            ))
            return PipelineState.EXECUTING_REMAINING

        self.pending = list(plan.steps[:self.remaining_steps])
        if plan.stop_when:
            self.stop_when = list(plan.stop_when)
        self.trace.append(TraceEntry(
            type=TraceType.REPLAN,
            steps=[f"{s.tool}" for s in self.pending],
            notes=f"remaining budget {self.remaining_steps}",
        ))
        return PipelineState.EXECUTING_REMAINING

    async def _fallback(self) -> PipelineState:
        """Single-shot tool calling when no plan could be produced."""
        messages = [
            LLMMessage(role='system', content=self.system_prompt),
            *normalize_history(self.history),
            LLMMessage(role='user', content=self.query),
        ]
        timeout = float(getattr(settings, 'LLM_TIMEOUT', FALLBACK_TIMEOUT))

        try:
            client = get_llm_client()
            response = await asyncio.wait_for(
                client.chat(
                    messages,
                    temperature=0.0,
                    tools=self.registry.definitions(),
                    tool_choice='auto',
                ),
                timeout=timeout,
            )
        except LLMConfigError:
            raise
        except (LLMError, asyncio.TimeoutError) as e:
            logger.error(f"Fallback tool-calling failed: {e or 'timeout'}")
            self.trace.append(TraceEntry(type=TraceType.ERROR, error="Fallback failed"))
            self.text = UNAVAILABLE_MESSAGE
            return PipelineState.DONE

        if not response.tool_calls:
            self.trace.append(TraceEntry(type=TraceType.FALLBACK, notes="Answered without tools"))
            self.text = response.content.strip() or UNAVAILABLE_MESSAGE
            return PipelineState.DONE

        calls = response.tool_calls[:self.remaining_steps]
        self.trace.append(TraceEntry(type=TraceType.FALLBACK, steps=[c.name for c in calls]))
        self.pending = [PlanStep(tool=c.name, args=c.parsed_arguments()) for c in calls]
        call_ids = [c.id for c in calls]
        return await self._run_pending(skip_on_missing=True, call_ids=call_ids)

    async def _synthesize(self) -> PipelineState:
        await publish_status(self.request_id, AskStage.SYNTHESIZING, "Writing the answer")
        self.text = await synthesize(self.query, self.results, self.system_prompt, self.history)
        return PipelineState.DONE

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _run_pending(
        self,
        skip_on_missing: bool,
        call_ids: Optional[List[str]] = None,
    ) -> PipelineState:
        call_ids = list(call_ids or [])

        while self.pending:
            if should_stop(self.stop_when, self.memory):
                self.trace.append(TraceEntry(
                    type=TraceType.STOP,
                    notes=f"Stop conditions met: {self.stop_when}",
                ))
                break
            if self.remaining_steps <= 0:
                logger.warning(f"Step budget of {self.max_steps} exhausted, dropping {len(self.pending)} step(s)")
                break

            step = self.pending.pop(0)
            self.steps_run += 1
            call_id = call_ids.pop(0) if call_ids else f"call_{self.steps_run}_{step.tool}"

            await publish_status(self.request_id, AskStage.TOOL_START, f"Running {step.tool}", tools=[step.tool])
            try:
                result = await self.executor.execute_step(step, self.memory, call_id, retries=self.retries)
            except MissingArgumentsError as e:
                if skip_on_missing or self.replanned:
                    logger.info(f"Skipping {step.tool}: {e}")
                    self._record_skipped(step, call_id, e.missing)
                    continue
                logger.info(f"{e}; re-planning")
                self.failure = e
                self.failed_step = step
                self.failed_call_id = call_id
                return PipelineState.REPLANNING

            self.results.append(result)
            self.trace.append(TraceEntry(
                type=TraceType.TOOL_CALL,
                tool=result.tool,
                input=result.args,
                output_summary=result.summary(),
                error="failed" if result.failed else None,
            ))
            await publish_status(self.request_id, AskStage.TOOL_END, f"{step.tool}: {result.summary()}", tools=[step.tool])

        return PipelineState.SYNTHESIZING

    def _record_skipped(self, step: Optional[PlanStep], call_id: Optional[str], missing: List[str]) -> None:
        if step is None:
            return
        result = StepResult.skipped_step(call_id or f"call_{self.steps_run}_{step.tool}", step.tool, dict(step.args), missing)
        self.results.append(result)
        self.trace.append(TraceEntry(
            type=TraceType.SKIPPED,
            tool=step.tool,
            input=step.args or None,
            output_summary=result.summary(),
        ))


async def ask(
    query: str,
    history: Optional[Sequence[Any]] = None,
    request_id: Optional[str] = None,
    registry: Optional[ToolRegistry] = None,
) -> AskResult:
    """
    Answer a natural-language question about the workspace.

    Args:
        query: The user's question
        history: Prior chat messages ({"role", "content"} dicts)
        request_id: Optional id used for status events
        registry: Tool registry override (defaults to every workspace tool)

    Raises:
        AssistantError: If the query is empty
        LLMConfigError: If no LLM provider is configured
    """
    if not isinstance(query, str) or not query.strip():
        raise AssistantError("Query cannot be empty")

    query = query.strip()
    if len(query) > MAX_QUERY_LENGTH:
        logger.info(f"Truncating query from {len(query)} to {MAX_QUERY_LENGTH} chars")
        query = query[:MAX_QUERY_LENGTH]

    orchestrator = AssistantOrchestrator(registry=registry, request_id=request_id)
    return await orchestrator.run(query, history)
