"""
Re-planning after a missing-argument failure.

Runs at most once per request. The model gets the original question plus a
snapshot of what working memory already holds and what went wrong, and
returns a replacement plan sized to the remaining step budget.
"""
import json
import logging
from typing import Optional, Sequence

from apps.assistant.executor import MissingArgumentsError
from apps.assistant.llm_client import LLMMessage
from apps.assistant.memory import WorkingMemory
from apps.assistant.planner import Plan, build_planner_messages, request_plan

logger = logging.getLogger(__name__)


def build_memory_snapshot_message(
    memory: WorkingMemory,
    failure: MissingArgumentsError,
    remaining_steps: int,
) -> LLMMessage:
    snapshot = memory.snapshot()
    snapshot['failedStep'] = {'tool': failure.tool, 'missing': failure.missing}
    snapshot['remainingSteps'] = remaining_steps
    content = (
        "The previous plan could not continue: "
        f"{failure.tool} is missing {', '.join(failure.missing)}.\n"
        f"Memory snapshot: {json.dumps(snapshot, default=str)}\n"
        f"Return a replacement plan with at most {remaining_steps} step(s). "
        "Reuse values already in memory with {\"var\": ...} and do not repeat "
        "steps whose results are already present."
    )
    return LLMMessage(role='user', content=content)


async def generate_replan(
    system_prompt: str,
    user_query: str,
    tool_names: Sequence[str],
    memory: WorkingMemory,
    failure: MissingArgumentsError,
    remaining_steps: int,
) -> Optional[Plan]:
    """Request a replacement plan, or None when it fails or there is no budget left."""
    if remaining_steps <= 0:
        logger.info("No step budget left, skipping re-plan")
        return None

    messages = build_planner_messages(
        system_prompt,
        user_query,
        tool_names,
        extra_messages=[build_memory_snapshot_message(memory, failure, remaining_steps)],
    )
    plan = await request_plan(messages, tool_names, max_steps=remaining_steps, label='Re-planner')
    if plan is not None:
        logger.info(f"Re-plan after {failure.tool} failure: {plan.describe()}")
    return plan
