"""
Assistant planning module.

One LLM call turns the user's question into a bounded plan: at most 5 tool
steps plus the memory artifacts that mean "done" (`stopWhen`). The reply is
constrained with a JSON schema; anything that still fails to parse, and any
transport failure or timeout, yields "no plan" so the orchestrator can fall
back to single-shot tool calling instead of failing the request.
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from django.conf import settings

from apps.assistant.llm_client import LLMConfigError, LLMError, LLMMessage, get_llm_client

logger = logging.getLogger(__name__)

MAX_PLAN_STEPS = 5
MAX_STOP_ARTIFACTS = 5
PLANNER_TIMEOUT = 30

# Argument names the planner may use, across all tools
PLAN_ARG_PROPERTIES = {
    'dueBefore': {'type': 'string'},
    'projectId': {},
    'status': {'type': 'string'},
    'now': {'type': 'string'},
    'tag': {'type': 'string'},
    'name': {'type': 'string'},
    'projectName': {'type': 'string'},
    'sessionId': {},
    'sessionName': {'type': 'string'},
    'teamId': {'type': 'string'},
    'enabled': {'type': 'boolean'},
    'important': {'type': 'boolean'},
    'urgent': {'type': 'boolean'},
    'query': {'type': 'string'},
    'limit': {'type': 'number'},
    'collection': {'type': 'string'},
    'where': {'type': 'object'},
    'select': {'type': 'array', 'items': {'type': 'string'}},
    'sort': {'type': 'object'},
}


PLAN_INSTRUCTIONS = """You are planning tool calls for a personal workspace assistant.
Return ONLY a JSON object {"steps": [...], "stopWhen": {"have": [...]}} with at most 5 steps.
Each step is {"tool": <name>, "args": {...}} using only these tools: {tools}.

RULES:
- Use chat_overdue for overdue items.
- Use chat_tasks with dueBefore (ISO 8601) for deadlines; it already excludes done tasks.
- If the user names a project, first call chat_projectByName with {"name": "..."}, then the
  project tool (e.g. chat_tasksByProject) with {"projectId": {"var": "ids.projectId"}}.
  The projectId may also be omitted: it is resolved from the project name.
- Reference values found by earlier steps with {"var": "<path>"}, e.g. {"var": "ids.projectId"}.
- Use chat_semanticSearch for open-ended questions about content.
- Supply every required argument of a tool, or a {"var": ...} reference to it.
- Declare in stopWhen.have the memory artifacts that mean you have enough data, e.g.
  ["lists.tasks"], ["ids.projectId"] or ["lists.*"].
- Use as few steps as possible. Never plan a step that changes data."""


@dataclass
class PlanStep:
    """One tool call in a plan."""
    tool: str
    args: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'tool': self.tool, 'args': self.args}


@dataclass
class Plan:
    """Represents an assistant execution plan."""
    steps: List[PlanStep]
    stop_when: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'steps': [s.to_dict() for s in self.steps],
            'stopWhen': self.stop_when,
        }

    def describe(self) -> List[str]:
        return [f"{s.tool}({json.dumps(s.args, sort_keys=True)})" for s in self.steps]


def build_plan_schema(tool_names: Sequence[str]) -> Dict[str, Any]:
    """JSON schema the planner's reply must follow."""
    return {
        'type': 'object',
        'additionalProperties': False,
        'properties': {
            'steps': {
                'type': 'array',
                'maxItems': MAX_PLAN_STEPS,
                'items': {
                    'type': 'object',
                    'additionalProperties': False,
                    'properties': {
                        'tool': {'type': 'string', 'enum': list(tool_names)},
                        'args': {
                            'type': 'object',
                            'additionalProperties': False,
                            'properties': PLAN_ARG_PROPERTIES,
                        },
                    },
                    'required': ['tool', 'args'],
                },
            },
            'stopWhen': {
                'type': 'object',
                'additionalProperties': False,
                'properties': {
                    'have': {
                        'type': 'array',
                        'items': {'type': 'string'},
                        'maxItems': MAX_STOP_ARTIFACTS,
                    },
                },
            },
        },
        'required': ['steps'],
    }


def build_planner_messages(
    system_prompt: str,
    user_query: str,
    tool_names: Sequence[str],
    extra_messages: Optional[List[LLMMessage]] = None,
) -> List[LLMMessage]:
    instructions = PLAN_INSTRUCTIONS.replace('{tools}', ', '.join(tool_names))
    messages = [
        LLMMessage(role='system', content=f"{system_prompt}\n\n{instructions}".strip()),
        LLMMessage(role='user', content=user_query),
    ]
    messages.extend(extra_messages or [])
    return messages


def parse_plan_response(response_text: str, max_steps: int = MAX_PLAN_STEPS) -> Plan:
    """
    Parse the LLM reply into a Plan.

    Accepts `stopWhen` as `{"have": [...]}` or as a bare list. Steps beyond
    `max_steps` are dropped.

    Raises:
        ValueError: If no plan object can be extracted
    """
    text = (response_text or '').strip()
    if not text:
        raise ValueError("Empty plan response")

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # Model may have wrapped the object in prose or code fences
        match = re.search(r'\{[\s\S]*\}', text)
        if not match:
            raise ValueError("No JSON object in plan response")
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid plan JSON: {e}")

    if not isinstance(data, dict) or not isinstance(data.get('steps'), list):
        raise ValueError("Plan has no steps array")

    steps = []
    for raw in data['steps']:
        if not isinstance(raw, dict):
            continue
        tool = raw.get('tool')
        if not isinstance(tool, str) or not tool.strip():
            continue
        args = raw.get('args')
        steps.append(PlanStep(tool=tool.strip(), args=args if isinstance(args, dict) else {}))

    if len(steps) > max_steps:
        logger.warning(f"Plan has {len(steps)} steps, truncating to {max_steps}")
        steps = steps[:max_steps]

    stop_when = data.get('stopWhen')
    if isinstance(stop_when, dict):
        stop_when = stop_when.get('have')
    if not isinstance(stop_when, list):
        stop_when = []
    stop_when = [s.strip() for s in stop_when if isinstance(s, str) and s.strip()][:MAX_STOP_ARTIFACTS]

    return Plan(steps=steps, stop_when=stop_when)


async def request_plan(
    messages: List[LLMMessage],
    tool_names: Sequence[str],
    max_steps: int = MAX_PLAN_STEPS,
    label: str = 'Planner',
) -> Optional[Plan]:
    """
    Issue one schema-constrained planning call.

    Returns None on transport failure, timeout or unparseable output.

    Raises:
        LLMConfigError: If no LLM provider is usable at all
    """
    timeout = float(getattr(settings, 'LLM_TIMEOUT', PLANNER_TIMEOUT))
    try:
        client = get_llm_client()
        response = await asyncio.wait_for(
            client.chat(
                messages,
                temperature=0.0,
                max_tokens=800,
                response_schema=build_plan_schema(tool_names),
            ),
            timeout=timeout,
        )
    except LLMConfigError:
        raise
    except LLMError as e:
        logger.warning(f"{label} LLM call failed: {e}")
        return None
    except asyncio.TimeoutError:
        logger.warning(f"{label} LLM call timed out after {timeout}s")
        return None

    try:
        plan = parse_plan_response(response.content, max_steps=max_steps)
    except ValueError as e:
        logger.warning(f"{label} returned an unusable plan: {e}")
        return None

    logger.info(f"{label} produced {len(plan.steps)} step(s), stopWhen={plan.stop_when}")
    return plan


async def generate_plan(
    system_prompt: str,
    user_query: str,
    tool_names: Sequence[str],
) -> Optional[Plan]:
    """Plan the tool calls for `user_query`, or None if planning failed."""
    messages = build_planner_messages(system_prompt, user_query, tool_names)
    return await request_plan(messages, tool_names)
