"""
Shared fixtures for the assistant tests.

Provides a scripted LLM stand-in and fake tools so the pipeline can be
exercised without network access.
"""
import json
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest

from apps.assistant.llm_client import LLMError, LLMResponse, LLMToolCall, reset_llm_client
from apps.assistant.memory import WorkingMemory
from apps.assistant.registry import Tool, ToolOutput, ToolRegistry, ToolSchema


# No backoff sleeps in tests
FAST_RETRY_CONFIG = {
    'max_attempts': 3,
    'initial_backoff': 0.0,
    'backoff_multiplier': 2.0,
    'max_backoff': 0.0,
    'jitter_percent': 0.0,
}


@pytest.fixture(autouse=True)
def in_memory_channel_layer(settings):
    """Status events go to an in-process layer instead of Redis."""
    settings.CHANNEL_LAYERS = {'default': {'BACKEND': 'channels.layers.InMemoryChannelLayer'}}
    settings.QDRANT_URL = ''
    yield
    reset_llm_client()


# ============================================================================
# Scripted LLM
# ============================================================================

class FakeLLM:
    """
    Stands in for an LLM client.

    Planning calls (those with a response_schema) pop from `plans`; a plan may
    be a dict, a raw string or an exception to raise. Tool-calling calls
    return `fallback_tool_calls` / `fallback_content`. Everything else is a
    synthesis call and returns `answer` (or raises it if it is an exception).
    """

    def __init__(
        self,
        plans: Optional[List[Any]] = None,
        answer: Any = "Here is what I found.",
        fallback_tool_calls: Optional[List[LLMToolCall]] = None,
        fallback_content: str = '',
        fallback_error: Optional[Exception] = None,
    ):
        self.plans = list(plans or [])
        self.answer = answer
        self.fallback_tool_calls = list(fallback_tool_calls or [])
        self.fallback_content = fallback_content
        self.fallback_error = fallback_error
        self.calls: List[Dict[str, Any]] = []

    @property
    def model_name(self) -> str:
        return 'fake-model'

    @property
    def planning_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c['response_schema'] is not None]

    @property
    def synthesis_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c['response_schema'] is None and not c['tools']]

    async def chat(
        self,
        messages,
        temperature=0.2,
        max_tokens=1200,
        tools=None,
        tool_choice=None,
        response_schema=None,
    ):
        self.calls.append({
            'messages': list(messages),
            'tools': tools,
            'tool_choice': tool_choice,
            'response_schema': response_schema,
        })

        if response_schema is not None:
            if not self.plans:
                raise LLMError("no plan scripted")
            plan = self.plans.pop(0)
            if isinstance(plan, Exception):
                raise plan
            content = plan if isinstance(plan, str) else json.dumps(plan)
            return LLMResponse(content=content, model='fake-model')

        if tools:
            if self.fallback_error is not None:
                raise self.fallback_error
            return LLMResponse(
                content=self.fallback_content,
                model='fake-model',
                tool_calls=self.fallback_tool_calls,
            )

        if isinstance(self.answer, Exception):
            raise self.answer
        return LLMResponse(content=self.answer, model='fake-model')


@pytest.fixture
def fake_llm():
    """Patch every LLM entry point with one FakeLLM; configure it in the test."""
    llm = FakeLLM()
    with patch('apps.assistant.planner.get_llm_client', return_value=llm), \
            patch('apps.assistant.synthesizer.get_llm_client', return_value=llm), \
            patch('apps.assistant.orchestrator.get_llm_client', return_value=llm):
        yield llm


# ============================================================================
# Fake tools
# ============================================================================

class RecordingTool:
    """
    Tool handler that records its invocations.

    `effects` is applied to memory on success; `failures` is a list of
    exceptions raised by the first calls, in order.
    """

    def __init__(self, payload: Optional[Dict[str, Any]] = None, effects=None, failures=None):
        self.payload = payload if payload is not None else {'items': [], 'total': 0}
        self.effects = effects
        self.failures = list(failures or [])
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
        self.calls.append(dict(args))
        if self.failures:
            raise self.failures.pop(0)
        if self.effects:
            self.effects(args, memory)
        return ToolOutput(output=json.dumps(self.payload))


def make_registry(tools: Dict[str, Any]) -> ToolRegistry:
    """Build a registry from {name: (handler, required_args)}."""
    registry = ToolRegistry()
    for name, (handler, required) in tools.items():
        registry.register(Tool(name=name, schema=ToolSchema(required=tuple(required)), execute=handler))
    return registry


class NoLookupResolver:
    """Resolver that only consults memory.ids; never touches the database."""

    async def ensure_arg(self, arg_name, args, memory):
        resolved = dict(args)
        if not resolved.get(arg_name) and memory.ids.get(arg_name):
            resolved[arg_name] = memory.ids[arg_name]
        return resolved
