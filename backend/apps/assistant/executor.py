"""
Step executor: runs one planned tool call.

For each step:
1. Bind arguments from working memory ({"var": "ids.projectId"} objects and
   "{{memory.ids.projectId}}" placeholders)
2. Fill required arguments that are still missing via the argument resolver,
   which also turns names given in place of ids into ids
3. Raise MissingArgumentsError if anything required is still missing
4. Invoke the tool with a per-attempt timeout, retrying with exponential
   backoff on execution failures
5. Always hand back a StepResult whose output is valid JSON; failures become
   {"error": "..."} payloads instead of exceptions
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from django.conf import settings

from apps.assistant.memory import WorkingMemory
from apps.assistant.planner import PlanStep
from apps.assistant.registry import ToolInputError, ToolRegistry, UnknownToolError
from apps.assistant.resolver import ArgumentResolver, default_resolver
from apps.assistant.retry import RetryExhausted, TOOL_RETRY_CONFIG, retry_async

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 30
MAX_ERROR_LENGTH = 300

PLACEHOLDER_PATTERN = re.compile(r'^\{\{\s*([\w.]+)\s*\}\}$')


class MissingArgumentsError(Exception):
    """A step's required arguments could not be bound or resolved."""

    def __init__(self, tool: str, missing: List[str]):
        super().__init__(f"Missing required argument(s) for {tool}: {', '.join(missing)}")
        self.tool = tool
        self.missing = missing


@dataclass
class StepResult:
    """Normalized record of one executed (or skipped) step."""
    tool_call_id: str
    tool: str
    args: Dict[str, Any]
    output: str  # always valid JSON
    skipped: bool = False
    failed: bool = False

    def payload(self) -> Any:
        return json.loads(self.output)

    def summary(self) -> str:
        """Brief description for the trace."""
        if self.skipped:
            return "Skipped: required arguments unavailable"
        data = self.payload()
        if isinstance(data, dict):
            if 'error' in data:
                return f"Error: {data['error']}"
            if 'total' in data:
                return f"{data['total']} result(s)"
        return f"{len(self.output)} chars"

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'toolCallId': self.tool_call_id,
            'tool': self.tool,
            'args': self.args,
            'output': self.output,
        }
        if self.skipped:
            result['skipped'] = True
        if self.failed:
            result['failed'] = True
        return result

    @classmethod
    def skipped_step(cls, call_id: str, tool: str, args: Dict[str, Any], missing: List[str]) -> 'StepResult':
        output = json.dumps({
            'skipped': True,
            'reason': 'required arguments could not be resolved',
            'missing': missing,
        })
        return cls(tool_call_id=call_id, tool=tool, args=args, output=output, skipped=True)


def _resolve_reference(value: Any, memory: WorkingMemory) -> Any:
    """Return the memory value a placeholder points to, `value` itself if it is not one."""
    if isinstance(value, dict) and set(value.keys()) == {'var'}:
        return memory.get_path(str(value['var']))
    if isinstance(value, str):
        match = PLACEHOLDER_PATTERN.match(value.strip())
        if match:
            return memory.get_path(match.group(1))
    return value


def bind_args_with_memory(args: Optional[Dict[str, Any]], memory: WorkingMemory) -> Dict[str, Any]:
    """
    Substitute memory references in top-level argument values.

    A reference that does not resolve is dropped, so the argument reads as
    missing to schema validation.
    """
    bound: Dict[str, Any] = {}
    for key, value in (args or {}).items():
        resolved = _resolve_reference(value, memory)
        if resolved is None:
            if value is not None:
                logger.debug(f"Unresolved memory reference for {key}: {value!r}")
            continue
        bound[key] = resolved
    return bound


def _is_retriable(exc: Exception) -> bool:
    return not isinstance(exc, (ToolInputError, UnknownToolError, MissingArgumentsError))


def _error_output(message: str) -> str:
    return json.dumps({'error': message[:MAX_ERROR_LENGTH]})


def normalize_output(tool: str, output: Any) -> str:
    """Guarantee a JSON string; anything else is logged and wrapped as an error."""
    if isinstance(output, str):
        try:
            json.loads(output)
            return output
        except json.JSONDecodeError:
            logger.warning(f"Tool {tool} returned invalid JSON ({len(output)} chars)")
            return _error_output(f"Tool {tool} returned malformed output")
    logger.warning(f"Tool {tool} returned {type(output).__name__} instead of a JSON string")
    return _error_output(f"Tool {tool} returned malformed output")


class StepExecutor:
    """Executes plan steps against a registry, one at a time."""

    def __init__(
        self,
        registry: ToolRegistry,
        resolver: Optional[ArgumentResolver] = None,
        retry_config: Optional[dict] = None,
        tool_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.resolver = resolver or default_resolver()
        self.retry_config = dict(retry_config or TOOL_RETRY_CONFIG)
        self.tool_timeout = float(
            tool_timeout if tool_timeout is not None
            else getattr(settings, 'TOOL_TIMEOUT', DEFAULT_TOOL_TIMEOUT)
        )

    async def bind_step_args(self, tool_name: str, args: Dict[str, Any], memory: WorkingMemory) -> Dict[str, Any]:
        """
        Bind and resolve a step's arguments.

        Raises:
            MissingArgumentsError: If a required argument stays missing
        """
        tool = self.registry.get(tool_name)
        bound = bind_args_with_memory(args, memory)
        if tool is None:
            return bound

        pending = list(tool.schema.missing(bound))
        pending += [name for name in bound if name not in pending]
        for name in pending:
            bound = await self.resolver.ensure_arg(name, bound, memory)

        missing = tool.schema.missing(bound)
        if missing:
            raise MissingArgumentsError(tool_name, missing)
        return bound

    async def execute_step(
        self,
        step: PlanStep,
        memory: WorkingMemory,
        call_id: str,
        retries: Optional[int] = None,
    ) -> StepResult:
        """
        Run one step.

        Raises:
            MissingArgumentsError: Required arguments could not be bound. Never retried.
        """
        tool_name = step.tool

        if tool_name not in self.registry:
            message = f"Unknown tool: {tool_name}"
            logger.warning(message)
            memory.record_error(tool_name, message)
            return StepResult(
                tool_call_id=call_id,
                tool=tool_name,
                args=dict(step.args or {}),
                output=_error_output(message),
                failed=True,
            )

        args = await self.bind_step_args(tool_name, step.args, memory)

        config = dict(self.retry_config)
        if retries is not None:
            config['max_attempts'] = retries

        async def attempt():
            return await asyncio.wait_for(
                self.registry.invoke(tool_name, args, memory),
                timeout=self.tool_timeout,
            )

        try:
            result = await retry_async(attempt, config, is_retriable=_is_retriable)
        except RetryExhausted as e:
            message = _describe(e.last_exception)
            logger.error(f"Tool {tool_name} failed after {e.attempts} attempts: {message}")
            memory.record_error(tool_name, message)
            return StepResult(call_id, tool_name, args, _error_output(message), failed=True)
        except (ToolInputError, UnknownToolError) as e:
            message = _describe(e)
            logger.warning(f"Tool {tool_name} rejected its input: {message}")
            memory.record_error(tool_name, message)
            return StepResult(call_id, tool_name, args, _error_output(message), failed=True)

        output = normalize_output(tool_name, result.output)
        failed = output != result.output
        if failed:
            memory.record_error(tool_name, 'malformed output')
        return StepResult(call_id, tool_name, args, output, failed=failed)


def _describe(exc: Optional[BaseException]) -> str:
    if exc is None:
        return 'unknown error'
    if isinstance(exc, asyncio.TimeoutError):
        return 'tool timed out'
    return str(exc) or type(exc).__name__
