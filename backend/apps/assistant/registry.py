"""
Tool registry for the workspace assistant.

Tools are named, read-only data-access coroutines with a declared set of
required arguments. The planner only ever sees names registered here, and
the executor dispatches through `ToolRegistry.invoke`.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from apps.assistant.memory import WorkingMemory

logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Raised when a tool cannot complete its query."""
    pass


class ToolInputError(ToolError):
    """Arguments are present but unusable (bad id, bad filter value). Not retried."""
    pass


class UnknownToolError(ToolError):
    """Raised when a step names a tool that is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


@dataclass(frozen=True)
class ToolSchema:
    """Declared argument contract of a tool."""
    required: Tuple[str, ...] = ()
    read_only: bool = True

    def missing(self, args: Dict[str, Any]) -> List[str]:
        """Required argument names that are absent or blank in `args`."""
        return [name for name in self.required if _is_blank(args.get(name))]


@dataclass
class ToolOutput:
    """What a handler returns: a JSON-serialized payload."""
    output: str

    def to_dict(self) -> Dict[str, str]:
        return {'output': self.output}


ToolHandler = Callable[[Dict[str, Any], WorkingMemory], Awaitable[ToolOutput]]


@dataclass
class Tool:
    """A registered tool: name, schema and the coroutine that runs it."""
    name: str
    schema: ToolSchema
    execute: ToolHandler
    description: str = ''
    # JSON-schema style property map, exposed to the fallback tool-calling path
    parameters: Dict[str, Any] = field(default_factory=dict)

    def definition(self) -> Dict[str, Any]:
        """OpenAI function-calling definition for this tool."""
        return {
            'type': 'function',
            'function': {
                'name': self.name,
                'description': self.description,
                'parameters': {
                    'type': 'object',
                    'properties': self.parameters,
                    'required': list(self.schema.required),
                    'additionalProperties': False,
                },
            },
        }


class ToolRegistry:
    """Name -> Tool lookup table."""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> Tool:
        if not tool.schema.read_only:
            raise ValueError(f"Tool {tool.name} must be read-only to be registered")
        if tool.name in self._tools:
            logger.warning(f"Replacing already registered tool {tool.name}")
        self._tools[tool.name] = tool
        return tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    async def invoke(
        self,
        name: str,
        args: Dict[str, Any],
        memory: WorkingMemory,
    ) -> ToolOutput:
        """
        Run a tool by name.

        Raises:
            UnknownToolError: If `name` is not registered
            Exception: Whatever the handler raises; the executor decides
                whether to retry
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)

        start = time.monotonic()
        result = await tool.execute(args, memory)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        if not isinstance(result, ToolOutput):
            raise ToolError(f"Tool {name} returned {type(result).__name__}, expected ToolOutput")

        logger.info(f"Tool {name} completed in {elapsed_ms}ms ({len(result.output)} chars)")
        return result


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False
