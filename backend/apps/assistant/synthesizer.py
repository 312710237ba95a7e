"""
Answer synthesis and citation building.

The final LLM call sees the executed steps replayed in chat-completions
tool-calling form (one assistant message carrying the tool calls, then one
tool message per result) and must answer from those outputs only.
Citations are built separately from working memory, never from model text.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from django.conf import settings

from apps.assistant.executor import StepResult
from apps.assistant.llm_client import (
    LLMConfigError,
    LLMError,
    LLMMessage,
    LLMToolCall,
    get_llm_client,
)
from apps.assistant.memory import WorkingMemory

logger = logging.getLogger(__name__)

MAX_TOOL_CALL_ID_LENGTH = 40
MAX_HISTORY_MESSAGES = 40
SYNTHESIS_TIMEOUT = 30

UNAVAILABLE_MESSAGE = (
    "I couldn't put an answer together right now because the language model "
    "is temporarily unavailable. Please try again in a moment."
)

SYNTHESIS_INSTRUCTIONS = """Answer the user's question using ONLY the tool outputs in this conversation.
- Give total counts when listing items, then the items themselves (title, status, deadline, name, URL as relevant).
- When an output has "truncated": true, "total" is the full number of matches and only the first items are listed; say so.
- Never show internal identifiers (ids, database keys, UUIDs) and never invent data.
- If a tool output contains "error", say that this part of the data could not be retrieved right now.
- If a tool returned an empty list, say that nothing matched. Do not confuse the two cases.
- Be concise. Use the user's language."""

NO_DATA_NOTE = (
    "No workspace data was retrieved for this question. Say so plainly and do "
    "not make anything up."
)


@dataclass
class Citation:
    """A reference to a workspace item the answer was built from."""
    kind: str
    id: str
    title: str
    score: float = 0.0
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'kind': self.kind,
            'id': self.id,
            'title': self.title,
            'score': self.score,
        }
        if self.url:
            result['url'] = self.url
        return result


# =============================================================================
# Tool-call replay
# =============================================================================

def shorten_call_id(call_id: str) -> str:
    return str(call_id)[:MAX_TOOL_CALL_ID_LENGTH]


def map_tool_calls_for_chat_completions(
    results: Sequence[StepResult],
) -> Tuple[Optional[LLMMessage], List[LLMMessage]]:
    """
    Rebuild the assistant tool-calls message and its tool result messages.

    Skipped steps are left out. Returns (None, []) when nothing remains.
    """
    used = [r for r in results if not r.skipped]
    if not used:
        return None, []

    calls = []
    tool_messages = []
    seen = set()
    for index, result in enumerate(used):
        call_id = shorten_call_id(result.tool_call_id)
        if call_id in seen:
            call_id = shorten_call_id(f"{index}_{result.tool_call_id}")
        seen.add(call_id)

        calls.append(LLMToolCall(id=call_id, name=result.tool, arguments=_json_args(result.args)))
        tool_messages.append(LLMMessage(role='tool', content=result.output, tool_call_id=call_id))

    assistant = LLMMessage(role='assistant', content=None, tool_calls=calls)
    return assistant, tool_messages


def _json_args(args: Dict[str, Any]) -> str:
    return json.dumps(args or {}, default=str)


def normalize_history(history: Optional[Sequence[Any]]) -> List[LLMMessage]:
    """Keep user/assistant text turns, newest MAX_HISTORY_MESSAGES only."""
    messages = []
    for item in history or []:
        if not isinstance(item, dict):
            continue
        role = item.get('role')
        content = item.get('content')
        if role not in ('user', 'assistant') or not isinstance(content, str) or not content.strip():
            continue
        messages.append(LLMMessage(role=role, content=content))
    return messages[-MAX_HISTORY_MESSAGES:]


# =============================================================================
# Synthesis
# =============================================================================

def build_synthesis_messages(
    query: str,
    results: Sequence[StepResult],
    system_prompt: str = '',
    history: Optional[Sequence[Any]] = None,
) -> List[LLMMessage]:
    messages = [
        LLMMessage(role='system', content=f"{system_prompt}\n\n{SYNTHESIS_INSTRUCTIONS}".strip()),
        *normalize_history(history),
        LLMMessage(role='user', content=query),
    ]

    assistant, tool_messages = map_tool_calls_for_chat_completions(results)
    if assistant is None:
        messages.append(LLMMessage(role='system', content=NO_DATA_NOTE))
    else:
        messages.append(assistant)
        messages.extend(tool_messages)
    return messages


async def synthesize(
    query: str,
    results: Sequence[StepResult],
    system_prompt: str = '',
    history: Optional[Sequence[Any]] = None,
) -> str:
    """
    Compose the user-facing answer from tool outputs.

    Transport failures degrade to a fixed "temporarily unavailable" text.

    Raises:
        LLMConfigError: If no LLM provider is usable at all
    """
    messages = build_synthesis_messages(query, results, system_prompt, history)
    timeout = float(getattr(settings, 'LLM_TIMEOUT', SYNTHESIS_TIMEOUT))

    try:
        client = get_llm_client()
        response = await asyncio.wait_for(
            client.chat(
                messages,
                temperature=float(getattr(settings, 'LLM_TEMPERATURE', 0.2)),
                max_tokens=int(getattr(settings, 'LLM_MAX_TOKENS', 1200)),
            ),
            timeout=timeout,
        )
    except LLMConfigError:
        raise
    except LLMError as e:
        logger.error(f"Synthesis LLM call failed: {e}")
        return UNAVAILABLE_MESSAGE
    except asyncio.TimeoutError:
        logger.error(f"Synthesis LLM call timed out after {timeout}s")
        return UNAVAILABLE_MESSAGE

    text = (response.content or '').strip()
    return text or UNAVAILABLE_MESSAGE


# =============================================================================
# Citations
# =============================================================================

def build_citations(memory: WorkingMemory) -> List[Citation]:
    """Citations from search results plus the project/session resolved during the request."""
    citations: List[Citation] = []
    seen = set()

    def add(citation: Citation):
        key = (citation.kind, citation.id)
        if key in seen:
            return
        seen.add(key)
        citations.append(citation)

    for item in memory.lists.get('searchResults') or []:
        if not isinstance(item, dict) or not item.get('kind') or not item.get('id'):
            continue
        add(Citation(
            kind=str(item['kind']),
            id=str(item['id']),
            title=str(item.get('title') or ''),
            score=float(item.get('score') or 0.0),
            url=item.get('url') or None,
        ))

    for kind, id_key in (('project', 'projectId'), ('session', 'sessionId')):
        entity_id = memory.ids.get(id_key)
        entity = memory.entities.get(kind)
        if entity_id and isinstance(entity, dict):
            add(Citation(kind=kind, id=str(entity_id), title=str(entity.get('name') or ''), score=1.0))

    return citations
