"""
Status side-channel for in-flight `ask` requests.

Publishes short progress events (planning, tool start/end, synthesizing) to
the Django Channels group `ask_<request_id>` so a UI can show what the
assistant is doing. Delivery is best effort: failures are logged and dropped
and never affect the answer.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import List, Optional

from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)

PUBLISH_TIMEOUT = 2.0


class AskStage(str, Enum):
    PLANNING = "planning"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    REPLANNING = "replanning"
    SYNTHESIZING = "synthesizing"
    DONE = "done"


@dataclass
class AskStatusEvent:
    """
    Event sent to clients while a question is being answered.

    Schema:
    {
        "type": "ask_status",
        "requestId": "client-chosen id",
        "stage": "planning|tool_start|tool_end|replanning|synthesizing|done",
        "message": "human-readable text",
        "tools": ["chat_tasks", ...]   # optional
    }
    """
    type: str
    requestId: str
    stage: str
    message: str
    tools: Optional[List[str]] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}


def group_name_for(request_id: str) -> str:
    # Channels group names allow only ASCII alphanumerics, hyphens, underscores and periods
    safe = ''.join(c for c in str(request_id) if c.isalnum() or c in '-_.')
    return f"ask_{safe[:80]}"


async def publish_status(
    request_id: Optional[str],
    stage: AskStage,
    message: str,
    tools: Optional[List[str]] = None,
) -> None:
    """Send a status event to the request's WebSocket group, if anyone listens."""
    if not request_id:
        return

    event = AskStatusEvent(
        type="ask_status",
        requestId=str(request_id),
        stage=stage.value,
        message=message,
        tools=tools,
    )

    try:
        channel_layer = get_channel_layer()

        if channel_layer is None:
            logger.debug("Channel layer not available, dropping status event")
            return

        group_name = group_name_for(request_id)
        await asyncio.wait_for(
            channel_layer.group_send(group_name, {"type": "ask_status", "data": event.to_dict()}),
            timeout=PUBLISH_TIMEOUT,
        )
        logger.debug(f"Published ask_status to {group_name}: stage={event.stage}")

    except Exception as e:
        # Status updates carry no correctness obligation
        logger.warning(f"Failed to publish status event: {e}")
