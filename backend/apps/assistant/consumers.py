"""
WebSocket consumer for `ask` status events.

Clients connect to /ws/assistant/<request_id> before (or while) posting the
question with the same requestId, and receive AskStatusEvent messages.
"""
import logging

from channels.generic.websocket import AsyncJsonWebsocketConsumer

from apps.assistant.status import group_name_for

logger = logging.getLogger(__name__)


class AskStatusConsumer(AsyncJsonWebsocketConsumer):
    """Joins the request's group and forwards status events to the client."""

    async def connect(self):
        self.request_id = self.scope["url_route"]["kwargs"]["request_id"]
        self.group_name = group_name_for(self.request_id)

        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()

        logger.info(f"Status WebSocket connected for request {self.request_id}")
        await self.send_json({
            "type": "connected",
            "message": "Connected to assistant status stream",
            "requestId": self.request_id,
        })

    async def disconnect(self, close_code):
        if hasattr(self, 'group_name'):
            await self.channel_layer.group_discard(self.group_name, self.channel_name)
            logger.info(f"Status WebSocket disconnected for request {self.request_id} (code={close_code})")

    async def receive_json(self, content):
        if content.get("type") == "ping":
            await self.send_json({"type": "pong"})

    async def ask_status(self, event):
        """Handle ask_status events from the channel layer."""
        await self.send_json({
            "type": "ask_status",
            "data": event["data"],
        })
