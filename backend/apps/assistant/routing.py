"""
WebSocket URL routing for the assistant app.
"""
from django.urls import re_path

from apps.assistant.consumers import AskStatusConsumer

websocket_urlpatterns = [
    re_path(r"ws/assistant/(?P<request_id>[\w.-]+)/?$", AskStatusConsumer.as_asgi()),
]
