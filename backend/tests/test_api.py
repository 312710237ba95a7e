"""
Tests for the outer surfaces: HTTP endpoint, health probes, status events
and the management command.
"""
import json
from io import StringIO
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from channels.layers import get_channel_layer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.core.management import CommandError, call_command
from django.test import Client

from apps.assistant.llm_client import LLMConfigError
from apps.assistant.orchestrator import AskResult, AssistantError, TraceEntry, TraceType
from apps.assistant.routing import websocket_urlpatterns
from apps.assistant.status import AskStage, group_name_for, publish_status
from apps.assistant.synthesizer import Citation


def _post(client, body):
    payload = body if isinstance(body, str) else json.dumps(body)
    return client.post('/api/assistant/ask', data=payload, content_type='application/json')


def _result():
    return AskResult(
        text='Two tasks are due.',
        citations=[Citation(kind='project', id='p-1', title='Alpha', score=1.0)],
        trace=[TraceEntry(type=TraceType.FINAL, notes='1 step(s)')],
    )


# ============================================================================
# Ask endpoint
# ============================================================================

class TestAskView:
    """Tests for POST /api/assistant/ask."""

    def test_returns_text_and_citations(self):
        with patch('apps.assistant.views.ask', new=AsyncMock(return_value=_result())) as ask:
            response = _post(Client(), {'query': 'What is due?', 'requestId': 'req-42'})

        assert response.status_code == 200
        data = response.json()
        assert data['text'] == 'Two tasks are due.'
        assert data['citations'][0]['title'] == 'Alpha'
        assert data['requestId'] == 'req-42'
        assert 'trace' not in data
        ask.assert_awaited_once_with('What is due?', [], request_id='req-42')

    def test_trace_on_request(self):
        with patch('apps.assistant.views.ask', new=AsyncMock(return_value=_result())):
            response = _post(Client(), {'query': 'What is due?', 'returnTrace': True})

        data = response.json()
        assert data['trace'] == [{'type': 'final', 'notes': '1 step(s)'}]
        assert data['requestId']

    @pytest.mark.parametrize('body', [
        'not json',
        '[1, 2]',
        {'query': ''},
        {'query': 'x' * 1001},
        {'query': 'hi', 'history': 'nope'},
    ])
    def test_validation_errors(self, body):
        with patch('apps.assistant.views.ask', new=AsyncMock(return_value=_result())) as ask:
            response = _post(Client(), body)

        assert response.status_code == 400
        assert response.json()['code'] == 'VALIDATION_ERROR'
        ask.assert_not_awaited()

    def test_assistant_error_is_400(self):
        with patch('apps.assistant.views.ask', new=AsyncMock(side_effect=AssistantError('Query cannot be empty'))):
            response = _post(Client(), {'query': 'hi'})

        assert response.status_code == 400

    def test_missing_llm_config_is_503(self):
        with patch('apps.assistant.views.ask', new=AsyncMock(side_effect=LLMConfigError('no key'))):
            response = _post(Client(), {'query': 'hi'})

        assert response.status_code == 503
        assert response.json()['code'] == 'CONFIG_ERROR'

    def test_unexpected_error_is_500(self):
        with patch('apps.assistant.views.ask', new=AsyncMock(side_effect=RuntimeError('boom'))):
            response = _post(Client(), {'query': 'hi'})

        assert response.status_code == 500
        assert response.json()['code'] == 'INTERNAL_ERROR'

    def test_get_not_allowed(self):
        response = Client().get('/api/assistant/ask')

        assert response.status_code == 405


# ============================================================================
# Health probes
# ============================================================================

class TestHealth:
    """Tests for liveness and readiness."""

    def test_healthz(self):
        response = Client().get('/healthz')

        assert response.status_code == 200
        assert response.json()['status'] == 'healthy'

    @pytest.mark.django_db
    def test_readyz_depends_on_database_only(self, settings):
        settings.LLM_PROVIDER = 'openai'
        settings.OPENAI_API_KEY = ''

        with patch('apps.assistant.health.check_redis', return_value=('degraded: down', True)):
            response = Client().get('/readyz')

        assert response.status_code == 200
        data = response.json()
        assert data['checks']['database'] == 'ok'
        assert data['checks']['llm'] == 'not configured'
        assert data['checks']['vector_index'] == 'disabled'

    def test_readyz_fails_without_database(self):
        with patch('apps.assistant.health.check_database', return_value=('error: gone', False)), \
                patch('apps.assistant.health.check_redis', return_value=('ok', True)), \
                patch('apps.assistant.health.check_llm', return_value=('ok', True)):
            response = Client().get('/readyz')

        assert response.status_code == 503
        assert response.json()['status'] == 'not_ready'


# ============================================================================
# Status events
# ============================================================================

class TestStatusEvents:
    """Tests for the WebSocket status side-channel."""

    def test_group_name_is_sanitized(self):
        assert group_name_for('abc 123/../x') == 'ask_abc123..x'

    @pytest.mark.asyncio
    async def test_publish_without_request_id_is_noop(self):
        with patch('apps.assistant.status.get_channel_layer') as layer:
            await publish_status(None, AskStage.PLANNING, 'Planning')

        layer.assert_not_called()

    @pytest.mark.asyncio
    async def test_publish_failures_are_swallowed(self):
        broken = MagicMock()
        broken.group_send = AsyncMock(side_effect=ConnectionError('redis down'))

        with patch('apps.assistant.status.get_channel_layer', return_value=broken):
            await publish_status('req-1', AskStage.PLANNING, 'Planning')

        broken.group_send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_consumer_receives_events(self):
        communicator = WebsocketCommunicator(URLRouter(websocket_urlpatterns), '/ws/assistant/req-7')
        connected, _ = await communicator.connect()
        assert connected

        hello = await communicator.receive_json_from()
        assert hello['type'] == 'connected'
        assert hello['requestId'] == 'req-7'

        await publish_status('req-7', AskStage.TOOL_START, 'Running chat_tasks', tools=['chat_tasks'])
        event = await communicator.receive_json_from()

        assert event == {
            'type': 'ask_status',
            'data': {
                'type': 'ask_status',
                'requestId': 'req-7',
                'stage': 'tool_start',
                'message': 'Running chat_tasks',
                'tools': ['chat_tasks'],
            },
        }

        await communicator.send_json_to({'type': 'ping'})
        assert await communicator.receive_json_from() == {'type': 'pong'}
        await communicator.disconnect()

    def test_channel_layer_is_in_memory_in_tests(self):
        assert type(get_channel_layer()).__name__ == 'InMemoryChannelLayer'


# ============================================================================
# Management command
# ============================================================================

class TestAskCommand:
    """Tests for `manage.py ask`."""

    def test_prints_answer_and_citations(self):
        out = StringIO()
        with patch('apps.assistant.management.commands.ask.ask', new=AsyncMock(return_value=_result())):
            call_command('ask', 'What is due?', '--trace', stdout=out)

        output = out.getvalue()
        assert 'Two tasks are due.' in output
        assert '[project] Alpha' in output
        assert '"type": "final"' in output

    def test_config_error_becomes_command_error(self):
        with patch('apps.assistant.management.commands.ask.ask', new=AsyncMock(side_effect=LLMConfigError('no key'))):
            with pytest.raises(CommandError):
                call_command('ask', 'What is due?')
