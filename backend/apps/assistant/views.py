"""
Assistant API views.

Provides the question-answering endpoint over the workspace.
"""
import json
import logging
import uuid

from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from apps.assistant.llm_client import LLMConfigError
from apps.assistant.orchestrator import MAX_QUERY_LENGTH, AssistantError, ask

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name='dispatch')
class AskView(View):
    """
    POST /api/assistant/ask

    Answer a question with planned, read-only tool calls.

    Request body:
        {
            "query": "Which tasks are due before tomorrow?",
            "history": [{"role": "user", "content": "..."}],   // optional
            "requestId": "abc123",    // optional, for ws/assistant/<requestId> status events
            "returnTrace": true       // optional, default false
        }

    Response:
        {
            "text": "...",
            "citations": [...],       // only when non-empty
            "requestId": "abc123",
            "trace": [...]            // only if returnTrace=true
        }
    """

    async def post(self, request):
        try:
            body = json.loads(request.body)
        except json.JSONDecodeError:
            return JsonResponse({"error": "Invalid JSON", "code": "VALIDATION_ERROR"}, status=400)

        if not isinstance(body, dict):
            return JsonResponse({"error": "Body must be a JSON object", "code": "VALIDATION_ERROR"}, status=400)

        query = body.get("query", "")
        history = body.get("history") or []
        request_id = body.get("requestId") or uuid.uuid4().hex
        return_trace = body.get("returnTrace", False)

        if not isinstance(return_trace, bool):
            return_trace = False

        if not isinstance(history, list):
            return JsonResponse(
                {"error": "history must be a list of messages", "code": "VALIDATION_ERROR"},
                status=400
            )

        if not isinstance(query, str) or not query.strip():
            return JsonResponse(
                {"error": "Query is required", "code": "VALIDATION_ERROR"},
                status=400
            )

        if len(query.strip()) > MAX_QUERY_LENGTH:
            return JsonResponse(
                {
                    "error": f"Query too long. Maximum {MAX_QUERY_LENGTH} characters.",
                    "code": "VALIDATION_ERROR"
                },
                status=400
            )

        try:
            result = await ask(query, history, request_id=str(request_id))
        except AssistantError as e:
            return JsonResponse({"error": str(e), "code": "VALIDATION_ERROR"}, status=400)
        except LLMConfigError as e:
            logger.error(f"Assistant is not configured: {e}")
            return JsonResponse(
                {"error": "The assistant is not configured", "code": "CONFIG_ERROR"},
                status=503
            )
        except Exception as e:
            logger.exception(f"Unexpected error in assistant: {e}")
            return JsonResponse(
                {"error": "Internal server error", "code": "INTERNAL_ERROR"},
                status=500
            )

        response_data = result.to_dict(include_trace=return_trace)
        response_data["requestId"] = str(request_id)
        return JsonResponse(response_data)
