"""
Health check endpoints for Kubernetes/Docker probes.

- /healthz - Liveness (is process running?)
- /readyz - Readiness (can we serve traffic?)
"""
import logging
from datetime import datetime, timezone

import httpx
import redis
from django.conf import settings
from django.db import connection
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET

logger = logging.getLogger(__name__)


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@csrf_exempt
@require_GET
def healthz(request):
    """
    Liveness probe endpoint.

    Returns 200 if the Django process is running.
    """
    return JsonResponse({
        'status': 'healthy',
        'timestamp': get_timestamp()
    })


def check_database() -> tuple[str, bool]:
    """Check data store connectivity."""
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
            cursor.fetchone()
        return 'ok', True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_redis() -> tuple[str, bool]:
    """Check Redis (channel layer) connectivity. Status events are optional."""
    try:
        redis_url = getattr(settings, 'REDIS_URL', 'redis://redis:6379/0')
        client = redis.from_url(redis_url, socket_timeout=3)
        client.ping()
        return 'ok', True
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        return f'degraded: {str(e)[:30]}', True


def check_llm() -> tuple[str, bool]:
    """
    Check the LLM provider (optional, degrades gracefully).

    A missing API key is reported but does not block readiness.
    """
    provider = getattr(settings, 'LLM_PROVIDER', 'openai').lower()
    if provider != 'ollama':
        if not getattr(settings, 'OPENAI_API_KEY', ''):
            return 'not configured', True
        return 'configured', True

    try:
        ollama_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        with httpx.Client(timeout=5.0) as client:
            response = client.get(f'{ollama_url}/api/version')
            if response.status_code == 200:
                return 'ok', True
            return f'status: {response.status_code}', True
    except Exception as e:
        logger.warning(f"Ollama health check failed: {e}")
        return f'degraded: {str(e)[:30]}', True


def check_vector_index() -> tuple[str, bool]:
    """Check Qdrant. Semantic search is optional, so this never blocks readiness."""
    qdrant_url = (getattr(settings, 'QDRANT_URL', '') or '').strip()
    if not qdrant_url:
        return 'disabled', True
    try:
        with httpx.Client(timeout=5.0) as client:
            response = client.get(f'{qdrant_url.rstrip("/")}/readyz')
            if response.status_code == 200:
                return 'ok', True
            return f'status: {response.status_code}', True
    except Exception as e:
        logger.warning(f"Qdrant health check failed: {e}")
        return f'degraded: {str(e)[:30]}', True


@csrf_exempt
@require_GET
def readyz(request):
    """
    Readiness probe endpoint.

    Returns 200 only if the data store is reachable. Everything else is
    reported for visibility only.
    """
    checks = {}
    all_ok = True

    status, ok = check_database()
    checks['database'] = status
    if not ok:
        all_ok = False

    checks['redis'], _ = check_redis()
    checks['llm'], _ = check_llm()
    checks['vector_index'], _ = check_vector_index()

    response_data = {
        'status': 'ready' if all_ok else 'not_ready',
        'timestamp': get_timestamp(),
        'checks': checks
    }

    return JsonResponse(response_data, status=200 if all_ok else 503)
