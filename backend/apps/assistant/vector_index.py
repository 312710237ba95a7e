"""
Vector index access for semantic search over the workspace.

Embeds the query with the configured provider (Ollama or an OpenAI-compatible
API) and searches a Qdrant collection whose points carry `{kind, docId}`
payloads. When QDRANT_URL is not configured, semantic search is disabled and
callers are expected to return an empty result instead of failing.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx
from django.conf import settings
from qdrant_client import AsyncQdrantClient

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = 'workspace'
EMBED_TIMEOUT = 30.0


class VectorSearchError(Exception):
    """Raised when embedding or vector search fails."""
    pass


@dataclass
class VectorHit:
    """One raw hit from the index, before previews are fetched."""
    kind: str
    doc_id: str
    score: float


def is_vector_search_enabled() -> bool:
    return bool(get_qdrant_url())


def get_qdrant_url() -> str:
    return (getattr(settings, 'QDRANT_URL', '') or '').strip()


async def embed_query(text: str) -> List[float]:
    """
    Generate an embedding vector for a search query.

    Raises:
        VectorSearchError: If the embedding provider fails
    """
    provider = getattr(settings, 'LLM_PROVIDER', 'openai').lower()
    timeout = float(getattr(settings, 'EMBED_TIMEOUT', EMBED_TIMEOUT))

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            if provider == 'ollama':
                base_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
                response = await client.post(
                    f"{base_url}/api/embeddings",
                    json={
                        "model": getattr(settings, 'OLLAMA_EMBED_MODEL', 'nomic-embed-text'),
                        "prompt": text,
                    },
                )
                response.raise_for_status()
                embedding = response.json().get("embedding")
            else:
                base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
                response = await client.post(
                    f"{base_url}/embeddings",
                    json={
                        "model": getattr(settings, 'OPENAI_EMBED_MODEL', 'text-embedding-3-small'),
                        "input": text,
                    },
                    headers={
                        "Authorization": f"Bearer {getattr(settings, 'OPENAI_API_KEY', '')}",
                        "Content-Type": "application/json",
                    },
                )
                response.raise_for_status()
                data = response.json().get("data") or [{}]
                embedding = data[0].get("embedding")

    except httpx.HTTPStatusError as e:
        logger.error(f"Embedding request failed: {e}")
        raise VectorSearchError(f"Embedding service error: {e.response.status_code}")
    except httpx.RequestError as e:
        logger.error(f"Embedding connection error: {e}")
        raise VectorSearchError("Could not connect to embedding service")
    except (KeyError, IndexError, TypeError, ValueError) as e:
        logger.error(f"Unexpected embedding response format: {e}")
        raise VectorSearchError("Invalid response from embedding service")

    if not embedding:
        raise VectorSearchError("Embedding service returned an empty vector")

    logger.debug(f"Generated query embedding with {len(embedding)} dimensions")
    return embedding


def _get_client() -> AsyncQdrantClient:
    return AsyncQdrantClient(
        url=get_qdrant_url(),
        api_key=getattr(settings, 'QDRANT_API_KEY', None) or None,
        timeout=int(getattr(settings, 'QDRANT_TIMEOUT', 10)),
    )


async def search_workspace(
    query: str,
    limit: int = 8,
    client: Optional[AsyncQdrantClient] = None,
) -> List[VectorHit]:
    """
    Search the workspace index for `query`.

    Raises:
        VectorSearchError: If search is disabled or the index call fails
    """
    if not is_vector_search_enabled() and client is None:
        raise VectorSearchError("Vector search is not configured")

    vector = await embed_query(query)
    collection = getattr(settings, 'QDRANT_COLLECTION', DEFAULT_COLLECTION)

    owns_client = client is None
    client = client or _get_client()
    try:
        response = await client.query_points(
            collection_name=collection,
            query=vector,
            limit=limit,
            with_payload=True,
        )
    except Exception as e:
        logger.error(f"Qdrant search failed: {e}")
        raise VectorSearchError(f"Vector search failed: {e}")
    finally:
        if owns_client:
            await client.close()

    hits = []
    for point in response.points:
        payload = dict(point.payload or {})
        kind = payload.get('kind')
        doc_id = payload.get('docId') or payload.get('doc_id')
        if not kind or not doc_id:
            continue
        hits.append(VectorHit(kind=str(kind), doc_id=str(doc_id), score=float(point.score or 0.0)))

    logger.info(f"Vector search returned {len(hits)} hits for collection {collection}")
    return hits
