"""
LLM Client Abstraction Layer.

Provides a unified async interface for the assistant's LLM calls that can
switch between:
- OpenAI-compatible APIs (OpenAI, Azure OpenAI, Groq, local servers, ...)
- Ollama (local inference)

Supports the three call shapes the assistant needs: JSON-schema constrained
planning, tool-calling, and plain chat for synthesis.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


@dataclass
class LLMToolCall:
    """A function call requested by the model."""
    id: str
    name: str
    arguments: str = '{}'  # JSON-encoded object

    def parsed_arguments(self) -> Dict[str, Any]:
        try:
            value = json.loads(self.arguments or '{}')
        except json.JSONDecodeError:
            logger.warning(f"Tool call {self.name} has non-JSON arguments")
            return {}
        return value if isinstance(value, dict) else {}

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or '{}'},
        }


@dataclass
class LLMMessage:
    """A message in a chat conversation."""
    role: str  # "system", "user", "assistant" or "tool"
    content: Optional[str] = ''
    tool_calls: List[LLMToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None

    def to_openai(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        if self.tool_call_id:
            message["tool_call_id"] = self.tool_call_id
        return message

    def to_ollama(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content or ''}
        if self.tool_calls:
            message["tool_calls"] = [
                {"function": {"name": tc.name, "arguments": tc.parsed_arguments()}}
                for tc in self.tool_calls
            ]
        return message


@dataclass
class LLMResponse:
    """Response from an LLM call."""
    content: str
    model: str
    tool_calls: List[LLMToolCall] = field(default_factory=list)
    usage: Optional[Dict[str, int]] = None  # token usage if available
    finish_reason: Optional[str] = None


class LLMError(Exception):
    """Raised when an LLM call fails."""
    pass


class LLMConfigError(LLMError):
    """Raised when the provider cannot be used at all (e.g. missing API key)."""
    pass


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = float(getattr(settings, 'LLM_TIMEOUT', DEFAULT_TIMEOUT))
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @abstractmethod
    async def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 1200,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> LLMResponse:
        """
        Send a chat completion request.

        Args:
            messages: List of messages in the conversation
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens in response
            tools: Function definitions the model may call
            tool_choice: "auto", "none" or "required"
            response_schema: JSON schema the reply must follow

        Returns:
            LLMResponse with the model's response

        Raises:
            LLMError: If the request fails
        """
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name being used."""
        pass


class OllamaClient(BaseLLMClient):
    """LLM client for Ollama local inference."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport)
        self.base_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        self.model = getattr(settings, 'OLLAMA_CHAT_MODEL', 'llama3.1')

    @property
    def model_name(self) -> str:
        return self.model

    async def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 1200,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> LLMResponse:
        """Send chat request to Ollama."""
        logger.info(f"Calling Ollama chat: model={self.model}, temp={temperature}")

        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [msg.to_ollama() for msg in messages],
            "stream": False,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        }
        if response_schema:
            body["format"] = response_schema
        if tools and tool_choice != "none":
            body["tools"] = tools

        try:
            async with self._http() as client:
                response = await client.post(f"{self.base_url}/api/chat", json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama HTTP error: {e}")
            raise LLMError(f"Ollama service error: {e.response.status_code}")
        except httpx.TimeoutException:
            logger.error("Ollama request timed out")
            raise LLMError("Ollama service timed out")
        except httpx.RequestError as e:
            logger.error(f"Ollama connection error: {e}")
            raise LLMError("Could not connect to Ollama")
        except ValueError:
            raise LLMError("Ollama returned invalid JSON")

        message = data.get("message") or {}
        content = message.get("content") or ""
        tool_calls = []
        for index, call in enumerate(message.get("tool_calls") or []):
            function = call.get("function") or {}
            arguments = function.get("arguments")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments or {})
            tool_calls.append(LLMToolCall(
                id=call.get("id") or f"call_{index}",
                name=function.get("name", ""),
                arguments=arguments,
            ))

        if not content and not tool_calls:
            raise LLMError("Empty response from Ollama")

        logger.info(f"Ollama response: {len(content)} chars, {len(tool_calls)} tool calls")
        return LLMResponse(
            content=content,
            model=self.model,
            tool_calls=tool_calls,
            finish_reason=data.get("done_reason"),
        )


class OpenAICompatibleClient(BaseLLMClient):
    """
    LLM client for OpenAI-compatible APIs.

    Works with: OpenAI, Azure OpenAI, Groq, Together, local servers, etc.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport)
        self.api_key = getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
        self.model = getattr(settings, 'OPENAI_MODEL', 'gpt-4o-mini')

        if not self.api_key:
            raise LLMConfigError("OPENAI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    async def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 1200,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> LLMResponse:
        """Send chat request to OpenAI-compatible API."""
        logger.info(f"Calling OpenAI API: model={self.model}, temp={temperature}")

        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [msg.to_openai() for msg in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_schema:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "strict": False, "schema": response_schema},
            }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = tool_choice or "auto"

        try:
            async with self._http() as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"OpenAI HTTP error: {e}")
            raise LLMError(f"OpenAI API error: {e.response.status_code}")
        except httpx.TimeoutException:
            logger.error("OpenAI request timed out")
            raise LLMError("OpenAI API timed out")
        except httpx.RequestError as e:
            logger.error(f"OpenAI connection error: {e}")
            raise LLMError("Could not connect to OpenAI API")
        except ValueError:
            raise LLMError("OpenAI API returned invalid JSON")

        choices = data.get("choices", [])
        if not choices:
            raise LLMError("No choices in OpenAI response")

        message = choices[0].get("message", {}) or {}
        content = message.get("content") or ""
        tool_calls = [
            LLMToolCall(
                id=call.get("id", f"call_{index}"),
                name=(call.get("function") or {}).get("name", ""),
                arguments=(call.get("function") or {}).get("arguments") or "{}",
            )
            for index, call in enumerate(message.get("tool_calls") or [])
        ]

        if not content and not tool_calls:
            raise LLMError("Empty response from OpenAI")

        logger.info(f"OpenAI response: {len(content)} chars, {len(tool_calls)} tool calls")
        return LLMResponse(
            content=content,
            model=self.model,
            tool_calls=tool_calls,
            usage=data.get("usage"),
            finish_reason=choices[0].get("finish_reason"),
        )


# =============================================================================
# Client Factory
# =============================================================================

_client_instance: Optional[BaseLLMClient] = None


def get_llm_client() -> BaseLLMClient:
    """
    Get the configured LLM client instance.

    Uses LLM_PROVIDER setting to determine which client to use:
    - "openai" (default): OpenAI or compatible API
    - "ollama": Local Ollama inference

    Raises:
        LLMConfigError: If the selected provider is missing credentials
    """
    global _client_instance

    if _client_instance is not None:
        return _client_instance

    provider = getattr(settings, 'LLM_PROVIDER', 'openai').lower()

    if provider == 'ollama':
        logger.info("Using Ollama for LLM inference")
        _client_instance = OllamaClient()
    else:
        logger.info("Using OpenAI-compatible API for LLM inference")
        _client_instance = OpenAICompatibleClient()

    return _client_instance


def reset_llm_client():
    """Reset the cached client instance. Useful for testing."""
    global _client_instance
    _client_instance = None


def get_model_name() -> str:
    """Get the name of the configured model."""
    return get_llm_client().model_name
