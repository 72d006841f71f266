"""
HTTP Chat Backend
=================
Call backend for OpenAI-compatible ``/chat/completions`` endpoints.

Agents select it with ``api: {"backend": "http", "endpoint": ..., "model": ...,
"api_key_env": "MY_KEY"}``. Each agent may point at a different endpoint, so
the endpoint and key are read per call from the agent's api settings.

HTTP status codes are mapped onto the typed failures:
- 401 / 403           -> AuthFailure
- 400 / 404 / 422     -> MalformedRequest
- 410                 -> BackendUnavailablePermanently
- 408 / 429 / 5xx     -> BackendUnavailable
- transport timeouts  -> CallTimeout
"""

import os
from typing import Any, Dict, List, Mapping, Optional

import httpx
from loguru import logger

from chorus.errors import (
    AuthFailure,
    BackendUnavailable,
    BackendUnavailablePermanently,
    CallTimeout,
    MalformedRequest,
    UnknownCallError,
)
from chorus.llm.backend import CallBackend, CallResult

DEFAULT_TIMEOUT = httpx.Timeout(120.0, connect=10.0)
DEFAULT_MODEL = "gpt-4o-mini"


def build_messages(user_prompt: str, system_prompt: str = "") -> List[Dict[str, str]]:
    """Build the chat message list for one call."""
    messages: List[Dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": user_prompt})
    return messages


class HttpChatBackend(CallBackend):
    """
    Backend for any endpoint speaking the OpenAI chat-completions dialect.

    Usage:
        backend = HttpChatBackend(endpoint="http://localhost:8000/v1/chat/completions")
        result = await backend.invoke(system, user, {"model": "llama3"}, {})
    """

    name = "http"

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the backend.

        Args:
            endpoint: Default endpoint URL (agents may override per call)
            api_key: Default bearer token (agents may override via api_key_env)
            timeout: Optional custom timeout configuration
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.endpoint = endpoint or os.getenv("CHORUS_HTTP_ENDPOINT")
        self.api_key = api_key or os.getenv("CHORUS_HTTP_API_KEY")
        self.timeout = timeout or DEFAULT_TIMEOUT
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    def _headers(self, api_config: Mapping[str, Any]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key_env = api_config.get("api_key_env")
        api_key = os.getenv(key_env) if key_env else None
        api_key = api_key or api_config.get("api_key") or self.api_key
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = response.text[:500]
        message = f"API error {status}: {detail}"
        if status in (401, 403):
            raise AuthFailure(message, status_code=status)
        if status == 410:
            raise BackendUnavailablePermanently(message, status_code=status)
        if status in (400, 404, 422):
            raise MalformedRequest(message, status_code=status)
        if status in (408, 429) or status >= 500:
            raise BackendUnavailable(message, status_code=status)
        raise UnknownCallError(message, status_code=status)

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        api_config: Mapping[str, Any],
        generation_config: Mapping[str, Any],
    ) -> CallResult:
        endpoint = api_config.get("endpoint") or self.endpoint
        if not endpoint:
            raise MalformedRequest("No endpoint configured for HTTP backend")

        body: Dict[str, Any] = {
            "model": api_config.get("model") or DEFAULT_MODEL,
            "messages": build_messages(user_prompt, system_prompt),
            "temperature": generation_config.get("temperature", 0.7),
            "max_tokens": generation_config.get("max_tokens", 1000),
        }
        for key in ("top_p", "stop", "presence_penalty", "frequency_penalty"):
            if key in generation_config:
                body[key] = generation_config[key]

        client = await self._get_client()
        try:
            response = await client.post(endpoint, json=body, headers=self._headers(api_config))
        except httpx.TimeoutException as e:
            raise CallTimeout(f"HTTP backend timed out: {e}") from e
        except httpx.TransportError as e:
            raise BackendUnavailable(f"HTTP transport error: {e}") from e

        self._raise_for_status(response)

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UnknownCallError(f"Unexpected response shape: {e}") from e

        usage = data.get("usage") or {}
        logger.debug(f"HTTP backend response [{body['model']}]: {usage}")

        return CallResult(
            content=content,
            model_id=str(data.get("model") or body["model"]),
            prompt_tokens=usage.get("prompt_tokens"),
            response_tokens=usage.get("completion_tokens"),
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
