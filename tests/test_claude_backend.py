"""
Tests for the Claude backend adapter
====================================
The Anthropic client is replaced by a mock; no network access.
"""

import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from chorus.errors import (
    AuthFailure,
    BackendUnavailable,
    BackendUnavailablePermanently,
    CallTimeout,
    MalformedRequest,
)
from chorus.llm.claude_backend import (
    MODELS,
    ClaudeBackend,
    ModelTier,
    load_env_file_lenient,
    resolve_model_id,
)

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _status_error(cls, status: int):
    return cls("error", response=httpx.Response(status, request=_REQUEST), body=None)


def _client(create):
    client = MagicMock()
    client.messages.create = create
    client.close = AsyncMock()
    return client


def _message(text: str = "Hi!"):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=7, output_tokens=2),
        model="claude-test",
    )


class TestModelResolution:

    @pytest.mark.unit
    def test_aliases_and_explicit_ids(self):
        assert resolve_model_id("haiku") == MODELS[ModelTier.HAIKU].id
        assert resolve_model_id("OPUS") == MODELS[ModelTier.OPUS].id
        assert resolve_model_id(None) == MODELS[ModelTier.SONNET].id
        assert resolve_model_id("claude-custom-1") == "claude-custom-1"


class TestInvoke:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success(self):
        create = AsyncMock(return_value=_message("Hello"))
        backend = ClaudeBackend(client=_client(create))

        result = await backend.invoke("system text", "user text", {"model": "haiku"}, {"max_tokens": 50})

        assert result.content == "Hello"
        assert result.model_id == "claude-test"
        assert result.prompt_tokens == 7
        assert result.response_tokens == 2

        kwargs = create.call_args.kwargs
        assert kwargs["model"] == MODELS[ModelTier.HAIKU].id
        assert kwargs["max_tokens"] == 50
        assert kwargs["messages"] == [{"role": "user", "content": "user text"}]
        assert kwargs["system"][0]["cache_control"] == {"type": "ephemeral"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_caching(self):
        create = AsyncMock(return_value=_message())
        backend = ClaudeBackend(client=_client(create), enable_caching=False)

        await backend.invoke("plain system", "hi", {}, {})

        assert create.call_args.kwargs["system"] == "plain system"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc,error_cls", [
        (_status_error(anthropic.AuthenticationError, 401), AuthFailure),
        (_status_error(anthropic.PermissionDeniedError, 403), AuthFailure),
        (_status_error(anthropic.BadRequestError, 400), MalformedRequest),
        (_status_error(anthropic.NotFoundError, 404), BackendUnavailablePermanently),
        (_status_error(anthropic.RateLimitError, 429), BackendUnavailable),
        (_status_error(anthropic.InternalServerError, 500), BackendUnavailable),
        (anthropic.APITimeoutError(request=_REQUEST), CallTimeout),
        (anthropic.APIConnectionError(request=_REQUEST), BackendUnavailable),
    ])
    async def test_error_mapping(self, exc, error_cls):
        backend = ClaudeBackend(client=_client(AsyncMock(side_effect=exc)))

        with pytest.raises(error_cls):
            await backend.invoke("", "hi", {}, {})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_aclose_closes_client(self):
        client = _client(AsyncMock(return_value=_message()))
        backend = ClaudeBackend(client=client)

        await backend.aclose()

        client.close.assert_awaited_once()

    @pytest.mark.unit
    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ValueError):
            ClaudeBackend()


class TestEnvFile:

    @pytest.mark.unit
    def test_lenient_loader(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CHORUS_TEST_VALUE", raising=False)
        monkeypatch.delenv("CHORUS_TEST_EXPORTED", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# comment\nCHORUS_TEST_VALUE='quoted'\nexport CHORUS_TEST_EXPORTED=yes\nnot a pair\n1BAD=x\n",
            encoding="utf-8",
        )

        load_env_file_lenient(env_file)

        assert os.environ["CHORUS_TEST_VALUE"] == "quoted"
        assert os.environ["CHORUS_TEST_EXPORTED"] == "yes"
        assert "1BAD" not in os.environ
