"""
Claude Call Backend
===================
Adapter from the call contract to the Anthropic Messages API.

Features:
- Model selection by tier alias (opus/sonnet/haiku) or explicit model id
- Prompt caching for the system prompt (cache control when enabled)
- Exact token counts from the API response
- Anthropic exceptions mapped onto the coordinator's typed failures

Retries are NOT done here; the dispatcher owns the retry policy.
"""

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import anthropic
import httpx
from loguru import logger

from chorus.config import DISPATCH
from chorus.errors import (
    AuthFailure,
    BackendUnavailable,
    BackendUnavailablePermanently,
    CallTimeout,
    MalformedRequest,
    UnknownCallError,
)
from chorus.llm.backend import CallBackend, CallResult


def load_env_file_lenient(env_path: Optional[Path] = None) -> None:
    """Load .env from the working directory without raising or printing parse warnings."""
    env_path = env_path or Path.cwd() / ".env"
    if not env_path.exists():
        return

    try:
        lines = env_path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        return

    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if not key:
            continue
        if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", key):
            continue
        os.environ.setdefault(key, value)


class ModelTier(Enum):
    """Model tiers usable as aliases in agent api settings."""
    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"


@dataclass
class ModelInfo:
    """Information about a Claude model."""
    id: str
    tier: ModelTier
    max_output: int


MODELS = {
    ModelTier.OPUS: ModelInfo(id="claude-opus-4-5-20251101", tier=ModelTier.OPUS, max_output=64_000),
    ModelTier.SONNET: ModelInfo(id="claude-sonnet-4-5-20250929", tier=ModelTier.SONNET, max_output=64_000),
    ModelTier.HAIKU: ModelInfo(id="claude-haiku-4-5-20251001", tier=ModelTier.HAIKU, max_output=64_000),
}


def resolve_model_id(model: Optional[str], default: ModelTier = ModelTier.SONNET) -> str:
    """Turn a tier alias or explicit model id into an API model id."""
    if not model:
        return MODELS[default].id
    try:
        return MODELS[ModelTier(model.lower())].id
    except ValueError:
        return model


class ClaudeBackend(CallBackend):
    """
    Call backend for Anthropic Claude models.

    Usage:
        backend = ClaudeBackend()
        result = await backend.invoke(system, user, {"model": "sonnet"}, {"max_tokens": 2048})
    """

    name = "claude"

    def __init__(
        self,
        api_key: Optional[str] = None,
        default_model: ModelTier = ModelTier.SONNET,
        enable_caching: bool = True,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        """
        Initialize the backend.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            default_model: Tier used when an agent names no model
            enable_caching: Whether to mark system prompts for prompt caching
            client: Preconfigured async client (tests inject a fake here)
        """
        self.default_model = default_model
        self.enable_caching = enable_caching

        if client is not None:
            self.client = client
        else:
            api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise ValueError("ANTHROPIC_API_KEY not found in environment")
            # The dispatcher enforces its own per-call deadline on top of this
            timeout_config = httpx.Timeout(max(DISPATCH.CALL_TIMEOUT, 30.0), connect=30.0)
            self.client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout_config)

        logger.info(f"Claude backend initialized with default model: {MODELS[default_model].id}")

    def _system_content(self, system_prompt: str, cache_system: bool) -> Any:
        if not system_prompt:
            return None
        if self.enable_caching and cache_system:
            return [{"type": "text", "text": system_prompt, "cache_control": {"type": "ephemeral"}}]
        return system_prompt

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        api_config: Mapping[str, Any],
        generation_config: Mapping[str, Any],
    ) -> CallResult:
        model_id = resolve_model_id(api_config.get("model"), self.default_model)

        kwargs: Dict[str, Any] = {
            "model": model_id,
            "max_tokens": int(generation_config.get("max_tokens", 4096)),
            "messages": [{"role": "user", "content": user_prompt}],
            "temperature": float(generation_config.get("temperature", 1.0)),
        }
        system_content = self._system_content(
            system_prompt, bool(generation_config.get("cache_system", True))
        )
        if system_content:
            kwargs["system"] = system_content

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APITimeoutError as e:
            raise CallTimeout(f"Claude request timed out: {e}") from e
        except anthropic.AuthenticationError as e:
            raise AuthFailure(str(e), status_code=getattr(e, "status_code", None)) from e
        except anthropic.PermissionDeniedError as e:
            raise AuthFailure(str(e), status_code=getattr(e, "status_code", None)) from e
        except anthropic.NotFoundError as e:
            raise BackendUnavailablePermanently(str(e), status_code=getattr(e, "status_code", None)) from e
        except (anthropic.BadRequestError, anthropic.UnprocessableEntityError) as e:
            raise MalformedRequest(str(e), status_code=getattr(e, "status_code", None)) from e
        except (anthropic.RateLimitError, anthropic.InternalServerError) as e:
            raise BackendUnavailable(str(e), status_code=getattr(e, "status_code", None)) from e
        except anthropic.APIConnectionError as e:
            raise BackendUnavailable(f"Connection error: {e}") from e
        except anthropic.APIError as e:
            raise UnknownCallError(str(e)) from e

        text = "".join(
            getattr(block, "text", "") for block in response.content
            if getattr(block, "type", "text") == "text"
        )
        usage = getattr(response, "usage", None)

        logger.debug(f"Claude response [{model_id}]: {usage}")

        return CallResult(
            content=text,
            model_id=getattr(response, "model", model_id) or model_id,
            prompt_tokens=getattr(usage, "input_tokens", None),
            response_tokens=getattr(usage, "output_tokens", None),
        )

    async def aclose(self) -> None:
        close = getattr(self.client, "close", None)
        if callable(close):
            await close()
