"""
Call Backend Contract
=====================
The single call contract the coordinator needs from a model-serving backend.

A backend turns ``(system_prompt, user_prompt, api_config, generation_config)``
into a ``CallResult`` or raises one of the typed failures in
``chorus.errors``. The coordinator never talks to a provider directly;
adapters in this package (``ClaudeBackend``, ``HttpChatBackend``) implement
this contract, and ``BackendRouter`` picks one per agent.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from loguru import logger

from chorus.errors import MalformedRequest


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token estimate (~4 characters per token), rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


@dataclass
class CallRequest:
    """One model call as submitted to the dispatcher."""
    system_prompt: str
    user_prompt: str
    api_config: Dict[str, Any] = field(default_factory=dict)
    generation_config: Dict[str, Any] = field(default_factory=dict)
    # Per-request overrides of the dispatcher defaults
    timeout: Optional[float] = None
    max_retries: Optional[int] = None
    label: str = ""

    def describe(self) -> str:
        return self.label or str(self.api_config.get("model") or "call")


@dataclass
class CallResult:
    """What a backend returns for a successful call."""
    content: str
    model_id: str = ""
    prompt_tokens: Optional[int] = None
    response_tokens: Optional[int] = None


class CallBackend(ABC):
    """Adapter to one model-serving backend."""

    name: str = "backend"

    @abstractmethod
    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        api_config: Mapping[str, Any],
        generation_config: Mapping[str, Any],
    ) -> CallResult:
        """Perform one call. Raise a ``CallError`` subclass on failure."""

    async def aclose(self) -> None:
        """Release any network resources held by the backend."""


class BackendRouter(CallBackend):
    """
    Routes each call to a named backend using ``api_config["backend"]``.

    Agents choose their backend in their ``api`` settings; calls without a
    backend name go to ``default``.
    """

    name = "router"

    def __init__(self, backends: Mapping[str, CallBackend], default: str = "default"):
        if not backends:
            raise ValueError("BackendRouter needs at least one backend")
        self._backends: Dict[str, CallBackend] = dict(backends)
        if default not in self._backends:
            default = next(iter(self._backends))
        self.default = default

    def register(self, name: str, backend: CallBackend) -> None:
        self._backends[name] = backend
        logger.debug(f"Registered call backend '{name}'")

    def resolve(self, api_config: Mapping[str, Any]) -> CallBackend:
        name = api_config.get("backend") or self.default
        backend = self._backends.get(name)
        if backend is None:
            raise MalformedRequest(f"Unknown call backend '{name}'")
        return backend

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        api_config: Mapping[str, Any],
        generation_config: Mapping[str, Any],
    ) -> CallResult:
        backend = self.resolve(api_config)
        return await backend.invoke(system_prompt, user_prompt, api_config, generation_config)

    async def aclose(self) -> None:
        for backend in self._backends.values():
            await backend.aclose()
