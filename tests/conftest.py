"""
Shared test fixtures
====================
Scripted call backend and small definition builders.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import pytest

from chorus.context.durable import DurableStore, MemoryBackend
from chorus.llm.backend import CallBackend, CallResult
from chorus.llm.dispatcher import CallDispatcher


class ScriptedBackend(CallBackend):
    """Call backend driven by a responder function.

    The responder receives ``(system_prompt, user_prompt, api_config)`` and
    returns content, a CallResult, or an exception instance to raise.
    ``api_config["delay"]`` (seconds) simulates call latency.
    """

    name = "scripted"

    def __init__(self, responder: Optional[Callable[..., Any]] = None, delay: float = 0.0):
        self.responder = responder or (lambda system, user, api: f"echo: {user}")
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.active = 0
        self.max_active = 0
        self.intervals: List[tuple] = []
        self.closed = False

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        api_config: Mapping[str, Any],
        generation_config: Mapping[str, Any],
    ) -> CallResult:
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "api_config": dict(api_config),
            "generation_config": dict(generation_config),
        })
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        started = time.monotonic()
        try:
            delay = api_config.get("delay", self.delay)
            if delay:
                await asyncio.sleep(delay)
            outcome = self.responder(system_prompt, user_prompt, api_config)
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, CallResult):
                return outcome
            return CallResult(content=str(outcome), model_id="scripted-model")
        finally:
            self.active -= 1
            self.intervals.append((started, time.monotonic()))

    @property
    def prompts(self) -> List[str]:
        return [call["user_prompt"] for call in self.calls]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def scripted_backend():
    """Factory for scripted backends."""
    def _make(responder=None, delay: float = 0.0) -> ScriptedBackend:
        return ScriptedBackend(responder=responder, delay=delay)
    return _make


@pytest.fixture
def make_dispatcher():
    """Factory for dispatchers with fast test defaults."""
    def _make(backend: CallBackend, **overrides) -> CallDispatcher:
        options = {
            "call_timeout": 5.0,
            "max_retries": 2,
            "retry_delay": 0.01,
            "max_concurrent": 3,
            "batch_delay": 0.0,
        }
        options.update(overrides)
        return CallDispatcher(backend, **options)
    return _make


@pytest.fixture
def memory_durable():
    return DurableStore(MemoryBackend())


@pytest.fixture
def agent():
    """Minimal agent definition dict."""
    def _make(agent_id: str = "writer", **extra) -> Dict[str, Any]:
        data = {"id": agent_id, "name": agent_id.title(), "system_prompt": f"You are {agent_id}."}
        data.update(extra)
        return data
    return _make


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true or fail after ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_for():
    return wait_until
