"""
Call Dispatcher
===============
Issues model calls against a call backend with timeout, retry and a global
concurrency cap.

Guarantees:
- At most ``max_concurrent`` calls in flight across every run in the process;
  excess submissions wait in arrival order and start as slots free
- Per-call timeout (default 120s) on each attempt
- Up to ``max_retries`` retries with linearly increasing delay, except for
  non-retryable failures (authentication, malformed request, backend gone)
  which fail on the first attempt
- Per-call duration, attempts and token counts (exact when the backend
  reports them, ``ceil(len/4)`` otherwise)

A slot is held for a submission's whole retry loop. A queued task whose cancel
token is set is withdrawn before it starts; a call that already started is
never interrupted by cancellation.

Usage:
    dispatcher = CallDispatcher(backend, max_concurrent=3)
    result = await dispatcher.submit(CallRequest(system_prompt=..., user_prompt=...))
    items = await dispatcher.submit_batch([req1, req2, req3, req4])
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Sequence, Set

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_incrementing

from chorus.config import DISPATCH
from chorus.errors import (
    CallError,
    CallTimeout,
    QueueCleared,
    RunAborted,
    as_call_error,
    is_retryable,
)
from chorus.llm.backend import CallBackend, CallRequest, estimate_tokens
from chorus.tracing import traced_span


@dataclass
class DispatchResult:
    """Outcome of a successful submission."""
    content: str
    model_id: str
    prompt_tokens: int
    response_tokens: int
    tokens_estimated: bool
    duration: float
    attempts: int
    queue_wait: float = 0.0
    label: str = ""

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "prompt_tokens": self.prompt_tokens,
            "response_tokens": self.response_tokens,
            "tokens_estimated": self.tokens_estimated,
            "duration": round(self.duration, 4),
            "attempts": self.attempts,
            "queue_wait": round(self.queue_wait, 4),
            "label": self.label,
        }


@dataclass
class BatchItem:
    """One entry of a batch, in the position of its request."""
    index: int
    success: bool
    result: Optional[DispatchResult] = None
    error: Optional[BaseException] = None


@dataclass
class DispatchUsage:
    """Counters across every call made through one dispatcher."""
    calls: int = 0
    failures: int = 0
    retries: int = 0
    prompt_tokens: int = 0
    response_tokens: int = 0
    estimated_calls: int = 0
    total_duration: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.response_tokens

    def record(self, result: DispatchResult) -> None:
        self.calls += 1
        self.retries += result.retries
        self.prompt_tokens += result.prompt_tokens
        self.response_tokens += result.response_tokens
        self.total_duration += result.duration
        if result.tokens_estimated:
            self.estimated_calls += 1

    def record_failure(self, attempts: int, duration: float) -> None:
        self.calls += 1
        self.failures += 1
        self.retries += max(0, attempts - 1)
        self.total_duration += duration


@dataclass
class _QueueTask:
    """A submission waiting for, or holding, a dispatch slot."""
    request: CallRequest
    future: "asyncio.Future[DispatchResult]"
    cancel: Optional[asyncio.Event] = None
    attempt: int = 0
    deadline: Optional[float] = None
    enqueued_at: float = field(default_factory=time.monotonic)
    started_at: Optional[float] = None


class CallDispatcher:
    """
    Bounded-concurrency dispatcher shared by all runs in a process.

    Features:
    - FIFO queue in front of a global in-flight cap
    - Linear backoff retries built on tenacity with a typed retry predicate
    - Batch fan-out with inter-window pacing and input-order results
    - Usage counters for observability
    """

    def __init__(
        self,
        backend: CallBackend,
        *,
        call_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        batch_delay: Optional[float] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            backend: Call backend (or BackendRouter) used for every call
            call_timeout: Seconds per attempt (default from CHORUS_CALL_TIMEOUT)
            max_retries: Retries after the first attempt (default 2)
            retry_delay: Base delay; the n-th retry waits n * retry_delay
            max_concurrent: Global in-flight cap (default 3)
            batch_delay: Pause between window fills in submit_batch (default 0.5s)
        """
        self.backend = backend
        self.call_timeout = float(call_timeout if call_timeout is not None else DISPATCH.CALL_TIMEOUT)
        self.max_retries = int(max_retries if max_retries is not None else DISPATCH.MAX_RETRIES)
        self.retry_delay = float(retry_delay if retry_delay is not None else DISPATCH.RETRY_DELAY)
        self.max_concurrent = int(max_concurrent if max_concurrent is not None else DISPATCH.MAX_CONCURRENT)
        self.batch_delay = float(batch_delay if batch_delay is not None else DISPATCH.BATCH_DELAY)

        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")

        self.usage = DispatchUsage()
        self._queue: Deque[_QueueTask] = deque()
        self._active = 0
        self._workers: Set[asyncio.Task] = set()

        logger.info(
            f"Call dispatcher initialized (max_concurrent={self.max_concurrent}, "
            f"timeout={self.call_timeout}s, max_retries={self.max_retries})"
        )

    # ========== Public API ==========

    async def submit(
        self,
        request: CallRequest,
        cancel: Optional[asyncio.Event] = None,
    ) -> DispatchResult:
        """
        Submit one call and wait for its result.

        Args:
            request: The call to make
            cancel: Optional abort token; if set while the call is still
                queued, the call is withdrawn and RunAborted is raised

        Returns:
            DispatchResult for the successful attempt

        Raises:
            CallError subclass when the call fails for good, RunAborted when
            withdrawn, QueueCleared when the queue was cleared.
        """
        if cancel is not None and cancel.is_set():
            raise RunAborted(f"Run aborted before dispatching {request.describe()}")

        loop = asyncio.get_running_loop()
        task = _QueueTask(request=request, future=loop.create_future(), cancel=cancel)
        self._queue.append(task)
        self._pump()

        try:
            if cancel is None:
                return await asyncio.shield(task.future)
            return await self._await_with_cancel(task, cancel)
        except asyncio.CancelledError:
            self._withdraw(task, None)
            raise

    async def submit_batch(
        self,
        requests: Sequence[CallRequest],
        cancel: Optional[asyncio.Event] = None,
    ) -> List[BatchItem]:
        """
        Fan out a list of calls honoring the concurrency cap.

        Requests are sent one concurrency window at a time with
        ``batch_delay`` between successive window fills. Results come back in
        input order regardless of completion order.
        """
        items: List[Optional[BatchItem]] = [None] * len(requests)
        window = self.max_concurrent

        for start in range(0, len(requests), window):
            if start > 0:
                await asyncio.sleep(self.batch_delay)

            chunk = list(requests[start:start + window])

            if cancel is not None and cancel.is_set():
                for offset in range(len(chunk)):
                    items[start + offset] = BatchItem(
                        index=start + offset,
                        success=False,
                        error=RunAborted("Run aborted before batch window"),
                    )
                continue

            outcomes = await asyncio.gather(
                *(self.submit(req, cancel=cancel) for req in chunk),
                return_exceptions=True,
            )
            for offset, outcome in enumerate(outcomes):
                index = start + offset
                if isinstance(outcome, BaseException):
                    items[index] = BatchItem(index=index, success=False, error=outcome)
                else:
                    items[index] = BatchItem(index=index, success=True, result=outcome)

        logger.debug(f"Batch of {len(requests)} calls settled")
        return [item for item in items if item is not None]

    def get_queue_status(self) -> Dict[str, int]:
        return {
            "queued": len(self._queue),
            "active": self._active,
            "max_concurrent": self.max_concurrent,
        }

    def get_usage_summary(self) -> Dict[str, Any]:
        """Get usage counters for all calls made so far."""
        usage = self.usage
        return {
            "calls": usage.calls,
            "failures": usage.failures,
            "retries": usage.retries,
            "prompt_tokens": usage.prompt_tokens,
            "response_tokens": usage.response_tokens,
            "total_tokens": usage.total_tokens,
            "estimated_calls": usage.estimated_calls,
            "total_duration_seconds": round(usage.total_duration, 3),
        }

    def reset_usage(self) -> None:
        self.usage = DispatchUsage()

    def clear_queue(self) -> int:
        """Reject every queued (not yet started) task. Returns how many were dropped."""
        dropped = 0
        while self._queue:
            task = self._queue.popleft()
            if not task.future.done():
                task.future.set_exception(QueueCleared("Queue cleared"))
                dropped += 1
        if dropped:
            logger.warning(f"Cleared {dropped} queued call(s)")
        return dropped

    async def aclose(self) -> None:
        """Drop queued work, wait for in-flight calls, close the backend."""
        self.clear_queue()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        await self.backend.aclose()

    # ========== Queue internals ==========

    def _pump(self) -> None:
        """Start queued tasks while slots are free."""
        while self._queue and self._active < self.max_concurrent:
            task = self._queue.popleft()
            if task.future.done():
                continue
            if task.cancel is not None and task.cancel.is_set():
                task.future.set_exception(
                    RunAborted(f"Run aborted before dispatching {task.request.describe()}")
                )
                continue

            self._active += 1
            task.started_at = time.monotonic()
            worker = asyncio.get_running_loop().create_task(self._run_task(task))
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)

    def _withdraw(self, task: _QueueTask, exc: Optional[BaseException]) -> None:
        """Remove a task that has not started yet; settle its future with exc or cancel it."""
        if task.started_at is not None or task.future.done():
            return
        try:
            self._queue.remove(task)
        except ValueError:
            pass
        if exc is None:
            task.future.cancel()
        else:
            task.future.set_exception(exc)
        logger.debug(f"Withdrew queued call {task.request.describe()}")

    async def _await_with_cancel(self, task: _QueueTask, cancel: asyncio.Event) -> DispatchResult:
        cancel_wait = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {task.future, cancel_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if task.future in done:
                return task.future.result()

            # Cancelled: withdraw if still queued, otherwise let the call finish
            self._withdraw(
                task, RunAborted(f"Run aborted before dispatching {task.request.describe()}")
            )
            return await asyncio.shield(task.future)
        finally:
            if not cancel_wait.done():
                cancel_wait.cancel()

    async def _run_task(self, task: _QueueTask) -> None:
        request = task.request
        queue_wait = (task.started_at or time.monotonic()) - task.enqueued_at
        started = time.monotonic()

        with traced_span("chorus.dispatch", {
            "chorus.call.label": request.describe(),
            "chorus.call.backend": str(request.api_config.get("backend") or ""),
            "chorus.call.queue_wait": queue_wait,
        }) as span:
            try:
                result = await self._call_with_retries(task)
                result.queue_wait = queue_wait
                self.usage.record(result)
                span.set_attribute("chorus.call.attempts", result.attempts)
                if not task.future.done():
                    task.future.set_result(result)
            except asyncio.CancelledError:
                if not task.future.done():
                    task.future.set_exception(QueueCleared("Dispatcher shut down"))
                raise
            except Exception as e:
                self.usage.record_failure(task.attempt, time.monotonic() - started)
                span.set_attribute("chorus.call.error", type(e).__name__)
                if not task.future.done():
                    task.future.set_exception(e)
            finally:
                self._active -= 1
                self._pump()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Attempt {retry_state.attempt_number} failed ({type(exc).__name__}: {exc}); "
            f"retrying in {sleep:.2f}s"
        )

    async def _call_with_retries(self, task: _QueueTask) -> DispatchResult:
        request = task.request
        max_retries = self.max_retries if request.max_retries is None else int(request.max_retries)
        started = time.monotonic()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            retry=retry_if_exception(is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    task.attempt = attempt.retry_state.attempt_number
                    if task.attempt > 1 and task.cancel is not None and task.cancel.is_set():
                        raise RunAborted(f"Run aborted before retrying {request.describe()}")
                    result = await self._invoke_once(task)
        except CallError as e:
            e.attempts = task.attempt
            logger.error(
                f"Call {request.describe()} failed after {task.attempt} attempt(s): "
                f"{type(e).__name__}: {e}"
            )
            raise

        content = result.content or ""
        estimated = result.prompt_tokens is None or result.response_tokens is None
        prompt_tokens = result.prompt_tokens
        if prompt_tokens is None:
            prompt_tokens = estimate_tokens(request.system_prompt) + estimate_tokens(request.user_prompt)
        response_tokens = result.response_tokens
        if response_tokens is None:
            response_tokens = estimate_tokens(content)

        return DispatchResult(
            content=content,
            model_id=result.model_id,
            prompt_tokens=int(prompt_tokens),
            response_tokens=int(response_tokens),
            tokens_estimated=estimated,
            duration=time.monotonic() - started,
            attempts=task.attempt,
            label=request.label,
        )

    async def _invoke_once(self, task: _QueueTask):
        request = task.request
        timeout = float(request.timeout) if request.timeout else self.call_timeout
        task.deadline = time.monotonic() + timeout

        try:
            return await asyncio.wait_for(
                self.backend.invoke(
                    request.system_prompt,
                    request.user_prompt,
                    request.api_config,
                    request.generation_config,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise CallTimeout(f"Call {request.describe()} timed out after {timeout}s") from e
        except CallError:
            raise
        except Exception as e:
            raise as_call_error(e) from e
