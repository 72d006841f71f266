"""
Orchestrator
============
Process-level owner of the resources shared by every run: the call
dispatcher (global concurrency cap) and the durable store. Each run gets its
own executor with its own context store, thread ledger, output manager,
review gate and event channel.

Finished runs stay reachable through ``get_run`` until more than
``history_limit`` runs have finished after them; ``run_history()`` keeps a
bounded summary of finished runs, newest first.

Usage:
    orchestrator = Orchestrator(ClaudeBackend())
    executor = orchestrator.create_run(definition_payload, "A story about tides")
    state = await executor.run()
"""

from __future__ import annotations

from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Union

from loguru import logger

from chorus.config import RUNS
from chorus.context.durable import DurableStore, JsonFileBackend
from chorus.llm.backend import CallBackend
from chorus.llm.dispatcher import CallDispatcher
from chorus.pipeline.definition import PipelineDefinition, load_definition
from chorus.pipeline.events import TERMINAL_EVENTS, ProgressEvent
from chorus.pipeline.executor import PipelineExecutor
from chorus.pipeline.gavel import ReviewGate


class Orchestrator:
    """Creates and tracks runs against shared process-wide resources."""

    def __init__(
        self,
        backend: Optional[CallBackend] = None,
        *,
        dispatcher: Optional[CallDispatcher] = None,
        durable: Optional[DurableStore] = None,
        history_limit: int = RUNS.HISTORY_LIMIT,
        **dispatch_options: Any,
    ):
        """
        Args:
            backend: Call backend; required unless a dispatcher is given
            dispatcher: Preconfigured dispatcher to share
            durable: Durable store (defaults to a JSON-file store in CHORUS_STORE_DIR)
            history_limit: Finished runs kept tracked and summarized
            **dispatch_options: Passed to CallDispatcher when one is created
        """
        if dispatcher is None:
            if backend is None:
                raise ValueError("Orchestrator needs a backend or a dispatcher")
            dispatcher = CallDispatcher(backend, **dispatch_options)
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self.dispatcher = dispatcher
        self.durable = durable or DurableStore(JsonFileBackend())
        self.history_limit = history_limit
        self._runs: Dict[str, PipelineExecutor] = {}
        self._finished: Deque[str] = deque()
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_limit)

    def create_run(
        self,
        definition: Union[PipelineDefinition, Mapping[str, Any]],
        user_input: str = "",
        static: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
        gate: Optional[ReviewGate] = None,
    ) -> PipelineExecutor:
        """Validate the definition if needed and prepare a run without starting it."""
        if not isinstance(definition, PipelineDefinition):
            definition = load_definition(definition)

        if run_id is not None and run_id in self._runs:
            raise ValueError(f"Run id already in use: {run_id}")

        executor = PipelineExecutor(
            definition,
            self.dispatcher,
            user_input=user_input,
            static=static,
            durable=self.durable,
            run_id=run_id,
            gate=gate,
        )
        executor.events.add_listener(lambda event: self._on_event(executor, event))
        self._runs[executor.run_id] = executor
        logger.info(f"Created run {executor.run_id} for pipeline '{definition.id}'")
        return executor

    async def run(
        self,
        definition: Union[PipelineDefinition, Mapping[str, Any]],
        user_input: str = "",
        static: Optional[Mapping[str, Any]] = None,
    ) -> PipelineExecutor:
        """Create a run and execute it to a terminal status."""
        executor = self.create_run(definition, user_input, static=static)
        await executor.run()
        return executor

    def get_run(self, run_id: str) -> Optional[PipelineExecutor]:
        return self._runs.get(run_id)

    def active_runs(self) -> List[PipelineExecutor]:
        return [run for run in self._runs.values() if not run.state.is_terminal]

    def run_history(self) -> List[Dict[str, Any]]:
        """Summaries of finished runs, newest first."""
        return list(self._history)

    def forget(self, run_id: str) -> None:
        """Drop a terminal run from tracking."""
        executor = self._runs.get(run_id)
        if executor is None:
            return
        if not executor.state.is_terminal:
            raise ValueError(f"Run {run_id} is still {executor.state.status.value}")
        del self._runs[run_id]
        if run_id in self._finished:
            self._finished.remove(run_id)

    def abort_all(self, reason: str = "Orchestrator shutting down") -> int:
        active = self.active_runs()
        for executor in active:
            executor.abort(reason)
        if active:
            logger.warning(f"Aborted {len(active)} active run(s)")
        return len(active)

    async def aclose(self) -> None:
        self.abort_all()
        await self.dispatcher.aclose()

    def _on_event(self, executor: PipelineExecutor, event: ProgressEvent) -> None:
        if event.type not in TERMINAL_EVENTS:
            return

        state = executor.state
        self._history.appendleft({
            "run_id": state.run_id,
            "pipeline_id": state.pipeline_id,
            "status": state.status.value,
            "created_at": state.created_at,
            "finished_at": state.finished_at,
            "failure": state.failure.to_dict() if state.failure else None,
        })

        if self._runs.get(state.run_id) is not executor:
            return
        self._finished.append(state.run_id)
        while len(self._finished) > self.history_limit:
            evicted = self._finished.popleft()
            self._runs.pop(evicted, None)
            logger.debug(f"Evicted finished run {evicted}")
