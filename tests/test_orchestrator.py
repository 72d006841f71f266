"""
Tests for the orchestrator
==========================
Shared dispatcher and durable store across concurrent runs.
"""

import asyncio

import pytest

from chorus.errors import DefinitionError
from chorus.pipeline.orchestrator import Orchestrator
from chorus.pipeline.state import RunStatus


def _payload(template="Write {{input}}", outputs=None, review=False):
    phase = {
        "id": "p",
        "actions": [{"id": "a", "agent": "writer", "prompt_template": template, "outputs": outputs or []}],
    }
    if review:
        phase["review"] = {"required": True}
    return {"agents": [{"id": "writer", "api": {"delay": 0.03}}], "phases": [phase]}


def _orchestrator(backend, durable, **options):
    defaults = {"call_timeout": 5.0, "max_retries": 0, "retry_delay": 0.01, "max_concurrent": 1, "batch_delay": 0.0}
    defaults.update(options)
    return Orchestrator(backend, durable=durable, **defaults)


class TestOrchestrator:

    @pytest.mark.unit
    def test_needs_backend_or_dispatcher(self, memory_durable):
        with pytest.raises(ValueError):
            Orchestrator(durable=memory_durable)

    @pytest.mark.unit
    def test_invalid_definition_rejected_before_run(self, scripted_backend, memory_durable):
        orchestrator = _orchestrator(scripted_backend(), memory_durable)
        with pytest.raises(DefinitionError):
            orchestrator.create_run({"agents": [], "phases": []})
        assert orchestrator.active_runs() == []

    @pytest.mark.unit
    def test_duplicate_run_id(self, scripted_backend, memory_durable):
        orchestrator = _orchestrator(scripted_backend(), memory_durable)
        orchestrator.create_run(_payload(), run_id="same")
        with pytest.raises(ValueError):
            orchestrator.create_run(_payload(), run_id="same")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_runs_share_the_cap(self, scripted_backend, memory_durable):
        backend = scripted_backend()
        orchestrator = _orchestrator(backend, memory_durable, max_concurrent=1)

        first, second = await asyncio.gather(
            orchestrator.run(_payload(), "one"),
            orchestrator.run(_payload(), "two"),
        )

        assert first.state.status is RunStatus.COMPLETED
        assert second.state.status is RunStatus.COMPLETED
        assert backend.max_active == 1
        assert sorted(backend.prompts) == ["Write one", "Write two"]
        assert first.run_id != second.run_id
        # Each run keeps its own ledger
        assert len(first.ledger.read("phase:p")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_durable_store_shared_across_runs(self, scripted_backend, memory_durable):
        backend = scripted_backend(lambda s, u, a: "tide, swell" if u.startswith("Define") else u)
        orchestrator = _orchestrator(backend, memory_durable)

        await orchestrator.run(_payload("Define terms", outputs=["store.glossary.terms"]))
        reader = await orchestrator.run(_payload("Use {{store.glossary.terms}}"))

        assert backend.prompts[-1] == "Use tide, swell"
        assert reader.phase_outputs["p"] == "Use tide, swell"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_abort_all_and_forget(self, scripted_backend, memory_durable, wait_for):
        orchestrator = _orchestrator(scripted_backend(), memory_durable)
        executor = orchestrator.create_run(_payload(review=True), run_id="r1")

        task = asyncio.ensure_future(executor.run())
        await wait_for(lambda: executor.pending_gavel is not None)

        with pytest.raises(ValueError):
            orchestrator.forget("r1")

        assert orchestrator.abort_all("shutdown") == 1
        state = await task

        assert state.status is RunStatus.ABORTED
        assert orchestrator.active_runs() == []
        assert orchestrator.run_history()[0]["status"] == "aborted"
        orchestrator.forget("r1")
        assert orchestrator.get_run("r1") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_aclose_closes_backend(self, scripted_backend, memory_durable):
        backend = scripted_backend()
        orchestrator = _orchestrator(backend, memory_durable)

        await orchestrator.aclose()

        assert backend.closed

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_finished_runs_are_bounded(self, scripted_backend, memory_durable):
        orchestrator = _orchestrator(scripted_backend(), memory_durable, history_limit=2)

        runs = [await orchestrator.run(_payload(), str(n)) for n in range(3)]

        history = orchestrator.run_history()
        assert [entry["run_id"] for entry in history] == [runs[2].run_id, runs[1].run_id]
        assert all(entry["status"] == "completed" for entry in history)
        assert orchestrator.get_run(runs[0].run_id) is None
        assert orchestrator.get_run(runs[2].run_id) is runs[2]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_running_runs_are_never_evicted(self, scripted_backend, memory_durable, wait_for):
        orchestrator = _orchestrator(scripted_backend(), memory_durable, history_limit=1)
        waiting = orchestrator.create_run(_payload(review=True), run_id="waiting")
        task = asyncio.ensure_future(waiting.run())
        await wait_for(lambda: waiting.pending_gavel is not None)

        for n in range(3):
            await orchestrator.run(_payload(), str(n))

        assert orchestrator.get_run("waiting") is waiting
        assert len(orchestrator.run_history()) == 1

        waiting.abort()
        await task
        assert orchestrator.get_run("waiting") is waiting
        assert orchestrator.run_history()[0]["run_id"] == "waiting"

    @pytest.mark.unit
    def test_history_limit_must_be_positive(self, scripted_backend, memory_durable):
        with pytest.raises(ValueError):
            _orchestrator(scripted_backend(), memory_durable, history_limit=0)
