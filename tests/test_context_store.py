"""
Tests for the scoped context store
==================================
"""

import pytest

from chorus.context.durable import DurableStore, MemoryBackend
from chorus.context.outputs import OutputManager
from chorus.context.store import (
    EMPTY,
    Binding,
    ScopedContextStore,
    StagedWrites,
    is_empty,
    parse_binding,
    validate_scope,
)
from chorus.errors import StaticScopeViolation


@pytest.fixture
def ctx():
    return ScopedContextStore(
        durable=DurableStore(MemoryBackend()),
        outputs=OutputManager(),
        run_id="run-1",
    )


class TestParseBinding:

    @pytest.mark.unit
    @pytest.mark.parametrize("raw,scope,key", [
        ("static.input", "static", "input"),
        ("global.outline", "global", "outline"),
        ("global.notes.v2", "global", "notes.v2"),
        ("phase.draft", "phase", "draft"),
        ("phase.research.notes", "phase:research", "notes"),
        ("team.writers.plan", "team:writers", "plan"),
        ("action.outline.output", "action:outline", "output"),
        ("store.glossary.terms", "store:glossary", "terms"),
        ("block.summary", "block", "summary"),
    ])
    def test_valid(self, raw, scope, key):
        binding = parse_binding(raw)
        assert binding.scope == scope
        assert binding.key == key

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", [
        "",
        "global",
        "global..x",
        "elsewhere.key",
        "team.writers",
        "store.glossary",
        "block.a.b",
    ])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_binding(raw)

    @pytest.mark.unit
    def test_owning_phase_resolution(self):
        binding = parse_binding("phase.draft")
        assert binding.resolve("write").scope == "phase:write"
        with pytest.raises(ValueError):
            binding.resolve(None)

    @pytest.mark.unit
    def test_root(self):
        assert Binding(scope="team:writers", key="plan").root == "team"

    @pytest.mark.unit
    def test_validate_scope(self):
        assert validate_scope("global") == "global"
        assert validate_scope("store:glossary") == "store:glossary"
        with pytest.raises(ValueError):
            validate_scope("phase:")
        with pytest.raises(ValueError):
            validate_scope("session")


class TestEmpty:

    @pytest.mark.unit
    def test_empty_marker(self):
        assert not EMPTY
        assert str(EMPTY) == ""
        assert is_empty(EMPTY)
        assert not is_empty("")
        assert not is_empty(None)


class TestScopes:

    @pytest.mark.unit
    def test_missing_key_is_empty(self, ctx):
        assert ctx.get("global", "nothing") is EMPTY
        assert ctx.read_binding("phase.x.y") is EMPTY
        assert ctx.read_binding("block.none") is EMPTY

    @pytest.mark.unit
    def test_set_and_get(self, ctx):
        ctx.set("global", "outline", "three acts")
        ctx.set("team:writers", "plan", {"acts": 3})

        assert ctx.get("global", "outline") == "three acts"
        assert ctx.read_binding("team.writers.plan") == {"acts": 3}
        assert ctx.get_all_in_scope("team:writers") == {"plan": {"acts": 3}}
        assert ctx.scopes() == ["global", "team:writers"]

    @pytest.mark.unit
    def test_phase_binding_uses_owning_phase(self, ctx):
        ctx.write_binding("phase.notes", "n1", phase_id="research")

        assert ctx.get("phase:research", "notes") == "n1"
        assert ctx.read_binding("phase.notes", phase_id="research") == "n1"
        assert ctx.read_binding("phase.research.notes") == "n1"

    @pytest.mark.unit
    def test_block_binding_goes_to_output_manager(self, ctx):
        ctx.write_binding("block.summary", "short", author="writer")
        ctx.write_binding("block.summary", "shorter", author="editor")

        assert ctx.read_binding("block.summary") == "shorter"
        block = ctx.outputs.read("summary")
        assert block.version == 2
        assert block.updated_by == "editor"

    @pytest.mark.unit
    def test_block_write_without_output_manager(self):
        ctx = ScopedContextStore(durable=DurableStore(MemoryBackend()))
        with pytest.raises(ValueError):
            ctx.write_binding("block.summary", "x")

    @pytest.mark.unit
    def test_empty_key_rejected(self, ctx):
        with pytest.raises(ValueError):
            ctx.set("global", "", "x")


class TestStaticScope:

    @pytest.mark.unit
    def test_seed_then_seal(self, ctx):
        ctx.seed_static({"input": "tides", "tone": "wry"})
        ctx.seal_static()

        assert ctx.static_sealed
        assert ctx.read_binding("static.input") == "tides"
        with pytest.raises(StaticScopeViolation):
            ctx.set("static", "late", "value")

    @pytest.mark.unit
    def test_write_once_before_seal(self, ctx):
        ctx.set("static", "input", "a")
        with pytest.raises(StaticScopeViolation):
            ctx.set("static", "input", "b")
        assert ctx.get("static", "input") == "a"


class TestDurableScope:

    @pytest.mark.unit
    def test_store_writes_go_to_durable_store(self):
        durable = DurableStore(MemoryBackend())
        first = ScopedContextStore(durable=durable, run_id="run-1")
        second = ScopedContextStore(durable=durable, run_id="run-2")

        first.write_binding("store.glossary.terms", ["tide"], author="define")

        assert second.read_binding("store.glossary.terms") == ["tide"]
        record = durable.get_record("glossary", "terms")
        assert record.writer == "run-1/define"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_async_binding_writes(self):
        durable = DurableStore(MemoryBackend())
        outputs = OutputManager()
        ctx = ScopedContextStore(durable=durable, outputs=outputs, run_id="run-1")

        await ctx.awrite_binding("store.glossary.terms", ["tide"], author="define")
        await ctx.awrite_binding("block.draft", "text", author="writer")
        await ctx.awrite_binding("phase.notes", "n", phase_id="plan")

        assert durable.get_record("glossary", "terms").writer == "run-1/define"
        assert outputs.current_content("draft") == "text"
        assert ctx.get("phase:plan", "notes") == "n"

    @pytest.mark.unit
    def test_discard_keeps_durable_values(self):
        durable = DurableStore(MemoryBackend())
        ctx = ScopedContextStore(durable=durable, run_id="run-1")
        ctx.set("global", "outline", "x")
        ctx.set("store:notes", "latest", "kept")

        ctx.discard()
        ctx.discard()

        assert ctx.get("global", "outline") is EMPTY
        assert ctx.get("store:notes", "latest") == "kept"
        assert ctx.get_all_in_scope("store:notes") == {"latest": "kept"}


class TestSnapshot:

    @pytest.mark.unit
    def test_snapshot_is_a_copy(self, ctx):
        ctx.set("global", "items", [1, 2])
        snap = ctx.snapshot()
        snap["global"]["items"].append(3)

        assert ctx.get("global", "items") == [1, 2]


class TestStagedWrites:

    @pytest.mark.unit
    def test_commit_applies_in_order(self, ctx):
        staged = StagedWrites(author="critic")
        staged.stage("global.review", "first")
        staged.stage("phase.review", "phase value")
        staged.stage("global.review", "second")

        assert ctx.get("global", "review") is EMPTY
        assert staged.commit(ctx, "critique") == 3

        assert ctx.get("global", "review") == "second"
        assert ctx.get("phase:critique", "review") == "phase value"
        assert staged.writes == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_async_commit_reaches_durable_store(self, ctx):
        staged = StagedWrites(author="define")
        staged.stage("store.glossary.terms", ["tide"])
        staged.stage("global.review", "done")

        assert await staged.acommit(ctx, "plan") == 2

        assert ctx.get("store:glossary", "terms") == ["tide"]
        assert ctx.get("global", "review") == "done"
        assert staged.writes == []

    @pytest.mark.unit
    def test_stage_rejects_bad_binding(self):
        with pytest.raises(ValueError):
            StagedWrites(author="x").stage("nowhere.key", 1)
