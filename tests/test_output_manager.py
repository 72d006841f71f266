"""
Tests for the output manager
============================
"""

import threading

import pytest

from chorus.context.outputs import MAX_CHANGE_LOG, OutputManager


class TestVersions:

    @pytest.mark.unit
    def test_versions_start_at_one(self):
        outputs = OutputManager()
        first = outputs.write("draft", "v1", "writer")
        second = outputs.write("draft", "v2", "editor")

        assert (first.version, second.version) == (1, 2)
        assert outputs.read("draft").content == "v2"
        assert outputs.read("draft", version=1).content == "v1"
        assert outputs.read("draft", version=5) is None
        assert outputs.read("missing") is None
        assert outputs.current_content("missing") is None

    @pytest.mark.unit
    def test_content_is_stringified(self):
        outputs = OutputManager()
        assert outputs.write("n", 42).content == "42"
        assert outputs.write("n", None).content == ""

    @pytest.mark.unit
    def test_empty_block_id(self):
        with pytest.raises(ValueError):
            OutputManager().write("", "x")

    @pytest.mark.unit
    def test_concurrent_writers_get_distinct_versions(self):
        outputs = OutputManager()

        def worker(n: int) -> None:
            for i in range(25):
                outputs.write("shared", f"{n}-{i}", f"agent-{n}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        versions = [b.version for b in outputs.history("shared")]
        assert versions == list(range(1, 101))


class TestHistory:

    @pytest.mark.unit
    def test_history_and_snapshot(self):
        outputs = OutputManager()
        for i in range(4):
            outputs.write("draft", f"v{i + 1}", "writer")
        outputs.write("notes", "n", "critic")

        assert [b.version for b in outputs.history("draft", limit=2)] == [3, 4]
        assert outputs.history("draft", limit=0) == []
        assert outputs.blocks() == ["draft", "notes"]
        snap = outputs.snapshot()
        assert snap["draft"]["version"] == 4
        assert snap["notes"]["updated_by"] == "critic"

    @pytest.mark.unit
    def test_change_log_is_bounded(self):
        outputs = OutputManager()
        for i in range(MAX_CHANGE_LOG + 1):
            outputs.write("b", str(i))

        changes = outputs.changes(limit=MAX_CHANGE_LOG)
        assert len(changes) == MAX_CHANGE_LOG // 2
        assert changes[-1]["version"] == MAX_CHANGE_LOG + 1
