"""
Tests for the thread ledger
===========================
"""

import threading

import pytest

from chorus.context.ledger import (
    TRUNCATION_MARKER,
    EntryType,
    ThreadLedger,
    phase_thread,
    team_thread,
)


class TestAppend:

    @pytest.mark.unit
    def test_sequence_is_ledger_wide(self):
        ledger = ThreadLedger()
        a = ledger.append("phase:a", "writer", "one")
        b = ledger.append("phase:b", "critic", "two")
        c = ledger.append("phase:a", "writer", "three")

        assert [a.seq, b.seq, c.seq] == [1, 2, 3]
        assert [e.content for e in ledger.read("phase:a")] == ["one", "three"]
        assert ledger.threads() == ["phase:a", "phase:b"]

    @pytest.mark.unit
    @pytest.mark.parametrize("thread_id,speaker,content", [
        ("", "writer", "x"),
        ("phase:a", "", "x"),
        ("phase:a", "writer", "   "),
        ("phase:a", "writer", None),
    ])
    def test_invalid_entries(self, thread_id, speaker, content):
        with pytest.raises(ValueError):
            ThreadLedger().append(thread_id, speaker, content)

    @pytest.mark.unit
    @pytest.mark.parametrize("entry_type", ["gossip", "rag_request", "rag_response"])
    def test_unknown_entry_type(self, entry_type):
        with pytest.raises(ValueError):
            ThreadLedger().append("phase:a", "writer", "x", entry_type=entry_type)

    @pytest.mark.unit
    def test_entries_are_immutable(self):
        entry = ThreadLedger().append("phase:a", "writer", "x")
        with pytest.raises(Exception):
            entry.content = "changed"

    @pytest.mark.unit
    def test_concurrent_appends_get_unique_sequence(self):
        ledger = ThreadLedger()

        def worker(n: int) -> None:
            for i in range(50):
                ledger.append(f"team:{n}", f"agent-{n}", f"msg {i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        seqs = [e.seq for e in ledger.recent(1000)]
        assert seqs == list(range(1, 201))


class TestAmend:

    @pytest.mark.unit
    def test_amendment_is_a_new_entry(self):
        ledger = ThreadLedger()
        original = ledger.append("phase:a", "writer", "draft")
        amendment = ledger.amend("phase:a", original.seq, "user", "better draft", commentary="tightened")

        entries = ledger.read("phase:a")
        assert entries[0].content == "draft"
        assert amendment.entry_type == EntryType.AMENDMENT.value
        assert amendment.amends == original.seq
        assert amendment.commentary == "tightened"

    @pytest.mark.unit
    def test_amend_unknown_entry(self):
        with pytest.raises(ValueError):
            ThreadLedger().amend("phase:a", 99, "user", "x")


class TestReading:

    @pytest.mark.unit
    def test_since_tail_and_recent(self):
        ledger = ThreadLedger()
        for i in range(5):
            ledger.append("phase:a", "writer", f"a{i}")
        ledger.append("phase:b", "critic", "b0")

        assert [e.content for e in ledger.read("phase:a", since_seq=3)] == ["a3", "a4"]
        assert [e.content for e in ledger.tail("phase:a", 2)] == ["a3", "a4"]
        assert ledger.tail("phase:a", 0) == []
        assert [e.content for e in ledger.recent(2)] == ["a4", "b0"]
        assert ledger.read("phase:none") == []


class TestFormatting:

    @pytest.mark.unit
    def test_speaker_prefix(self):
        ledger = ThreadLedger()
        ledger.append("phase:a", "writer", "hello", speaker_name="Writer")
        ledger.append("phase:a", "critic", "hmm")

        assert ledger.format_for_prompt("phase:a") == "[Writer]: hello\n\n[critic]: hmm"

    @pytest.mark.unit
    def test_include_types(self):
        ledger = ThreadLedger()
        ledger.append("phase:a", "system", "phase started", entry_type=EntryType.SYSTEM)

        assert ledger.format_for_prompt("phase:a", include_types=True) == "[system] (system): phase started"

    @pytest.mark.unit
    def test_truncation_keeps_newest(self):
        ledger = ThreadLedger()
        for i in range(10):
            ledger.append("phase:a", "writer", f"message number {i}")

        text = ledger.format_for_prompt("phase:a", max_length=70, separator="\n")
        lines = text.split("\n")

        assert lines[0] == TRUNCATION_MARKER
        assert lines[-1] == "[writer]: message number 9"
        assert "message number 0" not in text

    @pytest.mark.unit
    def test_max_entries(self):
        ledger = ThreadLedger()
        for i in range(30):
            ledger.append("phase:a", "writer", f"m{i}")

        text = ledger.format_for_prompt("phase:a", max_entries=3, separator="|")
        assert text == "[writer]: m27|[writer]: m28|[writer]: m29"

    @pytest.mark.unit
    def test_empty_thread(self):
        assert ThreadLedger().format_for_prompt("phase:none") == ""

    @pytest.mark.unit
    def test_format_multiple(self):
        ledger = ThreadLedger()
        ledger.append(phase_thread("a"), "writer", "one")
        ledger.append(team_thread("t"), "critic", "two")

        text = ledger.format_multiple(["phase:a", "team:t", "phase:none"])

        assert "=== phase:a ===\n[writer]: one" in text
        assert "=== team:t ===\n[critic]: two" in text
        assert "phase:none" not in text


class TestSummary:

    @pytest.mark.unit
    def test_summary_and_clear(self):
        ledger = ThreadLedger()
        ledger.append("phase:a", "writer", "x" * 150)
        ledger.append("phase:a", "critic", "short")
        ledger.append("phase:a", "writer", "again")

        summary = ledger.summary("phase:a")
        assert summary["entry_count"] == 3
        assert summary["participation"] == {"writer": 2, "critic": 1}
        assert summary["recent"][0]["preview"].endswith("...")
        assert ledger.summary("phase:none") == {"exists": False}

        ledger.clear()
        assert ledger.threads() == []
