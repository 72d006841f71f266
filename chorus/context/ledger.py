"""
Thread Ledger
=============
Append-only conversation threads for phases and teams.

Thread ids are ``phase:<id>`` and ``team:<id>``. Every entry receives a
ledger-wide sequence number so entries from different threads can be
ordered relative to each other. Entries are never rewritten: an edit is a new
``amendment`` entry pointing at the sequence number it amends.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from chorus.config import LEDGER

TRUNCATION_MARKER = "[...earlier discussion truncated...]"


class EntryType(str, Enum):
    MESSAGE = "message"
    SYSTEM = "system"
    ACTION = "action"
    DECISION = "decision"
    OUTPUT = "output"
    AMENDMENT = "amendment"


@dataclass(frozen=True)
class ThreadEntry:
    """One immutable ledger entry."""
    thread_id: str
    seq: int
    timestamp: float
    speaker_id: str
    entry_type: str
    content: str
    speaker_name: str = ""
    amends: Optional[int] = None
    commentary: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.speaker_name or self.speaker_id

    def format(self, include_type: bool = False) -> str:
        prefix = f"[{self.display_name}]"
        if include_type and self.entry_type != EntryType.MESSAGE.value:
            prefix = f"{prefix} ({self.entry_type})"
        return f"{prefix}: {self.content}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "speaker_id": self.speaker_id,
            "speaker_name": self.speaker_name,
            "entry_type": self.entry_type,
            "content": self.content,
            "amends": self.amends,
            "commentary": self.commentary,
        }


def phase_thread(phase_id: str) -> str:
    return f"phase:{phase_id}"


def team_thread(team_id: str) -> str:
    return f"team:{team_id}"


class ThreadLedger:
    """
    Append-only threads for one run.

    Usage:
        ledger = ThreadLedger()
        ledger.append("phase:draft", "writer", "First draft...", EntryType.OUTPUT)
        print(ledger.format_for_prompt("phase:draft"))
    """

    def __init__(self):
        self._threads: Dict[str, List[ThreadEntry]] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def append(
        self,
        thread_id: str,
        speaker_id: str,
        content: str,
        entry_type: str = EntryType.MESSAGE,
        speaker_name: str = "",
        amends: Optional[int] = None,
        commentary: Optional[str] = None,
    ) -> ThreadEntry:
        """
        Append an entry to a thread.

        Raises:
            ValueError: When thread id, speaker or content is empty, or the
                entry type is unknown.
        """
        if not thread_id:
            raise ValueError("Thread id must be non-empty")
        if not speaker_id or not str(speaker_id).strip():
            raise ValueError("Thread entry needs a speaker")
        if content is None or not str(content).strip():
            raise ValueError("Thread entry content must be non-empty")
        entry_type = EntryType(entry_type).value

        with self._lock:
            self._seq += 1
            entry = ThreadEntry(
                thread_id=thread_id,
                seq=self._seq,
                timestamp=time.time(),
                speaker_id=str(speaker_id),
                entry_type=entry_type,
                content=str(content),
                speaker_name=speaker_name,
                amends=amends,
                commentary=commentary,
            )
            self._threads.setdefault(thread_id, []).append(entry)
        return entry

    def amend(
        self,
        thread_id: str,
        amends_seq: int,
        speaker_id: str,
        content: str,
        commentary: Optional[str] = None,
    ) -> ThreadEntry:
        """Record an edit of an earlier entry as a new entry."""
        if not any(e.seq == amends_seq for e in self._threads.get(thread_id, [])):
            raise ValueError(f"No entry {amends_seq} in thread '{thread_id}'")
        return self.append(
            thread_id,
            speaker_id,
            content,
            EntryType.AMENDMENT,
            amends=amends_seq,
            commentary=commentary,
        )

    def read(self, thread_id: str, since_seq: Optional[int] = None) -> List[ThreadEntry]:
        """Entries of a thread in append order, optionally only those after ``since_seq``."""
        entries = list(self._threads.get(thread_id, []))
        if since_seq is not None:
            entries = [e for e in entries if e.seq > since_seq]
        return entries

    def tail(self, thread_id: str, n: int) -> List[ThreadEntry]:
        if n <= 0:
            return []
        return list(self._threads.get(thread_id, [])[-n:])

    def recent(self, n: int) -> List[ThreadEntry]:
        """Last ``n`` entries across every thread, in sequence order."""
        if n <= 0:
            return []
        merged = [e for entries in self._threads.values() for e in entries]
        merged.sort(key=lambda e: e.seq)
        return merged[-n:]

    def threads(self) -> List[str]:
        return sorted(self._threads)

    def format_for_prompt(
        self,
        thread_id: str,
        max_entries: int = LEDGER.TAIL_ENTRIES,
        max_length: int = LEDGER.MAX_PROMPT_CHARS,
        include_types: bool = False,
        separator: str = "\n\n",
    ) -> str:
        """
        Render the thread tail as ``[speaker]: content`` lines.

        The newest entries are kept; when the character budget runs out the
        older remainder is replaced by a truncation marker.
        """
        entries = self.tail(thread_id, max_entries)
        if not entries:
            return ""

        parts: List[str] = []
        total = 0
        truncated = False
        for entry in reversed(entries):
            formatted = entry.format(include_type=include_types)
            if total + len(formatted) > max_length:
                truncated = True
                break
            parts.append(formatted)
            total += len(formatted)

        parts.reverse()
        if truncated:
            parts.insert(0, TRUNCATION_MARKER)
        return separator.join(parts)

    def format_multiple(
        self,
        thread_ids: List[str],
        max_total_length: int = 8000,
        thread_separator: str = "\n\n---\n\n",
    ) -> str:
        """Render several threads under ``=== thread ===`` headings within one budget."""
        if not thread_ids:
            return ""
        per_thread = max_total_length // len(thread_ids)
        sections: List[str] = []
        total = 0
        for thread_id in thread_ids:
            formatted = self.format_for_prompt(thread_id, max_length=per_thread)
            if not formatted:
                continue
            section = f"=== {thread_id} ===\n{formatted}"
            if total + len(section) <= max_total_length:
                sections.append(section)
                total += len(section)
        return thread_separator.join(sections)

    def summary(self, thread_id: str, recent_count: int = 5) -> Dict[str, Any]:
        entries = self._threads.get(thread_id)
        if entries is None:
            return {"exists": False}
        participation: Dict[str, int] = {}
        for entry in entries:
            participation[entry.speaker_id] = participation.get(entry.speaker_id, 0) + 1
        return {
            "exists": True,
            "id": thread_id,
            "entry_count": len(entries),
            "participation": participation,
            "recent": [
                {
                    "speaker": e.display_name,
                    "preview": e.content[:100] + ("..." if len(e.content) > 100 else ""),
                    "type": e.entry_type,
                }
                for e in entries[-recent_count:]
            ],
        }

    def clear(self) -> None:
        with self._lock:
            dropped = sum(len(v) for v in self._threads.values())
            self._threads.clear()
        logger.debug(f"Cleared {dropped} thread entries")
