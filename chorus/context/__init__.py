"""
Context Module
==============
Run state shared between actions: scoped key/value context, durable
namespaces, conversation threads and versioned output blocks.
"""

from .durable import DurableStore, JsonFileBackend, KeyValueBackend, MemoryBackend, StoreRecord
from .ledger import EntryType, ThreadEntry, ThreadLedger, phase_thread, team_thread
from .outputs import OutputBlock, OutputManager
from .store import EMPTY, Binding, ScopedContextStore, StagedWrites, parse_binding

__all__ = [
    "DurableStore",
    "JsonFileBackend",
    "KeyValueBackend",
    "MemoryBackend",
    "StoreRecord",
    "EntryType",
    "ThreadEntry",
    "ThreadLedger",
    "phase_thread",
    "team_thread",
    "OutputBlock",
    "OutputManager",
    "EMPTY",
    "Binding",
    "ScopedContextStore",
    "StagedWrites",
    "parse_binding",
]
