"""
Scoped Context Store
====================
Key/value state shared between actions and phases of one run.

Scopes:
- ``static``         write-once values seeded at run start, then sealed
- ``global``         run-wide values any action may read or write
- ``phase:<id>``     values owned by one phase
- ``team:<id>``      values shared by a team's members
- ``action:<id>``    values written on behalf of one action
- ``store:<name>``   durable namespace shared across runs (see durable.py)

Bindings are the dotted form used in definitions, for example
``global.outline``, ``phase.draft`` (the owning phase), ``phase.research.notes``,
``store.glossary.terms`` or ``block.summary`` (an output block).

Reads of keys that were never written return ``EMPTY``, which is falsy and
renders as an empty string in prompts.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from chorus.context.durable import DurableStore
from chorus.errors import StaticScopeViolation

RUN_SCOPE_PREFIXES = ("phase", "team", "action")
BINDING_ROOTS = ("static", "global", "phase", "team", "action", "store", "block")


class _Empty:
    """Marker for an undefined key."""

    _instance: Optional["_Empty"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        return ""

    def __repr__(self) -> str:
        return "EMPTY"


EMPTY = _Empty()


def is_empty(value: Any) -> bool:
    return value is EMPTY


@dataclass(frozen=True)
class Binding:
    """Parsed binding: a scope string and a key.

    ``scope`` is ``"phase"`` (without an id) when the binding refers to the
    owning phase; ``resolve()`` fills the id in.
    """
    scope: str
    key: str
    raw: str = ""

    @property
    def is_block(self) -> bool:
        return self.scope == "block"

    @property
    def root(self) -> str:
        return self.scope.split(":", 1)[0]

    def resolve(self, phase_id: Optional[str]) -> "Binding":
        if self.scope != "phase":
            return self
        if not phase_id:
            raise ValueError(f"Binding '{self.raw}' needs an owning phase")
        return Binding(scope=f"phase:{phase_id}", key=self.key, raw=self.raw)


def parse_binding(binding: str) -> Binding:
    """Parse a dotted binding into a scope and key.

    Raises:
        ValueError: When the binding is malformed.
    """
    if not isinstance(binding, str) or not binding.strip():
        raise ValueError("Binding must be a non-empty string")

    parts = binding.strip().split(".")
    if any(not p for p in parts):
        raise ValueError(f"Malformed binding '{binding}'")

    root = parts[0]
    if root not in BINDING_ROOTS:
        raise ValueError(f"Unknown binding scope '{root}' in '{binding}'")

    if root in ("static", "global"):
        if len(parts) < 2:
            raise ValueError(f"Binding '{binding}' is missing a key")
        return Binding(scope=root, key=".".join(parts[1:]), raw=binding)

    if root == "block":
        if len(parts) != 2:
            raise ValueError(f"Block binding '{binding}' must be 'block.<id>'")
        return Binding(scope="block", key=parts[1], raw=binding)

    if root == "phase" and len(parts) == 2:
        return Binding(scope="phase", key=parts[1], raw=binding)

    if len(parts) < 3:
        raise ValueError(f"Binding '{binding}' must be '{root}.<id>.<key>'")
    return Binding(scope=f"{root}:{parts[1]}", key=".".join(parts[2:]), raw=binding)


def validate_scope(scope: str) -> str:
    """Check a scope string such as ``global`` or ``team:writers``."""
    if scope in ("static", "global"):
        return scope
    prefix, _, name = scope.partition(":")
    if prefix in RUN_SCOPE_PREFIXES + ("store",) and name:
        return scope
    raise ValueError(f"Invalid scope '{scope}'")


class ScopedContextStore:
    """
    Run-scoped context with a durable ``store:<name>`` namespace.

    Usage:
        ctx = ScopedContextStore(durable=DurableStore())
        ctx.seed_static({"input": "Write a story"})
        ctx.seal_static()
        ctx.set("global", "outline", "...")
        ctx.read_binding("global.outline")
    """

    def __init__(
        self,
        durable: Optional[DurableStore] = None,
        outputs: Any = None,
        run_id: str = "",
    ):
        """
        Args:
            durable: Process-wide durable store backing ``store:<name>``
            outputs: OutputManager used for ``block.<id>`` bindings
            run_id: Recorded as the writer of durable values
        """
        self.durable = durable or DurableStore()
        self.outputs = outputs
        self.run_id = run_id
        self._scopes: Dict[str, Dict[str, Any]] = {}
        self._static_sealed = False
        self._discarded = False

    # ========== Static scope ==========

    @property
    def static_sealed(self) -> bool:
        return self._static_sealed

    def seed_static(self, values: Dict[str, Any]) -> None:
        for key, value in values.items():
            self.set("static", key, value)

    def seal_static(self) -> None:
        self._static_sealed = True
        logger.debug(f"Static scope sealed with {len(self._scopes.get('static', {}))} key(s)")

    # ========== Scope access ==========

    def get(self, scope: str, key: str) -> Any:
        scope = validate_scope(scope)
        if scope.startswith("store:"):
            record = self.durable.get_record(scope[len("store:"):], key)
            return EMPTY if record is None else record.value
        return self._scopes.get(scope, {}).get(key, EMPTY)

    def set(self, scope: str, key: str, value: Any, writer: str = "") -> None:
        scope = validate_scope(scope)
        if not key:
            raise ValueError("Context key must be non-empty")

        if scope == "static":
            if self._static_sealed:
                raise StaticScopeViolation(f"Static scope is sealed; cannot write '{key}'")
            if key in self._scopes.get("static", {}):
                raise StaticScopeViolation(f"Static key '{key}' is write-once")

        if scope.startswith("store:"):
            writer = "/".join(p for p in (self.run_id, writer) if p)
            self.durable.set(scope[len("store:"):], key, value, writer=writer)
            return

        self._scopes.setdefault(scope, {})[key] = value

    def get_all_in_scope(self, scope: str) -> Dict[str, Any]:
        scope = validate_scope(scope)
        if scope.startswith("store:"):
            return self.durable.get_all(scope[len("store:"):])
        return dict(self._scopes.get(scope, {}))

    def scopes(self) -> List[str]:
        return sorted(self._scopes)

    # ========== Bindings ==========

    def read_binding(self, binding: str, phase_id: Optional[str] = None) -> Any:
        parsed = parse_binding(binding).resolve(phase_id)
        if parsed.is_block:
            if self.outputs is None:
                return EMPTY
            content = self.outputs.current_content(parsed.key)
            return EMPTY if content is None else content
        return self.get(parsed.scope, parsed.key)

    def write_binding(
        self,
        binding: str,
        value: Any,
        phase_id: Optional[str] = None,
        author: str = "",
    ) -> None:
        parsed = parse_binding(binding).resolve(phase_id)
        if parsed.is_block:
            if self.outputs is None:
                raise ValueError(f"No output manager for binding '{binding}'")
            self.outputs.write(parsed.key, value, author)
            return
        self.set(parsed.scope, parsed.key, value, writer=author)

    async def awrite_binding(
        self,
        binding: str,
        value: Any,
        phase_id: Optional[str] = None,
        author: str = "",
    ) -> None:
        """Like ``write_binding``; durable writes run off the event loop."""
        parsed = parse_binding(binding).resolve(phase_id)
        if parsed.root != "store":
            self.write_binding(binding, value, phase_id=phase_id, author=author)
            return
        writer = "/".join(p for p in (self.run_id, author) if p)
        await self.durable.aset(parsed.scope[len("store:"):], parsed.key, value, writer=writer)

    # ========== Lifecycle ==========

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Deep copy of run-scoped values (durable namespaces excluded)."""
        return copy.deepcopy(self._scopes)

    def discard(self) -> None:
        """Drop run-scoped values at a terminal run status."""
        if self._discarded:
            return
        dropped = sum(len(v) for v in self._scopes.values())
        self._scopes.clear()
        self._discarded = True
        logger.debug(f"Discarded {dropped} run-scoped context value(s) for run {self.run_id or '-'}")


@dataclass
class StagedWrites:
    """Writes held back from the store until a parallel phase joins."""
    author: str
    writes: List[Tuple[str, Any]] = field(default_factory=list)

    def stage(self, binding: str, value: Any) -> None:
        parse_binding(binding)
        self.writes.append((binding, value))

    def commit(self, store: ScopedContextStore, phase_id: Optional[str]) -> int:
        for binding, value in self.writes:
            store.write_binding(binding, value, phase_id=phase_id, author=self.author)
        count = len(self.writes)
        self.writes.clear()
        return count

    async def acommit(self, store: ScopedContextStore, phase_id: Optional[str]) -> int:
        for binding, value in self.writes:
            await store.awrite_binding(binding, value, phase_id=phase_id, author=self.author)
        count = len(self.writes)
        self.writes.clear()
        return count
