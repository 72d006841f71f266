"""
Prompt Templates
================
Resolves ``{{token}}`` placeholders in prompt templates.

Supported tokens:
    {{input}}                     the user request that started the run
    {{inputs.<alias>}}            an action input declared in its ``inputs`` map
    {{static.topic}}              any context binding (static, global, phase,
    {{phase.research.notes}}      team, action, store, block)
    {{block.draft}}
    {{thread.phase.<id>}}         formatted tail of a phase thread
    {{thread.team.<id>}}          formatted tail of a team thread
    {{token:fallback text}}       fallback used when the value is empty

Unknown or undefined tokens render as an empty string, never an error.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger

from chorus.context.ledger import ThreadLedger
from chorus.context.store import BINDING_ROOTS, EMPTY, ScopedContextStore, is_empty

TOKEN_PATTERN = re.compile(
    r"\{\{\s*([A-Za-z_][A-Za-z0-9_-]*(?:\.[A-Za-z0-9_][A-Za-z0-9_-]*)*)\s*(?::([^}]*))?\}\}"
)


def find_tokens(template: str) -> List[str]:
    """Token paths referenced by a template, in order of appearance."""
    return [m.group(1) for m in TOKEN_PATTERN.finditer(template or "")]


def stringify(value: Any) -> str:
    """Render a context value as prompt text."""
    if value is None or is_empty(value):
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    return str(value)


@dataclass
class TemplateContext:
    """Everything a template may refer to while one action is being prepared."""
    store: ScopedContextStore
    ledger: Optional[ThreadLedger] = None
    phase_id: Optional[str] = None
    user_input: str = ""
    inputs: Dict[str, Any] = field(default_factory=dict)

    def lookup(self, path: str) -> Any:
        parts = path.split(".")
        root = parts[0]

        if path == "input":
            return self.user_input
        if root == "inputs" and len(parts) >= 2:
            return self.inputs.get(".".join(parts[1:]), EMPTY)
        if root == "thread" and len(parts) == 3 and parts[1] in ("phase", "team"):
            if self.ledger is None:
                return EMPTY
            return self.ledger.format_for_prompt(f"{parts[1]}:{parts[2]}")
        if root in BINDING_ROOTS:
            try:
                return self.store.read_binding(path, phase_id=self.phase_id)
            except ValueError as e:
                logger.debug(f"Unresolvable template token '{path}': {e}")
                return EMPTY

        logger.debug(f"Unknown template token '{path}'")
        return EMPTY


def render(template: str, context: TemplateContext) -> str:
    """Substitute every token in ``template``."""
    if not template:
        return ""

    def _replace(match: "re.Match[str]") -> str:
        path, fallback = match.group(1), match.group(2)
        text = stringify(context.lookup(path))
        if not text and fallback is not None:
            return fallback
        return text

    return TOKEN_PATTERN.sub(_replace, template)


def resolve_inputs(
    inputs: Mapping[str, str],
    store: ScopedContextStore,
    phase_id: Optional[str],
) -> Dict[str, Any]:
    """Read every declared action input from the context store."""
    return {alias: store.read_binding(binding, phase_id=phase_id) for alias, binding in inputs.items()}
