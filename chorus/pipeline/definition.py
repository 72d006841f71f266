"""
Pipeline Definition
===================
Immutable, validated description of a production run.

A definition is plain data (typically JSON) with ``agents``, optional
``positions`` and ``teams``, and an ordered list of ``phases``. It is validated
exactly once by ``load_definition()``:

1. Structure is checked against ``chorus/schemas/pipeline_definition.schema.json``
2. Cross references and bindings are checked (unique ids, agent/position/team
   references, binding syntax, review and failure-policy settings)

Any problem raises ``DefinitionError`` listing every issue found, before any
run starts. The executor never mutates a definition.

Example:
    {
      "agents": [{"id": "writer", "system_prompt": "You write fiction."}],
      "phases": [
        {"id": "outline", "actions": [
          {"id": "plan", "agent": "writer",
           "prompt_template": "Outline: {{input}}", "outputs": ["global.outline"]}
        ]},
        {"id": "draft", "review": {"required": true, "editable_fields": ["draft"]},
         "actions": [
          {"id": "write", "agent": "writer",
           "prompt_template": "Expand: {{global.outline}}", "outputs": ["block.draft"]}
        ]}
      ]
    }
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from chorus.errors import DefinitionError
from chorus.context.store import parse_binding
from chorus.utils.schema_validation import schema_errors

SCHEMA_FILENAME = "pipeline_definition.schema.json"
DEFAULT_OUTPUT_KEY = "phase.output"


class Parallelism(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class FailurePolicy(str, Enum):
    FAIL = "fail"
    SKIP = "skip"
    USE_LAST_OUTPUT = "use_last_output"


@dataclass(frozen=True)
class AgentSpec:
    id: str
    name: str
    system_prompt: str = ""
    api: Mapping[str, Any] = field(default_factory=dict)
    generation: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PositionSpec:
    """A named seat filled by an agent."""
    id: str
    name: str
    agent: str


@dataclass(frozen=True)
class TeamSpec:
    id: str
    name: str
    members: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ReviewSpec:
    required: bool = False
    prompt: str = ""
    editable_fields: Tuple[str, ...] = ()
    can_skip: bool = True
    timeout: float = 0.0


@dataclass(frozen=True)
class ActionSpec:
    id: str
    name: str
    prompt_template: str
    agent: Optional[str] = None
    position: Optional[str] = None
    inputs: Mapping[str, str] = field(default_factory=dict)
    outputs: Tuple[str, ...] = ()
    team: Optional[str] = None
    optional: bool = False
    timeout: Optional[float] = None
    retries: Optional[int] = None
    generation: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PhaseSpec:
    id: str
    name: str
    actions: Tuple[ActionSpec, ...]
    parallelism: Parallelism = Parallelism.SEQUENTIAL
    review: ReviewSpec = field(default_factory=ReviewSpec)
    output_key: str = DEFAULT_OUTPUT_KEY
    output_action: Optional[str] = None
    on_failure: FailurePolicy = FailurePolicy.FAIL
    fallback_block: Optional[str] = None
    timeout: float = 0.0

    @property
    def review_required(self) -> bool:
        return self.review.required

    def action(self, action_id: str) -> Optional[ActionSpec]:
        for action in self.actions:
            if action.id == action_id:
                return action
        return None


@dataclass(frozen=True)
class PipelineDefinition:
    agents: Mapping[str, AgentSpec]
    phases: Tuple[PhaseSpec, ...]
    positions: Mapping[str, PositionSpec] = field(default_factory=dict)
    teams: Mapping[str, TeamSpec] = field(default_factory=dict)
    id: str = "pipeline"
    name: str = ""

    def phase(self, phase_id: str) -> Optional[PhaseSpec]:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def agent_for(self, action: ActionSpec) -> AgentSpec:
        """Resolve the agent an action runs as, following positions."""
        agent_id = action.agent
        if agent_id is None and action.position is not None:
            agent_id = self.positions[action.position].agent
        return self.agents[agent_id]

    def speaker_name(self, action: ActionSpec) -> str:
        if action.position is not None:
            return self.positions[action.position].name
        return self.agent_for(action).name


# ========== Loading ==========

def _review(data: Optional[Mapping[str, Any]]) -> ReviewSpec:
    if not data:
        return ReviewSpec()
    return ReviewSpec(
        required=bool(data.get("required", False)),
        prompt=str(data.get("prompt", "")),
        editable_fields=tuple(data.get("editable_fields", ())),
        can_skip=bool(data.get("can_skip", True)),
        timeout=float(data.get("timeout", 0) or 0),
    )


def _action(data: Mapping[str, Any]) -> ActionSpec:
    return ActionSpec(
        id=data["id"],
        name=data.get("name") or data["id"],
        prompt_template=data["prompt_template"],
        agent=data.get("agent"),
        position=data.get("position"),
        inputs=dict(data.get("inputs", {})),
        outputs=tuple(data.get("outputs", ())),
        team=data.get("team"),
        optional=bool(data.get("optional", False)),
        timeout=data.get("timeout"),
        retries=data.get("retries"),
        generation=dict(data.get("generation", {})),
    )


def _phase(data: Mapping[str, Any]) -> PhaseSpec:
    return PhaseSpec(
        id=data["id"],
        name=data.get("name") or data["id"],
        actions=tuple(_action(a) for a in data["actions"]),
        parallelism=Parallelism(data.get("parallelism", Parallelism.SEQUENTIAL.value)),
        review=_review(data.get("review")),
        output_key=data.get("output_key", DEFAULT_OUTPUT_KEY),
        output_action=data.get("output_action"),
        on_failure=FailurePolicy(data.get("on_failure", FailurePolicy.FAIL.value)),
        fallback_block=data.get("fallback_block"),
        timeout=float(data.get("timeout", 0) or 0),
    )


def _duplicates(ids: List[str]) -> List[str]:
    seen: set = set()
    dupes: List[str] = []
    for item in ids:
        if item in seen and item not in dupes:
            dupes.append(item)
        seen.add(item)
    return dupes


def _check_binding(binding: str, where: str, issues: List[str]) -> Optional[str]:
    try:
        return parse_binding(binding).root
    except ValueError as e:
        issues.append(f"{where}: {e}")
        return None


def semantic_issues(definition: PipelineDefinition) -> List[str]:
    """Cross-reference checks that JSON Schema cannot express."""
    issues: List[str] = []
    agents = definition.agents
    positions = definition.positions
    teams = definition.teams

    for position in positions.values():
        if position.agent not in agents:
            issues.append(f"position '{position.id}': unknown agent '{position.agent}'")

    for team in teams.values():
        for member in team.members:
            if member not in agents and member not in positions:
                issues.append(f"team '{team.id}': unknown member '{member}'")

    action_ids = [a.id for p in definition.phases for a in p.actions]
    for dupe in _duplicates(action_ids):
        issues.append(f"duplicate action id '{dupe}'")

    for phase in definition.phases:
        where = f"phase '{phase.id}'"
        sibling_ids = {a.id for a in phase.actions}

        _check_binding(phase.output_key, f"{where} output_key", issues)

        if phase.output_action and phase.output_action not in sibling_ids:
            issues.append(f"{where}: output_action '{phase.output_action}' is not one of its actions")

        if phase.on_failure is FailurePolicy.USE_LAST_OUTPUT and not phase.fallback_block:
            issues.append(f"{where}: on_failure 'use_last_output' needs a fallback_block")

        if not phase.review.required and phase.review.editable_fields:
            logger.debug(f"{where}: editable_fields ignored because review is not required")

        if phase.output_key.startswith("static."):
            issues.append(f"{where}: output_key cannot target the static scope")

        for action in phase.actions:
            action_where = f"action '{action.id}'"

            if (action.agent is None) == (action.position is None):
                issues.append(f"{action_where}: needs exactly one of 'agent' or 'position'")
            elif action.agent is not None and action.agent not in agents:
                issues.append(f"{action_where}: unknown agent '{action.agent}'")
            elif action.position is not None and action.position not in positions:
                issues.append(f"{action_where}: unknown position '{action.position}'")

            if action.team is not None and action.team not in teams:
                issues.append(f"{action_where}: unknown team '{action.team}'")

            for alias, binding in action.inputs.items():
                root = _check_binding(binding, f"{action_where} input '{alias}'", issues)
                if root == "action" and phase.parallelism is Parallelism.PARALLEL:
                    target = binding.split(".")[1]
                    if target in sibling_ids:
                        issues.append(
                            f"{action_where}: input '{alias}' reads parallel sibling '{target}'"
                        )

            for binding in action.outputs:
                root = _check_binding(binding, f"{action_where} output", issues)
                if root == "static":
                    issues.append(f"{action_where}: output '{binding}' targets the sealed static scope")

    return issues


def load_definition(payload: Mapping[str, Any]) -> PipelineDefinition:
    """
    Validate and freeze a pipeline definition.

    Args:
        payload: Definition data (for example parsed JSON)

    Returns:
        PipelineDefinition

    Raises:
        DefinitionError: When the definition is malformed; the message lists
            every issue found.
    """
    if not isinstance(payload, Mapping):
        raise DefinitionError("Pipeline definition must be an object")

    errors = schema_errors(dict(payload), SCHEMA_FILENAME)
    if errors:
        raise DefinitionError("Invalid pipeline definition:\n- " + "\n- ".join(errors))

    issues: List[str] = []
    for group in ("agents", "positions", "teams", "phases"):
        for dupe in _duplicates([item["id"] for item in payload.get(group, [])]):
            issues.append(f"duplicate {group[:-1]} id '{dupe}'")

    if issues:
        raise DefinitionError("Invalid pipeline definition:\n- " + "\n- ".join(issues))

    definition = PipelineDefinition(
        id=payload.get("id", "pipeline"),
        name=payload.get("name", ""),
        agents={
            a["id"]: AgentSpec(
                id=a["id"],
                name=a.get("name") or a["id"],
                system_prompt=a.get("system_prompt", ""),
                api=dict(a.get("api", {})),
                generation=dict(a.get("generation", {})),
            )
            for a in payload["agents"]
        },
        positions={
            p["id"]: PositionSpec(id=p["id"], name=p.get("name") or p["id"], agent=p["agent"])
            for p in payload.get("positions", [])
        },
        teams={
            t["id"]: TeamSpec(id=t["id"], name=t.get("name") or t["id"], members=tuple(t.get("members", ())))
            for t in payload.get("teams", [])
        },
        phases=tuple(_phase(p) for p in payload["phases"]),
    )

    issues = semantic_issues(definition)
    if issues:
        raise DefinitionError("Invalid pipeline definition:\n- " + "\n- ".join(issues))

    logger.info(
        f"Loaded pipeline '{definition.id}': {len(definition.phases)} phase(s), "
        f"{sum(len(p.actions) for p in definition.phases)} action(s)"
    )
    return definition
