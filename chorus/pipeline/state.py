"""Run state.

Serializable record of one production run: run status, per-phase and
per-action statuses, the sequence number used to detect stale gavel
responses, and the failure report attached to a terminal failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    AWAITING_REVIEW = "awaiting_review"
    SKIPPED = "skipped"


class ActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.ABORTED, RunStatus.FAILED})

_RUN_TRANSITIONS = {
    RunStatus.CREATED: {RunStatus.RUNNING, RunStatus.ABORTED},
    RunStatus.RUNNING: {RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.ABORTED, RunStatus.FAILED},
    # A pause takes effect at the next checkpoint; the last phase may finish first
    RunStatus.PAUSED: {RunStatus.RUNNING, RunStatus.COMPLETED, RunStatus.ABORTED, RunStatus.FAILED},
}


@dataclass
class ActionRecord:
    action_id: str
    status: ActionStatus = ActionStatus.PENDING
    optional: bool = False
    attempts: int = 0
    duration: float = 0.0
    prompt_tokens: int = 0
    response_tokens: int = 0
    tokens_estimated: bool = False
    discarded: bool = False
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "status": self.status.value,
            "optional": self.optional,
            "attempts": self.attempts,
            "duration": round(self.duration, 4),
            "prompt_tokens": self.prompt_tokens,
            "response_tokens": self.response_tokens,
            "tokens_estimated": self.tokens_estimated,
            "discarded": self.discarded,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionRecord":
        return cls(
            action_id=data["action_id"],
            status=ActionStatus(data.get("status", ActionStatus.PENDING.value)),
            optional=bool(data.get("optional", False)),
            attempts=int(data.get("attempts", 0)),
            duration=float(data.get("duration", 0.0)),
            prompt_tokens=int(data.get("prompt_tokens", 0)),
            response_tokens=int(data.get("response_tokens", 0)),
            tokens_estimated=bool(data.get("tokens_estimated", False)),
            discarded=bool(data.get("discarded", False)),
            error=data.get("error"),
        )


@dataclass
class PhaseRecord:
    phase_id: str
    status: PhaseStatus = PhaseStatus.PENDING
    actions: Dict[str, ActionRecord] = field(default_factory=dict)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    decision: Optional[str] = None
    note: str = ""

    def action_statuses(self) -> List[str]:
        return [record.status.value for record in self.actions.values()]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "status": self.status.value,
            "actions": [record.to_dict() for record in self.actions.values()],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "decision": self.decision,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseRecord":
        record = cls(
            phase_id=data["phase_id"],
            status=PhaseStatus(data.get("status", PhaseStatus.PENDING.value)),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            decision=data.get("decision"),
            note=data.get("note", ""),
        )
        for raw in data.get("actions", []):
            action = ActionRecord.from_dict(raw)
            record.actions[action.action_id] = action
        return record


@dataclass
class FailureReport:
    """Diagnosis attached to a failed or aborted run."""
    phase_id: Optional[str]
    action_id: Optional[str]
    taxonomy: str
    message: str
    thread_tail: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "action_id": self.action_id,
            "taxonomy": self.taxonomy,
            "message": self.message,
            "thread_tail": list(self.thread_tail),
        }


@dataclass
class RunState:
    """Serializable state of one run."""

    pipeline_id: str = "pipeline"
    run_id: str = field(default_factory=lambda: uuid4().hex)
    status: RunStatus = RunStatus.CREATED
    current_phase_index: int = -1
    sequence: int = 0
    phases: Dict[str, PhaseRecord] = field(default_factory=dict)
    failure: Optional[FailureReport] = None
    created_at: str = field(default_factory=_utc_now_iso)
    finished_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def bump(self) -> int:
        """Advance and return the sequence number."""
        self.sequence += 1
        return self.sequence

    def transition(self, status: RunStatus) -> None:
        allowed = _RUN_TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise ValueError(f"Run {self.run_id}: cannot move from {self.status.value} to {status.value}")
        self.status = status
        if status in TERMINAL_RUN_STATUSES:
            self.finished_at = _utc_now_iso()

    def phase(self, phase_id: str) -> PhaseRecord:
        return self.phases[phase_id]

    def set_phase_status(self, phase_id: str, status: PhaseStatus, note: str = "") -> PhaseRecord:
        record = self.phases[phase_id]
        record.status = status
        if status is PhaseStatus.RUNNING and record.started_at is None:
            record.started_at = _utc_now_iso()
        if status in (PhaseStatus.DONE, PhaseStatus.FAILED, PhaseStatus.SKIPPED):
            record.finished_at = _utc_now_iso()
        if note:
            record.note = note
        return record

    def to_payload(self) -> Dict[str, Any]:
        return {
            "schema_version": "1.0",
            "run_id": self.run_id,
            "pipeline_id": self.pipeline_id,
            "status": self.status.value,
            "current_phase_index": self.current_phase_index,
            "sequence": self.sequence,
            "phases": [record.to_dict() for record in self.phases.values()],
            "failure": self.failure.to_dict() if self.failure else None,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RunState":
        state = cls(
            pipeline_id=str(payload.get("pipeline_id", "pipeline")),
            run_id=str(payload.get("run_id") or uuid4().hex),
            status=RunStatus(payload.get("status", RunStatus.CREATED.value)),
            current_phase_index=int(payload.get("current_phase_index", -1)),
            sequence=int(payload.get("sequence", 0)),
            created_at=str(payload.get("created_at") or _utc_now_iso()),
            finished_at=payload.get("finished_at"),
        )
        for raw in payload.get("phases", []):
            record = PhaseRecord.from_dict(raw)
            state.phases[record.phase_id] = record

        failure = payload.get("failure")
        if isinstance(failure, dict):
            state.failure = FailureReport(
                phase_id=failure.get("phase_id"),
                action_id=failure.get("action_id"),
                taxonomy=str(failure.get("taxonomy", "")),
                message=str(failure.get("message", "")),
                thread_tail=list(failure.get("thread_tail", [])),
            )
        return state
