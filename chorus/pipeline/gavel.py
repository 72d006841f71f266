"""
Review Gate (Gavel)
===================
Suspend/resume primitive for human review of a phase output.

State machine (one gate per run):

    idle --open()--> awaiting_review --submit()/abort()/timeout--> idle

Rules:
- ``submit()`` while idle raises ``GateInvalidTransition``
- A response naming a request id other than the pending one raises
  ``StaleGavelResponse``
- ``skipped`` is refused when the request has ``can_skip=False``; the gate
  stays in ``awaiting_review``
- Edited values may only name fields listed in ``editable_fields``
- ``abort()`` resolves the pending wait exactly once with ``aborted``
- With a review timeout, expiry resolves as ``skipped`` when skipping is
  allowed and as ``rejected`` otherwise

Decisions are kept in a bounded history (oldest evicted).
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from loguru import logger

from chorus.config import GAVEL
from chorus.errors import GateInvalidTransition, StaleGavelResponse


class GateState(str, Enum):
    IDLE = "idle"
    AWAITING_REVIEW = "awaiting_review"


class GavelDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    ABORTED = "aborted"


@dataclass(frozen=True)
class GavelRequest:
    run_id: str
    phase_id: str
    prompt: str
    output: str
    editable_fields: Tuple[str, ...] = ()
    can_skip: bool = True
    sequence: int = 0
    timeout: float = 0.0
    request_id: str = field(default_factory=lambda: uuid4().hex[:12])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "run_id": self.run_id,
            "phase_id": self.phase_id,
            "prompt": self.prompt,
            "output": self.output,
            "editable_fields": list(self.editable_fields),
            "can_skip": self.can_skip,
            "sequence": self.sequence,
            "timeout": self.timeout,
        }


@dataclass
class GavelResponse:
    decision: GavelDecision
    edited_values: Dict[str, Any] = field(default_factory=dict)
    commentary: str = ""
    final_output: Optional[str] = None
    request_id: Optional[str] = None

    def __post_init__(self):
        self.decision = GavelDecision(self.decision)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GavelResponse":
        return cls(
            decision=GavelDecision(data["decision"]),
            edited_values=dict(data.get("edited_values") or {}),
            commentary=str(data.get("commentary") or ""),
            final_output=data.get("final_output"),
            request_id=data.get("request_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "edited_values": dict(self.edited_values),
            "commentary": self.commentary,
            "final_output": self.final_output,
            "request_id": self.request_id,
        }


@dataclass(frozen=True)
class ReviewRecord:
    request: GavelRequest
    response: GavelResponse
    decided_at: float


class ReviewGate:
    """
    Per-run review gate.

    Usage:
        gate = ReviewGate()
        response = await gate.open(request)      # in the executor
        gate.submit(GavelResponse("approved"))   # from the presentation layer
    """

    def __init__(
        self,
        history_limit: int = GAVEL.HISTORY_LIMIT,
        on_request: Optional[Callable[[GavelRequest], None]] = None,
    ):
        self.history: Deque[ReviewRecord] = deque(maxlen=history_limit)
        self.on_request = on_request
        self._state = GateState.IDLE
        self._pending: Optional[GavelRequest] = None
        self._future: Optional[asyncio.Future] = None

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def pending(self) -> Optional[GavelRequest]:
        return self._pending

    async def open(self, request: GavelRequest) -> GavelResponse:
        """Suspend until a decision arrives for ``request``."""
        if self._state is not GateState.IDLE:
            raise GateInvalidTransition(
                f"Gate already awaiting review of phase '{self._pending.phase_id if self._pending else '?'}'"
            )

        self._future = asyncio.get_running_loop().create_future()
        self._pending = request
        self._state = GateState.AWAITING_REVIEW
        future = self._future
        logger.info(f"Gavel requested for phase '{request.phase_id}' (request {request.request_id})")

        try:
            if self.on_request is not None:
                self.on_request(request)

            if request.timeout and request.timeout > 0:
                try:
                    return await asyncio.wait_for(asyncio.shield(future), timeout=request.timeout)
                except asyncio.TimeoutError:
                    if future.done():
                        return future.result()
                    return self._expire(request)
            return await future
        finally:
            # Waiter gone without a decision (cancelled or on_request raised)
            if self._future is future:
                self._state = GateState.IDLE
                self._pending = None
                self._future = None
                future.cancel()
                logger.warning(f"Gavel for phase '{request.phase_id}' released without a decision")

    def _expire(self, request: GavelRequest) -> GavelResponse:
        if request.can_skip:
            response = GavelResponse(GavelDecision.SKIPPED, commentary="Review timed out")
        else:
            response = GavelResponse(GavelDecision.REJECTED, commentary="User gavel timed out")
        logger.warning(f"Gavel for phase '{request.phase_id}' timed out; {response.decision.value}")
        self._resolve(response)
        return response

    def validate(self, response: GavelResponse) -> None:
        """Raise if ``response`` is not acceptable in the current state."""
        if self._state is not GateState.AWAITING_REVIEW or self._pending is None:
            raise GateInvalidTransition("No review is pending")

        request = self._pending
        if response.request_id is not None and response.request_id != request.request_id:
            raise StaleGavelResponse(
                f"Response for request {response.request_id} but {request.request_id} is pending"
            )
        if response.decision is GavelDecision.ABORTED:
            raise GateInvalidTransition("Use abort() to abort a pending review")
        if response.decision is GavelDecision.SKIPPED and not request.can_skip:
            raise GateInvalidTransition(f"Phase '{request.phase_id}' cannot be skipped")

        unknown = sorted(set(response.edited_values) - set(request.editable_fields))
        if unknown:
            raise GateInvalidTransition(
                f"Fields not editable for phase '{request.phase_id}': {', '.join(unknown)}"
            )

    def submit(self, response: GavelResponse) -> None:
        """Deliver a decision. The gate state is unchanged when it is refused."""
        self.validate(response)
        self._resolve(response)

    def abort(self, reason: str = "Run aborted") -> bool:
        """Release a pending wait with ``aborted``. Returns False when nothing was pending."""
        if self._state is not GateState.AWAITING_REVIEW:
            return False
        self._resolve(GavelResponse(GavelDecision.ABORTED, commentary=reason))
        return True

    def _resolve(self, response: GavelResponse) -> None:
        request, future = self._pending, self._future
        self._state = GateState.IDLE
        self._pending = None
        self._future = None

        if request is not None:
            if response.request_id is None:
                response.request_id = request.request_id
            self.history.append(ReviewRecord(request=request, response=response, decided_at=time.time()))
            logger.info(f"Gavel for phase '{request.phase_id}' resolved: {response.decision.value}")

        if future is not None and not future.done():
            future.set_result(response)

    def recent_decisions(self, limit: int = 10) -> List[Dict[str, Any]]:
        return [
            {
                "phase_id": r.request.phase_id,
                "decision": r.response.decision.value,
                "commentary": r.response.commentary,
                "decided_at": r.decided_at,
            }
            for r in list(self.history)[-limit:]
        ]
