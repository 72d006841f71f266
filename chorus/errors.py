"""
Error Taxonomy
==============
Typed failures raised across the coordinator.

Call backends raise one of the ``CallError`` subclasses. The dispatcher decides
whether to retry with ``is_retryable()``, which works on a structured
``ErrorCode`` rather than on message text. ``classify_error()`` still accepts
untyped exceptions (adapters that only raise ``RuntimeError`` with a message)
and maps them through a substring table; that table exists for migrating such
adapters and should not grow.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ErrorCode(str, Enum):
    """Structured error codes for model-call failures."""
    TIMEOUT = "timeout"
    AUTH_FAILURE = "auth_failure"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    BACKEND_UNAVAILABLE_PERMANENTLY = "backend_unavailable_permanently"
    MALFORMED = "malformed"
    UNKNOWN = "unknown"


NON_RETRYABLE_CODES = frozenset({
    ErrorCode.AUTH_FAILURE,
    ErrorCode.MALFORMED,
    ErrorCode.BACKEND_UNAVAILABLE_PERMANENTLY,
})

# Lowercase substrings -> code. Checked in order, first match wins.
LEGACY_MESSAGE_PATTERNS: Tuple[Tuple[str, ErrorCode], ...] = (
    ("unauthorized", ErrorCode.AUTH_FAILURE),
    ("authentication", ErrorCode.AUTH_FAILURE),
    ("invalid api key", ErrorCode.AUTH_FAILURE),
    ("permission denied", ErrorCode.AUTH_FAILURE),
    ("forbidden", ErrorCode.AUTH_FAILURE),
    ("bad request", ErrorCode.MALFORMED),
    ("invalid request", ErrorCode.MALFORMED),
    ("malformed", ErrorCode.MALFORMED),
    ("model not found", ErrorCode.MALFORMED),
    ("decommissioned", ErrorCode.BACKEND_UNAVAILABLE_PERMANENTLY),
    ("no longer available", ErrorCode.BACKEND_UNAVAILABLE_PERMANENTLY),
    ("timed out", ErrorCode.TIMEOUT),
    ("timeout", ErrorCode.TIMEOUT),
    ("rate limit", ErrorCode.BACKEND_UNAVAILABLE),
    ("overloaded", ErrorCode.BACKEND_UNAVAILABLE),
    ("service unavailable", ErrorCode.BACKEND_UNAVAILABLE),
)


class ChorusError(Exception):
    """Base class for all coordinator errors."""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": type(self).__name__, "message": str(self)}


# ========== Call errors ==========

class CallError(ChorusError):
    """A single model call failed."""

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(self, message: str = "", *, status_code: Optional[int] = None):
        super().__init__(message or self.code.value)
        self.status_code = status_code
        self.attempts = 0

    @property
    def retryable(self) -> bool:
        return self.code not in NON_RETRYABLE_CODES

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["code"] = self.code.value
        payload["status_code"] = self.status_code
        payload["attempts"] = self.attempts
        return payload


class TransientCallError(CallError):
    """Network or capacity problem; retried by the dispatcher."""


class PermanentCallError(CallError):
    """Failure that no retry can fix; surfaced immediately."""


class CallTimeout(TransientCallError):
    code = ErrorCode.TIMEOUT


class BackendUnavailable(TransientCallError):
    code = ErrorCode.BACKEND_UNAVAILABLE


class UnknownCallError(TransientCallError):
    code = ErrorCode.UNKNOWN


class AuthFailure(PermanentCallError):
    code = ErrorCode.AUTH_FAILURE


class MalformedRequest(PermanentCallError):
    code = ErrorCode.MALFORMED


class BackendUnavailablePermanently(PermanentCallError):
    code = ErrorCode.BACKEND_UNAVAILABLE_PERMANENTLY


_CODE_TO_CLASS = {
    ErrorCode.TIMEOUT: CallTimeout,
    ErrorCode.AUTH_FAILURE: AuthFailure,
    ErrorCode.BACKEND_UNAVAILABLE: BackendUnavailable,
    ErrorCode.BACKEND_UNAVAILABLE_PERMANENTLY: BackendUnavailablePermanently,
    ErrorCode.MALFORMED: MalformedRequest,
    ErrorCode.UNKNOWN: UnknownCallError,
}


class QueueCleared(ChorusError):
    """A queued dispatcher task was dropped by ``clear_queue()``."""


# ========== Pipeline errors ==========

class ActionFailure(ChorusError):
    """An action exhausted its retries or hit a permanent call error."""

    def __init__(
        self,
        action_id: str,
        phase_id: str,
        cause: BaseException,
        attempts: int = 0,
    ):
        self.action_id = action_id
        self.phase_id = phase_id
        self.cause = cause
        self.attempts = attempts
        super().__init__(
            f"Action '{action_id}' in phase '{phase_id}' failed: "
            f"{type(cause).__name__}: {cause}"
        )

    @property
    def cause_type(self) -> str:
        return type(self.cause).__name__

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({
            "action_id": self.action_id,
            "phase_id": self.phase_id,
            "cause_type": self.cause_type,
            "attempts": self.attempts,
        })
        return payload


class PhaseFailure(ChorusError):
    """One or more required actions failed, or review rejected the phase."""

    def __init__(
        self,
        phase_id: str,
        failures: Optional[List[ActionFailure]] = None,
        reason: str = "",
    ):
        self.phase_id = phase_id
        self.failures = list(failures or [])
        self.reason = reason or "required action failed"
        failed = ", ".join(f.action_id for f in self.failures)
        detail = f" ({failed})" if failed else ""
        super().__init__(f"Phase '{phase_id}' failed: {self.reason}{detail}")

    @property
    def failed_action_ids(self) -> List[str]:
        return [f.action_id for f in self.failures]


class GateInvalidTransition(ChorusError):
    """Decision not allowed in the gate's current state."""


class StaleGavelResponse(GateInvalidTransition):
    """Response addressed to a request that is no longer outstanding."""


class RunAborted(ChorusError):
    """The caller cancelled the run."""


class DefinitionError(ChorusError, ValueError):
    """Pipeline definition failed validation."""


class StaticScopeViolation(ChorusError):
    """Write to the static scope after it was sealed or already set."""


# ========== Classification ==========

def classify_error(exc: BaseException) -> ErrorCode:
    """Map any exception raised by a backend call to an ``ErrorCode``."""
    if isinstance(exc, CallError):
        return exc.code

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCode.TIMEOUT

    message = str(exc).lower()
    for pattern, code in LEGACY_MESSAGE_PATTERNS:
        if pattern in message:
            return code
    return ErrorCode.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    """Return True when the dispatcher may retry after ``exc``."""
    if isinstance(exc, (RunAborted, QueueCleared)):
        return False
    return classify_error(exc) not in NON_RETRYABLE_CODES


def as_call_error(exc: BaseException) -> CallError:
    """Wrap an arbitrary exception in the typed ``CallError`` it classifies as."""
    if isinstance(exc, CallError):
        return exc
    code = classify_error(exc)
    wrapped = _CODE_TO_CLASS[code](f"{type(exc).__name__}: {exc}")
    wrapped.__cause__ = exc
    return wrapped


def taxonomy_name(exc: BaseException) -> str:
    """Name of the taxonomy bucket an error belongs to, for failure reports."""
    if isinstance(exc, ActionFailure):
        return taxonomy_name(exc.cause) if isinstance(exc.cause, CallError) else "ActionFailure"
    if isinstance(exc, PermanentCallError):
        return "PermanentCallError"
    if isinstance(exc, TransientCallError):
        return "TransientCallError"
    if isinstance(exc, ChorusError):
        return type(exc).__name__
    return "TransientCallError" if is_retryable(exc) else "PermanentCallError"
