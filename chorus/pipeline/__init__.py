"""
Pipeline Module
===============
Definition loading, run state, review gate and the executor that walks a
pipeline's phases.
"""

from .definition import PipelineDefinition, load_definition
from .events import EventChannel, EventType, ProgressEvent
from .executor import PipelineExecutor
from .gavel import GateState, GavelDecision, GavelRequest, GavelResponse, ReviewGate
from .orchestrator import Orchestrator
from .state import ActionStatus, PhaseStatus, RunState, RunStatus

__all__ = [
    "PipelineDefinition",
    "load_definition",
    "EventChannel",
    "EventType",
    "ProgressEvent",
    "PipelineExecutor",
    "GateState",
    "GavelDecision",
    "GavelRequest",
    "GavelResponse",
    "ReviewGate",
    "Orchestrator",
    "ActionStatus",
    "PhaseStatus",
    "RunState",
    "RunStatus",
]
