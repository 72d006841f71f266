"""
LLM Call Module
===============
Call backends and the bounded-concurrency dispatcher in front of them.
"""

from .backend import BackendRouter, CallBackend, CallRequest, CallResult, estimate_tokens
from .dispatcher import BatchItem, CallDispatcher, DispatchResult

__all__ = [
    "BackendRouter",
    "CallBackend",
    "CallRequest",
    "CallResult",
    "estimate_tokens",
    "BatchItem",
    "CallDispatcher",
    "DispatchResult",
]
