"""
Centralized Configuration
=========================
Configuration values and defaults for the coordinator.

This module provides:
- Call dispatcher limits (timeout, retries, concurrency, batch pacing)
- Review gate and thread ledger bounds
- Durable store location
- Tracing switches

Every value can be overridden through an environment variable; explicit
constructor arguments always win over these defaults.
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class DispatchConfig:
    """Call dispatcher defaults."""

    # Per-call timeout in seconds
    CALL_TIMEOUT: float = float(os.getenv("CHORUS_CALL_TIMEOUT", "120"))

    # Retries after the first attempt; delay grows linearly (delay * attempt)
    MAX_RETRIES: int = int(os.getenv("CHORUS_MAX_RETRIES", "2"))
    RETRY_DELAY: float = float(os.getenv("CHORUS_RETRY_DELAY", "1.0"))

    # Global in-flight cap shared by every run in the process
    MAX_CONCURRENT: int = int(os.getenv("CHORUS_MAX_CONCURRENT", "3"))

    # Pause between successive concurrency-window fills in batch dispatch
    BATCH_DELAY: float = float(os.getenv("CHORUS_BATCH_DELAY", "0.5"))


@dataclass(frozen=True)
class GavelConfig:
    """Review gate defaults."""

    HISTORY_LIMIT: int = int(os.getenv("CHORUS_REVIEW_HISTORY", "50"))


@dataclass(frozen=True)
class RunsConfig:
    """Orchestrator bookkeeping."""

    # Finished runs kept for get_run/run_history; older ones are evicted
    HISTORY_LIMIT: int = int(os.getenv("CHORUS_RUN_HISTORY", "10"))


@dataclass(frozen=True)
class LedgerConfig:
    """Thread ledger formatting defaults."""

    TAIL_ENTRIES: int = int(os.getenv("CHORUS_THREAD_TAIL", "20"))
    MAX_PROMPT_CHARS: int = int(os.getenv("CHORUS_THREAD_MAX_CHARS", "4000"))

    # Entries attached to a terminal failure report
    FAILURE_TAIL: int = int(os.getenv("CHORUS_FAILURE_TAIL", "10"))


@dataclass(frozen=True)
class StoreConfig:
    """Durable key/value store defaults."""

    DIRECTORY: str = os.getenv("CHORUS_STORE_DIR", ".chorus_store")
    LOCK_TIMEOUT: int = int(os.getenv("CHORUS_LOCK_TIMEOUT", "30"))


@dataclass(frozen=True)
class TracingConfig:
    """Tracing configuration."""

    SERVICE_NAME: str = "chorus-pipeline"
    OTLP_ENDPOINT: str = os.getenv("OTLP_ENDPOINT", "http://localhost:4318/v1/traces")
    ENABLED: bool = os.getenv("ENABLE_TRACING", "false").lower() == "true"


# Global singleton instances
DISPATCH = DispatchConfig()
GAVEL = GavelConfig()
RUNS = RunsConfig()
LEDGER = LedgerConfig()
STORE = StoreConfig()
TRACING = TracingConfig()


def get_timeout(operation: str) -> float:
    """Get timeout for a specific operation type.

    Args:
        operation: One of 'call', 'retry_delay', 'batch_delay', 'file_lock'

    Returns:
        Timeout in seconds
    """
    mapping = {
        "call": DISPATCH.CALL_TIMEOUT,
        "retry_delay": DISPATCH.RETRY_DELAY,
        "batch_delay": DISPATCH.BATCH_DELAY,
        "file_lock": float(STORE.LOCK_TIMEOUT),
    }
    return mapping.get(operation, DISPATCH.CALL_TIMEOUT)
