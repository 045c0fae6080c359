"""
Core module for Phoenix Orchestrator.

Error taxonomy, data model, retry executor and container lifecycle
primitives. The pipeline itself lives in ``core.orchestrator``.
"""

from __future__ import annotations

from phoenix_orchestrator.core.errors import (
    ConfigurationError,
    EnvironmentalError,
    HostStageError,
    OrchestratorError,
    PassthroughError,
    PermanentError,
    TransientError,
    is_transient,
)
from phoenix_orchestrator.core.lifecycle import ContainerLifecycle, PctLifecycle
from phoenix_orchestrator.core.retry import RetryExecutor, RetryOutcome

__all__ = [
    "OrchestratorError",
    "TransientError",
    "PermanentError",
    "ConfigurationError",
    "PassthroughError",
    "EnvironmentalError",
    "HostStageError",
    "is_transient",
    "ContainerLifecycle",
    "PctLifecycle",
    "RetryExecutor",
    "RetryOutcome",
]
