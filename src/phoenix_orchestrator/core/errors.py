"""
Error types for Phoenix Orchestrator.

The hierarchy drives retry classification at the RetryExecutor boundary:

- TransientError: safe to retry (package mirrors, network, a container that
  has not finished booting).
- PermanentError: do not retry (bad declarations, missing container config,
  unwritable files). Fatal to the current container only.
- EnvironmentalError: the host itself is unusable (missing tool, unwritable
  marker root). Fatal to the whole run.
"""

from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base exception carrying the stage and container it was raised for."""

    def __init__(
        self,
        message: str,
        *,
        stage_id: Optional[str] = None,
        container_id: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage_id = stage_id
        self.container_id = container_id

    def __str__(self) -> str:
        context = []
        if self.container_id is not None:
            context.append(f"container={self.container_id}")
        if self.stage_id:
            context.append(f"stage={self.stage_id}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class TransientError(OrchestratorError):
    """Failure that may succeed when the same action is repeated."""


class PermanentError(OrchestratorError):
    """Failure that will repeat identically; never retried."""


class ConfigurationError(PermanentError):
    """Invalid or missing declared field for a container."""


class PassthroughError(PermanentError):
    """Device passthrough could not be planned or applied."""


class LifecycleError(TransientError):
    """A container control-plane command returned a failure."""


class EnvironmentalError(OrchestratorError):
    """The host is missing a tool or a writable location; aborts the run."""


class HostStageError(OrchestratorError):
    """A host-scope stage failed; no container stage may run."""

    def __init__(self, message: str, *, stage_id: str, last_error: Optional[BaseException] = None) -> None:
        super().__init__(message, stage_id=stage_id)
        self.last_error = last_error


def is_transient(error: BaseException) -> bool:
    """Return True when repeating the failed action might succeed.

    Unclassified exceptions count as transient, every failure used to be
    retried blindly and stage actions are written to be repeat-safe.
    """
    if isinstance(error, TransientError):
        return True
    if isinstance(error, (PermanentError, EnvironmentalError, HostStageError)):
        return False
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return False
    if isinstance(error, (FileNotFoundError, PermissionError, IsADirectoryError)):
        return False
    return True


__all__ = [
    "OrchestratorError",
    "TransientError",
    "PermanentError",
    "ConfigurationError",
    "PassthroughError",
    "LifecycleError",
    "EnvironmentalError",
    "HostStageError",
    "is_transient",
]
