"""
Stage pipeline driver.

Each stage follows the same path::

    marker exists?  -> SKIPPED
    run via RetryExecutor
      success       -> record marker -> SUCCESS
      failure       -> FAILED
                       host scope:      abort the run (HostStageError)
                       container scope: roll the container back, move on
    marker store error -> EnvironmentalError, the run aborts

All host stages finish before any container stage starts. Containers are
processed one at a time and a failure in one never stops the others.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from phoenix_orchestrator.core.config_store import ConfigSnapshot
from phoenix_orchestrator.core.errors import EnvironmentalError, HostStageError
from phoenix_orchestrator.core.lifecycle import ContainerLifecycle
from phoenix_orchestrator.core.models import (
    ContainerReport,
    ContainerSpec,
    ContainerStatus,
    ExecutionResult,
    RetryPolicy,
    RunReport,
    Stage,
    StageStatus,
)
from phoenix_orchestrator.core.retry import RetryExecutor
from phoenix_orchestrator.storage.marker_store import MarkerStore, container_marker_prefix

EventSink = Callable[[Dict[str, Any]], None]


class RollbackAction:
    """Best-effort undo of a partially provisioned container.

    Stops and destroys the container, then revokes every marker it owns so
    the next run starts it from scratch. Each step is attempted once; a
    failing step is logged and the remaining steps still run.
    """

    def __init__(self, lifecycle: ContainerLifecycle, markers: MarkerStore, logger: logging.Logger) -> None:
        self._lifecycle = lifecycle
        self._markers = markers
        self._logger = logger

    def __call__(self, container_id: int) -> bool:
        self._logger.warning(f"Rolling back container {container_id}")
        complete = True
        try:
            if self._lifecycle.status(container_id) == ContainerStatus.RUNNING:
                self._lifecycle.stop(container_id)
        except Exception as e:
            complete = False
            self._logger.warning(f"Rollback of container {container_id}: stop failed: {e}")
        try:
            self._lifecycle.destroy(container_id)
        except Exception as e:
            complete = False
            self._logger.warning(f"Rollback of container {container_id}: destroy failed: {e}")
        try:
            removed = self._markers.revoke_prefix(container_marker_prefix(container_id))
            self._logger.info(f"Rollback of container {container_id}: revoked {removed} marker(s)")
        except Exception as e:
            complete = False
            self._logger.warning(f"Rollback of container {container_id}: marker cleanup failed: {e}")
        return complete


class Orchestrator:

    def __init__(
        self,
        snapshot: ConfigSnapshot,
        markers: MarkerStore,
        executor: RetryExecutor,
        lifecycle: ContainerLifecycle,
        logger: logging.Logger,
        *,
        host_stages: Sequence[Stage],
        container_stages: Callable[[ContainerSpec], List[Stage]],
        policy: RetryPolicy = RetryPolicy(),
        owner: str = "phoenix-orchestrator",
        lock_dir: Optional[Path] = None,
        event_sink: Optional[EventSink] = None,
        rollback_on_failure: bool = True,
    ) -> None:
        self._snapshot = snapshot
        self._markers = markers
        self._executor = executor
        self._logger = logger
        self._host_stages = list(host_stages)
        self._container_stages = container_stages
        self._policy = policy
        self._owner = owner
        self._lock_dir = Path(lock_dir) if lock_dir else None
        self._event_sink = event_sink
        self._rollback_on_failure = rollback_on_failure
        self._rollback = RollbackAction(lifecycle, markers, logger)

    # ---------- stage machinery ----------

    def _emit(self, payload: Dict[str, Any]) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink(payload)
        except Exception as e:
            self._logger.warning(f"Failed to record stage event: {e}")

    @contextlib.contextmanager
    def _marker_access(self, stage: Stage, action: str) -> Iterator[None]:
        try:
            yield
        except EnvironmentalError as e:
            if e.stage_id is None and e.container_id is None:
                raise EnvironmentalError(e.message, stage_id=stage.id, container_id=stage.container_id) from e
            raise
        except Exception as e:
            raise EnvironmentalError(
                f"Marker store failed to {action} '{stage.idempotency_key}': {e}",
                stage_id=stage.id,
                container_id=stage.container_id,
            ) from e

    def run_stage(self, stage: Stage) -> ExecutionResult:
        label = stage.id if stage.container_id is None else f"container {stage.container_id}: {stage.id}"
        with self._marker_access(stage, "read"):
            done = self._markers.exists(stage.idempotency_key)
        if done:
            self._logger.info(f"{label}: already completed, skipping")
            result = ExecutionResult(stage.id, StageStatus.SKIPPED, container_id=stage.container_id)
        else:
            self._logger.info(f"{label}: running")
            outcome = self._executor.execute(stage.action, self._policy, label=label)
            if outcome.ok:
                with self._marker_access(stage, "record"):
                    self._markers.record(stage.idempotency_key, self._owner)
                result = ExecutionResult(stage.id, StageStatus.SUCCESS, attempts=outcome.attempts,
                                         container_id=stage.container_id)
            else:
                result = ExecutionResult(stage.id, StageStatus.FAILED, attempts=outcome.attempts,
                                         last_error=outcome.error, container_id=stage.container_id)
        self._emit(result.to_dict())
        return result

    @contextlib.contextmanager
    def _container_lock(self, container_id: int) -> Iterator[None]:
        if self._lock_dir is None:
            yield
            return
        try:
            self._lock_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._lock_dir / f"{container_id}.lock", os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as e:
            raise EnvironmentalError(f"Cannot create lock for container {container_id} in {self._lock_dir}: {e}") from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    # ---------- pipeline ----------

    def run_host_stages(self) -> List[ExecutionResult]:
        results = []
        for stage in self._host_stages:
            result = self.run_stage(stage)
            results.append(result)
            if not result.ok:
                raise HostStageError(
                    f"Host stage '{stage.id}' failed after {result.attempts} attempt(s): {result.last_error}",
                    stage_id=stage.id,
                    last_error=result.last_error,
                )
        return results

    def run_container(self, container_id: int) -> ContainerReport:
        report = ContainerReport(container_id=container_id)
        if container_id in self._snapshot.errors:
            report.error = self._snapshot.errors[container_id]
            self._logger.error(f"Container {container_id}: skipped, invalid declaration: {report.error}")
            return report

        spec = self._snapshot.get(container_id)
        self._logger.info(f"Processing container {container_id} ({spec.name})")
        with self._container_lock(container_id):
            for stage in self._container_stages(spec):
                result = self.run_stage(stage)
                report.results.append(result)
                if result.ok:
                    continue
                report.error = result.last_error
                self._logger.error(f"Container {container_id}: stage '{stage.id}' failed: {result.last_error}")
                if self._rollback_on_failure:
                    report.rolled_back = self._rollback(container_id)
                    self._emit({"stage_id": "rollback", "container_id": container_id,
                                "status": "rollback", "attempts": 1,
                                "last_error": None if report.rolled_back else "incomplete"})
                if isinstance(result.last_error, EnvironmentalError):
                    raise result.last_error
                break
        if report.succeeded:
            self._logger.info(f"Container {container_id} provisioned successfully")
        return report

    def run(self) -> RunReport:
        report = RunReport()
        report.host_results = self.run_host_stages()
        for container_id in self._snapshot.container_ids():
            report.containers[container_id] = self.run_container(container_id)
        self._logger.info(
            f"Run complete: {report.succeeded} container(s) succeeded, {report.failed} failed"
        )
        return report


__all__ = ["Orchestrator", "RollbackAction", "EventSink"]
