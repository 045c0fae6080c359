"""
Stage catalogue.

Host stages run once per invocation before any container is touched.
Container stages run in a fixed order for every declared container:

    create -> passthrough -> start -> runtime -> service -> health

Every action is written so that repeating it after a partial failure is
safe; the marker store decides whether it runs at all.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Callable, List, Optional

from phoenix_orchestrator.core.config_store import ConfigSnapshot
from phoenix_orchestrator.core.errors import EnvironmentalError, TransientError
from phoenix_orchestrator.core.lifecycle import ContainerLifecycle
from phoenix_orchestrator.core.models import ContainerSpec, ContainerStatus, Stage, StageScope
from phoenix_orchestrator.core.service_deployer import ServiceDeployer
from phoenix_orchestrator.devices.inventory import DeviceInventory
from phoenix_orchestrator.devices.passthrough import DevicePassthroughPlanner
from phoenix_orchestrator.monitoring.health_check import HealthChecker
from phoenix_orchestrator.storage.marker_store import container_marker_key, host_marker_key

HOST_STAGE_IDS = ("initial_setup", "accelerator_check")
CONTAINER_STAGE_IDS = ("create", "passthrough", "start", "runtime", "service", "health")

HOST_COMMAND_TIMEOUT = 3600
GPU_VERIFY_COMMAND = "nvidia-smi -L"


class HostStages:

    def __init__(
        self,
        snapshot: ConfigSnapshot,
        inventory: DeviceInventory,
        logger: logging.Logger,
        *,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        timeout: int = HOST_COMMAND_TIMEOUT,
    ) -> None:
        self._snapshot = snapshot
        self._inventory = inventory
        self._logger = logger
        self._runner = runner
        self._timeout = timeout

    def initial_setup(self) -> None:
        commands = self._snapshot.host.setup_commands
        if not commands:
            self._logger.info("No host setup commands declared")
            return
        for command in commands:
            self._logger.info(f"Host setup: {command}")
            try:
                proc = self._runner(
                    ["bash", "-c", command], capture_output=True, text=True, timeout=self._timeout
                )
            except FileNotFoundError as e:
                raise EnvironmentalError("bash not found on host") from e
            except subprocess.TimeoutExpired as e:
                raise TransientError(f"Host setup command timed out after {e.timeout}s: {command}") from e
            if proc.returncode != 0:
                detail = (proc.stderr or proc.stdout or "").strip()
                raise TransientError(f"Host setup command exited {proc.returncode}: {command}: {detail}")

    def accelerator_check(self) -> None:
        if not self._snapshot.wants_accelerators:
            self._logger.info("No container declares accelerators, skipping driver check")
            return
        reported = self._inventory.indices()
        if not reported and not self._inventory.exists("/dev/nvidiactl"):
            raise EnvironmentalError(
                "Containers declare GPUs but the host driver reports none (nvidia-smi and /dev/nvidiactl missing)"
            )
        declared = sorted({i for spec in self._snapshot.specs.values() for i in spec.gpu_assignment})
        unknown = [i for i in declared if reported and i not in reported]
        if unknown:
            self._logger.warning(f"Declared GPU indices {unknown} not reported by host driver (host has {reported})")
        self._logger.info(f"Host accelerators available: {reported}")

    def build(self) -> List[Stage]:
        actions = {"initial_setup": self.initial_setup, "accelerator_check": self.accelerator_check}
        return [
            Stage(id=stage_id, scope=StageScope.HOST, action=actions[stage_id],
                  idempotency_key=host_marker_key(stage_id))
            for stage_id in HOST_STAGE_IDS
        ]


class ContainerStages:
    """Builds the per-container pipeline bound to one ContainerSpec."""

    def __init__(
        self,
        lifecycle: ContainerLifecycle,
        planner: DevicePassthroughPlanner,
        logger: logging.Logger,
        *,
        deployer: Optional[ServiceDeployer] = None,
        health: Optional[HealthChecker] = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._planner = planner
        self._logger = logger
        self._deployer = deployer or ServiceDeployer(logger)
        self._health = health or HealthChecker(lifecycle, logger)

    def create(self, spec: ContainerSpec) -> None:
        self._lifecycle.create(spec.id, spec)

    def passthrough(self, spec: ContainerSpec) -> None:
        plan, changed = self._planner.configure(spec.id, spec.gpu_assignment)
        if changed and self._lifecycle.status(spec.id) == ContainerStatus.RUNNING:
            self._logger.info(f"Container {spec.id}: restarting to apply device passthrough")
            self._lifecycle.restart(spec.id)

    def start(self, spec: ContainerSpec) -> None:
        self._lifecycle.start(spec.id)
        status = self._lifecycle.status(spec.id)
        if status != ContainerStatus.RUNNING:
            raise TransientError(f"Container did not reach running state (status: {status.value})",
                                 container_id=spec.id)

    def runtime(self, spec: ContainerSpec) -> None:
        for command in spec.runtime_commands:
            self._logger.info(f"Container {spec.id}: {command}")
            output, rc = self._lifecycle.execute(spec.id, command)
            if rc != 0:
                raise TransientError(f"Runtime command exited {rc}: {command}", container_id=spec.id)
        if spec.gpu_assignment and not self._planner.plan(spec.gpu_assignment).is_empty:
            output, rc = self._lifecycle.execute(spec.id, GPU_VERIFY_COMMAND)
            if rc != 0 or "GPU" not in output:
                raise TransientError(f"GPU not visible inside container ('{GPU_VERIFY_COMMAND}' exited {rc})",
                                     container_id=spec.id)
            self._logger.info(f"Container {spec.id}: GPU visible: {output.strip().splitlines()[0]}")

    def service(self, spec: ContainerSpec) -> None:
        self._deployer.deploy(spec)

    def health(self, spec: ContainerSpec) -> None:
        self._health.check(spec)

    def build(self, spec: ContainerSpec) -> List[Stage]:
        stages = []
        for stage_id in CONTAINER_STAGE_IDS:
            method = getattr(self, stage_id)
            stages.append(Stage(
                id=stage_id,
                scope=StageScope.CONTAINER,
                action=lambda m=method: m(spec),
                idempotency_key=container_marker_key(spec.id, stage_id),
                container_id=spec.id,
            ))
        return stages


__all__ = ["HostStages", "ContainerStages", "HOST_STAGE_IDS", "CONTAINER_STAGE_IDS"]
