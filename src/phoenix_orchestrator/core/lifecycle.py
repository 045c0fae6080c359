from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple

from phoenix_orchestrator.core.errors import EnvironmentalError, LifecycleError
from phoenix_orchestrator.core.models import ContainerSpec, ContainerStatus

DEFAULT_COMMAND_TIMEOUT = 600
DEFAULT_CONFIG_DIR = Path("/etc/pve/lxc")
EXEC_TIMEOUT = 3600


class ContainerLifecycle(ABC):
    """Container control-plane primitives the orchestrator drives."""

    config_dir: Path = DEFAULT_CONFIG_DIR

    @abstractmethod
    def create(self, container_id: int, spec: ContainerSpec) -> None: ...

    @abstractmethod
    def start(self, container_id: int) -> None: ...

    @abstractmethod
    def stop(self, container_id: int) -> None: ...

    @abstractmethod
    def destroy(self, container_id: int) -> None: ...

    @abstractmethod
    def execute(self, container_id: int, command: str) -> Tuple[str, int]: ...

    @abstractmethod
    def status(self, container_id: int) -> ContainerStatus: ...

    def config_path(self, container_id: int) -> Path:
        return self.config_dir / f"{container_id}.conf"

    def restart(self, container_id: int) -> None:
        if self.status(container_id) == ContainerStatus.RUNNING:
            self.stop(container_id)
        self.start(container_id)


class PctLifecycle(ContainerLifecycle):
    """Proxmox ``pct`` command-line backend.

    Every call is synchronous and bounded by a timeout; a command that exits
    non-zero raises LifecycleError (transient) and a missing ``pct`` binary
    raises EnvironmentalError.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        pct: str = "pct",
        timeout: int = DEFAULT_COMMAND_TIMEOUT,
        exec_timeout: int = EXEC_TIMEOUT,
        config_dir: Path = DEFAULT_CONFIG_DIR,
    ) -> None:
        self.config_dir = Path(config_dir)
        self._logger = logger
        self._pct = pct
        self._timeout = timeout
        self._exec_timeout = exec_timeout

    def _run(self, args: List[str], *, timeout: Optional[int] = None, check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self._pct, *args]
        self._logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout or self._timeout)
        except FileNotFoundError as e:
            raise EnvironmentalError(f"'{self._pct}' not found; is this a Proxmox VE host?") from e
        except subprocess.TimeoutExpired as e:
            raise LifecycleError(f"'{' '.join(cmd)}' timed out after {e.timeout}s") from e
        if check and proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()
            raise LifecycleError(f"'{' '.join(cmd)}' exited with {proc.returncode}: {detail}")
        return proc

    @staticmethod
    def build_create_args(container_id: int, spec: ContainerSpec) -> List[str]:
        args = [
            "create", str(container_id), spec.template,
            "--hostname", spec.name,
            "--memory", str(spec.memory_mb),
            "--swap", str(spec.swap_mb),
            "--cores", str(spec.cores),
            "--storage", spec.storage.pool,
            "--rootfs", f"{spec.storage.pool}:{spec.storage.size_gb}",
            "--net0", spec.network.to_net0(),
            "--nameserver", spec.network.nameserver,
        ]
        if spec.features:
            args += ["--features", spec.features]
        return args

    def create(self, container_id: int, spec: ContainerSpec) -> None:
        if self.status(container_id) != ContainerStatus.UNKNOWN:
            self._logger.info(f"Container {container_id} already exists, skipping creation")
            return
        self._logger.info(f"Creating container {container_id} ({spec.name}) from {spec.template}")
        self._run(self.build_create_args(container_id, spec))
        self._logger.info(f"Container {container_id} created")

    def start(self, container_id: int) -> None:
        if self.status(container_id) == ContainerStatus.RUNNING:
            self._logger.debug(f"Container {container_id} already running")
            return
        self._logger.info(f"Starting container {container_id}")
        self._run(["start", str(container_id)])

    def stop(self, container_id: int) -> None:
        if self.status(container_id) != ContainerStatus.RUNNING:
            self._logger.debug(f"Container {container_id} is not running")
            return
        self._logger.info(f"Stopping container {container_id}")
        self._run(["stop", str(container_id)])

    def destroy(self, container_id: int) -> None:
        status = self.status(container_id)
        if status == ContainerStatus.UNKNOWN:
            self._logger.warning(f"Container {container_id} does not exist, nothing to destroy")
            return
        if status == ContainerStatus.RUNNING:
            self.stop(container_id)
        self._logger.info(f"Destroying container {container_id} with purge")
        self._run(["destroy", str(container_id), "--purge"])
        self._logger.info(f"Container {container_id} destroyed")

    def execute(self, container_id: int, command: str) -> Tuple[str, int]:
        proc = self._run(
            ["exec", str(container_id), "--", "bash", "-lc", command],
            timeout=self._exec_timeout,
            check=False,
        )
        if proc.returncode != 0:
            self._logger.debug(f"Container {container_id}: command exited {proc.returncode}: {proc.stderr.strip()}")
        return proc.stdout, proc.returncode

    def status(self, container_id: int) -> ContainerStatus:
        proc = self._run(["status", str(container_id)], check=False)
        if proc.returncode != 0:
            return ContainerStatus.UNKNOWN
        text = proc.stdout.strip()
        if text == "status: running":
            return ContainerStatus.RUNNING
        if text == "status: stopped":
            return ContainerStatus.STOPPED
        return ContainerStatus.UNKNOWN


__all__ = ["ContainerLifecycle", "PctLifecycle"]
