"""
Host accelerator device inventory.

Answers three questions for the passthrough planner: which device nodes an
accelerator index needs, whether they exist on this host, and which
major/minor numbers they carry.
"""

from __future__ import annotations

import logging
import os
import stat
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple

PRIMARY_DEVICE_TEMPLATE = "/dev/nvidia{index}"

# Control, memory-management, capability and display nodes shared by every card.
SHARED_DEVICE_PATHS: Tuple[str, ...] = (
    "/dev/nvidiactl",
    "/dev/nvidia-uvm",
    "/dev/nvidia-uvm-tools",
    "/dev/nvidia-modeset",
    "/dev/nvidia-caps/nvidia-cap1",
    "/dev/nvidia-caps/nvidia-cap2",
    "/dev/dri/card0",
    "/dev/dri/renderD128",
)

NVIDIA_SMI_TIMEOUT = 30


class DeviceInventory(ABC):

    def primary_path(self, index: int) -> str:
        return PRIMARY_DEVICE_TEMPLATE.format(index=index)

    def shared_paths(self) -> Tuple[str, ...]:
        return SHARED_DEVICE_PATHS

    def enumerate(self, index: int) -> List[str]:
        """Candidate device paths for one accelerator, primary node first."""
        return [self.primary_path(index), *self.shared_paths()]

    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def device_numbers(self, path: str) -> Optional[Tuple[int, int]]:
        """(major, minor) of a character device, None if the path is not one."""

    @abstractmethod
    def pci_id(self, index: int) -> Optional[str]: ...

    @abstractmethod
    def indices(self) -> List[int]:
        """Accelerator indices the host driver reports."""


class HostDeviceInventory(DeviceInventory):
    """Reads ``/dev`` (optionally under another root) and queries ``nvidia-smi``."""

    def __init__(self, logger: logging.Logger, dev_root: Path = Path("/")) -> None:
        self._logger = logger
        self._root = Path(dev_root)

    def _resolve(self, path: str) -> Path:
        return self._root / path.lstrip("/")

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def device_numbers(self, path: str) -> Optional[Tuple[int, int]]:
        try:
            st = os.stat(self._resolve(path))
        except FileNotFoundError:
            return None
        if not stat.S_ISCHR(st.st_mode):
            self._logger.warning(f"{path} exists but is not a character device")
            return None
        return os.major(st.st_rdev), os.minor(st.st_rdev)

    def _query(self, *args: str) -> Optional[List[str]]:
        try:
            proc = subprocess.run(
                ["nvidia-smi", *args, "--format=csv,noheader"],
                capture_output=True, text=True, timeout=NVIDIA_SMI_TIMEOUT,
            )
        except FileNotFoundError:
            self._logger.warning("nvidia-smi not found on host")
            return None
        except subprocess.TimeoutExpired:
            self._logger.warning(f"nvidia-smi timed out after {NVIDIA_SMI_TIMEOUT}s")
            return None
        if proc.returncode != 0:
            self._logger.warning(f"nvidia-smi failed ({proc.returncode}): {proc.stderr.strip()}")
            return None
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def pci_id(self, index: int) -> Optional[str]:
        lines = self._query("--query-gpu=pci.bus_id", "-i", str(index))
        return lines[0] if lines else None

    def indices(self) -> List[int]:
        lines = self._query("--query-gpu=index")
        if not lines:
            return []
        return sorted(int(line) for line in lines if line.isdigit())


__all__ = [
    "DeviceInventory",
    "HostDeviceInventory",
    "SHARED_DEVICE_PATHS",
    "PRIMARY_DEVICE_TEMPLATE",
]
