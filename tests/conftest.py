"""
Pytest configuration for Phoenix Orchestrator tests.

The fakes below stand in for the Proxmox control plane and the host device
tree so the pipeline can run against ``tmp_path``.
"""

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

# Add the src directory to the Python path
src_path = os.path.join(os.path.dirname(__file__), '..', 'src')
sys.path.insert(0, os.path.abspath(src_path))

from phoenix_orchestrator.core.config_store import ConfigStore
from phoenix_orchestrator.core.errors import LifecycleError
from phoenix_orchestrator.core.lifecycle import ContainerLifecycle
from phoenix_orchestrator.core.models import ContainerSpec, ContainerStatus
from phoenix_orchestrator.core.orchestrator import Orchestrator
from phoenix_orchestrator.core.retry import RetryExecutor
from phoenix_orchestrator.core.stages import ContainerStages, HostStages
from phoenix_orchestrator.devices.inventory import DeviceInventory
from phoenix_orchestrator.devices.passthrough import DevicePassthroughPlanner
from phoenix_orchestrator.settings import Settings
from phoenix_orchestrator.storage.marker_store import FileMarkerStore

NVIDIA_MAJOR = 195
UVM_MAJOR = 509

BASE_LXC_CONF = """arch: amd64
cores: 2
hostname: {name}
memory: 2048
net0: name=eth0,bridge=vmbr0,ip={ip},gw=10.0.0.1
ostype: ubuntu
rootfs: lxc-disks:vm-{id}-disk-0,size=32G
swap: 512
"""


class FakeLifecycle(ContainerLifecycle):
    """In-memory container control plane that writes a config file on create."""

    def __init__(self, config_dir: Path) -> None:
        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.states: Dict[int, ContainerStatus] = {}
        self.calls: List[Tuple[str, int]] = []
        self.fail_on: Dict[str, Set[int]] = {}
        self.exec_results: Dict[str, Tuple[str, int]] = {"nvidia-smi -L": ("GPU 0: NVIDIA RTX A4000 (UUID: GPU-1)\n", 0)}

    def _maybe_fail(self, op: str, container_id: int) -> None:
        self.calls.append((op, container_id))
        if container_id in self.fail_on.get(op, set()):
            raise LifecycleError(f"pct {op} {container_id} failed", container_id=container_id)

    def create(self, container_id: int, spec: ContainerSpec) -> None:
        self._maybe_fail("create", container_id)
        if container_id in self.states:
            return
        self.states[container_id] = ContainerStatus.STOPPED
        self.config_path(container_id).write_text(
            BASE_LXC_CONF.format(name=spec.name, ip=spec.network.ip, id=container_id)
        )

    def start(self, container_id: int) -> None:
        self._maybe_fail("start", container_id)
        if container_id not in self.states:
            raise LifecycleError(f"container {container_id} does not exist")
        self.states[container_id] = ContainerStatus.RUNNING

    def stop(self, container_id: int) -> None:
        self._maybe_fail("stop", container_id)
        if container_id in self.states:
            self.states[container_id] = ContainerStatus.STOPPED

    def destroy(self, container_id: int) -> None:
        self._maybe_fail("destroy", container_id)
        self.states.pop(container_id, None)
        path = self.config_path(container_id)
        if path.exists():
            path.unlink()

    def execute(self, container_id: int, command: str) -> Tuple[str, int]:
        self._maybe_fail("execute", container_id)
        return self.exec_results.get(command, ("", 0))

    def status(self, container_id: int) -> ContainerStatus:
        return self.states.get(container_id, ContainerStatus.UNKNOWN)

    def ops(self, op: str) -> List[int]:
        return [cid for name, cid in self.calls if name == op]


class FakeInventory(DeviceInventory):
    """Device table keyed by host path."""

    def __init__(self, devices: Optional[Dict[str, Tuple[int, int]]] = None) -> None:
        self.devices = dict(devices or {})

    def exists(self, path: str) -> bool:
        return path in self.devices

    def device_numbers(self, path: str) -> Optional[Tuple[int, int]]:
        return self.devices.get(path)

    def pci_id(self, index: int) -> Optional[str]:
        return f"00000000:0{index + 1}:00.0" if f"/dev/nvidia{index}" in self.devices else None

    def indices(self) -> List[int]:
        out = []
        for path in self.devices:
            suffix = path[len("/dev/nvidia"):] if path.startswith("/dev/nvidia") else ""
            if suffix.isdigit():
                out.append(int(suffix))
        return sorted(out)


def single_gpu_devices() -> Dict[str, Tuple[int, int]]:
    return {
        "/dev/nvidia0": (NVIDIA_MAJOR, 0),
        "/dev/nvidiactl": (NVIDIA_MAJOR, 255),
        "/dev/nvidia-modeset": (NVIDIA_MAJOR, 254),
        "/dev/nvidia-uvm": (UVM_MAJOR, 0),
        "/dev/nvidia-uvm-tools": (UVM_MAJOR, 1),
    }


def container_decl(name: str, ip_suffix: int, gpus="none", **extra):
    decl = {
        "name": name,
        "network_config": f"10.0.0.{ip_suffix}/24,10.0.0.1,8.8.8.8",
        "gpu_assignment": gpus,
    }
    decl.update(extra)
    return decl


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("phoenix-orchestrator-tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        config_file=tmp_path / "lxc_configs.json",
        marker_dir=tmp_path / "markers",
        lock_dir=tmp_path / "locks",
        lxc_conf_dir=tmp_path / "lxc",
        retry_attempts=3,
        retry_delay_seconds=0,
        default_template="local:vztmpl/test.tar.zst",
        owner="tester@testhost:1",
    )


@pytest.fixture
def lifecycle(settings: Settings) -> FakeLifecycle:
    return FakeLifecycle(settings.lxc_conf_dir)


@pytest.fixture
def inventory() -> FakeInventory:
    return FakeInventory(single_gpu_devices())


@pytest.fixture
def markers(settings: Settings, logger: logging.Logger) -> FileMarkerStore:
    return FileMarkerStore(settings.marker_dir, logger)


@pytest.fixture
def planner(inventory: FakeInventory, settings: Settings, logger: logging.Logger) -> DevicePassthroughPlanner:
    return DevicePassthroughPlanner(inventory, settings.lxc_conf_dir, logger)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_orchestrator(settings, logger, lifecycle, inventory, markers, planner, sleeps):
    """Build an Orchestrator over the fakes for a ``lxc_configs`` mapping."""

    def factory(lxc_configs, *, host=None, **kwargs) -> Orchestrator:
        document = {"lxc_configs": lxc_configs}
        if host is not None:
            document["host"] = host
        snapshot = ConfigStore(settings, logger).parse(document)
        host_stages = HostStages(snapshot, inventory, logger, runner=kwargs.pop("runner", None) or _ok_runner)
        container_stages = ContainerStages(lifecycle, planner, logger)
        kwargs.setdefault("rollback_on_failure", True)
        return Orchestrator(
            snapshot,
            markers,
            RetryExecutor(logger, sleep=sleeps.append),
            lifecycle,
            logger,
            host_stages=host_stages.build(),
            container_stages=container_stages.build,
            policy=settings.retry_policy,
            owner=settings.owner,
            lock_dir=settings.lock_dir,
            **kwargs,
        )

    return factory


def _ok_runner(*args, **kwargs):
    return subprocess.CompletedProcess(args[0], 0, stdout="", stderr="")


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
    config.addinivalue_line(
        "markers", "requires_docker: marks tests that require Docker to be running"
    )
    config.addinivalue_line(
        "markers", "requires_postgres: marks tests that need a reachable PostgreSQL (POSTGRES_URL)"
    )
