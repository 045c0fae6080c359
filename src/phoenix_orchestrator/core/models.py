"""
Data model for Phoenix Orchestrator.

Container declarations are pydantic models decoded once at the ConfigStore
boundary and frozen afterwards. Everything produced at run time (plans,
markers, stage results) is a plain dataclass.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_MAC_RE = re.compile(r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$")
_INDEX_SPLIT_RE = re.compile(r"[,\s]+")


def parse_gpu_indices(value: Any) -> Tuple[int, ...]:
    """Decode a declared GPU assignment into an ordered tuple of unique indices.

    Accepts ``"0,1"``, ``"0 1"``, ``[0, 1]``, ``"none"``, ``""`` and ``None``.
    Raises ValueError on anything that is not a non-negative integer.
    """
    if value is None:
        return ()
    if isinstance(value, str):
        text = value.strip()
        if not text or text.lower() == "none":
            return ()
        items: Iterable[Any] = [p for p in _INDEX_SPLIT_RE.split(text) if p]
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        items = [value]

    out: List[int] = []
    for item in items:
        if isinstance(item, bool):
            raise ValueError(f"Invalid GPU index: {item!r} (must be numeric)")
        if isinstance(item, int):
            index = item
        elif isinstance(item, str) and item.strip().isdigit():
            index = int(item.strip())
        else:
            raise ValueError(f"Invalid GPU index: {item!r} (must be numeric)")
        if index < 0:
            raise ValueError(f"Invalid GPU index: {item!r} (must be non-negative)")
        if index not in out:
            out.append(index)
    return tuple(out)


def parse_network_string(value: str) -> Dict[str, Any]:
    """Split ``ip/cidr,gateway[,dns]`` into NetworkConfig fields."""
    parts = [p.strip() for p in value.split(",")]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ValueError(
            f"Invalid network config {value!r}. Expected format: <ip/cidr>,<gateway>[,<dns>]"
        )
    out: Dict[str, Any] = {"ip": parts[0], "gateway": parts[1]}
    if len(parts) > 2 and parts[2]:
        out["nameserver"] = parts[2].split(";")[0]
    return out


# ---------- declarations ----------

class StorageConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    pool: str = "lxc-disks"
    size_gb: int = Field(default=32, gt=0)


class NetworkConfig(BaseModel):
    """Network settings for ``net0``; decoded from ``ip/cidr,gw,dns`` strings."""

    model_config = ConfigDict(frozen=True)

    ip: str
    gateway: str
    nameserver: str = "8.8.8.8"
    bridge: str = "vmbr0"
    interface: str = "eth0"
    mac_address: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return parse_network_string(data)
        return data

    @field_validator("ip")
    @classmethod
    def _check_ip(cls, v: str) -> str:
        if v == "dhcp":
            return v
        if "/" not in v:
            raise ValueError(f"Invalid ip {v!r}. Expected format: x.x.x.x/yy")
        ipaddress.IPv4Interface(v)
        return v

    @field_validator("gateway", "nameserver")
    @classmethod
    def _check_ipv4(cls, v: str) -> str:
        ipaddress.IPv4Address(v)
        return v

    @field_validator("mac_address")
    @classmethod
    def _check_mac(cls, v: Optional[str]) -> Optional[str]:
        if v in (None, "", "null", "empty"):
            return None
        if not _MAC_RE.match(v):
            raise ValueError(f"Invalid MAC address {v!r}. Expected format: xx:xx:xx:xx:xx:xx")
        if int(v.split(":")[0], 16) & 1:
            raise ValueError(f"MAC address {v!r} is not unicast")
        return v

    @property
    def address(self) -> Optional[str]:
        """Bare IPv4 address without prefix length, None for DHCP."""
        if self.ip == "dhcp":
            return None
        return str(ipaddress.IPv4Interface(self.ip).ip)

    def to_net0(self) -> str:
        net0 = f"name={self.interface},bridge={self.bridge},ip={self.ip},gw={self.gateway}"
        if self.mac_address:
            net0 += f",hwaddr={self.mac_address}"
        return net0


class ContainerSpec(BaseModel):
    """One declared container. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(gt=0)
    name: str = Field(min_length=1)
    cores: int = Field(default=2, gt=0)
    memory_mb: int = Field(default=2048, gt=0)
    swap_mb: int = Field(default=512, ge=0)
    template: str = ""
    features: str = "nesting=1"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    network: NetworkConfig
    gpu_assignment: Tuple[int, ...] = ()
    runtime_commands: Tuple[str, ...] = ()
    service_parameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("gpu_assignment", mode="before")
    @classmethod
    def _decode_gpus(cls, v: Any) -> Tuple[int, ...]:
        return parse_gpu_indices(v)

    @property
    def is_core(self) -> bool:
        """Core infrastructure containers (990-999) are provisioned first."""
        return 990 <= self.id <= 999


# ---------- run-time records ----------

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")


@dataclass(frozen=True)
class MarkerRecord:
    key: str
    timestamp: datetime
    owner: str

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "timestamp": self.timestamp.isoformat(), "owner": self.owner}


class ContainerStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CgroupRule:
    """``lxc.cgroup2.devices.allow`` grant for a character device class."""

    major: int
    minor: Optional[int] = None

    def render(self) -> str:
        minor = "*" if self.minor is None else str(self.minor)
        return f"c {self.major}:{minor} rwm"

    def __lt__(self, other: "CgroupRule") -> bool:
        return (self.major, -1 if self.minor is None else self.minor) < (
            other.major, -1 if other.minor is None else other.minor)


@dataclass(frozen=True)
class DeviceDescriptor:
    host_path: str
    major: int
    minor: Optional[int]
    container_path: str

    def render_mount(self) -> str:
        return f"{self.host_path} {self.container_path} none bind,optional,create=file"


@dataclass(frozen=True)
class PassthroughPlan:
    cgroup_rules: FrozenSet[CgroupRule] = frozenset()
    mount_entries: Tuple[DeviceDescriptor, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.cgroup_rules and not self.mount_entries

    def sorted_rules(self) -> List[CgroupRule]:
        return sorted(self.cgroup_rules)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cgroup_rules": [r.render() for r in self.sorted_rules()],
            "mount_entries": [
                {"host_path": d.host_path, "container_path": d.container_path,
                 "major": d.major, "minor": d.minor}
                for d in self.mount_entries
            ],
        }


class StageScope(str, Enum):
    HOST = "host"
    CONTAINER = "container"


class StageStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Stage:
    id: str
    scope: StageScope
    action: Callable[[], Any]
    idempotency_key: str
    container_id: Optional[int] = None


@dataclass
class ExecutionResult:
    stage_id: str
    status: StageStatus
    attempts: int = 0
    last_error: Optional[BaseException] = None
    container_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status in (StageStatus.SUCCESS, StageStatus.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "container_id": self.container_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": str(self.last_error) if self.last_error else None,
        }


@dataclass
class ContainerReport:
    container_id: int
    results: List[ExecutionResult] = field(default_factory=list)
    error: Optional[BaseException] = None
    rolled_back: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None and all(r.ok for r in self.results)


@dataclass
class RunReport:
    host_results: List[ExecutionResult] = field(default_factory=list)
    containers: Dict[int, ContainerReport] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return sum(1 for c in self.containers.values() if c.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for c in self.containers.values() if not c.succeeded)

    @property
    def exit_code(self) -> int:
        host_ok = all(r.ok for r in self.host_results)
        return 0 if host_ok and self.failed == 0 else 1
