"""
Runtime settings for Phoenix Orchestrator.

Read once from the environment at start-up and passed down explicitly;
nothing below reads ``os.environ`` on its own.
"""

from __future__ import annotations

import getpass
import os
import socket
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_CONFIG_FILE = "/usr/local/etc/phoenix_lxc_configs.json"
DEFAULT_MARKER_DIR = "/var/lib/phoenix_orchestrator/markers"
DEFAULT_LOCK_DIR = "/run/phoenix_orchestrator/locks"
DEFAULT_LXC_CONF_DIR = "/etc/pve/lxc"
DEFAULT_TEMPLATE = "local:vztmpl/ubuntu-24.04-standard_24.04-2_amd64.tar.zst"


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def default_owner() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = str(os.getuid())
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


@dataclass(frozen=True)
class Settings:
    config_file: Path = Path(DEFAULT_CONFIG_FILE)
    marker_dir: Path = Path(DEFAULT_MARKER_DIR)
    lock_dir: Path = Path(DEFAULT_LOCK_DIR)
    lxc_conf_dir: Path = Path(DEFAULT_LXC_CONF_DIR)
    dev_root: Path = Path("/")
    marker_backend: str = "file"
    postgres_url: Optional[str] = None
    retry_attempts: int = 3
    retry_delay_seconds: float = 10.0
    rollback_on_failure: bool = True
    default_template: str = DEFAULT_TEMPLATE
    default_storage_pool: str = "lxc-disks"
    default_storage_size_gb: int = 32
    default_cores: int = 2
    default_memory_mb: int = 2048
    default_features: str = "nesting=1"
    owner: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        backend = env.get("PHOENIX_MARKER_BACKEND", "file").strip().lower()
        if backend not in ("file", "postgres"):
            raise ValueError(f"PHOENIX_MARKER_BACKEND must be 'file' or 'postgres', got {backend!r}")
        return cls(
            config_file=Path(env.get("PHOENIX_CONFIG_FILE", DEFAULT_CONFIG_FILE)),
            marker_dir=Path(env.get("PHOENIX_MARKER_DIR", DEFAULT_MARKER_DIR)),
            lock_dir=Path(env.get("PHOENIX_LOCK_DIR", DEFAULT_LOCK_DIR)),
            lxc_conf_dir=Path(env.get("PHOENIX_LXC_CONF_DIR", DEFAULT_LXC_CONF_DIR)),
            dev_root=Path(env.get("PHOENIX_DEV_ROOT", "/")),
            marker_backend=backend,
            postgres_url=env.get("POSTGRES_URL") or None,
            retry_attempts=int(env.get("PHOENIX_RETRY_ATTEMPTS", "3")),
            retry_delay_seconds=float(env.get("PHOENIX_RETRY_DELAY", "10")),
            rollback_on_failure=_env_bool(env.get("PHOENIX_ROLLBACK_ON_FAILURE"), True),
            default_template=env.get("PHOENIX_DEFAULT_TEMPLATE", DEFAULT_TEMPLATE),
            default_storage_pool=env.get("PHOENIX_DEFAULT_STORAGE_POOL", "lxc-disks"),
            default_storage_size_gb=int(env.get("PHOENIX_DEFAULT_STORAGE_SIZE_GB", "32")),
            default_cores=int(env.get("PHOENIX_DEFAULT_CORES", "2")),
            default_memory_mb=int(env.get("PHOENIX_DEFAULT_MEMORY_MB", "2048")),
            default_features=env.get("PHOENIX_DEFAULT_FEATURES", "nesting=1"),
            owner=env.get("PHOENIX_OWNER") or default_owner(),
        )

    @property
    def retry_policy(self):
        from phoenix_orchestrator.core.models import RetryPolicy

        return RetryPolicy(max_attempts=self.retry_attempts, delay_seconds=self.retry_delay_seconds)

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)


__all__ = ["Settings", "default_owner"]
