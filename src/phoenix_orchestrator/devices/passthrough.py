"""
Device passthrough planner.

Turns a container's accelerator indices into device-cgroup grants and bind
mounts, then rewrites the container's LXC configuration so that applying the
same plan twice leaves the file byte-identical.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from phoenix_orchestrator.core.errors import PassthroughError
from phoenix_orchestrator.core.models import CgroupRule, DeviceDescriptor, PassthroughPlan
from phoenix_orchestrator.devices.inventory import DeviceInventory
from phoenix_orchestrator.devices.lxc_config import LxcConfig


def normalize_indices(indices: Iterable[Any]) -> Tuple[int, ...]:
    """Validate, deduplicate and sort accelerator indices."""
    out: Set[int] = set()
    for raw in indices:
        if isinstance(raw, bool):
            raise PassthroughError(f"Invalid GPU index: {raw!r} (must be numeric)")
        if isinstance(raw, int):
            index = raw
        elif isinstance(raw, str) and raw.strip().isdigit():
            index = int(raw.strip())
        else:
            raise PassthroughError(f"Invalid GPU index: {raw!r} (must be numeric)")
        if index < 0:
            raise PassthroughError(f"Invalid GPU index: {raw!r} (must be non-negative)")
        out.add(index)
    return tuple(sorted(out))


def container_relative(host_path: str) -> str:
    return host_path.lstrip("/")


class DevicePassthroughPlanner:

    def __init__(self, inventory: DeviceInventory, config_dir: Path, logger: logging.Logger) -> None:
        self._inventory = inventory
        self._config_dir = Path(config_dir)
        self._logger = logger

    def config_path(self, container_id: int) -> Path:
        return self._config_dir / f"{container_id}.conf"

    # ---------- planning ----------

    def _describe(self, path: str) -> Optional[DeviceDescriptor]:
        if not self._inventory.exists(path):
            return None
        numbers = self._inventory.device_numbers(path)
        if numbers is None:
            return None
        major, minor = numbers
        return DeviceDescriptor(host_path=path, major=major, minor=minor, container_path=container_relative(path))

    def plan(self, indices: Iterable[Any]) -> PassthroughPlan:
        """Resolve device nodes for ``indices`` against the host inventory.

        An index whose primary node is missing contributes nothing. Shared
        nodes that are missing are skipped with a warning.
        """
        wanted = normalize_indices(indices)
        resolved: Dict[str, DeviceDescriptor] = {}
        missing_shared: Set[str] = set()

        for index in wanted:
            candidates = self._inventory.enumerate(index)
            if not candidates:
                self._logger.warning(f"GPU {index}: no candidate devices on host, skipping")
                continue
            primary, shared = candidates[0], candidates[1:]
            primary_desc = self._describe(primary)
            if primary_desc is None:
                self._logger.warning(f"GPU {index}: device {primary} not found on host, skipping")
                continue
            resolved[primary] = primary_desc
            for path in shared:
                if path in resolved or path in missing_shared:
                    continue
                desc = self._describe(path)
                if desc is None:
                    missing_shared.add(path)
                    self._logger.warning(f"Device {path} not found on host, skipping")
                    continue
                resolved[path] = desc

        mounts = tuple(resolved[p] for p in sorted(resolved))
        rules = frozenset(CgroupRule(major=d.major) for d in mounts)
        return PassthroughPlan(cgroup_rules=rules, mount_entries=mounts)

    # ---------- applying ----------

    def _mounted_majors(self, config: LxcConfig) -> Set[int]:
        """Current majors of accelerator nodes the config already mounts."""
        majors: Set[int] = set()
        for d in config.passthrough_directives():
            if d.source is None:
                continue
            numbers = self._inventory.device_numbers(d.source) if self._inventory.exists(d.source) else None
            if numbers is not None:
                majors.add(numbers[0])
        return majors

    def render(self, container_id: int, plan: PassthroughPlan) -> Tuple[str, str]:
        """Return (current, rewritten) configuration text without writing."""
        path = self.config_path(container_id)
        if not path.is_file():
            raise PassthroughError(
                f"LXC config file not found: {path}. Container must exist before passthrough",
                container_id=container_id,
            )
        try:
            current = path.read_text()
        except OSError as e:
            raise PassthroughError(f"Cannot read {path}: {e}", container_id=container_id) from e
        config = LxcConfig.parse(current)
        return current, config.with_plan(plan, self._mounted_majors(config)).render()

    def apply(self, container_id: int, plan: PassthroughPlan) -> bool:
        """Rewrite the container configuration for ``plan``.

        Returns True when the file content changed. The container must be
        restarted for changed grants to take effect.
        """
        path = self.config_path(container_id)
        current, rewritten = self.render(container_id, plan)
        if rewritten == current:
            self._logger.info(f"Passthrough configuration for container {container_id} already up to date")
            return False

        if not os.access(path, os.W_OK):
            raise PassthroughError(f"LXC config file is not writable: {path}", container_id=container_id)
        try:
            self._write(path, rewritten)
        except OSError as e:
            raise PassthroughError(f"Failed to write {path}: {e}", container_id=container_id) from e

        self._logger.info(
            f"Passthrough configuration updated for container {container_id}: "
            f"{len(plan.cgroup_rules)} cgroup rule(s), {len(plan.mount_entries)} mount(s)"
        )
        return True

    @staticmethod
    def _write(path: Path, text: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def configure(self, container_id: int, indices: Iterable[Any]) -> Tuple[PassthroughPlan, bool]:
        """Plan and apply in one step; logs a warning when nothing resolved."""
        wanted = normalize_indices(indices)
        plan = self.plan(wanted)
        if wanted and plan.is_empty:
            self._logger.warning(
                f"Container {container_id}: none of GPUs {list(wanted)} resolved to host devices; "
                f"continuing without accelerator passthrough"
            )
        changed = self.apply(container_id, plan)
        return plan, changed

    def describe(self, container_id: int) -> List[str]:
        """Passthrough directives currently present in the container config."""
        path = self.config_path(container_id)
        if not path.is_file():
            return []
        config = LxcConfig.parse(path.read_text())
        return [d.raw for d in config.passthrough_directives(self._mounted_majors(config))]


__all__ = ["DevicePassthroughPlanner", "normalize_indices"]
