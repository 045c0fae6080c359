"""
Main entry points for Phoenix Orchestrator.

Wires settings, configuration, stores and backends together and exposes the
operations the CLI and the status API call.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from phoenix_orchestrator.core.config_store import ConfigSnapshot, ConfigStore
from phoenix_orchestrator.core.errors import EnvironmentalError, OrchestratorError
from phoenix_orchestrator.core.lifecycle import ContainerLifecycle, PctLifecycle
from phoenix_orchestrator.core.orchestrator import Orchestrator
from phoenix_orchestrator.core.retry import RetryExecutor
from phoenix_orchestrator.core.stages import ContainerStages, HostStages
from phoenix_orchestrator.devices.inventory import DeviceInventory, HostDeviceInventory
from phoenix_orchestrator.devices.passthrough import DevicePassthroughPlanner
from phoenix_orchestrator.settings import Settings
from phoenix_orchestrator.storage.marker_store import FileMarkerStore, MarkerStore, container_marker_prefix
from phoenix_orchestrator.storage.postgres_store import PostgresStore
from phoenix_orchestrator.utils.logger import get_logger

REQUIRED_TOOLS = ("pct",)


def build_marker_store(settings: Settings, logger: logging.Logger) -> MarkerStore:
    if settings.marker_backend == "postgres":
        return PostgresStore(logger, dsn=settings.postgres_url)
    store = FileMarkerStore(settings.marker_dir, logger)
    store.ensure_root()
    return store


def require_tools(tools=REQUIRED_TOOLS) -> None:
    missing = [t for t in tools if shutil.which(t) is None]
    if missing:
        raise EnvironmentalError(f"Required tool(s) not found on PATH: {', '.join(missing)}")


@dataclass
class Context:
    """Collaborators for one invocation."""

    settings: Settings
    logger: logging.Logger
    snapshot: ConfigSnapshot
    markers: MarkerStore
    lifecycle: ContainerLifecycle
    inventory: DeviceInventory
    planner: DevicePassthroughPlanner

    def build_orchestrator(self) -> Orchestrator:
        host = HostStages(self.snapshot, self.inventory, self.logger)
        containers = ContainerStages(self.lifecycle, self.planner, self.logger)
        event_sink = self.markers.record_event if isinstance(self.markers, PostgresStore) else None
        return Orchestrator(
            self.snapshot,
            self.markers,
            RetryExecutor(self.logger),
            self.lifecycle,
            self.logger,
            host_stages=host.build(),
            container_stages=containers.build,
            policy=self.settings.retry_policy,
            owner=self.settings.owner,
            lock_dir=self.settings.lock_dir,
            event_sink=event_sink,
            rollback_on_failure=self.settings.rollback_on_failure,
        )


def build_context(settings: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> Context:
    settings = settings or Settings.from_env()
    logger = logger or get_logger()
    snapshot = ConfigStore(settings, logger).load()
    inventory = HostDeviceInventory(logger, dev_root=settings.dev_root)
    return Context(
        settings=settings,
        logger=logger,
        snapshot=snapshot,
        markers=build_marker_store(settings, logger),
        lifecycle=PctLifecycle(logger, config_dir=settings.lxc_conf_dir),
        inventory=inventory,
        planner=DevicePassthroughPlanner(inventory, settings.lxc_conf_dir, logger),
    )


def run(ctx: Optional[Context] = None, *, check_tools: bool = True) -> int:
    """Provision every declared container. Returns the process exit code."""
    logger = ctx.logger if ctx else get_logger()
    try:
        if check_tools:
            require_tools()
        ctx = ctx or build_context(logger=logger)
        report = ctx.build_orchestrator().run()
    except OrchestratorError as e:
        logger.error(f"Run aborted: {e}")
        return 1

    for container_id, container in report.containers.items():
        if not container.succeeded:
            note = " (rolled back)" if container.rolled_back else ""
            logger.error(f"Container {container_id} failed: {container.error}{note}")
    logger.info(f"Summary: {report.succeeded} succeeded, {report.failed} failed")
    return report.exit_code


def plan(ctx: Context, container_id: int) -> Dict[str, Any]:
    """Passthrough plan for one container against the current host, without applying it."""
    spec = ctx.snapshot.get(container_id)
    result = ctx.planner.plan(spec.gpu_assignment)
    return {
        "container_id": container_id,
        "gpu_assignment": list(spec.gpu_assignment),
        "config_path": str(ctx.planner.config_path(container_id)),
        "current_directives": ctx.planner.describe(container_id),
        **result.to_dict(),
    }


def list_markers(ctx: Context, prefix: str = "") -> List[Dict[str, Any]]:
    out = []
    for key in ctx.markers.keys(prefix):
        record = ctx.markers.get(key)
        if record is not None:
            out.append(record.to_dict())
    return out


def teardown(ctx: Context, container_id: Optional[int] = None) -> int:
    """Destroy one declared container (or all) and revoke its markers."""
    ids = [container_id] if container_id is not None else ctx.snapshot.container_ids()
    failures = 0
    for cid in ids:
        try:
            ctx.lifecycle.destroy(cid)
        except OrchestratorError as e:
            failures += 1
            ctx.logger.error(f"Teardown of container {cid} failed: {e}")
            continue
        removed = ctx.markers.revoke_prefix(container_marker_prefix(cid))
        ctx.logger.info(f"Container {cid} torn down, {removed} marker(s) revoked")
    if container_id is None and failures == 0:
        ctx.markers.clear()
    return 0 if failures == 0 else 1


__all__ = ["Context", "build_context", "build_marker_store", "require_tools", "run", "plan",
           "list_markers", "teardown"]
