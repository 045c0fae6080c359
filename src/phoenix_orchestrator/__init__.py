"""
Phoenix Orchestrator - GPU container provisioning for Proxmox VE hosts.

This package provides:
- An idempotent, marker-tracked stage pipeline for LXC containers
- Accelerator device passthrough planning and LXC config rewriting
- File and PostgreSQL-backed stage markers
- Workload deployment and health probing inside provisioned containers
- A read-only status API
"""

from __future__ import annotations

__version__ = "1.0.0"

from phoenix_orchestrator.utils.logger import get_logger

__all__ = [
    "get_logger",
    "__version__",
]
