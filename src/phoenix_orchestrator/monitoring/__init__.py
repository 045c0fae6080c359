"""
Monitoring module for Phoenix Orchestrator.

Post-provisioning health probes for declared workloads.
"""

from __future__ import annotations

from phoenix_orchestrator.monitoring.health_check import HealthChecker, resolve_health_url

__all__ = ["HealthChecker", "resolve_health_url"]
