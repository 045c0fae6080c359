"""
Accelerator device discovery and passthrough planning for LXC containers.
"""

from __future__ import annotations

from phoenix_orchestrator.devices.inventory import DeviceInventory, HostDeviceInventory
from phoenix_orchestrator.devices.lxc_config import LxcConfig
from phoenix_orchestrator.devices.passthrough import DevicePassthroughPlanner

__all__ = ["DeviceInventory", "HostDeviceInventory", "DevicePassthroughPlanner", "LxcConfig"]
