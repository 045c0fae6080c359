"""
Utilities module for Phoenix Orchestrator.

This module provides common utilities like logging configuration.
"""

from __future__ import annotations

from phoenix_orchestrator.utils.logger import configure_logger, get_logger

__all__ = ["get_logger", "configure_logger"]
