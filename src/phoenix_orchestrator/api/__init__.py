"""
API module for Phoenix Orchestrator.

This module provides the read-only FastAPI status API.
"""

from __future__ import annotations

__all__ = ["app", "run_server"]


def run_server(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Run the API server."""
    import uvicorn

    from phoenix_orchestrator.api.app import app

    uvicorn.run(app, host=host, port=port)
