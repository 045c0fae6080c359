from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel

from phoenix_orchestrator import __version__
from phoenix_orchestrator.core.errors import ConfigurationError, OrchestratorError, PassthroughError
from phoenix_orchestrator.core.stages import CONTAINER_STAGE_IDS
from phoenix_orchestrator.main import Context, build_context, list_markers, plan
from phoenix_orchestrator.storage.marker_store import container_marker_key
from phoenix_orchestrator.storage.postgres_store import PostgresStore

app = FastAPI(title="Phoenix Orchestrator Status API", version=__version__)


@lru_cache(maxsize=1)
def get_context() -> Context:
    return build_context()


class MarkerOut(BaseModel):
    key: str
    timestamp: str
    owner: str


class ContainerOut(BaseModel):
    id: int
    name: Optional[str] = None
    status: str
    gpu_assignment: List[int] = []
    completed_stages: List[str] = []
    error: Optional[str] = None


class PlanOut(BaseModel):
    container_id: int
    gpu_assignment: List[int]
    config_path: str
    cgroup_rules: List[str]
    mount_entries: List[Dict[str, Any]]
    current_directives: List[str]


@app.get("/health")
def health():
    """Basic health check - just returns OK if the service is running"""
    return {"status": "OK", "version": __version__, "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/markers", response_model=List[MarkerOut])
def get_markers(prefix: str = Query(default=""), ctx: Context = Depends(get_context)):
    return list_markers(ctx, prefix)


@app.get("/containers", response_model=List[ContainerOut])
def get_containers(ctx: Context = Depends(get_context)):
    out = []
    for cid in ctx.snapshot.container_ids():
        if cid in ctx.snapshot.errors:
            out.append(ContainerOut(id=cid, status="invalid", error=str(ctx.snapshot.errors[cid])))
            continue
        spec = ctx.snapshot.specs[cid]
        try:
            status = ctx.lifecycle.status(cid).value
        except OrchestratorError as e:
            ctx.logger.warning(f"Status query for container {cid} failed: {e}")
            status = "unknown"
        completed = [s for s in CONTAINER_STAGE_IDS if ctx.markers.exists(container_marker_key(cid, s))]
        out.append(ContainerOut(
            id=cid,
            name=spec.name,
            status=status,
            gpu_assignment=list(spec.gpu_assignment),
            completed_stages=completed,
        ))
    return out


@app.get("/containers/{container_id}/plan", response_model=PlanOut)
def get_plan(container_id: int, ctx: Context = Depends(get_context)):
    try:
        return plan(ctx, container_id)
    except ConfigurationError as e:
        if container_id not in ctx.snapshot.errors:
            raise HTTPException(status_code=404, detail=f"Container {container_id} is not declared")
        raise HTTPException(status_code=422, detail=str(e))
    except PassthroughError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/events")
def get_events(
    container_id: Optional[int] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    ctx: Context = Depends(get_context),
):
    if not isinstance(ctx.markers, PostgresStore):
        raise HTTPException(status_code=404, detail="Event log requires PHOENIX_MARKER_BACKEND=postgres")
    return ctx.markers.list_events(container_id=container_id, limit=limit)
