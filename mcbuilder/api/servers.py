# mcbuilder/api/servers.py
"""
Minecraft Builder – server API
==============================

Operator-mode endpoints:

1) GET  /api/servers
      -> keys of every MinecraftServer the controller can see.

2) GET  /api/servers/{namespace}/{name}
      -> phase, fingerprint, java version and last error of one resource,
         plus the build currently published for it on this node.

3) POST /api/servers/{namespace}/{name}/reconcile
      -> queues an immediate reconcile pass and responds with
         202 Accepted.  Poll (2) to watch the phase change.

The routes read their collaborators from `request.app.state`:

• client      -> ResourceClient
• controller  -> Controller
• builder     -> Builder
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel

from mcbuilder.core.builder import current_build
from mcbuilder.core.errors import ApiUnavailable, InvalidResource
from mcbuilder.core.models import MinecraftServer, ResourceKey

router = APIRouter(tags=["servers"])


# ──────────────────────────────────────────────
# Response models
# ──────────────────────────────────────────────
class ServerStatusResponse(BaseModel):
    namespace: str
    name: str
    generation: int
    observedGeneration: Optional[int] = None
    phase: Optional[str] = None
    lastFingerprint: Optional[str] = None
    publishedFingerprint: Optional[str] = None
    javaVersion: Optional[str] = None
    lastError: Optional[str] = None
    lastTransitionTime: Optional[datetime] = None
    lastCheckTime: Optional[datetime] = None
    reducedTrustArtifacts: List[str] = []
    scheduled: bool = False


class ReconcileResponse(BaseModel):
    detail: str


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────
async def _load_or_404(request: Request, key: ResourceKey) -> MinecraftServer:
    try:
        server = await request.app.state.client.get(key)
    except ApiUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Orchestration API unavailable: {exc}",
        ) from exc
    except InvalidResource as exc:
        # still show the status the reconciler wrote for it
        if exc.server is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
        server = exc.server
    if server is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{key} not found")
    return server


# ──────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────
@router.get("/servers", response_model=List[str])
async def list_servers(request: Request):
    try:
        keys = await request.app.state.client.list_keys()
    except ApiUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return sorted(str(k) for k in keys)


@router.get("/servers/{namespace}/{name}", response_model=ServerStatusResponse)
async def get_server(namespace: str, name: str, request: Request):
    key = ResourceKey(namespace, name)
    server = await _load_or_404(request, key)
    st = server.status
    builder = request.app.state.builder

    return ServerStatusResponse(
        namespace=namespace,
        name=name,
        generation=server.metadata.generation,
        observedGeneration=st.observed_generation,
        phase=st.phase.value if st.phase else None,
        lastFingerprint=st.last_fingerprint,
        publishedFingerprint=current_build(builder.output_for(key)),
        javaVersion=st.java_version,
        lastError=st.last_error,
        lastTransitionTime=st.last_transition_time,
        lastCheckTime=st.last_check_time,
        reducedTrustArtifacts=st.reduced_trust_artifacts,
        scheduled=request.app.state.controller.is_scheduled(key),
    )


@router.post(
    "/servers/{namespace}/{name}/reconcile",
    response_model=ReconcileResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reconcile_server(namespace: str, name: str, request: Request):
    """
    Queue a pass right away; the work queue keeps it single-flight.
    """
    key = ResourceKey(namespace, name)
    await _load_or_404(request, key)
    request.app.state.controller.add(key)
    return ReconcileResponse(detail=f"Reconcile of {key} queued")
