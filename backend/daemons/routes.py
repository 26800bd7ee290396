"""
Daemon API routes for the Raptor control panel

Provides REST endpoints for:
- Registering, updating and removing daemons
- Probing daemon health (registered or not)
"""

import logging
from typing import List

from fastapi import APIRouter, Depends

from control_plane import ControlPlane, get_control_plane
from models.request_models import DaemonCreate, DaemonUpdate, DaemonPing

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/daemons", tags=["daemons"])


@router.get("", response_model=List[dict])
async def list_daemons(plane: ControlPlane = Depends(get_control_plane)):
    """All daemons with their cached (advisory) health"""
    return plane.registry.list_daemons()


@router.post("", status_code=201)
async def register_daemon(request: DaemonCreate, plane: ControlPlane = Depends(get_control_plane)):
    """
    Register a daemon.

    The response carries the daemon's api_key; when none was supplied one is
    generated and this is the only time it is returned.
    """
    return plane.registry.register(
        name=request.name,
        host=request.host,
        port=request.port,
        secure=request.secure,
        api_key=request.api_key,
        location=request.location,
    )


@router.post("/ping")
async def ping_daemon(request: DaemonPing, plane: ControlPlane = Depends(get_control_plane)):
    """Check an endpoint before registering it; never fails, reports online=false instead"""
    return await plane.registry.ping(request.host, request.port, request.api_key, secure=request.secure)


@router.get("/{daemon_id}")
async def get_daemon(daemon_id: str, plane: ControlPlane = Depends(get_control_plane)):
    return plane.registry.get(daemon_id)


@router.put("/{daemon_id}")
async def update_daemon(daemon_id: str, request: DaemonUpdate, plane: ControlPlane = Depends(get_control_plane)):
    return plane.registry.update(daemon_id, **request.model_dump(exclude_unset=True))


@router.delete("/{daemon_id}")
async def delete_daemon(daemon_id: str, plane: ControlPlane = Depends(get_control_plane)):
    """Rejected with 409 while the daemon still owns containers"""
    await plane.registry.deregister(daemon_id)
    return {"success": True}


@router.get("/{daemon_id}/status")
async def daemon_status(daemon_id: str, plane: ControlPlane = Depends(get_control_plane)):
    """Probe now and return the fresh health record"""
    health = await plane.registry.probe_health(daemon_id)
    return health.to_dict()
