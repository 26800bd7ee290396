"""
Container API routes for the Raptor control panel

Provides REST endpoints for:
- Creating, inspecting, updating and deleting containers
- Lifecycle commands (start, stop, restart, kill, graceful stop)
- Console input
- Allocation bindings (bind, unbind, set primary)
- Daemon state reports

Lifecycle commands return the container with its state at the time the
command was accepted (e.g. `starting`); the final state arrives as a
lifecycle event once the daemon confirms it.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from allocations.sync import sync_allocations
from control_plane import ControlPlane, get_control_plane
from models.request_models import (
    ContainerCreate, ResourceUpdate, GracefulStopRequest, ConsoleCommand, BindRequest, StateReport,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/containers", tags=["containers"])


# ==================== Containers ====================

@router.get("", response_model=List[dict])
async def list_containers(
    daemon_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    plane: ControlPlane = Depends(get_control_plane),
):
    return plane.provisioner.list_containers(daemon_id=daemon_id, user_id=user_id)


@router.post("", status_code=201)
async def create_container(request: ContainerCreate, plane: ControlPlane = Depends(get_control_plane)):
    """Create the container on its daemon, then persist it `stopped` with its allocations bound"""
    return await plane.provisioner.create_container(**request.model_dump())


@router.get("/{container_id}")
async def get_container(container_id: str, plane: ControlPlane = Depends(get_control_plane)):
    data = plane.provisioner.get_container(container_id)
    data['streams'] = plane.multiplexer.channel_status(container_id)
    data['stop_pending'] = plane.lifecycle.has_pending_stop(container_id)
    return data


@router.patch("/{container_id}")
async def update_container(container_id: str, request: ResourceUpdate, plane: ControlPlane = Depends(get_control_plane)):
    """Update resource limits and/or startup configuration"""
    result = await plane.provisioner.update_resources(container_id, **request.limits())
    if request.changes_startup():
        result = await plane.provisioner.update_startup(
            container_id,
            startup_script=request.startup_script,
            startup_variables=request.startup_variables,
            stop_command=request.stop_command,
        )
    return result


@router.delete("/{container_id}")
async def delete_container(
    container_id: str,
    force: bool = Query(False),
    plane: ControlPlane = Depends(get_control_plane),
):
    """Only stopped containers can be deleted; their allocations return to the pool"""
    await plane.lifecycle.delete(container_id, force=force)
    return {"success": True}


# ==================== Lifecycle ====================

@router.post("/{container_id}/start")
async def start_container(container_id: str, plane: ControlPlane = Depends(get_control_plane)):
    return await plane.lifecycle.start(container_id)


@router.post("/{container_id}/stop")
async def stop_container(container_id: str, plane: ControlPlane = Depends(get_control_plane)):
    """Graceful stop with the default timeout"""
    return await plane.lifecycle.graceful_stop(container_id)


@router.post("/{container_id}/graceful-stop")
async def graceful_stop_container(
    container_id: str,
    request: Optional[GracefulStopRequest] = None,
    plane: ControlPlane = Depends(get_control_plane),
):
    timeout = request.timeout if request is not None else None
    return await plane.lifecycle.graceful_stop(container_id, timeout=timeout)


@router.post("/{container_id}/restart")
async def restart_container(container_id: str, plane: ControlPlane = Depends(get_control_plane)):
    return await plane.lifecycle.restart(container_id)


@router.post("/{container_id}/kill")
async def kill_container(container_id: str, plane: ControlPlane = Depends(get_control_plane)):
    """Always allowed; a no-op on a stopped container"""
    return await plane.lifecycle.kill(container_id)


@router.post("/{container_id}/command")
async def send_command(container_id: str, request: ConsoleCommand, plane: ControlPlane = Depends(get_control_plane)):
    """Forward console input; 409 NotRunning unless the container is running"""
    return await plane.multiplexer.send_input(container_id, request.command)


@router.post("/{container_id}/report")
async def report_state(container_id: str, request: StateReport, plane: ControlPlane = Depends(get_control_plane)):
    """State pushed by the owning daemon; safe to repeat"""
    state = await plane.lifecycle.handle_daemon_report(container_id, request.state, detail=request.detail)
    return {"container_id": container_id, "status": state}


# ==================== Allocations ====================

@router.get("/{container_id}/allocations", response_model=List[dict])
async def list_container_allocations(container_id: str, plane: ControlPlane = Depends(get_control_plane)):
    """Primary first, then in binding order"""
    plane.provisioner.get_container(container_id)
    return plane.pool.list_bindings(container_id)


@router.post("/{container_id}/allocations", status_code=201)
async def bind_allocation(container_id: str, request: BindRequest, plane: ControlPlane = Depends(get_control_plane)):
    binding = plane.pool.bind(container_id, request.allocation_id, make_primary=request.make_primary)
    await sync_allocations(plane.pool, plane.dispatcher, container_id)
    return binding


@router.delete("/{container_id}/allocations/{allocation_id}")
async def unbind_allocation(container_id: str, allocation_id: str, plane: ControlPlane = Depends(get_control_plane)):
    """Removing the primary promotes the earliest remaining binding"""
    promoted = plane.pool.unbind(container_id, allocation_id)
    await sync_allocations(plane.pool, plane.dispatcher, container_id)
    return {"success": True, "promoted_allocation_id": promoted}


@router.post("/{container_id}/allocations/{allocation_id}/primary")
async def set_primary_allocation(container_id: str, allocation_id: str, plane: ControlPlane = Depends(get_control_plane)):
    plane.pool.set_primary(container_id, allocation_id)
    await sync_allocations(plane.pool, plane.dispatcher, container_id)
    return plane.pool.list_bindings(container_id)
