"""
Allocation API routes for the Raptor control panel

Provides REST endpoints for:
- Listing, creating and deleting allocations (single ports or ranges)
- Changing an allocation's protocol
- Listing a daemon's unbound allocations
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from allocations.sync import sync_allocations
from control_plane import ControlPlane, get_control_plane
from errors import Conflict
from models.request_models import AllocationCreate, AllocationUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/allocations", tags=["allocations"])


@router.get("", response_model=List[dict])
async def list_allocations(
    daemon_id: Optional[str] = Query(None),
    plane: ControlPlane = Depends(get_control_plane),
):
    return plane.pool.list_allocations(daemon_id=daemon_id)


@router.get("/available", response_model=List[dict])
async def list_available(daemon_id: str = Query(...), plane: ControlPlane = Depends(get_control_plane)):
    """Allocations of a daemon that no container is bound to"""
    return plane.pool.list_available(daemon_id)


@router.post("", status_code=201)
async def create_allocations(request: AllocationCreate, plane: ControlPlane = Depends(get_control_plane)):
    """
    Create one allocation, or one per port when port_end is given.

    Ports of a range that already exist are skipped and reported; a single
    port that already exists is a 409.
    """
    if request.port_end is None:
        return {"created": [plane.pool.create(request.daemon_id, request.ip, request.port,
                                              request.protocol, request.notes)],
                "skipped": []}

    created, skipped = [], []
    for port in range(request.port, request.port_end + 1):
        try:
            created.append(plane.pool.create(request.daemon_id, request.ip, port, request.protocol, request.notes))
        except Conflict:
            skipped.append(port)

    if skipped:
        logger.info(f"Skipped {len(skipped)} existing port(s) on {request.ip} for daemon {request.daemon_id[:8]}")
    return {"created": created, "skipped": skipped}


@router.get("/{allocation_id}")
async def get_allocation(allocation_id: str, plane: ControlPlane = Depends(get_control_plane)):
    return plane.pool.get(allocation_id)


@router.patch("/{allocation_id}")
async def update_allocation(
    allocation_id: str,
    request: AllocationUpdate,
    plane: ControlPlane = Depends(get_control_plane),
):
    """Change the protocol; a bound container gets its allocations re-synced"""
    container_id = plane.pool.update_protocol(allocation_id, request.protocol)
    if container_id:
        await sync_allocations(plane.pool, plane.dispatcher, container_id)
    return plane.pool.get(allocation_id)


@router.delete("/{allocation_id}")
async def delete_allocation(allocation_id: str, plane: ControlPlane = Depends(get_control_plane)):
    """Rejected with 409 while the allocation is bound"""
    plane.pool.delete(allocation_id)
    return {"success": True}
