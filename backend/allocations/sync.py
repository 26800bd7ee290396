"""
Push a container's current allocation bindings to its daemon.

The daemon maps ports from this list when the container (re)starts, so the
control plane sends it before every start and after binding changes. Failure
is logged and returned, never raised: a stale mapping on the daemon must not
block lifecycle commands.
"""

import logging
from typing import Dict, List

from allocations.pool import AllocationPool
from dispatch.dispatcher import CommandDispatcher, CommandResult, DaemonCommand

logger = logging.getLogger(__name__)


def allocation_payload(bindings: List[dict]) -> Dict[str, list]:
    """Daemon body for PATCH /containers/{id}: {"allocations": [...]}, primary first"""
    return {
        "allocations": [
            {
                "allocationId": binding['allocation_id'],
                "ip": binding['ip'],
                "port": binding['port'],
                "protocol": binding['protocol'],
                "isPrimary": binding['is_primary'],
            }
            for binding in bindings
        ]
    }


async def sync_allocations(pool: AllocationPool, dispatcher: CommandDispatcher, container_id: str) -> CommandResult:
    bindings = pool.list_bindings(container_id)
    result = await dispatcher.dispatch(container_id, DaemonCommand.UPDATE, allocation_payload(bindings))
    if result.success:
        logger.debug(f"Synced {len(bindings)} allocation(s) to container {container_id[:8]}")
    else:
        logger.warning(f"Failed to sync allocations for container {container_id[:8]}: {result.error}")
    return result
