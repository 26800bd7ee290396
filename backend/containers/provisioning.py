"""
Container provisioning for the Raptor control panel

Creates containers on a daemon and keeps their resource limits and startup
configuration in sync with it. Lifecycle commands live in the
LifecycleManager; this module only handles the container's definition.

Creation is daemon-first: the daemon must accept the container before
anything is persisted. The record and its allocation bindings are then
written in one transaction; if that transaction loses a race for an
allocation, the daemon-side container is removed again.
"""

import logging
import uuid
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from allocations.pool import AllocationPool
from allocations.sync import allocation_payload
from config.settings import AppConfig
from containers.startup import build_environment, render_startup_command, validate_variables
from daemons.registry import DaemonRegistry
from database import DatabaseManager, AllocationDB, ContainerAllocationDB, ContainerDB, DaemonDB
from dispatch.dispatcher import CommandDispatcher, DaemonCommand
from errors import Conflict, DaemonMismatch, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

LIMIT_FIELDS = ('memory_limit', 'cpu_limit', 'disk_limit', 'swap_limit', 'io_weight')
IO_WEIGHT_RANGE = (10, 1000)


def validate_limits(limits: Dict[str, int]):
    """All limits are positive integers; IO weight stays within the blkio range"""
    for field_name, value in limits.items():
        if field_name not in LIMIT_FIELDS:
            raise ValidationFailed(f"Unknown resource limit '{field_name}'")
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationFailed(f"{field_name} must be a positive integer, got {value!r}")

    io_weight = limits.get('io_weight')
    if io_weight is not None and not IO_WEIGHT_RANGE[0] <= io_weight <= IO_WEIGHT_RANGE[1]:
        raise ValidationFailed(f"io_weight must be between {IO_WEIGHT_RANGE[0]} and {IO_WEIGHT_RANGE[1]}")


def daemon_limits(limits: Dict[str, int]) -> Dict[str, int]:
    keys = {
        'memory_limit': 'memory',
        'cpu_limit': 'cpu',
        'disk_limit': 'disk',
        'swap_limit': 'swap',
        'io_weight': 'ioWeight',
    }
    return {keys[name]: value for name, value in limits.items()}


class ContainerProvisioner:
    """Creates containers and updates their definition on the owning daemon."""

    def __init__(
        self,
        db: DatabaseManager,
        registry: DaemonRegistry,
        dispatcher: CommandDispatcher,
        pool: AllocationPool,
    ):
        self.db = db
        self.registry = registry
        self.dispatcher = dispatcher
        self.pool = pool

    # ==================== Reads ====================

    def get_container(self, container_id: str) -> dict:
        with self.db.get_session() as session:
            container = session.get(ContainerDB, container_id)
            if container is None:
                raise NotFound(f"Container {container_id} not found")
            data = container.to_dict()
        data['allocations'] = self.pool.list_bindings(container_id)
        return data

    def list_containers(self, daemon_id: Optional[str] = None, user_id: Optional[str] = None) -> List[dict]:
        with self.db.get_session() as session:
            query = session.query(ContainerDB)
            if daemon_id:
                query = query.filter(ContainerDB.daemon_id == daemon_id)
            if user_id:
                query = query.filter(ContainerDB.user_id == user_id)
            containers = query.order_by(ContainerDB.created_at, ContainerDB.id).all()

            result = []
            for container in containers:
                data = container.to_dict()
                primary = next((b for b in container.bindings if b.is_primary), None)
                data['primary_allocation'] = primary.to_dict() if primary else None
                result.append(data)
            return result

    # ==================== Create ====================

    async def create_container(
        self,
        name: str,
        daemon_id: str,
        image: str,
        allocation_ids: Optional[List[str]] = None,
        memory_limit: int = 1024,
        cpu_limit: int = 100,
        disk_limit: int = 5120,
        swap_limit: int = 512,
        io_weight: int = 500,
        startup_script: Optional[str] = None,
        startup_variables: Optional[Dict[str, str]] = None,
        stop_command: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> dict:
        """
        Create a container on a daemon and bind its allocations.

        The first allocation in allocation_ids becomes the primary. A container
        may be created without allocations; SERVER_IP and SERVER_PORT are then
        left undefined for the startup template.

        Raises:
            ValidationFailed: bad name, image, limits, variables or template
            NotFound: daemon or an allocation does not exist
            DaemonMismatch: an allocation belongs to another daemon
            Conflict: an allocation is already bound
            DaemonUnreachable/CommandTimeout/DaemonError: daemon refused or could not be reached
        """
        if not name or not name.strip():
            raise ValidationFailed("Container name is required")
        if not image or not image.strip():
            raise ValidationFailed("Container image is required")
        allocation_ids = list(allocation_ids or [])
        if len(set(allocation_ids)) != len(allocation_ids):
            raise ValidationFailed("Allocation list contains duplicates")

        limits = {
            'memory_limit': memory_limit,
            'cpu_limit': cpu_limit,
            'disk_limit': disk_limit,
            'swap_limit': swap_limit,
            'io_weight': io_weight,
        }
        validate_limits(limits)
        variables = validate_variables(startup_variables)

        allocations = self._check_allocations(daemon_id, allocation_ids)
        environment = build_environment(variables, allocations[0] if allocations else None, memory_limit)
        startup_command = render_startup_command(startup_script, environment)

        container_id = str(uuid.uuid4())
        endpoint = self.registry.endpoint(daemon_id)
        bindings = [
            {**allocation, 'allocation_id': allocation['id'], 'is_primary': index == 0}
            for index, allocation in enumerate(allocations)
        ]
        body = {
            'uuid': container_id,
            'name': name,
            'image': image,
            'startupCommand': startup_command,
            'environment': environment,
            'limits': daemon_limits(limits),
            'stopCommand': stop_command or AppConfig.DEFAULT_STOP_COMMAND,
            **allocation_payload(bindings),
        }

        result = await self.dispatcher.dispatch_to(endpoint, DaemonCommand.CREATE, body, container_id=container_id)
        if not result.success:
            raise result.to_error("Create container")

        try:
            self._persist(container_id, name, daemon_id, image, limits, startup_script,
                          variables, stop_command, user_id, allocation_ids)
        except Conflict:
            # Undo the daemon side; the record was never written
            cleanup = await self.dispatcher.dispatch_to(endpoint, DaemonCommand.REMOVE, container_id=container_id)
            if not cleanup.success:
                logger.error(f"Could not remove orphaned container {container_id[:8]} from daemon {endpoint.name}: {cleanup.error}")
            raise

        logger.info(f"Created container {name} ({container_id[:8]}) on daemon {endpoint.name}")
        return self.get_container(container_id)

    def _check_allocations(self, daemon_id: str, allocation_ids: List[str]) -> List[dict]:
        with self.db.get_session() as session:
            if session.get(DaemonDB, daemon_id) is None:
                raise NotFound(f"Daemon {daemon_id} not found")

            result = []
            for allocation_id in allocation_ids:
                allocation = session.get(AllocationDB, allocation_id)
                if allocation is None:
                    raise NotFound(f"Allocation {allocation_id} not found")
                if allocation.daemon_id != daemon_id:
                    raise DaemonMismatch(
                        f"Allocation {allocation.ip}:{allocation.port} belongs to daemon {allocation.daemon_id[:8]}"
                    )
                if allocation.binding is not None:
                    raise Conflict(
                        f"Allocation {allocation.ip}:{allocation.port} is already bound to "
                        f"container {allocation.binding.container_id}"
                    )
                result.append(allocation.to_dict())
            return result

    def _persist(self, container_id, name, daemon_id, image, limits, startup_script,
                 variables, stop_command, user_id, allocation_ids):
        with self.pool.binding_lock(container_id):
            with self.db.get_session() as session:
                session.add(ContainerDB(
                    id=container_id,
                    name=name,
                    user_id=user_id,
                    daemon_id=daemon_id,
                    image=image,
                    startup_script=startup_script,
                    startup_variables=variables,
                    stop_command=stop_command,
                    status='stopped',
                    **limits,
                ))
                session.flush()
                for index, allocation_id in enumerate(allocation_ids):
                    session.add(ContainerAllocationDB(
                        container_id=container_id,
                        allocation_id=allocation_id,
                        is_primary=index == 0,
                    ))
                    # One row per flush keeps creation order in the autoincrement ids
                    session.flush()
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    raise Conflict("An allocation was bound by another container during creation")

    # ==================== Update ====================

    async def update_resources(self, container_id: str, **limits) -> dict:
        """
        Change resource limits. Validated before anything is sent; the daemon
        must accept them before they are persisted.
        """
        limits = {key: value for key, value in limits.items() if value is not None}
        if not limits:
            return self.get_container(container_id)
        validate_limits(limits)
        self.get_container(container_id)

        result = await self.dispatcher.dispatch(container_id, DaemonCommand.UPDATE, {'limits': daemon_limits(limits)})
        if not result.success:
            raise result.to_error("Update resources")

        with self.db.get_session() as session:
            container = session.get(ContainerDB, container_id)
            if container is None:
                raise NotFound(f"Container {container_id} not found")
            for key, value in limits.items():
                setattr(container, key, value)
            session.commit()

        logger.info(f"Updated resources of container {container_id[:8]}: {', '.join(sorted(limits))}")
        return self.get_container(container_id)

    async def update_startup(
        self,
        container_id: str,
        startup_script: Optional[str] = None,
        startup_variables: Optional[Dict[str, str]] = None,
        stop_command: Optional[str] = None,
    ) -> dict:
        """Change the startup template, its variables or the stop command"""
        container = self.get_container(container_id)
        script = startup_script if startup_script is not None else container['startup_script']
        variables = validate_variables(
            startup_variables if startup_variables is not None else container['startup_variables']
        )
        environment = build_environment(variables, self.pool.get_primary(container_id), container['memory_limit'])
        startup_command = render_startup_command(script, environment)

        body = {
            'startupCommand': startup_command,
            'environment': environment,
            'stopCommand': stop_command or container['stop_command'] or AppConfig.DEFAULT_STOP_COMMAND,
        }
        result = await self.dispatcher.dispatch(container_id, DaemonCommand.UPDATE, body)
        if not result.success:
            raise result.to_error("Update startup")

        with self.db.get_session() as session:
            record = session.get(ContainerDB, container_id)
            if record is None:
                raise NotFound(f"Container {container_id} not found")
            record.startup_script = script
            record.startup_variables = variables
            if stop_command is not None:
                record.stop_command = stop_command
            session.commit()

        logger.info(f"Updated startup configuration of container {container_id[:8]}")
        return self.get_container(container_id)
