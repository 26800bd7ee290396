"""
Allocation Pool for the Raptor control panel

Tracks network endpoints (ip, port, protocol) owned by each daemon and binds
them to containers.

Invariants:
- (daemon, ip, port, protocol) is unique
- an allocation is bound to at most one container
- every container has either zero primary bindings or exactly one
- the first binding a container receives is its primary

Concurrency:
    All mutations of one container's binding set run under a per-container
    lock and inside a single database transaction. Promotion after removing
    the primary happens in the same transaction as the removal, so no reader
    ever sees two primaries or a container left without one while bindings
    remain. The store's partial unique index backs this up.

Usage:
    pool = AllocationPool(db)
    allocation = pool.create(daemon_id, "10.0.0.5", 25565)
    pool.bind(container_id, allocation["id"])
    pool.unbind(container_id, allocation["id"])
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from database import (
    DatabaseManager, DaemonDB, AllocationDB, ContainerAllocationDB, ContainerDB, PROTOCOLS,
)
from errors import Conflict, InUse, NotBound, DaemonMismatch, NotFound, ValidationFailed

logger = logging.getLogger(__name__)


class AllocationPool:
    """
    Network allocation pool with single-primary binding semantics.

    Methods return plain dicts so callers never hold ORM objects after the
    session that produced them is closed.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def binding_lock(self, container_id: str):
        """
        Serialize mutations of one container's binding set.

        Re-entrant, so a caller holding the lock may call pool methods that
        take it again.
        """
        with self._locks_guard:
            lock = self._locks.get(container_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[container_id] = lock
        with lock:
            yield

    def forget(self, container_id: str):
        """Drop the lock entry of a deleted container"""
        with self._locks_guard:
            self._locks.pop(container_id, None)

    # ==================== Allocation CRUD ====================

    def create(self, daemon_id: str, ip: str, port: int, protocol: str = 'tcp',
               notes: Optional[str] = None) -> dict:
        """
        Create an allocation on a daemon.

        Raises:
            NotFound: daemon does not exist
            ValidationFailed: bad port or protocol
            Conflict: the (daemon, ip, port, protocol) tuple already exists
        """
        self._validate_endpoint(port, protocol)

        with self.db.get_session() as session:
            if session.get(DaemonDB, daemon_id) is None:
                raise NotFound(f"Daemon {daemon_id} not found")

            existing = session.query(AllocationDB).filter_by(
                daemon_id=daemon_id, ip=ip, port=port, protocol=protocol
            ).first()
            if existing is not None:
                raise Conflict(f"Allocation {ip}:{port}/{protocol} already exists on daemon {daemon_id[:8]}")

            allocation = AllocationDB(
                id=str(uuid.uuid4()),
                daemon_id=daemon_id,
                ip=ip,
                port=port,
                protocol=protocol,
                notes=notes,
            )
            session.add(allocation)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise Conflict(f"Allocation {ip}:{port}/{protocol} already exists on daemon {daemon_id[:8]}")

            logger.info(f"Created allocation {ip}:{port}/{protocol} on daemon {daemon_id[:8]}")
            return allocation.to_dict()

    def delete(self, allocation_id: str):
        """
        Delete an unbound allocation.

        Raises:
            NotFound: allocation does not exist
            InUse: allocation is bound to a container
        """
        with self.db.get_session() as session:
            allocation = session.get(AllocationDB, allocation_id)
            if allocation is None:
                raise NotFound(f"Allocation {allocation_id} not found")
            if allocation.binding is not None:
                raise InUse(
                    f"Allocation {allocation.ip}:{allocation.port} is bound to container "
                    f"{allocation.binding.container_id}; unbind it first"
                )
            endpoint = f"{allocation.ip}:{allocation.port}/{allocation.protocol}"
            session.delete(allocation)
            try:
                session.commit()
            except IntegrityError:
                # A bind slipped in between the check and the delete
                session.rollback()
                raise InUse(f"Allocation {allocation_id} was bound concurrently")

            logger.info(f"Deleted allocation {endpoint}")

    def get(self, allocation_id: str) -> dict:
        with self.db.get_session() as session:
            allocation = session.get(AllocationDB, allocation_id)
            if allocation is None:
                raise NotFound(f"Allocation {allocation_id} not found")
            return allocation.to_dict()

    def list_allocations(self, daemon_id: Optional[str] = None) -> List[dict]:
        """All allocations, optionally limited to one daemon"""
        with self.db.get_session() as session:
            query = session.query(AllocationDB)
            if daemon_id:
                query = query.filter(AllocationDB.daemon_id == daemon_id)
            allocations = query.order_by(AllocationDB.ip, AllocationDB.port, AllocationDB.protocol).all()
            return [a.to_dict() for a in allocations]

    def list_available(self, daemon_id: str) -> List[dict]:
        """Allocations on a daemon with no current binding"""
        with self.db.get_session() as session:
            allocations = (
                session.query(AllocationDB)
                .outerjoin(ContainerAllocationDB, ContainerAllocationDB.allocation_id == AllocationDB.id)
                .filter(AllocationDB.daemon_id == daemon_id)
                .filter(ContainerAllocationDB.id.is_(None))
                .order_by(AllocationDB.ip, AllocationDB.port, AllocationDB.protocol)
                .all()
            )
            return [a.to_dict() for a in allocations]

    def update_protocol(self, allocation_id: str, protocol: str) -> Optional[str]:
        """
        Change an allocation's protocol.

        Returns:
            ID of the container the allocation is bound to (its daemon needs a
            resync), or None if unbound

        Raises:
            NotFound, ValidationFailed, Conflict
        """
        if protocol not in PROTOCOLS:
            raise ValidationFailed(f"Invalid protocol '{protocol}'. Must be one of: {', '.join(PROTOCOLS)}")

        with self.db.get_session() as session:
            allocation = session.get(AllocationDB, allocation_id)
            if allocation is None:
                raise NotFound(f"Allocation {allocation_id} not found")
            if allocation.protocol == protocol:
                return allocation.binding.container_id if allocation.binding else None

            clash = session.query(AllocationDB).filter(
                AllocationDB.daemon_id == allocation.daemon_id,
                AllocationDB.ip == allocation.ip,
                AllocationDB.port == allocation.port,
                AllocationDB.protocol == protocol,
                AllocationDB.id != allocation.id,
            ).first()
            if clash is not None:
                raise Conflict(f"Allocation {allocation.ip}:{allocation.port}/{protocol} already exists")

            old_protocol = allocation.protocol
            allocation.protocol = protocol
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise Conflict(f"Allocation {allocation.ip}:{allocation.port}/{protocol} already exists")

            logger.info(f"Allocation {allocation.ip}:{allocation.port} protocol {old_protocol} -> {protocol}")
            return allocation.binding.container_id if allocation.binding else None

    # ==================== Bindings ====================

    def bind(self, container_id: str, allocation_id: str, make_primary: bool = False) -> dict:
        """
        Bind an allocation to a container.

        The container's first binding always becomes primary. With
        make_primary, the previous primary is demoted in the same transaction.

        Raises:
            NotFound: container or allocation does not exist
            DaemonMismatch: allocation belongs to another daemon
            Conflict: allocation is already bound
        """
        with self.binding_lock(container_id):
            with self.db.get_session() as session:
                container = session.get(ContainerDB, container_id)
                if container is None:
                    raise NotFound(f"Container {container_id} not found")
                allocation = session.get(AllocationDB, allocation_id)
                if allocation is None:
                    raise NotFound(f"Allocation {allocation_id} not found")

                if allocation.daemon_id != container.daemon_id:
                    raise DaemonMismatch(
                        f"Allocation {allocation.ip}:{allocation.port} belongs to daemon "
                        f"{allocation.daemon_id[:8]}, container runs on {container.daemon_id[:8]}"
                    )
                if allocation.binding is not None:
                    raise Conflict(
                        f"Allocation {allocation.ip}:{allocation.port} is already bound to "
                        f"container {allocation.binding.container_id}"
                    )

                current = self._bindings_query(session, container_id).all()
                primary = next((b for b in current if b.is_primary), None)
                becomes_primary = primary is None or make_primary

                if primary is not None and make_primary:
                    primary.is_primary = False
                    # Demotion must reach the store before the new primary row
                    session.flush()

                binding = ContainerAllocationDB(
                    container_id=container_id,
                    allocation_id=allocation_id,
                    is_primary=becomes_primary,
                )
                session.add(binding)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    raise Conflict(f"Allocation {allocation_id} was bound concurrently")

                logger.info(
                    f"Bound {allocation.ip}:{allocation.port}/{allocation.protocol} to container "
                    f"{container_id[:8]}{' (primary)' if becomes_primary else ''}"
                )
                return binding.to_dict()

    def unbind(self, container_id: str, allocation_id: str) -> Optional[str]:
        """
        Remove a binding, promoting the earliest-created remaining binding if
        the primary was removed.

        Returns:
            Allocation ID that was promoted to primary, or None

        Raises:
            NotBound: the allocation is not bound to this container
        """
        with self.binding_lock(container_id):
            with self.db.get_session() as session:
                binding = session.query(ContainerAllocationDB).filter_by(
                    container_id=container_id, allocation_id=allocation_id
                ).first()
                if binding is None:
                    raise NotBound(f"Allocation {allocation_id} is not bound to container {container_id}")

                was_primary = binding.is_primary
                session.delete(binding)
                session.flush()

                promoted = None
                if was_primary:
                    successor = (
                        self._bindings_query(session, container_id)
                        .order_by(None)
                        .order_by(ContainerAllocationDB.created_at, ContainerAllocationDB.id)
                        .first()
                    )
                    if successor is not None:
                        successor.is_primary = True
                        promoted = successor.allocation_id

                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    raise Conflict(f"Concurrent change to bindings of container {container_id}")

                if promoted:
                    logger.info(
                        f"Unbound allocation {allocation_id[:8]} from container {container_id[:8]}, "
                        f"promoted {promoted[:8]} to primary"
                    )
                else:
                    logger.info(f"Unbound allocation {allocation_id[:8]} from container {container_id[:8]}")
                return promoted

    def set_primary(self, container_id: str, allocation_id: str):
        """
        Make a bound allocation the container's primary.

        Raises:
            NotBound: the allocation is not bound to this container
        """
        with self.binding_lock(container_id):
            with self.db.get_session() as session:
                bindings = self._bindings_query(session, container_id).all()
                target = next((b for b in bindings if b.allocation_id == allocation_id), None)
                if target is None:
                    raise NotBound(f"Allocation {allocation_id} is not bound to container {container_id}")
                if target.is_primary:
                    return

                for binding in bindings:
                    if binding.is_primary:
                        binding.is_primary = False
                session.flush()
                target.is_primary = True

                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    raise Conflict(f"Concurrent change to bindings of container {container_id}")

                logger.info(f"Allocation {allocation_id[:8]} is now primary for container {container_id[:8]}")

    def list_bindings(self, container_id: str) -> List[dict]:
        """Bindings of a container, primary first, then in creation order"""
        with self.db.get_session() as session:
            bindings = self._bindings_query(session, container_id).all()
            return [b.to_dict() for b in bindings]

    def get_primary(self, container_id: str) -> Optional[dict]:
        with self.db.get_session() as session:
            binding = session.query(ContainerAllocationDB).filter_by(
                container_id=container_id, is_primary=True
            ).first()
            return binding.to_dict() if binding else None

    def release_all(self, container_id: str, session=None) -> int:
        """
        Remove every binding of a container.

        With a session, the deletes join the caller's transaction and the
        caller commits; hold binding_lock() around that transaction.

        Returns:
            Number of bindings released
        """
        if session is not None:
            count = session.query(ContainerAllocationDB).filter_by(
                container_id=container_id
            ).delete(synchronize_session=False)
            return count

        with self.binding_lock(container_id):
            with self.db.get_session() as own_session:
                count = own_session.query(ContainerAllocationDB).filter_by(
                    container_id=container_id
                ).delete(synchronize_session=False)
                own_session.commit()
        logger.info(f"Released {count} allocation(s) from container {container_id[:8]}")
        return count

    # ==================== Helpers ====================

    @staticmethod
    def _bindings_query(session, container_id: str):
        return (
            session.query(ContainerAllocationDB)
            .filter(ContainerAllocationDB.container_id == container_id)
            .order_by(
                ContainerAllocationDB.is_primary.desc(),
                ContainerAllocationDB.created_at,
                ContainerAllocationDB.id,
            )
        )

    @staticmethod
    def _validate_endpoint(port: int, protocol: str):
        if protocol not in PROTOCOLS:
            raise ValidationFailed(f"Invalid protocol '{protocol}'. Must be one of: {', '.join(PROTOCOLS)}")
        if not isinstance(port, int) or port < 1 or port > 65535:
            raise ValidationFailed(f"Invalid port: {port}")
