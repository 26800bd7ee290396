"""
Daemon Registry for the Raptor control panel

Tracks known daemons (identity, address, credential) and their advisory
health, and routes container commands to the daemon that owns the container.

Responsibilities:
- Daemon CRUD (register/update/deregister) on the durable store
- Container → daemon resolution for the Command Dispatcher
- One reusable DaemonClient per daemon
- Health probing: bounded-timeout GET /health then GET /system, cached as
  online (with system metrics) or offline. Probes never raise.

Health is advisory. Nothing in the control plane refuses to send a command
because a daemon is cached offline; the command itself fails fast instead.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import httpx
from sqlalchemy.exc import IntegrityError

from config.settings import AppConfig
from daemons.client import DaemonClient, DaemonEndpoint, describe_http_error
from database import DatabaseManager, DaemonDB, ContainerDB, AllocationDB
from errors import Conflict, HasContainers, NotFound, DaemonUnreachable, ValidationFailed
from event_bus import Event, EventBus, EventType

logger = logging.getLogger(__name__)

HEALTH_UNKNOWN = "unknown"
HEALTH_ONLINE = "online"
HEALTH_OFFLINE = "offline"


@dataclass
class DaemonHealth:
    """Cached result of the latest health probe for one daemon"""
    state: str = HEALTH_UNKNOWN
    system: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    latency_ms: Optional[float] = None
    checked_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state,
            'system': self.system,
            'error': self.error,
            'latency_ms': self.latency_ms,
            'checked_at': self.checked_at.isoformat() if self.checked_at else None,
        }


class DaemonRegistry:
    """Registry of daemons, their clients and their advisory health."""

    def __init__(
        self,
        db: DatabaseManager,
        event_bus: Optional[EventBus] = None,
        command_timeout: Optional[float] = None,
        probe_timeout: Optional[float] = None,
        probe_interval: Optional[float] = None,
        transport_factory: Optional[Callable[[DaemonEndpoint], httpx.AsyncBaseTransport]] = None,
    ):
        """
        Args:
            db: DatabaseManager instance
            event_bus: Receives DAEMON_ONLINE/DAEMON_OFFLINE on health changes
            command_timeout: Default per-call timeout of daemon clients
            probe_timeout: Bound on each health probe call
            probe_interval: Seconds between background probe rounds
            transport_factory: Builds the httpx transport for a daemon (tests)
        """
        self.db = db
        self.event_bus = event_bus
        self.command_timeout = command_timeout or AppConfig.CONTROL_COMMAND_TIMEOUT
        self.probe_timeout = probe_timeout or AppConfig.HEALTH_PROBE_TIMEOUT
        self.probe_interval = probe_interval or AppConfig.HEALTH_PROBE_INTERVAL
        self.transport_factory = transport_factory

        self._clients: Dict[str, DaemonClient] = {}
        self._health: Dict[str, DaemonHealth] = {}
        # Latest probe sequence per daemon; a slower, older probe never overwrites a newer result
        self._probe_seq: Dict[str, int] = {}
        self.running = False
        self._loop_task: Optional[asyncio.Task] = None
        # Closes of replaced or dropped clients still in flight
        self._closing: Set[asyncio.Task] = set()

    # ==================== CRUD ====================

    def register(self, name: str, host: str, port: int, secure: bool = False,
                 api_key: Optional[str] = None, location: Optional[str] = None) -> dict:
        """
        Register a daemon. A credential is generated when none is given.

        Returns:
            Daemon dict including its api_key (shown once to the administrator)
        """
        self._validate_address(host, port)

        with self.db.get_session() as session:
            if session.query(DaemonDB).filter_by(name=name).first() is not None:
                raise Conflict(f"Daemon named '{name}' already exists")

            daemon = DaemonDB(
                id=str(uuid.uuid4()),
                name=name,
                host=host,
                port=port,
                secure=secure,
                api_key=api_key or str(uuid.uuid4()),
                location=location,
            )
            session.add(daemon)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise Conflict(f"Daemon named '{name}' already exists")

            logger.info(f"Registered daemon {name} ({daemon.id[:8]}) at {host}:{port}")
            return daemon.to_dict(include_secret=True)

    def update(self, daemon_id: str, **changes) -> dict:
        """
        Update name, host, port, secure, api_key or location.

        Cached clients are dropped so the next command uses the new address
        and credential.
        """
        allowed = {'name', 'host', 'port', 'secure', 'api_key', 'location'}
        changes = {key: value for key, value in changes.items() if value is not None}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationFailed(f"Unknown daemon fields: {', '.join(sorted(unknown))}")

        with self.db.get_session() as session:
            daemon = session.get(DaemonDB, daemon_id)
            if daemon is None:
                raise NotFound(f"Daemon {daemon_id} not found")

            self._validate_address(changes.get('host', daemon.host), changes.get('port', daemon.port))
            for key, value in changes.items():
                setattr(daemon, key, value)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise Conflict(f"Daemon named '{changes.get('name')}' already exists")

            result = daemon.to_dict()

        self._drop_client(daemon_id)
        logger.info(f"Updated daemon {daemon_id[:8]}: {', '.join(sorted(changes))}")
        return result

    async def deregister(self, daemon_id: str):
        """
        Remove a daemon and its (necessarily unbound) allocations.

        Raises:
            NotFound: daemon does not exist
            HasContainers: daemon still owns containers
        """
        with self.db.get_session() as session:
            daemon = session.get(DaemonDB, daemon_id)
            if daemon is None:
                raise NotFound(f"Daemon {daemon_id} not found")

            container_count = session.query(ContainerDB).filter_by(daemon_id=daemon_id).count()
            if container_count:
                raise HasContainers(
                    f"Daemon {daemon.name} still owns {container_count} container(s); delete them first"
                )

            name = daemon.name
            session.query(AllocationDB).filter_by(daemon_id=daemon_id).delete(synchronize_session=False)
            session.delete(daemon)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise HasContainers(f"Daemon {daemon_id} gained a container during deregistration")

        client = self._clients.pop(daemon_id, None)
        if client is not None:
            await client.close()
        self._health.pop(daemon_id, None)
        self._probe_seq.pop(daemon_id, None)
        logger.info(f"Deregistered daemon {name} ({daemon_id[:8]})")

    def get(self, daemon_id: str, include_secret: bool = False) -> dict:
        with self.db.get_session() as session:
            daemon = session.get(DaemonDB, daemon_id)
            if daemon is None:
                raise NotFound(f"Daemon {daemon_id} not found")
            data = daemon.to_dict(include_secret=include_secret)
        data['health'] = self.health(daemon_id).to_dict()
        return data

    def list_daemons(self) -> List[dict]:
        with self.db.get_session() as session:
            daemons = session.query(DaemonDB).order_by(DaemonDB.created_at).all()
            result = [d.to_dict() for d in daemons]
        for data in result:
            data['health'] = self.health(data['id']).to_dict()
        return result

    # ==================== Routing ====================

    def endpoint(self, daemon_id: str) -> DaemonEndpoint:
        with self.db.get_session() as session:
            daemon = session.get(DaemonDB, daemon_id)
            if daemon is None:
                raise NotFound(f"Daemon {daemon_id} not found")
            return DaemonEndpoint.from_db(daemon)

    def resolve_for_container(self, container_id: str) -> DaemonEndpoint:
        """
        Resolve the daemon that owns a container.

        Raises:
            NotFound: container does not exist
            DaemonUnreachable: the owning daemon's address cannot be resolved
        """
        with self.db.get_session() as session:
            container = session.get(ContainerDB, container_id)
            if container is None:
                raise NotFound(f"Container {container_id} not found")
            daemon = container.daemon
            if daemon is None or not daemon.host:
                raise DaemonUnreachable(f"No daemon address for container {container_id}")
            return DaemonEndpoint.from_db(daemon)

    def client_for(self, endpoint: DaemonEndpoint) -> DaemonClient:
        """Reuse the daemon's client unless its address or credential changed"""
        client = self._clients.get(endpoint.id)
        if client is not None and client.endpoint == endpoint:
            return client

        if client is not None:
            # Replaced after an update; close it without blocking the caller
            self._close_later(client)

        transport = self.transport_factory(endpoint) if self.transport_factory else None
        client = DaemonClient(endpoint, timeout=self.command_timeout, transport=transport)
        self._clients[endpoint.id] = client
        return client

    def _drop_client(self, daemon_id: str):
        client = self._clients.pop(daemon_id, None)
        if client is not None:
            self._close_later(client)

    def _close_later(self, client: DaemonClient):
        try:
            task = asyncio.get_running_loop().create_task(client.close())
        except RuntimeError:
            # No running loop (sync caller); the client is garbage collected
            return
        self._closing.add(task)
        task.add_done_callback(self._close_done)

    def _close_done(self, task: asyncio.Task):
        self._closing.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Error closing daemon client: {task.exception()}")

    # ==================== Health ====================

    def health(self, daemon_id: str) -> DaemonHealth:
        """Cached health; eventually consistent and advisory only"""
        return self._health.get(daemon_id) or DaemonHealth()

    async def probe_health(self, daemon_id: str) -> DaemonHealth:
        """
        Probe a daemon and cache the result.

        Raises:
            NotFound: daemon does not exist (no other error escapes)
        """
        endpoint = self.endpoint(daemon_id)
        seq = self._probe_seq.get(daemon_id, 0) + 1
        self._probe_seq[daemon_id] = seq

        result = await self._probe(self.client_for(endpoint))

        if self._probe_seq.get(daemon_id) != seq:
            # A newer probe started meanwhile; its result wins
            return self.health(daemon_id)

        previous = self._health.get(daemon_id)
        self._health[daemon_id] = result

        if previous is None or previous.state != result.state:
            logger.info(f"Daemon {endpoint.name} ({daemon_id[:8]}) is {result.state}")
            await self._emit_health_change(endpoint, result)
        return result

    async def ping(self, host: str, port: int, api_key: str, secure: bool = False) -> dict:
        """Probe an endpoint that is not (yet) registered"""
        self._validate_address(host, port)
        endpoint = DaemonEndpoint(id='ping', name=host, host=host, port=port, secure=secure, api_key=api_key)
        transport = self.transport_factory(endpoint) if self.transport_factory else None
        client = DaemonClient(endpoint, timeout=self.probe_timeout, transport=transport)
        try:
            result = await self._probe(client)
        finally:
            await client.close()
        return {
            'online': result.state == HEALTH_ONLINE,
            'latency_ms': result.latency_ms,
            'system': result.system,
            'error': result.error,
        }

    async def _probe(self, client: DaemonClient) -> DaemonHealth:
        started = time.monotonic()
        now = datetime.now(timezone.utc)
        try:
            await client.health(timeout=self.probe_timeout)
            latency_ms = round((time.monotonic() - started) * 1000, 1)
            system = await client.system(timeout=self.probe_timeout)
            return DaemonHealth(state=HEALTH_ONLINE, system=system, latency_ms=latency_ms, checked_at=now)
        except httpx.TimeoutException:
            error = f"Timed out after {self.probe_timeout}s"
        except httpx.HTTPStatusError as e:
            error = describe_http_error(e)
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
        except Exception as e:
            logger.error(f"Unexpected error probing {client.endpoint.name}: {e}", exc_info=True)
            error = str(e)
        logger.debug(f"Daemon {client.endpoint.name} probe failed: {error}")
        return DaemonHealth(state=HEALTH_OFFLINE, error=error, checked_at=now)

    async def _emit_health_change(self, endpoint: DaemonEndpoint, result: DaemonHealth):
        if self.event_bus is None:
            return
        await self.event_bus.emit(Event(
            event_type=EventType.DAEMON_ONLINE if result.state == HEALTH_ONLINE else EventType.DAEMON_OFFLINE,
            scope_type='daemon',
            scope_id=endpoint.id,
            daemon_id=endpoint.id,
            data={'name': endpoint.name, 'error': result.error},
        ))

    async def probe_all(self):
        """Probe every registered daemon concurrently"""
        with self.db.get_session() as session:
            daemon_ids = [row.id for row in session.query(DaemonDB.id).all()]
        if not daemon_ids:
            return
        results = await asyncio.gather(
            *(self.probe_health(daemon_id) for daemon_id in daemon_ids),
            return_exceptions=True,
        )
        for daemon_id, result in zip(daemon_ids, results):
            if isinstance(result, NotFound):
                # Deregistered while the round was running
                continue
            if isinstance(result, Exception):
                logger.error(f"Health probe for daemon {daemon_id[:8]} failed: {result}")

    async def start(self):
        """Run the background probe loop until stop() is called"""
        logger.info(f"Starting daemon health loop (every {self.probe_interval}s)")
        self.running = True
        while self.running:
            try:
                await self.probe_all()
            except Exception as e:
                logger.error(f"Error in daemon health loop: {e}", exc_info=True)
            await asyncio.sleep(self.probe_interval)

    def start_background(self) -> asyncio.Task:
        self._loop_task = asyncio.create_task(self.start())
        return self._loop_task

    async def stop(self):
        """Stop the probe loop and close every daemon client"""
        self.running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        for client in list(self._clients.values()):
            await client.close()
        self._clients.clear()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        logger.info("Daemon registry stopped")

    @staticmethod
    def _validate_address(host: str, port: int):
        if not host or not host.strip():
            raise ValidationFailed("Daemon host is required")
        if not isinstance(port, int) or port < 1 or port > 65535:
            raise ValidationFailed(f"Invalid port: {port}")
