"""
Wiring of the orchestration core.

One ControlPlane holds every service of a running panel. The FastAPI app
builds it in its lifespan (or receives a prebuilt one in tests) and routes
reach it through get_control_plane().
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from fastapi import Request

from allocations.pool import AllocationPool
from config.settings import AppConfig
from containers.provisioning import ContainerProvisioner
from daemons.client import DaemonEndpoint
from daemons.registry import DaemonRegistry
from database import DatabaseManager
from dispatch.dispatcher import CommandDispatcher, RetryPolicy
from event_bus import EventBus
from lifecycle.manager import LifecycleManager
from streaming.connector import DaemonStreamConnector
from streaming.multiplexer import StreamMultiplexer

logger = logging.getLogger(__name__)


@dataclass
class ControlPlane:
    db: DatabaseManager
    event_bus: EventBus
    registry: DaemonRegistry
    pool: AllocationPool
    dispatcher: CommandDispatcher
    lifecycle: LifecycleManager
    provisioner: ContainerProvisioner
    multiplexer: StreamMultiplexer
    connector: Optional[DaemonStreamConnector] = None

    async def start(self, health_loop: bool = True):
        self.multiplexer.subscribe(self.event_bus)
        if health_loop:
            self.registry.start_background()
        logger.info("Control plane started")

    async def stop(self):
        """Shutdown order: timers, streams, daemon clients"""
        await self.lifecycle.shutdown()
        self.multiplexer.unsubscribe(self.event_bus)
        await self.multiplexer.shutdown()
        if self.connector is not None:
            await self.connector.close()
        await self.registry.stop()
        logger.info("Control plane stopped")


def build_control_plane(
    db: DatabaseManager,
    event_bus: Optional[EventBus] = None,
    transport_factory: Optional[Callable[[DaemonEndpoint], httpx.AsyncBaseTransport]] = None,
    stream_connect: Optional[Callable] = None,
    retry_policy: Optional[RetryPolicy] = None,
    stream_reconnect_delay: Optional[float] = None,
    **lifecycle_timeouts,
) -> ControlPlane:
    """
    Build the services on top of a database.

    Args:
        db: DatabaseManager
        event_bus: Defaults to a private EventBus
        transport_factory: httpx transport per daemon (tests use httpx.MockTransport)
        stream_connect: Replaces the aiohttp stream connector (tests)
        retry_policy: Dispatcher retry policy
        stream_reconnect_delay: Fixed reconnect backoff of stream channels
        **lifecycle_timeouts: Forwarded to LifecycleManager (start_confirm_timeout, status_poll_interval, ...)
    """
    event_bus = event_bus or EventBus()
    registry = DaemonRegistry(db, event_bus=event_bus, transport_factory=transport_factory)
    pool = AllocationPool(db)
    dispatcher = CommandDispatcher(registry, retry_policy=retry_policy)
    lifecycle = LifecycleManager(db, dispatcher, pool, event_bus=event_bus, **lifecycle_timeouts)
    provisioner = ContainerProvisioner(db, registry, dispatcher, pool)

    connector = None
    if stream_connect is None:
        connector = DaemonStreamConnector(registry)
        stream_connect = connector

    multiplexer = StreamMultiplexer(
        stream_connect,
        lifecycle.get_state,
        dispatcher=dispatcher,
        reconnect_delay=stream_reconnect_delay or AppConfig.STREAM_RECONNECT_DELAY,
    )

    return ControlPlane(
        db=db,
        event_bus=event_bus,
        registry=registry,
        pool=pool,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        provisioner=provisioner,
        multiplexer=multiplexer,
        connector=connector,
    )


def get_control_plane(request: Request) -> ControlPlane:
    """FastAPI dependency"""
    return request.app.state.control_plane
