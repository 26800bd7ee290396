"""
Shared pytest fixtures for Raptor tests.

Fixtures provided:
- db: DatabaseManager on a temporary SQLite file
- event_bus: Private EventBus
- fake_daemon: In-process daemon behind httpx.MockTransport
- fake_streams: Stream connector handing out scripted WebSockets
- plane: Fully wired ControlPlane with short timeouts
- daemon / allocations: Seeded daemon with three allocations
- make_container: Factory inserting container records in a given state

Nothing here talks to the network; daemons are simulated at the HTTP and
WebSocket boundary.
"""

import asyncio
import json
import os
import tempfile
import uuid
from types import SimpleNamespace
from typing import Dict, List, Optional

import aiohttp
import httpx
import pytest

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from control_plane import build_control_plane
from database import DatabaseManager, ContainerDB
from dispatch.dispatcher import RetryPolicy
from event_bus import EventBus, EventType


class FakeDaemon:
    """
    Minimal daemon: remembers which containers run and answers the command API.

    Behaviour switches:
        auto_run: start/restart make the container report running
        honor_stop: graceful-stop makes the container report stopped
        fail(action, error, times): make an action fail with an exception
            (transport error) or an HTTP status code
        delays: seconds an action takes before the daemon answers
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.headers: List[Dict[str, str]] = []
        self.running: Dict[str, bool] = {}
        self.auto_run = True
        self.honor_stop = True
        self._failures: Dict[str, list] = {}
        self.delays: Dict[str, float] = {}
        self.system = {"totalMemory": 16384, "availableMemory": 8192, "cpuCores": 8, "hostname": "node-1"}

    def fail(self, action: str, error, times: Optional[int] = None):
        """Fail `action` `times` times (forever when None)"""
        self._failures[action] = [error, times]

    def clear_failures(self):
        self._failures.clear()

    def count(self, action: str) -> int:
        return sum(1 for call in self.calls if call[0] == action)

    def bodies(self, action: str) -> List[Optional[dict]]:
        return [call[2] for call in self.calls if call[0] == action]

    def actions(self) -> List[str]:
        return [call[0] for call in self.calls]

    @staticmethod
    def _action(method: str, path: str) -> str:
        parts = path.strip('/').split('/')
        if parts[0] in ('health', 'system'):
            return parts[0]
        if len(parts) == 1:
            return 'create'
        if len(parts) == 2:
            return {'DELETE': 'remove', 'PATCH': 'update'}.get(method, 'get')
        return parts[2]

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        action = self._action(request.method, path)
        body = json.loads(request.content) if request.content else None
        self.calls.append((action, path, body))
        self.headers.append(dict(request.headers))

        failure = self._failures.get(action)
        if failure is not None:
            error, times = failure
            if times is not None:
                failure[1] = times - 1
                if failure[1] <= 0:
                    del self._failures[action]
            if isinstance(error, int):
                return httpx.Response(error, json={"error": f"{action} failed"})
            raise error

        if action == 'health':
            return httpx.Response(200, text="OK")
        if action == 'system':
            return httpx.Response(200, json=self.system)

        container_id = path.strip('/').split('/')[1] if action != 'create' else body.get('uuid')
        if action == 'create':
            self.running[container_id] = False
            return httpx.Response(201, json={"success": True, "uuid": container_id})
        if action in ('start', 'restart') and self.auto_run:
            self.running[container_id] = True
        elif action == 'kill':
            self.running[container_id] = False
        elif action == 'graceful-stop' and self.honor_stop:
            self.running[container_id] = False
        elif action == 'remove':
            self.running.pop(container_id, None)
        elif action == 'status':
            running = self.running.get(container_id, False)
            return httpx.Response(200, json={"status": "running" if running else "stopped", "running": running})

        return httpx.Response(200, json={"success": True})

    async def handle_async(self, request: httpx.Request) -> httpx.Response:
        delay = self.delays.get(self._action(request.method, request.url.path))
        if delay:
            await asyncio.sleep(delay)
        return self.handle(request)

    def transport(self, endpoint=None) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle_async)


class FakeSocket:
    """Stand-in for aiohttp.ClientWebSocketResponse"""

    def __init__(self, container_id: str, kind: str):
        self.container_id = container_id
        self.kind = kind
        self.closed = False
        self.sent: List[str] = []
        self._inbox: asyncio.Queue = asyncio.Queue()

    def push(self, text: str):
        self._inbox.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=text))

    def hang_up(self):
        """Daemon closes the socket"""
        self._inbox.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None))

    def exception(self):
        return None

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed:
            raise StopAsyncIteration
        msg = await self._inbox.get()
        if msg is None:
            raise StopAsyncIteration
        return msg

    async def send_str(self, data: str):
        self.sent.append(data)

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(None)


class FakeStreams:
    """Stream connector that records every socket it opens"""

    def __init__(self):
        self.sockets: List[FakeSocket] = []
        self.refuse = False

    async def connect(self, container_id: str, kind: str) -> FakeSocket:
        if self.refuse:
            raise ConnectionRefusedError("daemon refused the stream")
        socket = FakeSocket(container_id, kind)
        self.sockets.append(socket)
        return socket

    def opened(self, container_id: str, kind: str) -> List[FakeSocket]:
        return [s for s in self.sockets if s.container_id == container_id and s.kind == kind]


async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll predicate() until it is truthy; fail the test on timeout"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    """`await wait_until(lambda: ...)` polls a condition with a timeout"""
    return _wait_until


@pytest.fixture(scope="function")
def db():
    """
    Create a temporary SQLite database for testing.

    Each test gets a fresh file so tests don't affect each other.
    """
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    manager = DatabaseManager(f'sqlite:///{db_path}')

    yield manager

    manager.dispose()
    os.close(db_fd)
    for suffix in ('', '-wal', '-shm'):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def fake_daemon():
    return FakeDaemon()


@pytest.fixture
def fake_streams():
    return FakeStreams()


@pytest.fixture
def plane(db, event_bus, fake_daemon, fake_streams):
    """
    ControlPlane wired to the fake daemon, with timers scaled down.

    The multiplexer is subscribed to lifecycle events; the health loop is
    not started.
    """
    plane = build_control_plane(
        db,
        event_bus=event_bus,
        transport_factory=fake_daemon.transport,
        stream_connect=fake_streams.connect,
        retry_policy=RetryPolicy(max_attempts=2, delay=0.01),
        stream_reconnect_delay=0.05,
        start_confirm_timeout=0.5,
        status_poll_interval=0.02,
        default_stop_timeout=0.5,
        restart_stop_timeout=0.5,
    )
    plane.multiplexer.subscribe(event_bus)
    return plane


@pytest.fixture
def daemon(plane):
    return plane.registry.register(name="node-1", host="10.0.0.10", port=8443, api_key="secret-key-1")


@pytest.fixture
def allocations(plane, daemon):
    """Three allocations on the seeded daemon, in creation order"""
    return [plane.pool.create(daemon['id'], "10.0.0.10", port) for port in (25565, 25566, 25567)]


@pytest.fixture
def make_container(db, fake_daemon):
    """Insert a container record directly; mirrors its state on the fake daemon"""

    def _make(daemon_id: str, status: str = 'stopped', name: str = 'survival', stop_command: Optional[str] = None) -> str:
        container_id = str(uuid.uuid4())
        with db.get_session() as session:
            session.add(ContainerDB(
                id=container_id,
                name=name,
                daemon_id=daemon_id,
                image="ghcr.io/raptor/java:21",
                status=status,
                stop_command=stop_command,
            ))
            session.commit()
        fake_daemon.running[container_id] = status in ('running', 'stopping')
        return container_id

    return _make


@pytest.fixture
def recorded_events(event_bus):
    """Every lifecycle event as (event_type, old_state, new_state)"""
    events = []

    async def record(event):
        events.append((event.event_type.value, event.data.get('old_state'), event.data.get('new_state')))

    event_bus.subscribe(EventType.CONTAINER_STATE_CHANGED, record)
    event_bus.subscribe(EventType.CONTAINER_DELETED, record)
    return events
