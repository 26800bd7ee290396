"""
One streaming channel (logs or stats) between the control plane and a daemon.

A channel owns at most one live WebSocket and one background task that
connects, fans text frames out to every attached consumer queue, and decides
what to do when the daemon closes the socket:

    connecting -> live -> (closed by daemon) -> backoff -> connecting ...
                                             -> idle    (container not running)
                                             -> closed  (container stopped/gone)

The reconnect decision is made from the container's lifecycle state at the
time of closure, never from the socket event alone. Consumers receive a
None sentinel when the channel is closed for good.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional, Set

import aiohttp

from lifecycle.state_machine import LifecycleState, INACTIVE_STATES

logger = logging.getLogger(__name__)

STATUS_IDLE = "idle"
STATUS_CONNECTING = "connecting"
STATUS_LIVE = "live"
STATUS_BACKOFF = "backoff"
STATUS_CLOSED = "closed"

LOGS = "logs"
STATS = "stats"
STREAM_KINDS = (LOGS, STATS)


class StreamChannel:
    """
    Channel for one (container, kind) pair.

    Args:
        container_id: Container the stream belongs to
        kind: 'logs' or 'stats'
        connect: Coroutine (container_id, kind) -> WebSocket (aiohttp ClientWebSocketResponse or compatible)
        state_provider: Returns the container's lifecycle state, or None if it no longer exists
        reconnect_delay: Fixed backoff between reconnect attempts
        on_closed: Called once when the channel is closed for good
    """

    def __init__(
        self,
        container_id: str,
        kind: str,
        connect: Callable[[str, str], Awaitable],
        state_provider: Callable[[str], Optional[str]],
        reconnect_delay: float,
        on_closed: Optional[Callable[['StreamChannel'], None]] = None,
        queue_size: int = 1000,
    ):
        self.container_id = container_id
        self.kind = kind
        self._connect = connect
        self._state_provider = state_provider
        self.reconnect_delay = reconnect_delay
        self._on_closed = on_closed
        self.queue_size = queue_size

        self.consumers: Set[asyncio.Queue] = set()
        self.status = STATUS_IDLE
        self.ws = None
        self.connect_attempts = 0
        self._task: Optional[asyncio.Task] = None

    def __repr__(self):
        return f"<StreamChannel {self.kind} {self.container_id[:8]} {self.status}>"

    @property
    def is_live(self) -> bool:
        return self.status == STATUS_LIVE and self.ws is not None

    @property
    def is_closed(self) -> bool:
        return self.status == STATUS_CLOSED

    # ==================== Consumers ====================

    def add_consumer(self) -> asyncio.Queue:
        queue = asyncio.Queue(maxsize=self.queue_size)
        self.consumers.add(queue)
        return queue

    def remove_consumer(self, queue: asyncio.Queue):
        self.consumers.discard(queue)

    def _publish(self, data: str):
        for queue in list(self.consumers):
            if queue.full():
                # Slow consumer: drop its oldest frame rather than block the channel
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(data)

    # ==================== Control ====================

    def open(self):
        """Start the connection loop unless it is already running"""
        if self.is_closed:
            return
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(
            self._run(), name=f"stream-{self.kind}-{self.container_id[:8]}"
        )

    async def reset(self):
        """Tear down the current connection (and any reconnect wait) and connect afresh, keeping consumers"""
        await self._cancel_task()
        if not self.is_closed:
            self.status = STATUS_IDLE
            self.open()

    async def close(self):
        """Close for good; consumers get a None sentinel"""
        if self.is_closed:
            return
        await self._cancel_task()
        self._finish()

    async def send(self, text: str) -> bool:
        """Send console input over the live socket; False if the channel is not live"""
        ws = self.ws
        if not self.is_live or ws.closed:
            return False
        await ws.send_str(json.dumps({"event": "command", "data": text}))
        return True

    async def _cancel_task(self):
        task = self._task
        self._task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"{self!r} task ended with error: {e}")

    def _finish(self):
        self.status = STATUS_CLOSED
        self.ws = None
        for queue in list(self.consumers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(None)
        self.consumers.clear()
        logger.debug(f"Closed {self.kind} channel for container {self.container_id[:8]}")
        if self._on_closed is not None:
            self._on_closed(self)

    # ==================== Connection loop ====================

    async def _run(self):
        while True:
            self.status = STATUS_CONNECTING
            self.connect_attempts += 1
            try:
                ws = await self._connect(self.container_id, self.kind)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Could not open {self.kind} stream for container {self.container_id[:8]}: {e}")
            else:
                await self._pump(ws)

            state = self._state_provider(self.container_id)
            if state != LifecycleState.RUNNING.value:
                break

            self.status = STATUS_BACKOFF
            logger.info(
                f"{self.kind.capitalize()} stream for container {self.container_id[:8]} closed, "
                f"reconnecting in {self.reconnect_delay}s"
            )
            await asyncio.sleep(self.reconnect_delay)

            # The container may have left `running` during the wait
            state = self._state_provider(self.container_id)
            if state != LifecycleState.RUNNING.value:
                break

        self._task = None
        if state is None or state in INACTIVE_STATES:
            self._finish()
        else:
            # starting/stopping: keep consumers; the next lifecycle event reopens or closes us
            self.status = STATUS_IDLE
            logger.debug(f"{self.kind.capitalize()} stream for container {self.container_id[:8]} idle ({state})")

    async def _pump(self, ws):
        self.ws = ws
        self.status = STATUS_LIVE
        logger.info(f"Connected {self.kind} stream for container {self.container_id[:8]}")
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._publish(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._publish(msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"{self.kind.capitalize()} stream error for container {self.container_id[:8]}: {ws.exception()}")
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    break
        finally:
            self.ws = None
            if not ws.closed:
                await ws.close()
