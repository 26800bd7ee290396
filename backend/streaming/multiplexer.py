"""
Streaming Multiplexer for the Raptor control panel

Keeps at most one log channel and one stats channel per container and shares
each among any number of attached consumers (dashboard WebSockets).

Channels are driven by lifecycle transitions published on the EventBus, not
by socket events alone:

    starting          tear down existing channels (cancelling reconnect waits),
                      then open fresh ones for the attached consumers
    running           make sure attached channels are open
    stopping          close the stats channel; the log channel stays until the
                      daemon closes it, so shutdown output is not lost
    stopped / killed  close the stats channel; close the log channel unless it
                      is still live (it then closes itself when the daemon
                      hangs up, without reconnecting)
    deleted           close everything

The multiplexer never writes lifecycle state. It tracks the latest state from
events and falls back to the LifecycleManager for containers it has not heard
about yet.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from dispatch.dispatcher import CommandDispatcher, DaemonCommand
from errors import NotFound, NotRunning, ValidationFailed
from event_bus import Event, EventBus, EventType
from lifecycle.state_machine import LifecycleState, INACTIVE_STATES
from streaming.channel import StreamChannel, STREAM_KINDS, LOGS, STATS

logger = logging.getLogger(__name__)

ATTACHABLE_STATES = {LifecycleState.RUNNING.value, LifecycleState.STARTING.value}


class StreamMultiplexer:
    """Lifecycle-driven fan-out of daemon log and stats streams."""

    def __init__(
        self,
        connect: Callable[[str, str], Awaitable],
        state_lookup: Callable[[str], str],
        dispatcher: Optional[CommandDispatcher] = None,
        reconnect_delay: float = 2.0,
        queue_size: int = 1000,
    ):
        """
        Args:
            connect: Opens a daemon WebSocket for (container_id, kind)
            state_lookup: Authoritative state read (LifecycleManager.get_state), raises NotFound
            dispatcher: Used for console input when no log channel is live
            reconnect_delay: Fixed reconnect backoff
        """
        self.connect = connect
        self.state_lookup = state_lookup
        self.dispatcher = dispatcher
        self.reconnect_delay = reconnect_delay
        self.queue_size = queue_size

        self._channels: Dict[Tuple[str, str], StreamChannel] = {}
        self._states: Dict[str, str] = {}

    def subscribe(self, event_bus: EventBus):
        event_bus.subscribe(EventType.CONTAINER_STATE_CHANGED, self.on_state_changed)
        event_bus.subscribe(EventType.CONTAINER_DELETED, self.on_container_deleted)

    def unsubscribe(self, event_bus: EventBus):
        event_bus.unsubscribe(EventType.CONTAINER_STATE_CHANGED, self.on_state_changed)
        event_bus.unsubscribe(EventType.CONTAINER_DELETED, self.on_container_deleted)

    # ==================== State ====================

    def current_state(self, container_id: str) -> Optional[str]:
        """Latest known lifecycle state, None if the container is gone"""
        state = self._states.get(container_id)
        if state is not None:
            return state
        try:
            state = self.state_lookup(container_id)
        except NotFound:
            return None
        self._states[container_id] = state
        return state

    def channel(self, container_id: str, kind: str) -> Optional[StreamChannel]:
        return self._channels.get((container_id, kind))

    def channel_status(self, container_id: str) -> Dict[str, Optional[dict]]:
        result = {}
        for kind in STREAM_KINDS:
            channel = self.channel(container_id, kind)
            result[kind] = None if channel is None else {
                'status': channel.status,
                'consumers': len(channel.consumers),
                'connect_attempts': channel.connect_attempts,
            }
        return result

    # ==================== Lifecycle events ====================

    async def on_state_changed(self, event: Event):
        container_id = event.scope_id
        new_state = event.data.get('new_state')
        if not new_state:
            return
        self._states[container_id] = new_state

        logs = self.channel(container_id, LOGS)
        stats = self.channel(container_id, STATS)

        if new_state == LifecycleState.STARTING.value:
            # Old loops must be gone before new ones start
            for channel in (logs, stats):
                if channel is not None:
                    await channel.reset()

        elif new_state == LifecycleState.RUNNING.value:
            for channel in (logs, stats):
                if channel is not None:
                    channel.open()

        elif new_state == LifecycleState.STOPPING.value:
            if stats is not None:
                await stats.close()

        elif new_state in INACTIVE_STATES:
            if stats is not None:
                await stats.close()
            if logs is not None and not logs.is_live:
                await logs.close()

    async def on_container_deleted(self, event: Event):
        container_id = event.scope_id
        for kind in STREAM_KINDS:
            channel = self.channel(container_id, kind)
            if channel is not None:
                await channel.close()
        self._states.pop(container_id, None)

    # ==================== Consumers ====================

    async def attach(self, container_id: str, kind: str) -> asyncio.Queue:
        """
        Attach a consumer to a container's stream.

        Returns:
            Queue of text frames; None marks the end of the stream

        Raises:
            ValidationFailed: unknown stream kind
            NotFound: container does not exist
            NotRunning: container is neither running nor starting
        """
        if kind not in STREAM_KINDS:
            raise ValidationFailed(f"Unknown stream '{kind}'. Must be one of: {', '.join(STREAM_KINDS)}")

        state = self.current_state(container_id)
        if state is None:
            raise NotFound(f"Container {container_id} not found")
        if state not in ATTACHABLE_STATES:
            raise NotRunning(f"Container {container_id} is {state}; streams are available while it runs")

        key = (container_id, kind)
        channel = self._channels.get(key)
        if channel is None or channel.is_closed:
            channel = StreamChannel(
                container_id,
                kind,
                connect=self.connect,
                state_provider=self.current_state,
                reconnect_delay=self.reconnect_delay,
                on_closed=self._forget_channel,
                queue_size=self.queue_size,
            )
            self._channels[key] = channel

        queue = channel.add_consumer()
        channel.open()
        logger.debug(f"Attached {kind} consumer to container {container_id[:8]} ({len(channel.consumers)} total)")
        return queue

    async def detach(self, container_id: str, kind: str, queue: asyncio.Queue):
        """Detach a consumer; the channel closes with its last consumer"""
        channel = self._channels.get((container_id, kind))
        if channel is None:
            return
        channel.remove_consumer(queue)
        if not channel.consumers:
            await channel.close()

    def _forget_channel(self, channel: StreamChannel):
        key = (channel.container_id, channel.kind)
        if self._channels.get(key) is channel:
            del self._channels[key]

    # ==================== Console input ====================

    async def send_input(self, container_id: str, text: str) -> dict:
        """
        Forward console input verbatim to the container while it is running.

        Uses the live log channel when there is one, otherwise the daemon's
        command endpoint.

        Raises:
            NotRunning: container is not running
        """
        state = self.current_state(container_id)
        if state is None:
            raise NotFound(f"Container {container_id} not found")
        if state != LifecycleState.RUNNING.value:
            raise NotRunning(f"Container {container_id} is {state}; console input requires a running container")

        logs = self.channel(container_id, LOGS)
        if logs is not None and await logs.send(text):
            return {'delivered': True, 'via': 'stream'}

        if self.dispatcher is None:
            raise NotRunning(f"No console channel for container {container_id}")
        result = await self.dispatcher.dispatch(container_id, DaemonCommand.SEND_INPUT, {"command": text})
        if not result.success:
            raise result.to_error("Send command")
        return {'delivered': True, 'via': 'daemon'}

    async def shutdown(self):
        for channel in list(self._channels.values()):
            await channel.close()
        self._channels.clear()
        self._states.clear()
        logger.info("Streaming multiplexer stopped")
