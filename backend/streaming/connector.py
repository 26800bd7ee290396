"""
Opens streaming WebSockets to daemons.

One aiohttp ClientSession is shared by every channel; each connection is
authenticated with the owning daemon's credential and uses wss when the
daemon is marked secure.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from daemons.registry import DaemonRegistry

logger = logging.getLogger(__name__)

STREAM_PATHS = {
    "logs": "/ws/containers/{id}/logs",
    "stats": "/ws/containers/{id}/stats",
}


class DaemonStreamConnector:
    """aiohttp WebSocket factory for StreamChannel"""

    def __init__(self, registry: DaemonRegistry, connect_timeout: float = 10.0, heartbeat: float = 30.0):
        self.registry = registry
        self.connect_timeout = connect_timeout
        self.heartbeat = heartbeat
        self.session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is not None and not self.session.closed:
            return self.session

        async with self._session_lock:
            if self.session is not None and not self.session.closed:
                return self.session
            self.session = aiohttp.ClientSession()
            return self.session

    async def __call__(self, container_id: str, kind: str) -> aiohttp.ClientWebSocketResponse:
        """
        Connect the `kind` stream of a container.

        Raises:
            NotFound: container does not exist
            DaemonUnreachable: owning daemon has no address
            aiohttp.ClientError / asyncio.TimeoutError: connection failed
        """
        endpoint = self.registry.resolve_for_container(container_id)
        url = endpoint.ws_url(STREAM_PATHS[kind].format(id=container_id))
        session = await self._get_session()

        ws = await asyncio.wait_for(
            session.ws_connect(url, headers=endpoint.auth_headers, heartbeat=self.heartbeat),
            timeout=self.connect_timeout,
        )
        logger.debug(f"Opened {kind} socket to daemon {endpoint.name} for container {container_id[:8]}")
        return ws

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
