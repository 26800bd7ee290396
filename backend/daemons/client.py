"""
HTTP client for a single remote daemon.

Every call is authenticated with the daemon's credential (X-API-Key header)
and bounded by a timeout. Transport errors are raised as httpx exceptions and
classified by the caller (the Command Dispatcher or the health prober).

Daemon API used by the control plane:
    GET    /health                          liveness, plain "OK"
    GET    /system                          host metrics
    POST   /containers                      create
    PATCH  /containers/{id}                 resources / startup / allocations
    DELETE /containers/{id}                 remove
    POST   /containers/{id}/start|restart|kill
    POST   /containers/{id}/graceful-stop   {"stopCommand", "timeoutSecs"}
    POST   /containers/{id}/command         {"command"}
    GET    /containers/{id}/status          {"status", "running"}
    WS     /ws/containers/{id}/logs|stats   streaming channels
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DaemonEndpoint:
    """Connection details of a daemon, detached from the database session."""

    id: str
    name: str
    host: str
    port: int
    secure: bool
    api_key: str

    @classmethod
    def from_db(cls, daemon) -> 'DaemonEndpoint':
        return cls(
            id=daemon.id,
            name=daemon.name,
            host=daemon.host,
            port=daemon.port,
            secure=bool(daemon.secure),
            api_key=daemon.api_key,
        )

    @property
    def base_url(self) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.host}:{self.port}"

    def ws_url(self, path: str) -> str:
        """WebSocket URL for a streaming path; the key also rides in the query for proxies that drop headers"""
        scheme = "wss" if self.secure else "ws"
        return f"{scheme}://{self.host}:{self.port}{path}?api_key={quote(self.api_key)}"

    @property
    def auth_headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.api_key}


class DaemonClient:
    """
    Request/response client for one daemon.

    One httpx.AsyncClient is kept per daemon and reused across calls. Pass a
    transport (e.g. httpx.MockTransport) to talk to something other than the
    network.
    """

    def __init__(
        self,
        endpoint: DaemonEndpoint,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=endpoint.base_url,
            headers=endpoint.auth_headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Issue one request and decode the response body.

        Args:
            method: HTTP method
            path: Path relative to the daemon base URL
            json: Optional JSON body
            timeout: Per-call timeout overriding the client default

        Returns:
            Decoded JSON body, the raw text for non-JSON bodies, or None when empty

        Raises:
            httpx.TimeoutException: call exceeded its timeout
            httpx.TransportError: daemon could not be reached
            httpx.HTTPStatusError: daemon answered with a non-2xx status
        """
        kwargs = {}
        if json is not None:
            kwargs["json"] = json
        if timeout is not None:
            kwargs["timeout"] = httpx.Timeout(timeout)

        response = await self._client.request(method, path, **kwargs)
        response.raise_for_status()

        if not response.content:
            return None
        if response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return response.text

    async def health(self, timeout: float) -> bool:
        """True if GET /health answered with a 2xx status"""
        await self.request("GET", "/health", timeout=timeout)
        return True

    async def system(self, timeout: float) -> Dict[str, Any]:
        """Host metrics: totalMemory, availableMemory, cpuCores, cpuUsage, totalDisk, availableDisk, hostname"""
        data = await self.request("GET", "/system", timeout=timeout)
        return data if isinstance(data, dict) else {}

    async def close(self):
        await self._client.aclose()


def describe_http_error(error: httpx.HTTPStatusError) -> str:
    """Daemon error bodies are {"error": message} or plain text"""
    response = error.response
    detail = None
    try:
        body = response.json()
        if isinstance(body, dict):
            detail = body.get("error") or body.get("detail")
    except ValueError:
        detail = response.text.strip() or None
    return f"HTTP {response.status_code}: {detail or response.reason_phrase}"
