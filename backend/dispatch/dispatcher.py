"""
Command Dispatcher for the Raptor control panel

Translates lifecycle intents into authenticated calls against the daemon that
owns a container, with per-call timeouts and a conservative retry policy.

Architecture:
- Resolves container → daemon through the DaemonRegistry
- Sends one HTTP request per command through the daemon's DaemonClient
- Retries at most once, and only idempotent commands (status, kill), and
  only after a transport failure. start/stop/restart are never retried
  automatically; re-issuing them is the caller's decision.
- Never raises for daemon failures; returns a normalized CommandResult
- Does not consult cached daemon health; every call is attempted and fails fast
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set

import httpx

from config.settings import AppConfig
from daemons.client import DaemonEndpoint, describe_http_error
from daemons.registry import DaemonRegistry
from errors import (
    OrchestrationError, DaemonUnreachable, CommandTimeout, DaemonError, ValidationFailed,
)

logger = logging.getLogger(__name__)


class DaemonCommand(str, Enum):
    """Commands the control plane can send to a daemon"""
    START = "start"
    STOP_GRACEFUL = "stop_graceful"
    KILL = "kill"
    RESTART = "restart"
    STATUS = "status"
    SEND_INPUT = "send_input"
    UPDATE = "update"
    CREATE = "create"
    REMOVE = "remove"


class CommandStatus(Enum):
    """Status of command execution"""
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


class CommandErrorCode(Enum):
    """
    Detailed error codes for command execution failures.

    Classification:
    - TRANSPORT (retryable for idempotent commands): NETWORK_ERROR, TIMEOUT
    - NON_RETRYABLE: DAEMON_UNREACHABLE, AUTH_FAILED, DAEMON_ERROR, INVALID_RESPONSE
    """

    NETWORK_ERROR = "network_error"              # Connection refused/reset, DNS failure
    TIMEOUT = "timeout"                          # Call exceeded its timeout
    DAEMON_UNREACHABLE = "daemon_unreachable"    # Daemon address could not be resolved
    AUTH_FAILED = "auth_failed"                  # Daemon rejected the credential
    DAEMON_ERROR = "daemon_error"                # Daemon answered with a failure
    INVALID_RESPONSE = "invalid_response"        # Malformed response from daemon


TRANSPORT_ERROR_CODES = {CommandErrorCode.NETWORK_ERROR, CommandErrorCode.TIMEOUT}


@dataclass
class CommandResult:
    """
    Normalized result of one dispatch: {ok} or {error kind, detail}.

    Includes retry tracking and execution metrics.
    """
    status: CommandStatus
    success: bool
    response: Optional[Any]
    error: Optional[str]
    error_code: Optional[CommandErrorCode] = None
    duration_seconds: float = 0.0
    attempt: int = 1
    total_attempts: int = 1
    retried: bool = False

    @property
    def error_kind(self) -> Optional[str]:
        """Error taxonomy kind of a failed result"""
        if self.success:
            return None
        if self.error_code == CommandErrorCode.TIMEOUT:
            return CommandTimeout.kind
        if self.error_code in (CommandErrorCode.NETWORK_ERROR, CommandErrorCode.DAEMON_UNREACHABLE):
            return DaemonUnreachable.kind
        return DaemonError.kind

    def to_error(self, action: str, retriable: bool = True) -> OrchestrationError:
        """Exception to surface for a failed result"""
        detail = f"{action} failed: {self.error}"
        if self.error_code == CommandErrorCode.TIMEOUT:
            return CommandTimeout(detail, retriable=retriable)
        if self.error_code in (CommandErrorCode.NETWORK_ERROR, CommandErrorCode.DAEMON_UNREACHABLE):
            return DaemonUnreachable(detail, retriable=retriable)
        return DaemonError(detail, retriable=retriable)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {'ok': True, 'response': self.response}
        return {'ok': False, 'error': self.error_kind, 'detail': self.error}


@dataclass
class RetryPolicy:
    """
    Retry configuration for dispatched commands.

    Attributes:
        max_attempts: Maximum number of attempts, including the first
        delay: Fixed delay between attempts in seconds
        retryable_error_codes: Error codes that trigger a retry
    """
    max_attempts: int = 2
    delay: float = 0.5
    retryable_error_codes: Set[CommandErrorCode] = field(
        default_factory=lambda: set(TRANSPORT_ERROR_CODES)
    )

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must be non-negative")


@dataclass(frozen=True)
class CommandRoute:
    """HTTP shape of a daemon command"""
    method: str
    path: str
    idempotent: bool = False


COMMAND_ROUTES: Dict[DaemonCommand, CommandRoute] = {
    DaemonCommand.START: CommandRoute("POST", "/containers/{id}/start"),
    DaemonCommand.STOP_GRACEFUL: CommandRoute("POST", "/containers/{id}/graceful-stop"),
    DaemonCommand.KILL: CommandRoute("POST", "/containers/{id}/kill", idempotent=True),
    DaemonCommand.RESTART: CommandRoute("POST", "/containers/{id}/restart"),
    DaemonCommand.STATUS: CommandRoute("GET", "/containers/{id}/status", idempotent=True),
    DaemonCommand.SEND_INPUT: CommandRoute("POST", "/containers/{id}/command"),
    DaemonCommand.UPDATE: CommandRoute("PATCH", "/containers/{id}"),
    DaemonCommand.CREATE: CommandRoute("POST", "/containers"),
    DaemonCommand.REMOVE: CommandRoute("DELETE", "/containers/{id}"),
}


class CommandDispatcher:
    """
    Single entry point for daemon commands.

    Usage:
        dispatcher = CommandDispatcher(registry)
        result = await dispatcher.dispatch(container_id, DaemonCommand.KILL)
        if not result.success:
            raise result.to_error("kill")
    """

    def __init__(
        self,
        registry: DaemonRegistry,
        default_timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Args:
            registry: DaemonRegistry used to resolve daemons and clients
            default_timeout: Per-call timeout for control commands
            retry_policy: Policy applied to idempotent commands
        """
        self.registry = registry
        self.default_timeout = default_timeout or AppConfig.CONTROL_COMMAND_TIMEOUT
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2, delay=AppConfig.RETRY_DELAY)

    async def dispatch(
        self,
        container_id: str,
        command: DaemonCommand,
        args: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Dispatch a command for a container to its daemon.

        Args:
            container_id: Container the command targets
            command: DaemonCommand to send
            args: Command arguments (JSON body)
            timeout: Per-call timeout; defaults to the control command timeout

        Returns:
            CommandResult; DAEMON_UNREACHABLE if the daemon cannot be resolved

        Raises:
            NotFound: container does not exist
        """
        try:
            endpoint = self.registry.resolve_for_container(container_id)
        except DaemonUnreachable as e:
            logger.warning(f"Cannot dispatch {command.value} for container {container_id[:8]}: {e.detail}")
            return CommandResult(
                status=CommandStatus.ERROR,
                success=False,
                response=None,
                error=e.detail,
                error_code=CommandErrorCode.DAEMON_UNREACHABLE,
            )
        return await self.dispatch_to(endpoint, command, args=args, container_id=container_id, timeout=timeout)

    async def dispatch_to(
        self,
        endpoint: DaemonEndpoint,
        command: DaemonCommand,
        args: Optional[Dict[str, Any]] = None,
        container_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Dispatch to a known daemon (container creation has no container record yet)"""
        route = COMMAND_ROUTES[command]
        if '{id}' in route.path and not container_id:
            raise ValidationFailed(f"Command {command.value} requires a container id")
        path = route.path.format(id=container_id)
        call_timeout = timeout if timeout is not None else self.default_timeout

        if not route.idempotent:
            return await self._execute_once(endpoint, command, route, path, args, call_timeout)
        return await self._execute_with_retry(endpoint, command, route, path, args, call_timeout)

    async def _execute_with_retry(
        self,
        endpoint: DaemonEndpoint,
        command: DaemonCommand,
        route: CommandRoute,
        path: str,
        args: Optional[Dict[str, Any]],
        timeout: float,
    ) -> CommandResult:
        """Retry idempotent commands after transport failures only"""
        policy = self.retry_policy
        result = None

        for attempt in range(1, policy.max_attempts + 1):
            result = await self._execute_once(
                endpoint, command, route, path, args, timeout,
                attempt=attempt, total_attempts=attempt,
            )
            result.retried = attempt > 1

            should_retry = (
                not result.success
                and result.error_code in policy.retryable_error_codes
                and attempt < policy.max_attempts
            )
            if not should_retry:
                return result

            logger.info(
                f"Retrying {command.value} on daemon {endpoint.name} after {policy.delay:.2f}s "
                f"(attempt {attempt}/{policy.max_attempts}, error: {result.error_code.value})"
            )
            await asyncio.sleep(policy.delay)

        return result

    async def _execute_once(
        self,
        endpoint: DaemonEndpoint,
        command: DaemonCommand,
        route: CommandRoute,
        path: str,
        args: Optional[Dict[str, Any]],
        timeout: float,
        attempt: int = 1,
        total_attempts: int = 1,
    ) -> CommandResult:
        """
        Execute a command once (single attempt, no retry).

        Returns:
            CommandResult with the decoded daemon response or a classified error
        """
        start_time = time.monotonic()
        client = self.registry.client_for(endpoint)

        def failure(status: CommandStatus, code: CommandErrorCode, error: str) -> CommandResult:
            return CommandResult(
                status=status,
                success=False,
                response=None,
                error=error,
                error_code=code,
                duration_seconds=time.monotonic() - start_time,
                attempt=attempt,
                total_attempts=total_attempts,
            )

        try:
            # The httpx timeout bounds each phase; wait_for bounds the whole call
            response = await asyncio.wait_for(
                client.request(route.method, path, json=args, timeout=timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning(f"{command.value} on daemon {endpoint.name} timed out after {timeout}s")
            return failure(CommandStatus.TIMEOUT, CommandErrorCode.TIMEOUT,
                           f"Daemon {endpoint.name} did not answer within {timeout}s")
        except httpx.HTTPStatusError as e:
            code = (CommandErrorCode.AUTH_FAILED if e.response.status_code in (401, 403)
                    else CommandErrorCode.DAEMON_ERROR)
            detail = describe_http_error(e)
            logger.warning(f"{command.value} rejected by daemon {endpoint.name}: {detail}")
            return failure(CommandStatus.ERROR, code, detail)
        except httpx.TransportError as e:
            detail = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            logger.warning(f"{command.value} could not reach daemon {endpoint.name}: {detail}")
            return failure(CommandStatus.ERROR, CommandErrorCode.NETWORK_ERROR, detail)
        except ValueError as e:
            # Body claimed JSON but did not decode
            return failure(CommandStatus.ERROR, CommandErrorCode.INVALID_RESPONSE, f"Invalid response: {e}")

        duration = time.monotonic() - start_time
        logger.debug(f"{command.value} on daemon {endpoint.name} completed in {duration:.3f}s")

        if isinstance(response, dict) and response.get("success") is False:
            return failure(CommandStatus.ERROR, CommandErrorCode.DAEMON_ERROR,
                           str(response.get("error") or "Daemon reported failure"))

        return CommandResult(
            status=CommandStatus.SUCCESS,
            success=True,
            response=response,
            error=None,
            duration_seconds=duration,
            attempt=attempt,
            total_attempts=total_attempts,
        )


def is_running_status(response: Any) -> Optional[bool]:
    """
    Interpret a daemon status response.

    Returns:
        True/False when the daemon said whether the container runs, None if unclear
    """
    if not isinstance(response, dict):
        return None
    if isinstance(response.get("running"), bool):
        return response["running"]
    state = response.get("status") or response.get("state")
    if isinstance(state, str) and state:
        return state.lower() == "running"
    return None
