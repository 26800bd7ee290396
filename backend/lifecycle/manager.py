"""
Lifecycle Manager for the Raptor control panel

Owns the authoritative lifecycle state of every container. State changes only
through this class, either as the outcome of a dispatched command or from a
daemon report; every other component reads it.

Architecture:
- One asyncio.Lock per container makes each container a single-writer actor.
  Commands for the same container are serialized; different containers
  proceed in parallel.
- Confirmation is explicit. A successful start only reaches `starting`; the
  container becomes `running` once the daemon reports it (status poll or
  pushed report). A graceful stop only reaches `stopping`; it becomes
  `stopped` on a daemon report or after a successful forced kill.
- Graceful-stop deadlines and start confirmations are background tasks
  (cancellable timers). A manual kill cancels them; they re-check ownership
  under the lock before acting, so a cancelled timer can never fire a second
  kill.
- Daemon calls that last as long as the workload's shutdown (graceful stop,
  restart) run as tracked tasks outside the lock, so a kill never queues
  behind them.
- Every transition is published on the EventBus (CONTAINER_STATE_CHANGED);
  the Streaming Multiplexer opens and closes channels from those events.

Failure semantics:
- start/restart: any dispatch failure reverts to `stopped` and raises a
  retriable error
- graceful stop: an undelivered stop signal puts the container back to
  `running` and raises a retriable error
- kill: a dispatch failure leaves the state unchanged and raises a
  retriable error
"""

import asyncio
import logging
import math
from typing import Dict, List, Optional

from allocations.pool import AllocationPool
from allocations.sync import sync_allocations
from config.settings import AppConfig
from database import DatabaseManager, ContainerDB
from dispatch.dispatcher import CommandDispatcher, CommandResult, DaemonCommand, is_running_status
from errors import InvalidTransition, NotFound, ValidationFailed
from event_bus import Event, EventBus, EventType
from lifecycle.state_machine import ContainerStateMachine, LifecycleState, INACTIVE_STATES

logger = logging.getLogger(__name__)

STOPPED = LifecycleState.STOPPED.value
STARTING = LifecycleState.STARTING.value
RUNNING = LifecycleState.RUNNING.value
STOPPING = LifecycleState.STOPPING.value
KILLED = LifecycleState.KILLED.value

# Daemon status words mapped onto lifecycle states
REPORTED_STATES = {
    'running': RUNNING,
    'stopped': STOPPED,
    'exited': STOPPED,
    'dead': STOPPED,
    'created': STOPPED,
    'killed': KILLED,
}


class LifecycleManager:
    """Single-writer lifecycle state machine per container."""

    def __init__(
        self,
        db: DatabaseManager,
        dispatcher: CommandDispatcher,
        pool: AllocationPool,
        event_bus: Optional[EventBus] = None,
        start_confirm_timeout: Optional[float] = None,
        status_poll_interval: Optional[float] = None,
        default_stop_timeout: Optional[float] = None,
        restart_stop_timeout: Optional[float] = None,
        default_stop_command: Optional[str] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.pool = pool
        self.event_bus = event_bus
        self.state_machine = ContainerStateMachine()

        self.start_confirm_timeout = start_confirm_timeout or AppConfig.START_CONFIRM_TIMEOUT
        self.status_poll_interval = status_poll_interval or AppConfig.STATUS_POLL_INTERVAL
        self.default_stop_timeout = default_stop_timeout or AppConfig.DEFAULT_GRACEFUL_STOP_TIMEOUT
        self.restart_stop_timeout = restart_stop_timeout or AppConfig.RESTART_GRACEFUL_STOP_TIMEOUT
        self.default_stop_command = default_stop_command or AppConfig.DEFAULT_STOP_COMMAND

        self._locks: Dict[str, asyncio.Lock] = {}
        self._stop_timers: Dict[str, asyncio.Task] = {}
        self._start_watchers: Dict[str, asyncio.Task] = {}
        # Long daemon calls (graceful stop, restart) that a kill must be able to cancel
        self._pending_calls: Dict[str, asyncio.Task] = {}

    def _lock(self, container_id: str) -> asyncio.Lock:
        lock = self._locks.get(container_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[container_id] = lock
        return lock

    # ==================== Reads ====================

    def get_state(self, container_id: str) -> str:
        """Current lifecycle state (raises NotFound for unknown containers)"""
        with self.db.get_session() as session:
            container = session.get(ContainerDB, container_id)
            if container is None:
                raise NotFound(f"Container {container_id} not found")
            return container.status

    def get_container(self, container_id: str) -> dict:
        with self.db.get_session() as session:
            container = session.get(ContainerDB, container_id)
            if container is None:
                raise NotFound(f"Container {container_id} not found")
            return container.to_dict()

    def has_pending_stop(self, container_id: str) -> bool:
        task = self._stop_timers.get(container_id)
        return task is not None and not task.done()

    # ==================== Commands ====================

    async def start(self, container_id: str) -> dict:
        """
        Start a stopped container.

        Returns:
            Container dict (state `starting` until the daemon confirms)

        Raises:
            InvalidTransition: container is not stopped
            DaemonUnreachable/CommandTimeout/DaemonError: start failed; state reverted to stopped
        """
        async with self._lock(container_id):
            await self._start_locked(container_id)
        return self.get_container(container_id)

    async def _start_locked(self, container_id: str):
        state = self.get_state(container_id)
        if state not in INACTIVE_STATES:
            raise InvalidTransition(f"Cannot start container {container_id}: it is {state}")

        await sync_allocations(self.pool, self.dispatcher, container_id)
        await self._set_state(container_id, STARTING)

        result = await self.dispatcher.dispatch(container_id, DaemonCommand.START)
        if not result.success:
            await self._set_state(container_id, STOPPED, error=result.error)
            raise result.to_error("Start")

        self._arm_start_watch(container_id)

    async def restart(self, container_id: str) -> dict:
        """
        Restart a running container, or start a stopped one.

        The daemon-side restart waits out the workload's own stop, so it runs
        as a tracked background call; a kill issued meanwhile cancels it.

        Raises:
            InvalidTransition: container is starting or stopping
            DaemonUnreachable/CommandTimeout/DaemonError: restart rejected; state reverted to stopped
        """
        async with self._lock(container_id):
            state = self.get_state(container_id)
            if state in INACTIVE_STATES:
                await self._start_locked(container_id)
                return self.get_container(container_id)
            if state != RUNNING:
                raise InvalidTransition(f"Cannot restart container {container_id}: it is {state}")

            await sync_allocations(self.pool, self.dispatcher, container_id)
            # Entering `starting` tears down and reopens stream channels
            await self._set_state(container_id, STARTING)
            call = self._track_call(container_id, self._restart_call(container_id), "restart")

        result = await self._early_result(call)
        if result is not None and not result.success:
            raise result.to_error("Restart")
        async with self._lock(container_id):
            return self.get_container(container_id)

    async def _restart_call(self, container_id: str) -> CommandResult:
        me = asyncio.current_task()
        result = await self.dispatcher.dispatch(
            container_id,
            DaemonCommand.RESTART,
            {"timeoutSecs": int(math.ceil(self.restart_stop_timeout))},
            timeout=self.restart_stop_timeout + self.dispatcher.default_timeout,
        )
        async with self._lock(container_id):
            if self._pending_calls.get(container_id) is not me:
                return result
            self._pending_calls.pop(container_id, None)
            if self.get_state(container_id) != STARTING:
                return result
            if result.success:
                self._arm_start_watch(container_id)
            else:
                await self._set_state(container_id, STOPPED, error=result.error)
        return result

    async def graceful_stop(self, container_id: str, timeout: Optional[float] = None) -> dict:
        """
        Ask the workload to stop; force-kill it if it has not stopped by the deadline.

        The container moves to `stopping` and the deadline timer is armed
        before the daemon is asked to deliver the stop command and signal.
        That daemon call blocks while the workload shuts down, so it runs in
        the background; a manual kill cancels both it and the timer.

        Args:
            container_id: Container to stop
            timeout: Seconds to wait before escalating to a forced kill

        Raises:
            InvalidTransition: container is not running
            DaemonUnreachable/CommandTimeout/DaemonError: signal not delivered; container is running again
        """
        timeout = self.default_stop_timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValidationFailed(f"Graceful stop timeout must be positive: {timeout}")

        async with self._lock(container_id):
            container = self.get_container(container_id)
            if container['status'] != RUNNING:
                raise InvalidTransition(
                    f"Cannot gracefully stop container {container_id}: it is {container['status']}"
                )

            stop_command = container['stop_command'] or self.default_stop_command
            await self._set_state(container_id, STOPPING)
            self._stop_timers[container_id] = asyncio.create_task(
                self._watch_stop(container_id, timeout),
                name=f"stop-deadline-{container_id[:8]}",
            )
            call = self._track_call(
                container_id,
                self._stop_call(container_id, stop_command, timeout),
                "graceful-stop",
            )
            logger.info(f"Container {container_id[:8]}: stopping, force kill in {timeout}s")

        result = await self._early_result(call)
        if result is not None and not result.success:
            raise result.to_error("Graceful stop")
        async with self._lock(container_id):
            return self.get_container(container_id)

    async def _stop_call(self, container_id: str, stop_command: str, timeout: float) -> CommandResult:
        me = asyncio.current_task()
        result = await self.dispatcher.dispatch(
            container_id,
            DaemonCommand.STOP_GRACEFUL,
            {"stopCommand": stop_command, "timeoutSecs": int(math.ceil(timeout))},
            timeout=timeout + self.dispatcher.default_timeout,
        )
        async with self._lock(container_id):
            if self._pending_calls.get(container_id) is not me:
                return result
            self._pending_calls.pop(container_id, None)
            if result.success or self.get_state(container_id) != STOPPING:
                return result
            # The workload never got the signal
            logger.warning(f"Stop signal for container {container_id[:8]} not delivered: {result.error}")
            await self._cancel_timers(container_id)
            await self._set_state(container_id, RUNNING, error=result.error)
        return result

    async def kill(self, container_id: str) -> dict:
        """
        Force-terminate a container. Always allowed.

        Cancels any pending graceful-stop deadline or start confirmation. On an
        already stopped container this is a no-op that succeeds.

        Raises:
            DaemonUnreachable/CommandTimeout/DaemonError: kill failed; state unchanged
        """
        async with self._lock(container_id):
            state = self.get_state(container_id)
            if state in INACTIVE_STATES:
                logger.info(f"Container {container_id[:8]} already {state}, kill is a no-op")
                await self._cancel_timers(container_id)
                return self.get_container(container_id)

            result = await self.dispatcher.dispatch(container_id, DaemonCommand.KILL)
            if not result.success:
                # Pending timers stay armed; the state did not change
                raise result.to_error("Kill")

            await self._cancel_timers(container_id)
            await self._set_state(container_id, STOPPED)
        return self.get_container(container_id)

    async def delete(self, container_id: str, force: bool = False):
        """
        Destroy a stopped container, releasing its allocations.

        Args:
            force: Delete the record even if the daemon cannot remove the container

        Raises:
            InvalidTransition: container is not stopped
        """
        async with self._lock(container_id):
            container = self.get_container(container_id)
            if container['status'] not in INACTIVE_STATES:
                raise InvalidTransition(
                    f"Cannot delete container {container_id}: it is {container['status']}; stop it first"
                )

            result = await self.dispatcher.dispatch(container_id, DaemonCommand.REMOVE)
            if not result.success:
                if not force:
                    raise result.to_error("Delete")
                logger.warning(f"Daemon could not remove container {container_id[:8]}, deleting record anyway: {result.error}")

            await self._cancel_timers(container_id)
            with self.pool.binding_lock(container_id):
                with self.db.get_session() as session:
                    released = self.pool.release_all(container_id, session=session)
                    session.query(ContainerDB).filter_by(id=container_id).delete(synchronize_session=False)
                    session.commit()

            logger.info(f"Deleted container {container_id[:8]} (released {released} allocation(s))")
            await self._emit(EventType.CONTAINER_DELETED, container_id, container['daemon_id'], {
                'old_state': container['status'],
            })

        self._locks.pop(container_id, None)
        self.pool.forget(container_id)

    async def handle_daemon_report(self, container_id: str, reported: str, detail: Optional[str] = None) -> str:
        """
        Apply an asynchronous state report from the daemon. Idempotent.

        Args:
            container_id: Container the report is about
            reported: Daemon status word (running, stopped, exited, killed, ...)
            detail: Optional reason, recorded when a start fails

        Returns:
            Lifecycle state after the report
        """
        target = REPORTED_STATES.get((reported or '').lower())
        if target is None:
            raise ValidationFailed(f"Unknown reported state '{reported}'")

        async with self._lock(container_id):
            state = self.get_state(container_id)

            if target == RUNNING:
                if state == STARTING:
                    await self._cancel_timers(container_id)
                    await self._set_state(container_id, RUNNING)
                elif state != RUNNING:
                    logger.warning(f"Ignoring 'running' report for container {container_id[:8]} in state {state}")
                return self.get_state(container_id)

            if state in INACTIVE_STATES:
                return state

            await self._cancel_timers(container_id)
            error = None
            if state == STARTING:
                error = detail or f"Container {reported} during startup"
            await self._set_state(container_id, target, error=error)
            return target

    # ==================== Timers ====================

    def _track_call(self, container_id: str, coro, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{label}-{container_id[:8]}")
        task.add_done_callback(self._log_call_failure)
        self._pending_calls[container_id] = task
        return task

    @staticmethod
    def _log_call_failure(task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Daemon call {task.get_name()} failed: {task.exception()}")

    async def _early_result(self, task: asyncio.Task) -> Optional[CommandResult]:
        """
        Wait up to one control-command timeout for a long daemon call.

        Returns None while the call is still in flight or if a kill cancelled
        it. Runs without the container's lock.
        """
        done, _ = await asyncio.wait({task}, timeout=self.dispatcher.default_timeout)
        if not done or task.cancelled():
            return None
        return task.result()

    def _arm_start_watch(self, container_id: str):
        self._start_watchers[container_id] = asyncio.create_task(
            self._watch_start(container_id),
            name=f"start-confirm-{container_id[:8]}",
        )

    async def _watch_start(self, container_id: str):
        """Poll the daemon until it confirms `running` or the confirmation deadline passes"""
        me = asyncio.current_task()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.start_confirm_timeout

        try:
            while True:
                await asyncio.sleep(self.status_poll_interval)
                result = await self.dispatcher.dispatch(container_id, DaemonCommand.STATUS)
                running = is_running_status(result.response) if result.success else None

                if running or loop.time() >= deadline:
                    async with self._lock(container_id):
                        if self._start_watchers.get(container_id) is not me:
                            return
                        self._start_watchers.pop(container_id, None)
                        if self.get_state(container_id) != STARTING:
                            return
                        if running:
                            await self._set_state(container_id, RUNNING)
                        else:
                            await self._set_state(
                                container_id, STOPPED,
                                error=f"Daemon did not confirm start within {self.start_confirm_timeout}s",
                            )
                    return
        except asyncio.CancelledError:
            raise
        except NotFound:
            return
        except Exception as e:
            logger.error(f"Start confirmation for container {container_id[:8]} failed: {e}", exc_info=True)

    async def _watch_stop(self, container_id: str, timeout: float):
        """Graceful-stop deadline: poll for `stopped`, force kill when the deadline passes"""
        me = asyncio.current_task()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(self.status_poll_interval, remaining))
                if loop.time() >= deadline:
                    break

                result = await self.dispatcher.dispatch(
                    container_id, DaemonCommand.STATUS,
                    timeout=min(self.dispatcher.default_timeout, max(deadline - loop.time(), 0.1)),
                )
                if result.success and is_running_status(result.response) is False:
                    async with self._lock(container_id):
                        if self._stop_timers.get(container_id) is not me:
                            return
                        self._stop_timers.pop(container_id, None)
                        if self.get_state(container_id) == STOPPING:
                            await self._cancel_timers(container_id)
                            await self._set_state(container_id, STOPPED)
                    return

            async with self._lock(container_id):
                if self._stop_timers.get(container_id) is not me:
                    return
                self._stop_timers.pop(container_id, None)
                if self.get_state(container_id) != STOPPING:
                    return

                logger.warning(f"Container {container_id[:8]} did not stop within {timeout}s, force killing")
                result = await self.dispatcher.dispatch(container_id, DaemonCommand.KILL)
                if result.success:
                    await self._cancel_timers(container_id)
                    await self._set_state(container_id, STOPPED)
                else:
                    # Still stopping; a manual kill can retry
                    self._record_error(container_id, f"Forced kill after graceful stop failed: {result.error}")
                    logger.error(f"Forced kill of container {container_id[:8]} failed: {result.error}")
        except asyncio.CancelledError:
            raise
        except NotFound:
            return
        except Exception as e:
            logger.error(f"Stop deadline for container {container_id[:8]} failed: {e}", exc_info=True)

    async def _cancel_timers(self, container_id: str):
        """Cancel pending timers of a container; the caller holds its lock"""
        current = asyncio.current_task()
        tasks: List[asyncio.Task] = []
        for registry in (self._stop_timers, self._start_watchers, self._pending_calls):
            task = registry.pop(container_id, None)
            if task is not None and task is not current and not task.done():
                task.cancel()
                tasks.append(task)

        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Timer for container {container_id[:8]} ended with error: {e}")

    async def shutdown(self):
        """Cancel every pending timer (application shutdown)"""
        tasks = [
            *self._stop_timers.values(),
            *self._start_watchers.values(),
            *self._pending_calls.values(),
        ]
        self._stop_timers.clear()
        self._start_watchers.clear()
        self._pending_calls.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Lifecycle timer ended with error during shutdown: {e}")

    # ==================== State writes ====================

    async def _set_state(self, container_id: str, to_state: str, error: Optional[str] = None):
        """Persist a transition and publish it; the caller holds the container's lock"""
        with self.db.get_session() as session:
            container = session.get(ContainerDB, container_id)
            if container is None:
                raise NotFound(f"Container {container_id} not found")
            from_state = container.status
            if from_state == to_state:
                return
            if not self.state_machine.transition(container, to_state):
                raise InvalidTransition(f"Container {container_id}: {from_state} -> {to_state} is not allowed")
            if error:
                container.last_error = error
            session.commit()
            daemon_id = container.daemon_id

        await self._emit(EventType.CONTAINER_STATE_CHANGED, container_id, daemon_id, {
            'old_state': from_state,
            'new_state': to_state,
            'error': error,
        })

    def _record_error(self, container_id: str, error: str):
        with self.db.get_session() as session:
            container = session.get(ContainerDB, container_id)
            if container is not None:
                container.last_error = error
                session.commit()

    async def _emit(self, event_type: EventType, container_id: str, daemon_id: str, data: dict):
        if self.event_bus is None:
            return
        await self.event_bus.emit(Event(
            event_type=event_type,
            scope_type='container',
            scope_id=container_id,
            daemon_id=daemon_id,
            data=data,
        ))
