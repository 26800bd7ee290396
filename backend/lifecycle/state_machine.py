"""
Container lifecycle state machine for the Raptor control panel

State Flow:
    stopped -> starting -> running -> stopping -> stopped
                  |           |          |
                  |           |          +-> (deadline) forced kill -> stopped
                  +-----------+----------+-> kill -> stopped
    running -> starting                          (restart)
    stopping -> running                          (stop signal not delivered)
    starting -> stopped                          (start failed / not confirmed)
    any active state -> killed                   (daemon reports the workload was killed)

`killed` behaves like `stopped` for every command: it can be started,
deleted, and killing it again is a no-op.

Usage:
    sm = ContainerStateMachine()

    if sm.can_transition(container.status, 'starting'):
        sm.transition(container, 'starting')
"""

from enum import Enum
from typing import List
import logging

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    KILLED = "killed"


# States in which the workload is not running and nothing is in flight
INACTIVE_STATES = {LifecycleState.STOPPED.value, LifecycleState.KILLED.value}

# States in which the daemon has (or is bringing up) a live workload
ACTIVE_STATES = {
    LifecycleState.STARTING.value,
    LifecycleState.RUNNING.value,
    LifecycleState.STOPPING.value,
}


class ContainerStateMachine:
    """
    State machine for container lifecycle management.

    Enforces valid state transitions. It never talks to daemons; the
    LifecycleManager decides when a transition happens.
    """

    # Valid state transitions (from_state -> to_state)
    VALID_TRANSITIONS = {
        'stopped': ['starting'],
        'killed': ['starting'],
        'starting': ['running', 'stopped', 'killed'],
        'running': ['stopping', 'starting', 'stopped', 'killed'],
        'stopping': ['stopped', 'killed', 'running'],
    }

    VALID_STATES = {state.value for state in LifecycleState}

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """
        Check if a state transition is valid.

        Examples:
            >>> sm = ContainerStateMachine()
            >>> sm.can_transition('stopped', 'starting')
            True
            >>> sm.can_transition('stopped', 'running')
            False
            >>> sm.can_transition('stopping', 'starting')
            False
        """
        if from_state not in self.VALID_STATES:
            logger.warning(f"Invalid from_state: {from_state}")
            return False

        if to_state not in self.VALID_STATES:
            logger.warning(f"Invalid to_state: {to_state}")
            return False

        return to_state in self.VALID_TRANSITIONS.get(from_state, [])

    def transition(self, container, to_state: str) -> bool:
        """
        Transition a container record to a new state with validation.

        Args:
            container: ContainerDB instance
            to_state: Target state

        Returns:
            True if transition succeeded, False if invalid

        Side Effects:
            - Updates container.status
            - Clears container.last_error when a start begins
            - Logs state transitions
        """
        from_state = container.status

        if not self.can_transition(from_state, to_state):
            logger.error(
                f"Invalid state transition for container {container.id[:8]}: "
                f"{from_state} -> {to_state}"
            )
            return False

        container.status = to_state

        if to_state == LifecycleState.STARTING.value:
            container.last_error = None

        logger.info(f"Container {container.id[:8]}: {from_state} -> {to_state}")
        return True

    def get_valid_next_states(self, current_state: str) -> List[str]:
        """
        Examples:
            >>> ContainerStateMachine().get_valid_next_states('stopping')
            ['stopped', 'killed', 'running']
        """
        return self.VALID_TRANSITIONS.get(current_state, [])
