"""
Lifecycle module for Raptor

Components:
    - state_machine: Valid container state transitions
    - manager: Single-writer lifecycle commands, timers and daemon reports
"""

from .state_machine import ContainerStateMachine, LifecycleState
from .manager import LifecycleManager

__all__ = ["ContainerStateMachine", "LifecycleState", "LifecycleManager"]
