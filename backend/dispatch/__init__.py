"""
Command dispatch module for Raptor

Sends lifecycle commands to the daemon that owns a container.
"""

from .dispatcher import CommandDispatcher, CommandResult, DaemonCommand, RetryPolicy

__all__ = ["CommandDispatcher", "CommandResult", "DaemonCommand", "RetryPolicy"]
