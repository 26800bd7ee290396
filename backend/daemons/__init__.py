"""
Daemon module for Raptor

Components:
    - client: Authenticated HTTP client for one daemon
    - registry: Daemon CRUD, container routing and advisory health
    - routes: API endpoints for daemons
"""

from .client import DaemonClient, DaemonEndpoint
from .registry import DaemonRegistry, DaemonHealth

__all__ = ["DaemonClient", "DaemonEndpoint", "DaemonRegistry", "DaemonHealth"]
