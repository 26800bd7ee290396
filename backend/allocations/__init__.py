"""
Allocation module for Raptor

Network endpoints owned by daemons and their bindings to containers.

Components:
    - pool: Allocation CRUD and single-primary binding semantics
    - sync: Pushes a container's bindings to its daemon
    - routes: API endpoints for allocations
"""

from .pool import AllocationPool

__all__ = ["AllocationPool"]
