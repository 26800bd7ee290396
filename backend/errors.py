"""
Orchestration errors for the Raptor control panel

Every rejected operation surfaces one of these. Each error carries a
machine-readable kind, a human-readable detail and whether the caller may
simply re-issue the same request.

Kinds:
- Conflict, InUse, NotBound, DaemonMismatch: allocation/binding violations
- DaemonUnreachable, Timeout, DaemonError: daemon communication failures
- InvalidTransition, NotRunning: lifecycle/stream operations in the wrong state
- HasContainers, NotFound, ValidationFailed: registry and request validation
"""

from typing import Any, Dict


class OrchestrationError(Exception):
    """Base class for all errors surfaced by the orchestration core."""

    kind = "OrchestrationError"
    http_status = 500
    retriable = False

    def __init__(self, detail: str, retriable: bool = None):
        super().__init__(detail)
        self.detail = detail
        if retriable is not None:
            self.retriable = retriable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "detail": self.detail,
            "retriable": self.retriable,
        }


class Conflict(OrchestrationError):
    """Uniqueness or single-primary violation"""
    kind = "Conflict"
    http_status = 409


class InUse(OrchestrationError):
    """Delete blocked by an active reference"""
    kind = "InUse"
    http_status = 409


class NotBound(OrchestrationError):
    kind = "NotBound"
    http_status = 400


class DaemonMismatch(OrchestrationError):
    kind = "DaemonMismatch"
    http_status = 400


class HasContainers(OrchestrationError):
    """Daemon deregistration blocked by containers it still owns"""
    kind = "HasContainers"
    http_status = 409


class NotFound(OrchestrationError):
    kind = "NotFound"
    http_status = 404


class ValidationFailed(OrchestrationError):
    kind = "ValidationFailed"
    http_status = 400


class InvalidTransition(OrchestrationError):
    """Lifecycle command not valid from the container's current state"""
    kind = "InvalidTransition"
    http_status = 409


class NotRunning(OrchestrationError):
    """Stream or console operation attempted while the container is not running"""
    kind = "NotRunning"
    http_status = 409


class DaemonUnreachable(OrchestrationError):
    kind = "DaemonUnreachable"
    http_status = 502
    retriable = True


class CommandTimeout(OrchestrationError):
    kind = "Timeout"
    http_status = 504
    retriable = True


class DaemonError(OrchestrationError):
    """The daemon answered, but reported a failure"""
    kind = "DaemonError"
    http_status = 502
