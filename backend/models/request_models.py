"""
Request Models for Raptor API Endpoints
Pydantic models for API request validation

Shape checks live here; domain rules (resource limits, allocation ownership,
lifecycle state) are enforced by the services and surface as
OrchestrationError responses.
"""

import re
from typing import Optional, List, Dict

from pydantic import BaseModel, Field, field_validator, model_validator

HOSTNAME_PATTERN = re.compile(r'^[A-Za-z0-9]([A-Za-z0-9.\-]*[A-Za-z0-9])?$')


def _validate_host(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError('Host cannot be empty')
    # IPv6 literals are accepted as-is
    if ':' not in v and not HOSTNAME_PATTERN.match(v):
        raise ValueError('Host must be a hostname or IP address')
    return v


# ==================== Daemons ====================

class DaemonCreate(BaseModel):
    """Request model for registering a daemon"""
    name: str = Field(..., min_length=1, max_length=100)
    host: str = Field(..., min_length=1, max_length=253)
    port: int = Field(8443, ge=1, le=65535)
    secure: bool = False
    api_key: Optional[str] = Field(None, min_length=8, max_length=255)  # Generated when omitted
    location: Optional[str] = Field(None, max_length=100)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('Daemon name cannot be empty')
        if re.search(r'[<>"\']', v):
            raise ValueError('Daemon name contains invalid characters')
        return v

    @field_validator('host')
    @classmethod
    def validate_host(cls, v: str) -> str:
        return _validate_host(v)


class DaemonUpdate(BaseModel):
    """Request model for updating a daemon; omitted fields are unchanged"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    host: Optional[str] = Field(None, min_length=1, max_length=253)
    port: Optional[int] = Field(None, ge=1, le=65535)
    secure: Optional[bool] = None
    api_key: Optional[str] = Field(None, min_length=8, max_length=255)
    location: Optional[str] = Field(None, max_length=100)

    @field_validator('host')
    @classmethod
    def validate_host(cls, v: Optional[str]) -> Optional[str]:
        return _validate_host(v) if v is not None else v


class DaemonPing(BaseModel):
    """Probe an endpoint before registering it"""
    host: str = Field(..., min_length=1, max_length=253)
    port: int = Field(8443, ge=1, le=65535)
    api_key: str = Field(..., min_length=1, max_length=255)
    secure: bool = False

    @field_validator('host')
    @classmethod
    def validate_host(cls, v: str) -> str:
        return _validate_host(v)


# ==================== Allocations ====================

class AllocationCreate(BaseModel):
    """Request model for creating an allocation (or a range of ports)"""
    daemon_id: str = Field(..., min_length=1, max_length=64)
    ip: str = Field(..., min_length=1, max_length=64)
    port: int = Field(..., ge=1, le=65535)
    port_end: Optional[int] = Field(None, ge=1, le=65535)  # Inclusive range end
    protocol: str = Field('tcp', pattern='^(tcp|udp|both)$')
    notes: Optional[str] = Field(None, max_length=500)

    @model_validator(mode='after')
    def validate_range(self):
        if self.port_end is not None:
            if self.port_end < self.port:
                raise ValueError('port_end must not be lower than port')
            if self.port_end - self.port >= 1000:
                raise ValueError('A range may contain at most 1000 ports')
        return self


class AllocationUpdate(BaseModel):
    """Request model for changing an allocation's protocol"""
    protocol: str = Field(..., pattern='^(tcp|udp|both)$')


class BindRequest(BaseModel):
    allocation_id: str = Field(..., min_length=1, max_length=64)
    make_primary: bool = False


# ==================== Containers ====================

class ContainerCreate(BaseModel):
    """Request model for creating a container on a daemon"""
    name: str = Field(..., min_length=1, max_length=100)
    daemon_id: str = Field(..., min_length=1, max_length=64)
    image: str = Field(..., min_length=1, max_length=255)
    allocation_ids: List[str] = Field(default_factory=list, max_length=50)  # First one becomes primary
    memory_limit: int = 1024
    cpu_limit: int = 100
    disk_limit: int = 5120
    swap_limit: int = 512
    io_weight: int = 500
    startup_script: Optional[str] = Field(None, max_length=4000)
    startup_variables: Optional[Dict[str, str]] = None
    stop_command: Optional[str] = Field(None, max_length=255)
    user_id: Optional[str] = Field(None, max_length=64)


class ResourceUpdate(BaseModel):
    """Request model for updating resource limits; omitted fields are unchanged"""
    memory_limit: Optional[int] = None
    cpu_limit: Optional[int] = None
    disk_limit: Optional[int] = None
    swap_limit: Optional[int] = None
    io_weight: Optional[int] = None
    startup_script: Optional[str] = Field(None, max_length=4000)
    startup_variables: Optional[Dict[str, str]] = None
    stop_command: Optional[str] = Field(None, max_length=255)

    def limits(self) -> Dict[str, Optional[int]]:
        return {
            'memory_limit': self.memory_limit,
            'cpu_limit': self.cpu_limit,
            'disk_limit': self.disk_limit,
            'swap_limit': self.swap_limit,
            'io_weight': self.io_weight,
        }

    def changes_startup(self) -> bool:
        return any(v is not None for v in (self.startup_script, self.startup_variables, self.stop_command))


class GracefulStopRequest(BaseModel):
    timeout: Optional[float] = Field(None, gt=0, le=3600)  # Seconds before the forced kill


class ConsoleCommand(BaseModel):
    """Console input, forwarded verbatim"""
    command: str = Field(..., min_length=1, max_length=4096)


class StateReport(BaseModel):
    """State pushed by a daemon (running, stopped, exited, killed, ...)"""
    state: str = Field(..., min_length=1, max_length=32)
    detail: Optional[str] = Field(None, max_length=1000)
