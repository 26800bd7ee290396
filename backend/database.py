"""
Database models and operations for the Raptor control panel
Uses SQLite (or any SQLAlchemy URL) for durable orchestration state

Durable invariants are enforced here as well as in application logic:
- an allocation tuple (daemon, ip, port, protocol) exists at most once
- an allocation is bound to at most one container
- a container has at most one primary binding (partial unique index)
- resource limits are positive
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    create_engine, event, Column, String, Integer, Boolean, DateTime, ForeignKey,
    Text, JSON, UniqueConstraint, CheckConstraint, Index, text,
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.pool import StaticPool
import os
import logging
import threading

logger = logging.getLogger(__name__)

_database_manager_instance: Optional['DatabaseManager'] = None
_database_manager_lock = threading.Lock()

PROTOCOLS = ('tcp', 'udp', 'both')
LIFECYCLE_STATES = ('stopped', 'starting', 'running', 'stopping', 'killed')


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


class DaemonDB(Base):
    """Remote daemon that runs containers on one host"""
    __tablename__ = "daemons"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    host = Column(String, nullable=False)  # Hostname or IP the panel connects to
    port = Column(Integer, nullable=False, default=8443)
    secure = Column(Boolean, nullable=False, default=False)  # https/wss when set
    api_key = Column(String, nullable=False)
    location = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    allocations = relationship("AllocationDB", back_populates="daemon")
    containers = relationship("ContainerDB", back_populates="daemon")

    __table_args__ = (
        CheckConstraint('port > 0 AND port <= 65535', name='ck_daemon_port'),
    )

    def to_dict(self, include_secret: bool = False) -> dict:
        data = {
            'id': self.id,
            'name': self.name,
            'host': self.host,
            'port': self.port,
            'secure': self.secure,
            'location': self.location,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if include_secret:
            data['api_key'] = self.api_key
        return data


class AllocationDB(Base):
    """Reservable network endpoint owned by a daemon"""
    __tablename__ = "allocations"

    id = Column(String, primary_key=True)
    daemon_id = Column(String, ForeignKey("daemons.id", ondelete="RESTRICT"), nullable=False)
    ip = Column(String, nullable=False)
    port = Column(Integer, nullable=False)
    protocol = Column(String, nullable=False, default='tcp')
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    daemon = relationship("DaemonDB", back_populates="allocations")
    binding = relationship("ContainerAllocationDB", back_populates="allocation", uselist=False)

    __table_args__ = (
        UniqueConstraint('daemon_id', 'ip', 'port', 'protocol', name='uq_allocation_endpoint'),
        CheckConstraint("protocol IN ('tcp', 'udp', 'both')", name='ck_allocation_protocol'),
        CheckConstraint('port > 0 AND port <= 65535', name='ck_allocation_port'),
        Index('idx_allocation_daemon', 'daemon_id'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'daemon_id': self.daemon_id,
            'ip': self.ip,
            'port': self.port,
            'protocol': self.protocol,
            'notes': self.notes,
            'container_id': self.binding.container_id if self.binding else None,
        }


class ContainerAllocationDB(Base):
    """Binding of one allocation to one container"""
    __tablename__ = "container_allocations"

    # Autoincrement id doubles as a tie-breaker for bindings created in the same instant
    id = Column(Integer, primary_key=True, autoincrement=True)
    container_id = Column(String, ForeignKey("containers.id", ondelete="CASCADE"), nullable=False)
    allocation_id = Column(String, ForeignKey("allocations.id", ondelete="RESTRICT"), nullable=False)
    is_primary = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    container = relationship("ContainerDB", back_populates="bindings")
    allocation = relationship("AllocationDB", back_populates="binding")

    __table_args__ = (
        UniqueConstraint('allocation_id', name='uq_binding_allocation'),
        Index(
            'uq_container_primary_binding', 'container_id',
            unique=True,
            sqlite_where=text('is_primary = 1'),
            postgresql_where=text('is_primary'),
        ),
        Index('idx_binding_container', 'container_id'),
    )

    def to_dict(self) -> dict:
        allocation = self.allocation
        return {
            'allocation_id': self.allocation_id,
            'ip': allocation.ip if allocation else None,
            'port': allocation.port if allocation else None,
            'protocol': allocation.protocol if allocation else None,
            'is_primary': self.is_primary,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ContainerDB(Base):
    """Container managed on exactly one daemon for its whole life"""
    __tablename__ = "containers"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    user_id = Column(String, nullable=True)  # Owning user (user management lives outside the core)
    daemon_id = Column(String, ForeignKey("daemons.id", ondelete="RESTRICT"), nullable=False)
    image = Column(String, nullable=False)
    # Resource limits: memory/disk/swap in MB, cpu in percent of one core
    memory_limit = Column(Integer, nullable=False, default=1024)
    cpu_limit = Column(Integer, nullable=False, default=100)
    disk_limit = Column(Integer, nullable=False, default=5120)
    swap_limit = Column(Integer, nullable=False, default=512)
    io_weight = Column(Integer, nullable=False, default=500)
    startup_script = Column(Text, nullable=True)  # Template with {{VARIABLE}} placeholders
    startup_variables = Column(JSON, nullable=True)
    stop_command = Column(String, nullable=True)
    status = Column(String, nullable=False, default='stopped')
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    daemon = relationship("DaemonDB", back_populates="containers")
    bindings = relationship(
        "ContainerAllocationDB", back_populates="container",
        cascade="all, delete-orphan", order_by="ContainerAllocationDB.id",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('stopped', 'starting', 'running', 'stopping', 'killed')",
            name='ck_container_status',
        ),
        CheckConstraint('memory_limit > 0', name='ck_container_memory'),
        CheckConstraint('cpu_limit > 0', name='ck_container_cpu'),
        CheckConstraint('disk_limit > 0', name='ck_container_disk'),
        CheckConstraint('swap_limit > 0', name='ck_container_swap'),
        CheckConstraint('io_weight > 0', name='ck_container_io_weight'),
        Index('idx_container_daemon', 'daemon_id'),
        Index('idx_container_user', 'user_id'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'user_id': self.user_id,
            'daemon_id': self.daemon_id,
            'image': self.image,
            'memory_limit': self.memory_limit,
            'cpu_limit': self.cpu_limit,
            'disk_limit': self.disk_limit,
            'swap_limit': self.swap_limit,
            'io_weight': self.io_weight,
            'startup_script': self.startup_script,
            'startup_variables': self.startup_variables or {},
            'stop_command': self.stop_command,
            'status': self.status,
            'last_error': self.last_error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class DatabaseManager:
    """
    Database management for the control panel.

    Owns the SQLAlchemy engine and session factory. Use get_database_manager()
    for the process-wide instance; tests construct their own against a
    temporary database.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url

        if database_url.startswith('sqlite'):
            path = database_url.split('sqlite:///', 1)[1] if 'sqlite:///' in database_url else ''
            in_memory = path in ('', ':memory:')
            if not in_memory:
                data_dir = os.path.dirname(os.path.abspath(path))
                os.makedirs(data_dir, exist_ok=True)

            engine_kwargs = {
                'connect_args': {
                    "check_same_thread": False,
                    "timeout": 20  # 20 second lock timeout
                },
                'echo': False,
            }
            # An in-memory database only exists on its one connection
            if in_memory:
                engine_kwargs['poolclass'] = StaticPool
            self.engine = create_engine(database_url, **engine_kwargs)
            self._configure_sqlite_pragmas()
        else:
            self.engine = create_engine(database_url, pool_pre_ping=True, echo=False)

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Database ready at {self._redacted_url()}")

    def _configure_sqlite_pragmas(self):
        """
        Configure SQLite PRAGMA statements on every new connection.

        - foreign_keys=ON: SQLite ignores FOREIGN KEY clauses without it
        - journal_mode=WAL: concurrent reads during writes
        - synchronous=NORMAL: safe with WAL, faster than FULL
        """
        @event.listens_for(self.engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
            finally:
                cursor.close()

    def _redacted_url(self) -> str:
        if '@' in self.database_url:
            scheme, rest = self.database_url.split('://', 1)
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return self.database_url

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    def dispose(self):
        self.engine.dispose()


def get_database_manager(database_url: Optional[str] = None) -> DatabaseManager:
    """
    Get the process-wide DatabaseManager, creating it on first use.

    Only ONE engine/connection pool should exist per process.
    """
    global _database_manager_instance
    if _database_manager_instance is not None:
        if database_url and database_url != _database_manager_instance.database_url:
            logger.warning(
                f"DatabaseManager already exists for '{_database_manager_instance._redacted_url()}', "
                f"ignoring requested URL"
            )
        return _database_manager_instance

    with _database_manager_lock:
        if _database_manager_instance is None:
            if database_url is None:
                from config.settings import AppConfig
                database_url = AppConfig.DATABASE_URL
            _database_manager_instance = DatabaseManager(database_url)
        return _database_manager_instance
