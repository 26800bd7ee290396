"""
Configuration Management for the Raptor control panel
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler


class HealthCheckFilter(logging.Filter):
    """Filter out health check and routine polling requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()

        # For uvicorn access logs, the message format is:
        # 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        if '200 OK' in message or '200' in str(getattr(record, 'args', '')):
            if '/health' in message:
                return False
            # Panel polls container state every few seconds
            if 'GET /api/containers' in message:
                return False
            # Daemon status badges
            if 'GET /api/daemons' in message and '/status' in message:
                return False
        return True


def setup_logging():
    """Configure application logging with rotation"""
    from .paths import LOG_DIR

    os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers so our configuration wins
    # and file descriptors from earlier handlers are not leaked
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    level = getattr(logging, AppConfig.LOG_LEVEL.upper(), logging.INFO)
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, 'raptor.log'),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())


class AppConfig:
    """Main application configuration"""

    # Server settings
    HOST = os.getenv('RAPTOR_HOST', '0.0.0.0')
    PORT = int(os.getenv('RAPTOR_PORT', 8080))

    from .paths import DATABASE_URL as DEFAULT_DATABASE_URL

    # Database settings
    DATABASE_URL = os.getenv('RAPTOR_DATABASE_URL', DEFAULT_DATABASE_URL)

    # Logging
    LOG_LEVEL = os.getenv('RAPTOR_LOG_LEVEL', 'INFO')

    # Daemon command dispatch (seconds)
    CONTROL_COMMAND_TIMEOUT = float(os.getenv('RAPTOR_CONTROL_COMMAND_TIMEOUT', 30))
    RETRY_DELAY = float(os.getenv('RAPTOR_RETRY_DELAY', 0.5))

    # Daemon health probing (seconds)
    HEALTH_PROBE_TIMEOUT = float(os.getenv('RAPTOR_HEALTH_PROBE_TIMEOUT', 5))
    HEALTH_PROBE_INTERVAL = float(os.getenv('RAPTOR_HEALTH_PROBE_INTERVAL', 30))

    # Lifecycle (seconds)
    DEFAULT_GRACEFUL_STOP_TIMEOUT = float(os.getenv('RAPTOR_GRACEFUL_STOP_TIMEOUT', 30))
    RESTART_GRACEFUL_STOP_TIMEOUT = float(os.getenv('RAPTOR_RESTART_STOP_TIMEOUT', 15))
    START_CONFIRM_TIMEOUT = float(os.getenv('RAPTOR_START_CONFIRM_TIMEOUT', 60))
    STATUS_POLL_INTERVAL = float(os.getenv('RAPTOR_STATUS_POLL_INTERVAL', 1))
    DEFAULT_STOP_COMMAND = os.getenv('RAPTOR_DEFAULT_STOP_COMMAND', 'stop')

    # Log/metrics stream reconnect backoff (seconds, fixed)
    STREAM_RECONNECT_DELAY = float(os.getenv('RAPTOR_STREAM_RECONNECT_DELAY', 2))

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")

        positive = {
            'CONTROL_COMMAND_TIMEOUT': cls.CONTROL_COMMAND_TIMEOUT,
            'HEALTH_PROBE_TIMEOUT': cls.HEALTH_PROBE_TIMEOUT,
            'HEALTH_PROBE_INTERVAL': cls.HEALTH_PROBE_INTERVAL,
            'DEFAULT_GRACEFUL_STOP_TIMEOUT': cls.DEFAULT_GRACEFUL_STOP_TIMEOUT,
            'RESTART_GRACEFUL_STOP_TIMEOUT': cls.RESTART_GRACEFUL_STOP_TIMEOUT,
            'START_CONFIRM_TIMEOUT': cls.START_CONFIRM_TIMEOUT,
            'STATUS_POLL_INTERVAL': cls.STATUS_POLL_INTERVAL,
            'STREAM_RECONNECT_DELAY': cls.STREAM_RECONNECT_DELAY,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive: {value}")

        if cls.HEALTH_PROBE_TIMEOUT >= cls.HEALTH_PROBE_INTERVAL:
            raise ValueError(
                f"Health probe timeout ({cls.HEALTH_PROBE_TIMEOUT}s) must be shorter "
                f"than the probe interval ({cls.HEALTH_PROBE_INTERVAL}s)"
            )

        return True
