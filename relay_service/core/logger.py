"""Centralized logging configuration for the relay service.

Provides the logger factory used by every component (API, worker, SMTP
relay) with console output, optional rotating log files and consistent
formatting.

Features:
    - Console handler plus rotating file and error-file handlers
    - Per-module log levels for relay_service subpackages
    - Context strings for per-message and per-job log lines
    - Startup summary of the loaded configuration with secrets masked

Version: 1.0.0
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from relay_service.config.settings import RelayConfig

_ROOT_LOGGER: logging.Logger | None = None
_LOG_DIR = Path(__file__).parent.parent / "logs"
_LOG_FORMAT_DETAILED = (
    "%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"
)
_LOG_FORMAT_SIMPLE = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_MODULE_LEVELS = {
    "relay_service.worker": logging.DEBUG,
    "relay_service.webhooks": logging.DEBUG,
    "relay_service.clients": logging.DEBUG,
    "relay_service.database": logging.INFO,
    "relay_service.smtp": logging.DEBUG,
    "relay_service.config": logging.INFO,
}

# Third-party loggers that are noisy at DEBUG
_QUIET_LOGGERS = ("httpx", "httpcore", "mail.log", "passlib")


def _mask_password(password: str) -> str:
    """Mask password for display, showing only first and last char.

    Args:
        password: Password to mask.

    Returns:
        Masked password string.
    """
    if not password:
        return "(not set)"
    if len(password) <= 2:
        return "***"
    return f"{password[0]}{'*' * (len(password) - 2)}{password[-1]}"


def _mask_dsn(dsn: str) -> str:
    """Hide the password part of a postgresql:// DSN."""
    if "@" not in dsn or "//" not in dsn:
        return dsn
    scheme, rest = dsn.split("//", 1)
    credentials, host = rest.rsplit("@", 1)
    if ":" not in credentials:
        return dsn
    user = credentials.split(":", 1)[0]
    return f"{scheme}//{user}:***@{host}"


def print_config_summary(settings: "RelayConfig") -> None:
    """Log a configuration summary organized by categories.

    Args:
        settings: RelayConfig instance with loaded configuration.
    """
    logger = logging.getLogger("relay_service.config")

    def _section(title: str, rows: list[tuple[str, object]]) -> None:
        logger.info(f"[{title}]")
        for label, value in rows:
            logger.info(f"  {label:<26} {value}")

    _section(
        "service",
        [
            ("Service Name", settings.SERVICE_NAME),
            ("Version", settings.SERVICE_VERSION),
            ("API", f"{settings.API_HOST}:{settings.API_PORT}"),
        ],
    )
    _section(
        "database",
        [
            ("Database URL", _mask_dsn(settings.DATABASE_URL)),
            ("Schema", settings.SCHEMA_NAME),
            ("Pool", f"{settings.DB_POOL_SIZE_MIN}-{settings.DB_POOL_SIZE_MAX}"),
        ],
    )
    _section(
        "transport",
        [
            ("Mode", settings.TRANSPORT_MODE),
            ("Host", f"{settings.SMTP_OUT_HOST}:{settings.SMTP_OUT_PORT}"),
            ("User", settings.SMTP_OUT_USER or "(not set)"),
            ("Password", _mask_password(settings.SMTP_OUT_PASSWORD)),
            ("TLS Enabled", str(settings.SMTP_OUT_USE_TLS).lower()),
        ],
    )
    _section(
        "delivery",
        [
            ("Max Attempts", settings.EMAIL_RETRY_MAX_ATTEMPTS),
            (
                "Backoff",
                f"{settings.EMAIL_RETRY_BASE_DELAY}s..{settings.EMAIL_RETRY_MAX_DELAY}s",
            ),
            ("Concurrency", settings.EMAIL_WORKER_CONCURRENCY),
            ("Rate (msg/s)", settings.EMAIL_SEND_RATE_PER_SECOND),
            ("Webhook Attempts", settings.WEBHOOK_MAX_ATTEMPTS),
            ("Webhook Concurrency", settings.WEBHOOK_WORKER_CONCURRENCY),
        ],
    )
    _section(
        "smtp relay",
        [("Listen", f"{settings.SMTP_RELAY_HOST}:{settings.SMTP_RELAY_PORT}")],
    )


def setup_logging(
    log_dir: Path | None = None,
    log_level: str = "INFO",
    file_level: str = "DEBUG",
    console_level: str = "INFO",
    enable_file: bool = True,
    settings: Optional["RelayConfig"] = None,
) -> None:
    """Configure root logger with file and console handlers.

    Should be called once per process at startup (API lifespan, worker
    service, SMTP relay entry point).

    Args:
        log_dir: Directory for log files. Defaults to relay_service/logs.
        log_level: Root logger level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file_level: File handler level (usually DEBUG for comprehensive logging).
        console_level: Console handler level (usually INFO to reduce noise).
        enable_file: Whether to write logs to files.
        settings: Optional RelayConfig for logging a configuration summary.
    """
    global _ROOT_LOGGER, _LOG_DIR

    if log_dir:
        _LOG_DIR = Path(log_dir)
    elif settings is not None:
        _LOG_DIR = Path(settings.LOG_DIR)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level.upper(), logging.INFO))
    console_handler.setFormatter(
        logging.Formatter(_LOG_FORMAT_SIMPLE, datefmt=_DATE_FORMAT)
    )
    root_logger.addHandler(console_handler)

    if enable_file:
        _LOG_DIR.mkdir(parents=True, exist_ok=True)
        max_bytes = (settings.LOG_MAX_SIZE_MB if settings else 10) * 1024 * 1024
        backup_count = settings.LOG_BACKUP_COUNT if settings else 5

        file_handler = logging.handlers.RotatingFileHandler(
            _LOG_DIR / "relay_service.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(getattr(logging, file_level.upper(), logging.DEBUG))
        file_handler.setFormatter(
            logging.Formatter(_LOG_FORMAT_DETAILED, datefmt=_DATE_FORMAT)
        )
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            _LOG_DIR / "relay_service.error.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(
            logging.Formatter(_LOG_FORMAT_DETAILED, datefmt=_DATE_FORMAT)
        )
        root_logger.addHandler(error_handler)

    for module_name, level in _MODULE_LEVELS.items():
        logging.getLogger(module_name).setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _ROOT_LOGGER = root_logger

    if settings:
        print_config_summary(settings)


def get_logger(name: str, log_level: str | None = None) -> logging.Logger:
    """Get a logger instance for a module.

    Args:
        name: Logger name (typically __name__ of calling module).
        log_level: Optional override for the logger level.

    Returns:
        Logger instance.

    Example:
        from relay_service.core.logger import get_logger

        logger = get_logger(__name__)
        logger.info("Processing message msg_123")
    """
    logger = logging.getLogger(name)

    if log_level:
        logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    return logger


def get_logs_directory() -> Path:
    """Get the logs directory path."""
    return _LOG_DIR


def log_context(
    logger: logging.Logger,
    operation: str,
    message_id: str | None = None,
    recipient: str | None = None,
    **kwargs,
) -> str:
    """Format a log context string with metadata.

    Args:
        logger: Logger instance.
        operation: Operation name (e.g., "send_email", "deliver_webhook").
        message_id: Message or job identifier if applicable.
        recipient: Recipient email or webhook URL if applicable.
        **kwargs: Additional context key-value pairs.

    Returns:
        Formatted context string for logging.

    Example:
        msg = log_context(logger, "send_email", message_id="m1",
                          recipient="a@x.com", attempt=2)
        # -> "#m1 | send_email | →a@x.com (attempt=2)"
    """
    context_parts = [operation]

    if message_id:
        context_parts.insert(0, f"#{message_id}")

    if recipient:
        context_parts.append(f"→{recipient}")

    context = " | ".join(context_parts)

    if kwargs:
        extra = ", ".join(f"{k}={v}" for k, v in kwargs.items())
        context = f"{context} ({extra})"

    return context
