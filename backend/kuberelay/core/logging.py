"""
Logging configuration for the relay backend.

stdlib logging owns the handlers (colored console, JSON, rotating file);
structlog loggers used by the services are routed into it.
"""
import json
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

import structlog

from ..config import Settings, get_settings
from .request_context import request_id_var, session_id_var

_CONFIGURED = False

_RESERVED_ATTRS = {
    "args", "asctime", "created", "exc_info", "exc_text", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "msg", "name", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "thread", "threadName", "taskName",
}


class ContextFilter(logging.Filter):
    """Inject session_id/request_id and service fields into every LogRecord."""

    def __init__(self, env: str) -> None:
        super().__init__()
        self._env = env

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        sid = getattr(record, "session_id", None) or session_id_var.get()
        rid = getattr(record, "request_id", None) or request_id_var.get()

        if sid is not None:
            record.session_id = sid
        if rid is not None:
            record.request_id = rid

        if not hasattr(record, "service"):
            record.service = "kuberelay"
        if not hasattr(record, "env"):
            record.env = self._env
        return True


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the level name."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        log_color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{log_color}{record.levelname}{self.RESET}"
        return super().format(record)


class JSONFormatter(logging.Formatter):
    """JSON structured log formatter.

    Emits time, level, name and message, merges any extra attributes (the
    key/value pairs bound through structlog end up here) and redacts
    credential-looking keys.
    """

    REDACT_KEYS = {"password", "secret", "token", "authorization", "cookie", "jwt"}

    def __init__(self, datefmt: Optional[str] = None) -> None:
        super().__init__(datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        sid = getattr(record, "session_id", None) or session_id_var.get()
        if sid:
            payload["session_id"] = sid

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            safe_key = str(key)
            payload[safe_key] = self._redact(value) if safe_key.lower() in self.REDACT_KEYS else value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)

    @staticmethod
    def _redact(value: Any) -> str:
        try:
            text = str(value)
        except Exception:
            text = "<redacted>"
        return "***REDACTED***" if text else text


def _configure_structlog(json_output: bool) -> None:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        # key/value pairs become LogRecord extras for JSONFormatter
        processors.append(structlog.stdlib.render_to_log_kwargs)
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event"], drop_missing=True))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging(
    settings: Optional[Settings] = None,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    use_color: bool = True,
) -> logging.Logger:
    """Configure the root logger and structlog once per process.

    Args:
        settings: application settings, defaults to ``get_settings()``
        level: overrides ``settings.log_level``
        log_file: overrides ``settings.log_file``
        use_color: color the console output when attached to a TTY

    Returns:
        logging.Logger: the ``kuberelay`` logger
    """
    global _CONFIGURED
    settings = settings or get_settings()
    logger = logging.getLogger("kuberelay")

    if _CONFIGURED:
        return logger

    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    for h in list(root.handlers):
        root.removeHandler(h)

    context_filter = ContextFilter(settings.app_env)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.is_debug else logging.INFO)
    console_handler.addFilter(context_filter)

    if settings.log_json:
        console_formatter: logging.Formatter = JSONFormatter(datefmt=settings.log_date_format)
    elif use_color and sys.stdout.isatty():
        console_formatter = ColoredFormatter(settings.log_format, datefmt=settings.log_date_format)
    else:
        console_formatter = logging.Formatter(settings.log_format, datefmt=settings.log_date_format)

    console_handler.setFormatter(console_formatter)
    root.addHandler(console_handler)

    file_path = log_file or settings.log_file
    if file_path:
        log_path = Path(file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(context_filter)

        if settings.log_json:
            file_formatter: logging.Formatter = JSONFormatter(datefmt=settings.log_date_format)
        else:
            file_formatter = logging.Formatter(settings.log_format, datefmt=settings.log_date_format)
        file_handler.setFormatter(file_formatter)
        root.addHandler(file_handler)

    # uvicorn/fastapi loggers go through the root handlers
    for log_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        l = logging.getLogger(log_name)
        l.handlers = []
        l.propagate = True

    # httpx logs each request (every watch reconnect) at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _configure_structlog(settings.log_json)

    _CONFIGURED = True
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a stdlib logger."""
    return logging.getLogger(name)
