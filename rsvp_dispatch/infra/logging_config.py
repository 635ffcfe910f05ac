# rsvp_dispatch/infra/logging_config.py
"""
Logging setup: JSON lines in production, colored console lines in dev.

Dispatch code attaches identifiers through ``extra=`` or ``LogContext``;
both formatters pick up the fields listed in ``CONTEXT_FIELDS``. Phone
numbers never go into log records unmasked (see ``mask_phone``).
"""
import json
import logging
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = ("request_id", "tenant_id", "job_id", "attempt_id", "channel")

# Console labels, in display order
_CONSOLE_LABELS = {"tenant_id": "tenant", "job_id": "job", "attempt_id": "attempt", "channel": "ch"}

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "twilio.http_client": logging.WARNING,
    "asyncio": logging.WARNING,
}


def record_context(record: logging.LogRecord) -> dict:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
            **record_context(record),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")

        context = record_context(record)
        tags = " ".join(f"{label}={context[name]}" for name, label in _CONSOLE_LABELS.items() if name in context)
        tags = f" [{tags}]" if tags else ""

        line = f"{color}{timestamp} {record.levelname:8}{self.RESET} {record.name}{tags} - {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """Replace root handlers with a single stdout handler."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())
    root_logger.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logging.getLogger(__name__).info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Logger wrapper that stamps fixed identifiers on every record.

        log = LogContext(logger, tenant_id=job.tenant_id, job_id=job.id)
        log.info("Dispatching job")

    ``None`` values are dropped; per-call ``extra`` wins over bound fields.
    """

    def __init__(self, logger: logging.Logger, **context):
        self.logger = logger
        self.context = {k: v for k, v in context.items() if v is not None}

    def bind(self, **context) -> "LogContext":
        return LogContext(self.logger, **{**self.context, **context})

    def _log(self, level: int, msg: str, *args, **kwargs):
        kwargs["extra"] = {**self.context, **kwargs.get("extra", {})}
        self.logger.log(level, msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)


def mask_phone(phone: str | None) -> str:
    """``"+972584003578"`` -> ``"+972****78"``"""
    if not phone:
        return "<none>"
    if len(phone) <= 6:
        return "****"
    return phone[:4] + "****" + phone[-2:]
