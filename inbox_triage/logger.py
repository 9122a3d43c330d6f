"""
JSON logging with triage context.

Three context variables follow a unit of work through async code: the HTTP
request id set by the API middleware, and the session and email ids bound by
`TriageService.process`. Every record carries whichever of them are set, so
log lines can be joined back to the session record in sqlite.
"""
import logging
import sys
from contextvars import ContextVar
from typing import Optional

from pythonjsonlogger import jsonlogger

from inbox_triage.config import settings

SERVICE_NAME = "inbox-triage"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
email_id_var: ContextVar[Optional[str]] = ContextVar("email_id", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "session_id": session_id_var,
    "email_id": email_id_var,
}

# Loggers from client libraries that are chatty at INFO
QUIET_LOGGERS = ("uvicorn", "httpx", "httpcore", "google_genai", "groq", "langchain_google_genai")


class TriageContextFilter(logging.Filter):
    """Copy the triage context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for field, var in _CONTEXT_VARS.items():
            if not hasattr(record, field):
                setattr(record, field, var.get() or "-")
        return True


class TriageJsonFormatter(jsonlogger.JsonFormatter):
    """Flat JSON lines; unset context ids are left out."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict):
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = SERVICE_NAME
        log_record["environment"] = settings.environment

        for field in _CONTEXT_VARS:
            if log_record.get(field) == "-":
                del log_record[field]


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> logging.Logger:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Log level name (defaults to settings.log_level)
        log_format: "json" or "text" (defaults to settings.log_format)
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level or settings.log_level))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if (log_format or settings.log_format) == "json":
        handler.setFormatter(TriageJsonFormatter("%(message)s", datefmt="%Y-%m-%dT%H:%M:%S"))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s [session=%(session_id)s email=%(email_id)s] %(message)s",
            datefmt="%H:%M:%S"
        ))
    handler.addFilter(TriageContextFilter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_request_id(request_id: Optional[str]) -> None:
    request_id_var.set(request_id)


def bind_triage(session_id: Optional[str], email_id: Optional[str] = None) -> None:
    """Tag every following log line in this task with the session and email."""
    session_id_var.set(session_id)
    email_id_var.set(email_id)


def get_triage_context() -> dict[str, Optional[str]]:
    return {field: var.get() for field, var in _CONTEXT_VARS.items()}


setup_logging()
