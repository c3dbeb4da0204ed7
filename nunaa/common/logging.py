"""Structured JSON logging with request/event context fields.

HTTP requests bind a trace id in the service middleware; consumers bind the
trace, event and account ids of the envelope they are handling. Both go
through `log_context` so the previous values come back on exit.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from nunaa.common.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_id)s %(account_id)s %(message)s"

trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
account_id_ctx: ContextVar[str] = ContextVar("account_id", default="")

_CONTEXT_VARS = {"trace_id": trace_id_ctx, "event_id": event_id_ctx, "account_id": account_id_ctx}


@contextmanager
def log_context(**values: str | None):
    """Bind the given identifiers for the duration of the block; None leaves a field alone."""

    unknown = set(values) - set(_CONTEXT_VARS)
    if unknown:
        raise TypeError(f"unknown log context fields: {sorted(unknown)}")
    tokens = [(_CONTEXT_VARS[name], _CONTEXT_VARS[name].set(value)) for name, value in values.items() if value is not None]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class ContextFilter(logging.Filter):
    """Stamp the service name and the bound identifiers on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in _CONTEXT_VARS.items():
            setattr(record, name, var.get())
        return True


def configure_logging() -> None:
    """Route every logger through one JSON handler on stdout."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    # Chatty client libraries stay at WARNING unless the service runs at DEBUG.
    if root.level > logging.DEBUG:
        for name in ("aiokafka", "httpx"):
            logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("nunaa")
