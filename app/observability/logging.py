from __future__ import annotations
import logging
import sys
from contextvars import ContextVar
from pythonjsonlogger import jsonlogger
from ..config import get_settings

S = get_settings()

# set by RequestContextMiddleware for the life of a request; "-" in workers
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class ContextFilter(logging.Filter):
    """
    Stamps the current request id on every record and gives `extra` a default,
    so the JSON format string never hits a missing attribute.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get()
        if not hasattr(record, "extra"):
            record.extra = ""
        return True


def setup_logging() -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(extra)s"
    ))
    root.addHandler(handler)
    root.setLevel(S.LOG_LEVEL.upper())

    for noisy in ("uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
