import logging
from typing import Optional

from flask import g, has_request_context

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"


class RequestIdFilter(logging.Filter):
    """Attach the current request id (or ``-``) to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = "-"
        if has_request_context():
            request_id = getattr(g, "request_id", "-")
        record.request_id = request_id
        return True


def configure_logging(level: str = "INFO", handler: Optional[logging.Handler] = None) -> None:
    """Install one stream handler on the root logger; safe to call twice."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in root.handlers:
        if getattr(existing, "_rafflehub", False):
            return

    handler = handler or logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler._rafflehub = True  # type: ignore[attr-defined]
    root.addHandler(handler)
