from __future__ import annotations

import logging

from erpqueue.core.redact import redact_any, redact_text

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class RedactFilter(logging.Filter):
    """Masks credentials in the rendered message and in ``extra`` fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            record.msg = redact_text(record.getMessage())
            record.args = ()
            for key, value in list(record.__dict__.items()):
                if key.startswith("_") or key in {"msg", "args", "exc_info", "exc_text", "stack_info"}:
                    continue
                if isinstance(value, (str, dict, list, tuple)):
                    record.__dict__[key] = redact_any(value)
        except Exception:
            # A broken filter must never drop the log line.
            pass
        return True


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    root = logging.getLogger()
    if not any(isinstance(f, RedactFilter) for f in root.filters):
        root.addFilter(RedactFilter())
    for handler in root.handlers:
        if not any(isinstance(f, RedactFilter) for f in handler.filters):
            handler.addFilter(RedactFilter())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
