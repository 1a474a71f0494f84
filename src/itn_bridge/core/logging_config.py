import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

SERVICE_NAME = "itn-bridge"

_transaction_id: ContextVar[str | None] = ContextVar("itn_transaction_id", default=None)


@contextmanager
def transaction_context(transaction_id: str | None) -> Iterator[None]:
    """Tags every record logged inside the block with the gateway transaction id."""
    token = _transaction_id.set(transaction_id)
    try:
        yield
    finally:
        _transaction_id.reset(token)


class JsonFormatter(logging.Formatter):
    """
    One JSON object per record. Carries the transaction id of the notification
    being processed, if any, and merges ``extra={"itn": {...}}`` at top level.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }

        transaction_id = _transaction_id.get()
        if transaction_id:
            log_record["transaction_id"] = transaction_id

        context = getattr(record, "itn", None)
        if isinstance(context, dict):
            log_record.update(context)

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, default=str)


def configure_logging(level: str | int = "INFO") -> None:
    """
    Sends JSON records to stdout at the given level. HTTP and AWS client
    libraries stay at WARNING so CMS round trips do not flood the output.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper() if isinstance(level, str) else level)

    # Clear any existing handlers
    if root_logger.handlers:
        root_logger.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "botocore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
