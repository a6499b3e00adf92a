import json
import logging
import sys
from datetime import datetime, timezone
from threading import local

LOGGER_NAME = "smart_upload"

_CONTEXT_FIELDS = ("batch_id", "item_id", "stage", "job")

_log_ctx = local()


def set_log_context(**kwargs):
    for k, v in kwargs.items():
        setattr(_log_ctx, k, v)


def get_log_context() -> dict:
    return {k: v for k, v in _log_ctx.__dict__.items() if not k.startswith("_")}


def clear_log_context(keys=None):
    if keys is None:
        _log_ctx.__dict__.clear()
        return
    for key in keys:
        _log_ctx.__dict__.pop(key, None)


def get_logger(name: str | None = None) -> logging.Logger:
    if not name:
        return logging.getLogger(LOGGER_NAME)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        data = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            ),
            "level": record.levelname,
            "logger": record.name,
        }
        # extra= on the call wins over the thread context
        for field in _CONTEXT_FIELDS:
            data[field] = getattr(record, field, None) or ctx.get(field)
        data["msg"] = record.getMessage()

        if hasattr(record, "duration_ms"):
            data["duration_ms"] = record.duration_ms
        if hasattr(record, "metrics"):
            data["metrics"] = record.metrics
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)

        # Clean nulls
        data = {k: v for k, v in data.items() if v is not None}
        return json.dumps(data, default=str)


def setup_logging(level=logging.INFO, log_file: str | None = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = JsonFormatter()

    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger
