"""Logging setup: JSON lines in production, readable lines in development, plus request-scoped loggers."""
import json
import logging
import sys
import time
import uuid
from typing import Optional

from starlette.requests import Request

LOGGER_NAME = "pandoc_web"

# Attributes present on every LogRecord; anything else was passed via `extra`
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line with the message, level, and any bound context fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)) + f".{int(record.msecs):03d}Z",
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(level: str = "INFO", env: str = "production") -> logging.Logger:
    """Install a single stream handler on the app logger. Safe to call more than once (handlers are replaced)."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    if env.lower() == "development":
        handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s"))
    else:
        handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAME}.{name}" if name else LOGGER_NAME)


def client_ip(request: Request) -> str:
    """Client address: first X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def request_id_for(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    if not rid:
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = rid
    return rid


class ContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges call-site `extra` into the bound context instead of replacing it."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def request_logger(request: Request, name: str = "api") -> ContextAdapter:
    """Logger bound to request_id, method, path, and client_ip for every line it emits."""
    return ContextAdapter(
        get_logger(name),
        {
            "request_id": request_id_for(request),
            "method": request.method,
            "path": request.url.path,
            "client_ip": client_ip(request),
        },
    )
