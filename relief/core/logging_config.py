import json
import logging
import logging.config
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

from ..settings import settings

_CONFIGURED = False

# fields bound for the current job or request: market_id, step, request_id, ...
_log_context: ContextVar[dict[str, Any]] = ContextVar("relief_log_context", default={})

_RESERVED = set(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName", "log_context", "context_suffix"}


@contextmanager
def bind_log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """Attach fields to every log line emitted inside the block, nesting allowed."""
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_log_context.get())


class LogContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        record.log_context = dict(context)
        record.context_suffix = "".join(f" {key}={value}" for key, value in context.items())
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        try:
            message = record.getMessage()
        except TypeError:
            message = str(record.msg)
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        context = getattr(record, "log_context", None)
        if context:
            payload["context"] = context
        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging() -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    root_level = _coerce_log_level(settings.LOG_LEVEL, default=logging.INFO)
    quiet = _third_party_level(root_level)

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "context": {"()": "relief.core.logging_config.LogContextFilter"},
            },
            "formatters": {
                "json": {"()": "relief.core.logging_config.JsonFormatter"},
                "plain": {
                    "class": "logging.Formatter",
                    "format": "%(asctime)s %(levelname)s %(name)s %(message)s%(context_suffix)s",
                },
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if settings.LOG_JSON else "plain",
                    "filters": ["context"],
                },
            },
            "root": {"level": root_level, "handlers": ["default"]},
            "loggers": {
                # rq prints job lifecycle lines we rely on when tailing workers
                "rq": {"level": root_level, "propagate": True},
                "rq.worker": {"level": root_level, "propagate": True},
                "httpx": {"level": quiet, "propagate": True},
                "httpcore": {"level": quiet, "propagate": True},
                "web3": {"level": quiet, "propagate": True},
                "urllib3": {"level": quiet, "propagate": True},
                "sqlalchemy.engine": {"level": quiet, "propagate": True},
                "uvicorn": {"level": root_level, "handlers": ["default"], "propagate": False},
                "uvicorn.error": {"level": root_level, "handlers": ["default"], "propagate": False},
                "uvicorn.access": {"level": quiet, "handlers": ["default"], "propagate": False},
            },
        }
    )
    _CONFIGURED = True


def _third_party_level(root_level: int) -> int:
    if root_level <= logging.DEBUG:
        return logging.DEBUG
    return max(root_level, logging.WARNING)


def _coerce_log_level(value: str, default: int) -> int:
    if not value:
        return default
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else default
