import logging
import json
import contextvars
from contextlib import contextmanager
from typing import Dict, Optional

# Where provisioning currently is: table, step ("table", "indexes",
# "relations") and index. Empty outside of a sync.
_sync_scope_ctx: contextvars.ContextVar = contextvars.ContextVar("sync_scope", default={})

SCOPE_KEYS = ("table", "step", "index")


class SyncScopeFilter(logging.Filter):
    """Copies the current sync scope onto the log record.

    Sets ``record.sync`` (the scope mapping) and ``record.scope``, a
    ``table/step/index`` path for plain text output ("-" outside a sync).
    """

    def filter(self, record):
        scope = current_scope()
        record.sync = scope
        record.scope = "/".join(scope[key] for key in SCOPE_KEYS if key in scope) or "-"
        return True


@contextmanager
def sync_scope(table: Optional[str] = None, step: Optional[str] = None, index: Optional[str] = None):
    """Narrows the sync scope for the current context.

    Nested scopes inherit the outer fields they do not override. Opening a
    scope for another table starts from a clean step and index.
    """
    scope = dict(_sync_scope_ctx.get())
    if table is not None and table != scope.get("table"):
        scope = {"table": table}
    if step is not None:
        scope.pop("index", None)
        scope["step"] = step
    if index is not None:
        scope["index"] = index
    token = _sync_scope_ctx.set(scope)
    try:
        yield
    finally:
        _sync_scope_ctx.reset(token)


def current_scope() -> Dict[str, str]:
    return dict(_sync_scope_ctx.get())


class JsonFormatter(logging.Formatter):
    """Formats records as one JSON object per line.

    The sync scope is nested under ``"sync"``; any ``extra=`` fields passed to
    the logger are copied to the top level.
    """

    _RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
        "message", "asctime", "sync", "scope", "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        scope = getattr(record, "sync", None)
        if scope:
            payload["sync"] = scope

        payload.update(
            (key, value) for key, value in vars(record).items()
            if key not in self._RESERVED and not key.startswith("_")
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", json_format: bool = False):
    """Configures the root logger.

    Args:
        level (str): The logging level (default: INFO).
        json_format (bool): Whether to use JSON formatting (default: False).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.addFilter(SyncScopeFilter())
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s [%(scope)s] %(name)s: %(message)s"
        ))
    root_logger.addHandler(handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
