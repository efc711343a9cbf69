"""Log output for import and search processes.

A ``RunContextFilter`` on the handler stamps the current run onto each
record. ``JsonFormatter`` renders one orjson line per record for collectors;
the text format shows ``run:stage`` inline for terminals.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
import logging
from pathlib import Path
import sys
from typing import IO, Any

import orjson

from geo_address_store.observability.context import RunContext, current_run_context


TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(run_label)s %(message)s"

# Header values may carry collector credentials.
REDACTED_KEYS = frozenset({"headers", "authorization", "api_key", "token"})

_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__.keys()
    | {"message", "asctime", "taskName", "run_context", "run_label"}
)


class RunContextFilter(logging.Filter):
    """Attach the bound ``RunContext`` and a compact ``run_label`` to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = current_run_context()
        record.run_context = ctx
        if ctx.run_id:
            record.run_label = f"{ctx.run_id}:{ctx.stage}" if ctx.stage else ctx.run_id
        else:
            record.run_label = "-"
        return True


class JsonFormatter(logging.Formatter):
    MAX_MESSAGE_CHARS = 2000
    MAX_FIELD_CHARS = 500

    def format(self, record: logging.LogRecord) -> str:
        ctx: RunContext = getattr(record, "run_context", None) or current_run_context()
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": _clip(record.getMessage(), self.MAX_MESSAGE_CHARS),
            **ctx.log_fields(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            if key.lower() in REDACTED_KEYS:
                entry[key] = "[REDACTED]"
            elif isinstance(value, str):
                entry[key] = _clip(value, self.MAX_FIELD_CHARS)
            else:
                entry[key] = value

        return orjson.dumps(entry, default=_to_json, option=orjson.OPT_NON_STR_KEYS).decode("utf-8")


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _to_json(value: Any) -> Any:
    """orjson fallback for the values pipeline code passes as ``extra``."""
    if isinstance(value, Enum):
        return value.value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(str(item) for item in value)
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    return repr(value)


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    *,
    logger_levels: dict[str, str] | None = None,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Replace the root handlers with one run-aware handler and return it.

    Args:
        level: Root log level name, case-insensitive.
        json_output: One JSON object per line when True, ``TEXT_FORMAT`` otherwise.
        logger_levels: Per-logger overrides, e.g. ``{"geo_address_store.ingest": "warning"}``.
        stream: Destination; stdout when omitted.
    """
    root = logging.getLogger()
    root.setLevel(_level(level))
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(RunContextFilter())
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)

    for name, name_level in (logger_levels or {}).items():
        logging.getLogger(name).setLevel(_level(name_level))
    return handler


def _level(name: str) -> int:
    resolved = logging.getLevelName(name.upper())
    return resolved if isinstance(resolved, int) else logging.INFO
