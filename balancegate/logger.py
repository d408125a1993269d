"""Root logger set-up with JSON or key=value text output."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}
_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING,
           "warning": logging.WARNING, "error": logging.ERROR}


def parse_level(level: str) -> int:
    """Map a level name to a logging level; unknown names mean INFO."""
    return _LEVELS.get(level.lower(), logging.INFO)


def _quote(value: Any) -> str:
    text = str(value)
    if not text or any(ch.isspace() or ch in '="' or not ch.isprintable() for ch in text):
        return json.dumps(text)
    return text


class _Formatter(logging.Formatter):
    def __init__(self, as_text: bool, add_source: bool) -> None:
        super().__init__()
        self.as_text = as_text
        self.add_source = add_source

    def format(self, record: logging.LogRecord) -> str:
        level = "WARN" if record.levelno == logging.WARNING else record.levelname
        fields: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).astimezone().isoformat(),
            "level": level,
        }
        if self.add_source:
            fields["source"] = f"{record.pathname}:{record.lineno}"
        fields["msg"] = record.getMessage()
        fields.update((k, v) for k, v in vars(record).items() if k not in _STANDARD_ATTRS)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        if self.as_text:
            return " ".join(f"{key}={_quote(value)}" for key, value in fields.items())
        return json.dumps(fields, default=str)


class _ConfiguredHandler(logging.StreamHandler):
    pass


def init_logger(config: Any) -> logging.Logger:
    """Configure and return the root logger from a LoggerConfig-like object."""
    level = parse_level(config.log_level)
    handler = _ConfiguredHandler(config.stream())
    handler.setFormatter(_Formatter(config.log_format.lower() == "text", level == logging.DEBUG))

    root = logging.getLogger()
    for previous in [h for h in root.handlers if isinstance(h, _ConfiguredHandler)]:
        root.removeHandler(previous)
        if previous.stream not in (sys.stdout, sys.stderr, sys.__stdout__, sys.__stderr__):
            previous.stream.close()
    root.addHandler(handler)
    root.setLevel(level)
    return root