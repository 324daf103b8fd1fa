from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

CORRELATION_KEYS = ("instance_id", "session_id", "attempt", "pid")
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


class JsonlFormatter(logging.Formatter):
    """One JSON object per line.

    Correlation keys are picked up from ``logger.info(..., extra={...})``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in CORRELATION_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        try:
            return json.dumps(payload, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return json.dumps({"level": record.levelname, "msg": "(log serialization failed)"})


def _parse_level(level: str) -> int:
    value = getattr(logging, str(level or "").strip().upper(), None)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(
    *,
    level: str = "INFO",
    json_lines: bool = True,
    stream: TextIO | None = None,
    force: bool = False,
) -> None:
    """Configure the root logger once per process."""
    global _configured
    if _configured and not force:
        return
    _configured = True

    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_lines:
        handler.setFormatter(JsonlFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)
    root.setLevel(_parse_level(level))
