from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

SERVICE_NAME = "futuresbot"
REDACTED = "***"

# Keys whose values never reach a log line (compared lowercased).
SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "secret_key",
        "signature",
        "x-mbx-apikey",
        "binance_api_key",
        "binance_api_secret",
    }
)
# key=value, key: value and quoted variants of SENSITIVE_KEYS inside free text.
_INLINE_SECRET_RE = re.compile(
    r"(\b(?:%s)['\"]?\s*[:=]\s*['\"]?)[^\s'\"&,;}]+"
    % "|".join(re.escape(key) for key in sorted(SENSITIVE_KEYS, key=len, reverse=True)),
    re.IGNORECASE,
)

_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "taskName",
    }
)


def redact(value: Any) -> Any:
    """Mask credentials in log payloads.

    Mappings lose the values of ``SENSITIVE_KEYS``; strings lose any value
    written after one of those keys, such as ``signature=`` in the request
    URLs urllib3 logs at DEBUG or an ``X-MBX-APIKEY`` header dumped in a message.
    """
    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, str):
        return _INLINE_SECRET_RE.sub(rf"\g<1>{REDACTED}", value)
    return value


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str = SERVICE_NAME) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": redact(record.getMessage()),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        if record.exc_info:
            payload["exception"] = redact(self.formatException(record.exc_info))
        payload.update(redact(_extract_extra_fields(record)))
        return json.dumps(payload, ensure_ascii=False, default=str)


def _extract_extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}


def configure_logging(
    log_path: str | Path = "logs/futuresbot.log",
    level: Optional[int] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 5,
    stream: bool = True,
) -> None:
    if level is None:
        level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
        if not isinstance(level, int):
            level = logging.INFO
    max_bytes = int(os.getenv("LOG_MAX_BYTES", max_bytes))
    backup_count = int(os.getenv("LOG_BACKUP_COUNT", backup_count))
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = JsonFormatter()
    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if stream:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root_logger.addHandler(stream_handler)

    # Request URLs carry signatures; keep the connection pool quiet by default.
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))
