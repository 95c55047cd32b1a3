"""Logging helpers: context-tagged adapters that redact secrets.

Every service logs through a :class:`ContextLogger`, which prefixes the
message with its context name and scrubs credentials out of the ``extra``
payload before a record is created. :func:`setup_logging` wires console
output (text or JSON lines) and the optional API traffic file.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional, Tuple

from pydantic import BaseModel

REDACTED = "***REDACTED***"
SENSITIVE_FIELDS = frozenset(
    {"access_token", "api_key", "password", "authorization", "x-goog-api-key"}
)
API_TRAFFIC_LOGGER = "api_traffic"

_SECRET_PAIR = re.compile(r"(?i)\b(access_token|api_key|password|key)=([^&\s\"']+)")


def redact_text(text: str) -> str:
    """Hide ``secret=value`` pairs embedded in URLs or free text."""

    return _SECRET_PAIR.sub(lambda match: f"{match.group(1)}={REDACTED}", text)


def sanitize(data: Any) -> Any:
    """Return a copy of *data* with every sensitive value redacted."""

    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    if isinstance(data, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_FIELDS else sanitize(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize(item) for item in data]
    if isinstance(data, str):
        return redact_text(data)
    return data


def _sanitize_arg(arg: Any) -> Any:
    if isinstance(arg, (int, float, bool)) or arg is None:
        return arg
    if isinstance(arg, (dict, list, tuple, BaseModel)):
        return sanitize(arg)
    return redact_text(str(arg))


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter tagging records with a context and redacting secrets."""

    def __init__(self, context: str, logger: Optional[logging.Logger] = None) -> None:
        super().__init__(logger or logging.getLogger(context), {"context": context})
        self.context = context

    def log(self, level: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        super().log(level, msg, *[_sanitize_arg(arg) for arg in args], **kwargs)

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = sanitize(dict(kwargs.get("extra") or {}))
        extra["context"] = self.context
        kwargs["extra"] = extra
        return f"[{self.context}] {redact_text(str(msg))}", kwargs


class RedactingFilter(logging.Filter):
    """Scrub secrets from records that did not go through a ContextLogger.

    Third-party loggers (httpx logs every request URL at INFO) format their
    own messages, so handlers installed by :func:`setup_logging` rewrite the
    final message through :func:`redact_text` before it is emitted.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = f"{record.msg} {record.args}"
        record.msg = redact_text(message)
        record.args = ()
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON objects.

    Extra attributes attached to the record are merged into the object.
    """

    _INTERNAL_ATTRS: frozenset = frozenset({
        "args", "created", "exc_info", "exc_text", "filename",
        "funcName", "levelname", "levelno", "lineno", "module",
        "msecs", "message", "msg", "name", "pathname", "process",
        "processName", "relativeCreated", "stack_info", "thread",
        "threadName", "taskName",
    })

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in self._INTERNAL_ATTRS or key in payload:
                continue
            try:
                json.dumps(value)
                payload[key] = value
            except (TypeError, ValueError, OverflowError):
                payload[key] = str(value)

        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"
_HANDLER_MARK = "_ad_library_handler"
_QUIET_LOGGERS = ("httpx", "httpcore")


def setup_logging(
    level: str = "INFO",
    fmt: str = "text",
    api_log_file: Optional[str] = None,
) -> None:
    """Configure the root logger and the API traffic sink.

    Every installed handler redacts secrets, and the chatty ``httpx`` and
    ``httpcore`` loggers are held at WARNING since they log full request
    URLs, query-string tokens included.

    Args:
        level: Log level name.
        fmt: ``"text"`` or ``"json"``.
        api_log_file: When set, records of the ``api_traffic`` logger are
            also appended to this file as JSON lines.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    traffic = logging.getLogger(API_TRAFFIC_LOGGER)
    for logger in (root, traffic):
        for handler in logger.handlers[:]:
            if getattr(handler, _HANDLER_MARK, False):
                logger.removeHandler(handler)
                handler.close()

    if fmt == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(_TEXT_FORMAT, datefmt=_TEXT_DATEFMT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(formatter)
    console.addFilter(RedactingFilter())
    setattr(console, _HANDLER_MARK, True)
    root.addHandler(console)

    if api_log_file:
        path = Path(api_log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(path), mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(RedactingFilter())
        setattr(file_handler, _HANDLER_MARK, True)
        traffic.addHandler(file_handler)
        traffic.setLevel(logging.DEBUG)
