"""Logging configuration helpers.

:func:`setup_logging` configures the root logger for the command line tool
with either text or JSON output, and quiets the chatty WebRTC dependencies.
:func:`session_logger` returns an adapter that stamps every record with the
room and participant it belongs to, so the logs of two participants running
in one process (as in the tests) stay distinguishable.
"""
from __future__ import annotations

import json
import logging
from typing import Any, MutableMapping, Optional, Tuple

_SESSION_FIELDS = ("room_id", "user_id")


class _SessionDefaults(logging.Filter):
    """Fill in ``room_id``/``user_id`` for records logged outside a session."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr in _SESSION_FIELDS:
            if not hasattr(record, attr):
                setattr(record, attr, "-")
        return True


class _JsonFormatter(logging.Formatter):
    """JSON log formatter carrying the session fields."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - trivial
        data = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for attr in _SESSION_FIELDS:
            value = getattr(record, attr, "-")
            if value != "-":
                data[attr] = value
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False)


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that attaches the room and local participant to records."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def session_logger(logger: logging.Logger, room_id: str, user_id: str) -> SessionLoggerAdapter:
    """Wrap ``logger`` so records carry ``room_id`` and ``user_id``."""
    return SessionLoggerAdapter(logger, {"room_id": room_id, "user_id": user_id})


def setup_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Optional[str] = None,
    name: Optional[str] = None,
) -> logging.Logger:
    """Install stderr (and optional file) handlers on the root logger.

    Existing root handlers are replaced, so calling this twice does not
    duplicate output.  Records logged outside a session show ``-`` for the
    room and participant.

    :param level: Level name such as ``INFO``; unknown names fall back to INFO
    :param fmt: ``text`` or ``json``
    :param log_file: Also append to this file when given
    :param name: Return this logger instead of the root logger
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    formatter: logging.Formatter
    if fmt.lower() == "json":
        formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)s %(levelname)s [%(room_id)s/%(user_id)s] - %(message)s",
            "%H:%M:%S",
        )

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_SessionDefaults())
        root.addHandler(handler)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # ICE and DTLS chatter drowns out call state changes at INFO.
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("aiortc").setLevel(logging.WARNING)
    logging.getLogger("aioice").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.ERROR)

    return logging.getLogger(name) if name else root


__all__ = ["setup_logging", "session_logger", "SessionLoggerAdapter"]
