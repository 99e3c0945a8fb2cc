"""
Bus log sink: log lines as NATS messages on $PC.<type>.Logs.

BusLogSink is a plain writer: any logging facade that accepts a stream
(logging.StreamHandler here) can be composed with it. Each write is one
publish; nothing is buffered.
"""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from platform_component.errors import PublishError
from platform_component.subjects import SubjectSchema

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    """What the sink needs from a connection (NatsBus provides it)."""

    def publish_nowait(self, subject: str, data: bytes) -> None: ...


class BusLogSink:
    """
    Writer that publishes each write to subject.

    write() returns the length of what it was given, so it behaves like a
    file for logging.StreamHandler: the byte count for bytes, the character
    count for str (as text streams do), never the encoded size. Writes made
    while this thread is already inside a publish are dropped.
    """

    def __init__(self, connection: Publisher, subject: str) -> None:
        self.connection = connection
        self.subject = subject
        self._local = threading.local()

    @classmethod
    def for_component(cls, connection: Publisher, component_type: str) -> "BusLogSink":
        return cls(connection, SubjectSchema(component_type).logs())

    def write(self, data: bytes | str) -> int:
        n = len(data)
        if getattr(self._local, "publishing", False):
            return n
        raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        self._local.publishing = True
        try:
            self.connection.publish_nowait(self.subject, raw.rstrip())
        except PublishError:
            raise
        except Exception as exc:
            raise PublishError(f"log publish to {self.subject} failed: {exc}") from exc
        finally:
            self._local.publishing = False
        return n

    def flush(self) -> None:
        pass

    def writable(self) -> bool:
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: time, level, logger, msg (+ exc)."""

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        return json.dumps(out)


class BusLogHandler(logging.StreamHandler):
    """StreamHandler over a BusLogSink, JSON formatted."""

    def __init__(self, sink: BusLogSink) -> None:
        super().__init__(stream=sink)
        self.sink = sink
        self.setFormatter(JsonFormatter())

    @property
    def subject(self) -> str:
        return self.sink.subject


def bus_logger(connection: Publisher, component_type: str, level: int = logging.INFO) -> logging.Logger:
    """
    A standalone logger whose records go only to the bus.

    The logger is not registered with the logging module, so each call
    returns a fresh instance.
    """
    log = logging.Logger(f"platform_component.bus.{component_type}", level)
    log.addHandler(BusLogHandler(BusLogSink.for_component(connection, component_type)))
    log.propagate = False
    return log


def install_bus_logging(
    connection: Publisher,
    component_type: str,
    *,
    root: Optional[logging.Logger] = None,
    level: int = logging.DEBUG,
) -> BusLogHandler:
    """
    Send this process's log records to the bus as well.

    Idempotent per subject: returns the handler already installed if there
    is one. Call uninstall_bus_logging() before stopping the component.
    """
    root_logger = root or logging.getLogger()
    sink = BusLogSink.for_component(connection, component_type)
    for handler in root_logger.handlers:
        if isinstance(handler, BusLogHandler) and handler.subject == sink.subject:
            return handler

    handler = BusLogHandler(sink)
    handler.setLevel(level)  # handler level, actual filtering done by logger level
    root_logger.addHandler(handler)
    logger.info("bus logging handler added subject=%s", sink.subject)
    return handler


def uninstall_bus_logging(handler: BusLogHandler, *, root: Optional[logging.Logger] = None) -> None:
    root_logger = root or logging.getLogger()
    root_logger.removeHandler(handler)
    handler.close()
