"""Logging setup for the auth server.

Messages use the "[TAG] message" convention (LOGIN, CALLBACK, LOGOUT,
STORAGE, ...). Every record is annotated with its tag and with the auth
endpoint being served, so stderr lines and remote entries can be filtered
by flow step.

Remote entries go to a Supabase table in batches when LOG_TO_SUPABASE=true.
"""

import logging
import logging.handlers
import os
import re
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional


TAG_PATTERN = re.compile(r'\[([A-Z_]+)\]\s*(.*)', re.DOTALL)

_current_endpoint: ContextVar[Optional[str]] = ContextVar("auth_endpoint", default=None)


def split_tag(message: str) -> tuple[Optional[str], str]:
    """Split "[TAG] message" into (tag, message)."""
    tag_match = TAG_PATTERN.match(message)
    if tag_match:
        return tag_match.group(1), tag_match.group(2)
    return None, message


@contextmanager
def endpoint_context(endpoint: str) -> Iterator[None]:
    """Attach `endpoint` to every record logged inside the block."""
    token = _current_endpoint.set(endpoint)
    try:
        yield
    finally:
        _current_endpoint.reset(token)


class AuthContextFilter(logging.Filter):
    """Adds `tag`, `text` and `endpoint` attributes to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.tag, record.text = split_tag(record.getMessage())
        record.endpoint = _current_endpoint.get()
        return True


class PlainFormatter(logging.Formatter):
    """stderr lines, suffixed with the endpoint when one is bound."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        endpoint = getattr(record, "endpoint", None)
        return f"{line} (endpoint={endpoint})" if endpoint else line


def log_entry(record: logging.LogRecord, service_name: str) -> dict:
    """Row for the remote log table."""
    tag = getattr(record, "tag", None)
    text = getattr(record, "text", None)
    if text is None:
        tag, text = split_tag(record.getMessage())

    entry = {
        "service": service_name,
        "level": record.levelname,
        "tag": tag,
        "endpoint": getattr(record, "endpoint", None),
        "message": text,
        "logger": record.name,
        "created_at": record.created,
    }
    if record.exc_info:
        entry["exception"] = logging.Formatter().formatException(record.exc_info)
    return entry


class SupabaseLogHandler(logging.handlers.BufferingHandler):
    """Buffers records and inserts them into a Supabase table in one call.

    The buffer is sent once it holds `capacity` records, when a record
    arrives more than `flush_interval` seconds after the last send, for any
    ERROR record, and on close.
    """

    def __init__(
        self,
        client,
        service_name: str,
        table: str = "logs",
        capacity: int = 20,
        flush_interval: float = 10.0,
    ):
        super().__init__(capacity)
        self.client = client
        self.service_name = service_name
        self.table = table
        self.flush_interval = flush_interval
        self._last_flush = time.monotonic()

    def shouldFlush(self, record: logging.LogRecord) -> bool:
        return (
            super().shouldFlush(record)
            or record.levelno >= logging.ERROR
            or time.monotonic() - self._last_flush >= self.flush_interval
        )

    def flush(self) -> None:
        self.acquire()
        try:
            records, self.buffer = self.buffer, []
            self._last_flush = time.monotonic()
        finally:
            self.release()
        if not records:
            return
        try:
            rows = [log_entry(r, self.service_name) for r in records]
            self.client.table(self.table).insert(rows).execute()
        except Exception as e:
            # stderr only, logging here would recurse
            print(f"[WARNING] Failed to send {len(records)} log entries: {e}", file=sys.stderr)


def setup_logging(
    service_name: Optional[str] = None,
    supabase_client=None,
    level: Optional[str] = None,
) -> logging.Logger:
    """Configure the root logger.

    stderr is always used. Records are also sent to Supabase when a client
    is given and LOG_TO_SUPABASE=true.
    """
    service_name = service_name or os.getenv("SERVICE_NAME", "kinde-auth")
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        if isinstance(handler, SupabaseLogHandler):
            handler.close()

    context = AuthContextFilter()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.addFilter(context)
    stderr_handler.setFormatter(PlainFormatter())
    root_logger.addHandler(stderr_handler)

    remote = os.getenv("LOG_TO_SUPABASE", "false").lower() == "true"
    if supabase_client and remote:
        sink = SupabaseLogHandler(
            supabase_client,
            service_name=service_name,
            table=os.getenv("LOG_TABLE", "logs"),
        )
        sink.setLevel(logging.INFO)
        sink.addFilter(context)
        root_logger.addHandler(sink)

    # Token exchange and Supabase both use httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"[STARTUP] Logging at {level} for {service_name}"
        + (" (remote sink enabled)" if supabase_client and remote else "")
    )
    return root_logger
