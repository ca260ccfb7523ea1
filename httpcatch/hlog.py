"""Structured per-request logging middleware for WSGI apps."""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Union
from urllib.parse import quote

CRITICAL_ELAPSED = 5.0
LOG_ENTRY_KEY = "httpcatch.log_entry"
REQUEST_ID_KEY = "httpcatch.request_id"

_BAD_KEY = "!BADKEY"


class _FieldLogger(logging.LoggerAdapter):
    """A logger adapter that attaches structured fields to each record as ``record.fields``."""

    def __init__(self, logger: logging.Logger, fields: Mapping | Iterable | None = None):
        super().__init__(logger, dict(fields or {}))

    @property
    def fields(self) -> dict:
        return dict(self.extra)

    def bind(self, fields: Mapping | Iterable) -> "_FieldLogger":
        """Return a new logger carrying these fields on top of the current ones."""
        return _FieldLogger(self.logger, {**self.extra, **dict(fields)})

    def process(self, msg, kwargs):
        call_fields = kwargs.pop("fields", None) or {}
        extra = dict(kwargs.get("extra") or {})
        extra["fields"] = {**self.extra, **call_fields}
        kwargs["extra"] = extra
        return msg, kwargs


_AnyLogger = Union[logging.Logger, _FieldLogger]


def _as_field_logger(logger: _AnyLogger, fields: Iterable = ()) -> _FieldLogger:
    if isinstance(logger, _FieldLogger):
        return logger.bind(fields)
    return _FieldLogger(logger, fields)


def _attrs_to_pairs(args: Iterable[Any]) -> list[tuple[str, Any]]:
    """Turn alternating keys and values, or ready ``(key, value)`` tuples, into pairs."""
    pairs: list[tuple[str, Any]] = []
    items = iter(args)
    for item in items:
        if isinstance(item, tuple) and len(item) == 2 and isinstance(item[0], str):
            pairs.append(item)
        elif isinstance(item, str):
            try:
                value = next(items)
            except StopIteration:
                pairs.append((_BAD_KEY, item))
                break
            pairs.append((item, value))
        else:
            pairs.append((_BAD_KEY, item))
    return pairs


def _request_uri(environ: dict) -> str:
    raw = environ.get("REQUEST_URI") or environ.get("RAW_URI")
    if raw:
        return raw
    path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
    uri = quote(path.encode("latin-1", "replace")) or "/"
    query = environ.get("QUERY_STRING", "")
    return f"{uri}?{query}" if query else uri


def _seconds(elapsed: float | timedelta) -> float:
    return elapsed.total_seconds() if isinstance(elapsed, timedelta) else float(elapsed)


@dataclass
class StructuredLoggerEntry:
    """The log entry for one request; handlers may rebind its logger with extra fields."""

    logger: _FieldLogger
    only_errors: bool = False

    def write(self, status, nbytes, headers, elapsed, extra) -> None:
        """Log request completion; ``elapsed`` is in seconds or a ``timedelta``."""
        seconds = _seconds(elapsed)
        if self.only_errors and status < 400 and seconds < CRITICAL_ELAPSED:
            return
        if status >= 400:
            level = logging.ERROR
        elif seconds > CRITICAL_ELAPSED:
            level = logging.WARNING
        else:
            level = logging.INFO
        self.logger.log(
            level,
            "request complete",
            fields={
                "resp_status": status,
                "resp_byte_length": nbytes,
                "resp_elapsed_ms": seconds * 1000.0,
            },
        )

    def panic(self, value, stack) -> None:
        """Log an unhandled exception together with its stack trace."""
        if isinstance(stack, (bytes, bytearray)):
            stack = stack.decode("utf-8", "replace")
        self.logger.log(logging.ERROR, "", fields={"stack": str(stack), "panic": str(value)})


@dataclass
class StructuredLogger:
    """Creates a :class:`StructuredLoggerEntry` per request."""

    logger: _AnyLogger
    only_errors: bool = False

    def new_log_entry(self, environ: dict) -> StructuredLoggerEntry:
        """Build the entry for a request, bound with the request's basic fields."""
        fields: list[tuple[str, Any]] = []
        req_id = environ.get(REQUEST_ID_KEY, "")
        if req_id:
            fields.append(("req_id", req_id))
        scheme = "https" if environ.get("wsgi.url_scheme") == "https" else "http"
        host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")
        fields.extend(
            [
                ("http_scheme", scheme),
                ("http_proto", environ.get("SERVER_PROTOCOL", "")),
                ("http_method", environ.get("REQUEST_METHOD", "")),
                ("remote_addr", environ.get("REMOTE_ADDR", "")),
                ("user_agent", environ.get("HTTP_USER_AGENT", "")),
                ("uri", f"{scheme}://{host}{_request_uri(environ)}"),
            ]
        )
        return StructuredLoggerEntry(
            logger=_as_field_logger(self.logger, fields),
            only_errors=self.only_errors,
        )


def new_structured_logger(logger, only_errors):
    """Return a WSGI middleware factory that logs every request through ``logger``."""
    formatter = StructuredLogger(logger, only_errors)

    def middleware(app):
        def wrapped(environ, start_response):
            entry = formatter.new_log_entry(environ)
            environ[LOG_ENTRY_KEY] = entry
            status = 0
            response_headers: list = []
            nbytes = 0

            def counting_start(status_line, headers, exc_info=None):
                nonlocal status, response_headers
                status = int(status_line.split(None, 1)[0])
                response_headers = list(headers)
                write = start_response(status_line, headers, exc_info)

                def counting_write(data):
                    nonlocal nbytes
                    nbytes += len(data)
                    return write(data)

                return counting_write

            started = time.monotonic()
            try:
                result = app(environ, counting_start)
                try:
                    body = list(result)
                finally:
                    close = getattr(result, "close", None)
                    if close is not None:
                        close()
                nbytes += sum(len(chunk) for chunk in body)
                return body
            except Exception as exc:
                entry.panic(exc, traceback.format_exc())
                raise
            finally:
                entry.write(status, nbytes, response_headers, time.monotonic() - started, None)

        return wrapped

    return middleware


def _entry(environ: dict) -> StructuredLoggerEntry | None:
    entry = environ.get(LOG_ENTRY_KEY)
    return entry if isinstance(entry, StructuredLoggerEntry) else None


def get_log_entry(environ):
    """Return the request's bound logger; raise ``LookupError`` if there is none."""
    entry = _entry(environ)
    if entry is None:
        raise LookupError("no log entry in request")
    return entry.logger


def log_entry_set_field(environ, key, value) -> None:
    """Add one field to the request's log entry, if it has one."""
    entry = _entry(environ)
    if entry is not None:
        entry.logger = entry.logger.bind([(key, value)])


def log_entry_set_attrs(environ, *args) -> None:
    """Add alternating keys and values, or ``(key, value)`` tuples, to the log entry."""
    entry = _entry(environ)
    if entry is not None:
        entry.logger = entry.logger.bind(_attrs_to_pairs(args))


def log_entry_set_fields(environ, fields) -> None:
    """Add every item of a mapping to the log entry."""
    entry = _entry(environ)
    if entry is not None:
        for key, value in fields.items():
            entry.logger = entry.logger.bind([(key, value)])


def log_all_statuses(environ) -> None:
    """Make the request's entry log successful responses too."""
    entry = _entry(environ)
    if entry is not None:
        entry.only_errors = False


def log_headers(environ) -> None:
    """Add the request headers to the log entry as a ``header`` group."""
    headers: dict[str, str] = {}
    for key, value in environ.items():
        if key.startswith("HTTP_"):
            name = key[5:]
        elif key in ("CONTENT_TYPE", "CONTENT_LENGTH"):
            name = key
        else:
            continue
        headers[name.replace("_", "-").lower()] = value
    if headers:
        log_entry_set_attrs(environ, ("header", headers))


def get_request_id_logger(environ):
    """Return the root logger, bound with the request id when there is one."""
    logger = _FieldLogger(logging.getLogger())
    req_id = environ.get(REQUEST_ID_KEY, "")
    if req_id:
        return logger.bind([("req_id", req_id)])
    return logger