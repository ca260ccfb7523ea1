"""Error responses, panic recovery and security-header WSGI middleware."""

from __future__ import annotations

import inspect
import json
import logging
import sys
from dataclasses import dataclass
from http import HTTPStatus
from types import TracebackType

_log = logging.getLogger(__name__)

_SECURITY_HEADERS = (
    ("Strict-Transport-Security", "max-age=15768000; includeSubDomains"),
    ("X-XSS-Protection", "1; mode=block"),
    ("X-Content-Type-Options", "nosniff"),
)


def _status_line(code: int) -> str:
    try:
        phrase = HTTPStatus(code).phrase
    except ValueError:
        phrase = "Unknown"
    return f"{code} {phrase}"


def _to_json(data: dict) -> bytes:
    text = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    text = text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")
    return (text + "\n").encode("utf-8")


@dataclass(eq=False)
class ErrResponse(Exception):
    """An error that renders itself as a JSON HTTP response."""

    http_status_code: int = 500
    status_text: str = ""
    app_code: int = 0
    error_text: str = ""
    err: BaseException | None = None

    def to_dict(self) -> dict:
        """Return the JSON body; ``code`` and ``error`` are left out when empty."""
        body: dict = {"status": self.status_text}
        if self.app_code:
            body["code"] = self.app_code
        if self.error_text:
            body["error"] = self.error_text
        return body

    def render(self, start_response):
        """Start a WSGI response with this error and return its body."""
        body = _to_json(self.to_dict())
        start_response(
            _status_line(self.http_status_code),
            [("Content-Type", "application/json"), ("Content-Length", str(len(body)))],
        )
        return [body]

    def __str__(self) -> str:
        return f"{self.app_code} {self.status_text} {self.error_text}"


def identify(tb: TracebackType | None = None) -> str:
    """Describe the function, file and line where an exception was raised.

    Without a traceback, the exception currently being handled is used.
    """
    if tb is None:
        tb = sys.exc_info()[2]
    if tb is None:
        return "name: , file: :0"
    while tb.tb_next is not None:
        tb = tb.tb_next
    code = tb.tb_frame.f_code
    module = inspect.getmodulename(code.co_filename) or ""
    func = code.co_name
    name = f"{module}.{func}" if module else func
    return f"name: {name}, file: {code.co_filename}:{tb.tb_lineno}"


def recoverer(app):
    """Wrap a WSGI app so that any exception becomes a logged 500 JSON response.

    The wrapped app's body is collected before it is returned, so exceptions
    raised while producing the body are caught as well.
    """

    def wrapped(environ, start_response):
        started = False

        def tracking_start(status, headers, exc_info=None):
            nonlocal started
            started = True
            return start_response(status, headers, exc_info)

        try:
            result = app(environ, tracking_start)
            try:
                return list(result)
            finally:
                close = getattr(result, "close", None)
                if close is not None:
                    close()
        except Exception as exc:
            _log.error("panic recovered=%r caller=%s", exc, identify(exc.__traceback__))
            response = ErrResponse(http_status_code=500, status_text="panic", error_text="panic", err=exc)
            if started:
                exc_info = sys.exc_info()
                return response.render(lambda status, headers: start_response(status, headers, exc_info))
            return response.render(start_response)

    return wrapped


def protection(app):
    """Add HSTS, XSS-protection and no-sniff headers unless the app sets them itself."""

    def wrapped(environ, start_response):
        def secured_start(status, headers, exc_info=None):
            present = {name.lower() for name, _ in headers}
            extra = [header for header in _SECURITY_HEADERS if header[0].lower() not in present]
            return start_response(status, extra + list(headers), exc_info)

        return app(environ, secured_start)

    return wrapped