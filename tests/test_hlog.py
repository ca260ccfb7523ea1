import logging

import pytest

from httpcatch.hlog import (
    LOG_ENTRY_KEY,
    REQUEST_ID_KEY,
    StructuredLogger,
    get_log_entry,
    get_request_id_logger,
    log_all_statuses,
    log_entry_set_attrs,
    log_entry_set_field,
    log_entry_set_fields,
    log_headers,
    new_structured_logger,
)

LOGGER_NAME = "tests.hlog"


@pytest.fixture
def logger(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    return logging.getLogger(LOGGER_NAME)


def make_environ(**extra):
    environ = {
        "REQUEST_METHOD": "GET",
        "SCRIPT_NAME": "",
        "PATH_INFO": "/path",
        "QUERY_STRING": "q=1",
        "SERVER_NAME": "localhost",
        "SERVER_PORT": "80",
        "SERVER_PROTOCOL": "HTTP/1.1",
        "HTTP_HOST": "example.com",
        "REMOTE_ADDR": "192.0.2.7",
        "HTTP_USER_AGENT": "pytest-agent",
        "wsgi.url_scheme": "http",
    }
    environ.update(extra)
    return environ


def call(app, environ):
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = headers
        return lambda data: None

    body = b"".join(app(environ, start_response))
    return captured["status"], body


def records(caplog):
    return [r for r in caplog.records if r.name == LOGGER_NAME]


def test_new_log_entry_fields(logger):
    environ = make_environ(**{REQUEST_ID_KEY: "req-1"})
    entry = StructuredLogger(logger, True).new_log_entry(environ)
    fields = entry.logger.fields
    assert list(fields)[0] == "req_id"
    assert fields == {
        "req_id": "req-1",
        "http_scheme": "http",
        "http_proto": "HTTP/1.1",
        "http_method": "GET",
        "remote_addr": "192.0.2.7",
        "user_agent": "pytest-agent",
        "uri": "http://example.com/path?q=1",
    }
    assert entry.only_errors is True


def test_https_scheme_and_no_request_id(logger):
    entry = StructuredLogger(logger).new_log_entry(make_environ(**{"wsgi.url_scheme": "https"}))
    fields = entry.logger.fields
    assert "req_id" not in fields
    assert fields["http_scheme"] == "https"
    assert fields["uri"].startswith("https://example.com/path")


def test_write_error_status_logs_error(logger, caplog):
    entry = StructuredLogger(logger, True).new_log_entry(make_environ())
    entry.write(500, 12, [], 0.1, None)
    (record,) = records(caplog)
    assert record.levelno == logging.ERROR
    assert record.getMessage() == "request complete"
    assert record.fields["resp_status"] == 500
    assert record.fields["resp_byte_length"] == 12
    assert record.fields["http_method"] == "GET"


def test_write_slow_request_warns(logger, caplog):
    entry = StructuredLogger(logger, True).new_log_entry(make_environ())
    entry.write(200, 0, [], 6.0, None)
    (record,) = records(caplog)
    assert record.levelno == logging.WARNING


def test_write_fast_success_skipped_when_only_errors(logger, caplog):
    entry = StructuredLogger(logger, True).new_log_entry(make_environ())
    entry.write(200, 5, [], 0.01, None)
    assert records(caplog) == []


def test_write_success_logged_at_info(logger, caplog):
    entry = StructuredLogger(logger, False).new_log_entry(make_environ())
    entry.write(200, 5, [], 0.25, None)
    (record,) = records(caplog)
    assert record.levelno == logging.INFO
    assert record.fields["resp_elapsed_ms"] == pytest.approx(250.0)


def test_panic_logs_value_and_stack(logger, caplog):
    entry = StructuredLogger(logger).new_log_entry(make_environ())
    entry.panic(RuntimeError("boom"), b"trace")
    (record,) = records(caplog)
    assert record.levelno == logging.ERROR
    assert record.fields["panic"] == "boom"
    assert record.fields["stack"] == "trace"


def test_middleware_logs_fields_set_by_app(logger, caplog):
    def app(environ, start_response):
        log_entry_set_field(environ, "user", "alice")
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"missing"]

    wrapped = new_structured_logger(logger, True)(app)
    status, body = call(wrapped, make_environ())
    assert status == "404 Not Found"
    assert body == b"missing"
    (record,) = records(caplog)
    assert record.fields["user"] == "alice"
    assert record.fields["resp_status"] == 404
    assert record.fields["resp_byte_length"] == len(b"missing")


def test_log_all_statuses_enables_success_logging(logger, caplog):
    def app(environ, start_response):
        log_all_statuses(environ)
        start_response("200 OK", [])
        return [b"ok"]

    call(new_structured_logger(logger, True)(app), make_environ())
    (record,) = records(caplog)
    assert record.levelno == logging.INFO
    assert record.fields["resp_status"] == 200


def test_log_headers_adds_header_group(logger, caplog):
    def app(environ, start_response):
        log_headers(environ)
        start_response("500 Internal Server Error", [])
        return [b""]

    call(new_structured_logger(logger, True)(app), make_environ(HTTP_ACCEPT="text/html"))
    (record,) = records(caplog)
    header = record.fields["header"]
    assert header["accept"] == "text/html"
    assert header["user-agent"] == "pytest-agent"
    assert header["host"] == "example.com"


def test_set_attrs_and_fields(logger):
    environ = make_environ()
    environ[LOG_ENTRY_KEY] = StructuredLogger(logger).new_log_entry(environ)
    log_entry_set_attrs(environ, "a", 1, ("pair", "v"), "dangling")
    log_entry_set_fields(environ, {"x": 2, "y": 3})
    fields = get_log_entry(environ).fields
    assert fields["a"] == 1
    assert fields["pair"] == "v"
    assert fields["!BADKEY"] == "dangling"
    assert fields["x"] == 2
    assert fields["y"] == 3


def test_helpers_without_entry(logger):
    environ = make_environ()
    snapshot = dict(environ)
    log_entry_set_field(environ, "user", "alice")
    log_all_statuses(environ)
    log_headers(environ)
    assert environ == snapshot
    with pytest.raises(LookupError):
        get_log_entry(environ)


def test_get_request_id_logger():
    with_id = get_request_id_logger(make_environ(**{REQUEST_ID_KEY: "req-9"}))
    assert with_id.fields == {"req_id": "req-9"}
    assert get_request_id_logger(make_environ()).fields == {}


def test_middleware_logs_panic_and_reraises(logger, caplog):
    def app(environ, start_response):
        raise RuntimeError("boom")

    wrapped = new_structured_logger(logger, True)(app)
    with pytest.raises(RuntimeError, match="boom"):
        call(wrapped, make_environ())
    (record,) = records(caplog)
    assert record.fields["panic"] == "boom"
    assert "RuntimeError" in record.fields["stack"]