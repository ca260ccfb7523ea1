# httpcatch

Small WSGI middleware pieces and helpers for HTTP services.

## Modules

### `httpcatch.recover`

- `recoverer(app)` wraps a WSGI app. It collects the app's whole body before
  returning it, so an exception raised while calling the app or while producing
  its body is caught. The exception is logged (with the function, file and line
  it came from, as given by `identify(tb)`) and the client gets a `500` JSON
  body `{"status":"panic","error":"panic"}`.
- `ErrResponse` is an exception carrying `http_status_code`, `status_text`,
  `app_code`, `error_text` and `err`. `to_dict()` gives the JSON body (`code`
  and `error` are left out when empty) and `render(start_response)` starts a
  WSGI response with it and returns the body. `str()` of it is
  `"<app_code> <status_text> <error_text>"`.
- `protection(app)` adds `Strict-Transport-Security`, `X-XSS-Protection` and
  `X-Content-Type-Options` headers to responses, unless the app already set a
  header of the same name.

### `httpcatch.forwarded`

- `request_host(environ)`: `X-Forwarded-Host`, then the `host` of an RFC 7239
  `Forwarded` header, then `HTTP_HOST` / `SERVER_NAME`.
- `request_proto(environ)`: `X-Forwarded-Proto`, then the `proto` of
  `Forwarded`, then `wsgi.url_scheme`, then `"https"`.
- `real_ip_from_request(environ)`: the first public address in
  `X-Forwarded-For`, else `X-Real-Ip`; when neither header is present, the
  remote address with its port removed.
- `parse_forwarded(value)` returns `(for, proto, host)` from a `Forwarded`
  header, with empty strings for missing parameters.
- `is_private_address(address)` tells whether an address is loopback, private
  or link-local (IPv4 and IPv6); it raises `ValueError` for an invalid address.
- `request_forwarded_host_proto_middleware(app)` writes those three values into
  `HTTP_HOST`, `wsgi.url_scheme` and `REMOTE_ADDR` before calling the app.

### `httpcatch.hlog`

Structured request logging on the standard `logging` module.

- `new_structured_logger(logger, only_errors)` returns a middleware factory.
  The wrapped app logs one `"request complete"` record per request with fields
  `resp_status`, `resp_byte_length` and `resp_elapsed_ms`, plus the request's
  `http_scheme`, `http_proto`, `http_method`, `remote_addr`, `user_agent`,
  `uri` and, when `environ["httpcatch.request_id"]` is set, `req_id`. The
  fields are attached to each log record as `record.fields`. Status 400 and up
  logs at `ERROR`, requests slower than five seconds at `WARNING`, the rest at
  `INFO`; with `only_errors` true, fast successful requests are not logged.
  An exception from the app is logged with its stack and raised again.
- `StructuredLogger` and `StructuredLoggerEntry` are the pieces behind it:
  `new_log_entry(environ)`, `write(status, nbytes, headers, elapsed, extra)`
  and `panic(value, stack)`.
- Inside a request, handlers can use `get_log_entry(environ)` (raises
  `LookupError` when there is no entry), `log_entry_set_field`,
  `log_entry_set_fields`, `log_entry_set_attrs`, `log_headers` (adds the
  request headers as a `header` group) and `log_all_statuses`.
- `get_request_id_logger(environ)` returns a root-logger adapter bound with the
  request id when there is one.

### `httpcatch.ratelimit`

- `RateLimiterConfig` holds per-user and global rates and bursts, the cookie
  name and lifetime, the cleanup interval in seconds and a 32-byte
  `encryption_key`. `RateLimiter` raises `ValueError` for a key of any other
  length.
- `RateLimiter(config).middleware(app)` answers `429` when the global bucket or
  the user's bucket is empty; a user who empties their bucket is blocked for a
  minute, and blocked requests carry a `Retry-After` header. Users are
  identified by an AES-256-GCM encrypted cookie (`encrypt_user_id`,
  `decrypt_user_id`), falling back to the remote address, and the cookie is set
  on each allowed response.
- A background thread calls `cleanup()` every `cleanup_interval` seconds to
  forget idle buckets and expired blocks. Call `stop()`, or use the limiter as
  a context manager, to end it.
- `TokenBucket(rate, capacity).take()` is the thread-safe bucket used inside.

### `httpcatch.rsacrypt`

`generate_key_pair(bits)`, DER serialisation (`private_key_to_bytes`,
`public_key_to_bytes`, `bytes_to_private_key`, `bytes_to_public_key`),
RSA-OAEP (SHA-512) encryption of messages of any length in chunks
(`encrypt_with_public_key`, `decrypt_with_private_key`, `chunk_by`), and
PKCS#1 v1.5 SHA-256 signatures (`sign_with_private_key`,
`verify_with_public_key`, which raises
`cryptography.exceptions.InvalidSignature` on a mismatch).

## Installation

```
pip install httpcatch
```

## Usage

```python
import logging
import os

from httpcatch.forwarded import request_forwarded_host_proto_middleware
from httpcatch.hlog import new_structured_logger
from httpcatch.ratelimit import RateLimiter, RateLimiterConfig
from httpcatch.recover import protection, recoverer


def app(environ, start_response):
    start_response("200 OK", [("Content-Type", "text/plain")])
    return [b"hello"]


limiter = RateLimiter(RateLimiterConfig(encryption_key=os.urandom(32)))

application = recoverer(
    new_structured_logger(logging.getLogger("http"), True)(
        request_forwarded_host_proto_middleware(
            protection(limiter.middleware(app))
        )
    )
)
```

Call `limiter.stop()` at shutdown.

```python
from httpcatch.rsacrypt import (
    decrypt_with_private_key,
    encrypt_with_public_key,
    generate_key_pair,
    sign_with_private_key,
    verify_with_public_key,
)

priv, pub = generate_key_pair(2048)
ciphertext = encrypt_with_public_key(b"message", pub)
assert decrypt_with_private_key(ciphertext, priv) == b"message"

signature = sign_with_private_key(b"message", priv)
verify_with_public_key(b"message", signature, pub)
```

## What it does not do

The package is middleware only: it has no server and no command to start one;
run the wrapped application under any WSGI server. It does not create request
ids; the logging middleware uses one only if something earlier has put it in
`environ["httpcatch.request_id"]`. Rate-limiter state lives in memory in one
process.

## Running the tests

```
pip install -e ".[test]"
pytest
```