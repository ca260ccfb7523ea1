"""Per-user and global token-bucket rate limiting as WSGI middleware."""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from email.utils import formatdate

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_log = logging.getLogger(__name__)

_NONCE_SIZE = 12
_BLOCK_SECONDS = 60.0
_URLSAFE_B64 = re.compile(r"[A-Za-z0-9_-]*={0,2}")

Clock = Callable[[], float]


@dataclass
class RateLimiterConfig:
    """Limits, cookie settings and the AES-256 key of a :class:`RateLimiter`."""

    user_requests_per_second: float = 10.0
    user_burst: int = 20
    global_requests_per_second: float = 100.0
    global_burst: int = 200
    cookie_name: str = "ratelimit_token"
    cookie_max_age: int = 3600 * 24
    cleanup_interval: float = 300.0
    encryption_key: bytes = b""


class TokenBucket:
    """A thread-safe token bucket refilled at a fixed rate up to its capacity."""

    def __init__(self, rate: float, capacity: int, clock: Clock = time.monotonic):
        self.capacity = capacity
        self.tokens = capacity
        self.refill_rate = rate
        self._clock = clock
        self.last_refill = clock()
        self._lock = threading.Lock()

    def take(self) -> bool:
        """Take one token; return False if the bucket is empty."""
        with self._lock:
            now = self._clock()
            to_add = int((now - self.last_refill) * self.refill_rate)
            if to_add > 0:
                self.tokens = min(self.tokens + to_add, self.capacity)
                self.last_refill = now
            if self.tokens > 0:
                self.tokens -= 1
                return True
            return False


def _too_many(start_response, message: str, extra_headers=()):
    body = (message + "\n").encode("utf-8")
    start_response(
        "429 Too Many Requests",
        [
            *extra_headers,
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(body))),
        ],
    )
    return [body]


def _cookie_value(header: str, name: str) -> str | None:
    for part in header.split(";"):
        key, sep, value = part.strip().partition("=")
        if not sep or key.strip() != name:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        return value
    return None


class RateLimiter:
    """Rate limits requests globally and per user, tracking users by an encrypted cookie.

    A background thread drops stale state every ``cleanup_interval`` seconds
    until :meth:`stop` is called.
    """

    def __init__(self, config: RateLimiterConfig | None = None, *, clock: Clock = time.monotonic):
        if config is None:
            config = RateLimiterConfig()
        if len(config.encryption_key) != 32:
            raise ValueError("encryption key must be 32 bytes long for AES-256")
        if config.cleanup_interval <= 0:
            raise ValueError("cleanup interval must be positive")
        self.config = config
        self._clock = clock
        self._aead = AESGCM(bytes(config.encryption_key))
        self.global_limiter = TokenBucket(
            config.global_requests_per_second, config.global_burst, clock
        )
        self.user_limiters: dict[str, TokenBucket] = {}
        self.blocked_users: dict[str, float] = {}
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._worker = threading.Thread(
            target=self._cleanup_worker, name="ratelimit-cleanup", daemon=True
        )
        self._worker.start()

    def __enter__(self) -> "RateLimiter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def stop(self) -> None:
        """Stop the cleanup thread after a final cleanup."""
        self._stopping.set()
        if self._worker is not threading.current_thread():
            self._worker.join()

    def _cleanup_worker(self) -> None:
        while not self._stopping.wait(self.config.cleanup_interval):
            self.cleanup()
        self.cleanup()

    def cleanup(self) -> None:
        """Forget idle user buckets and expired blocks."""
        with self._lock:
            now = self._clock()
            keep = {}
            for user_id, bucket in self.user_limiters.items():
                with bucket._lock:
                    last_refill = bucket.last_refill
                if now - last_refill < 2 * self.config.cleanup_interval:
                    keep[user_id] = bucket
            self.user_limiters = keep
            self.blocked_users = {
                user_id: until for user_id, until in self.blocked_users.items() if until > now
            }

    def encrypt_user_id(self, user_id: str) -> str:
        """Encrypt a user id with AES-GCM into URL-safe base64."""
        nonce = os.urandom(_NONCE_SIZE)
        sealed = nonce + self._aead.encrypt(nonce, user_id.encode("utf-8"), None)
        return base64.urlsafe_b64encode(sealed).decode("ascii")

    def decrypt_user_id(self, encrypted: str) -> str:
        """Decrypt a value made by :meth:`encrypt_user_id`; raise ``ValueError`` if invalid."""
        if not _URLSAFE_B64.fullmatch(encrypted):
            raise ValueError("invalid base64 data")
        try:
            decoded = base64.urlsafe_b64decode(encrypted)
        except binascii.Error:
            raise ValueError("invalid base64 data") from None
        if len(decoded) < _NONCE_SIZE:
            raise ValueError("invalid encrypted data")
        nonce, ciphertext = decoded[:_NONCE_SIZE], decoded[_NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise ValueError("message authentication failed") from None
        return plaintext.decode("utf-8")

    def _user_identifier(self, environ: dict) -> str:
        remote = environ.get("REMOTE_ADDR", "")
        value = _cookie_value(environ.get("HTTP_COOKIE", ""), self.config.cookie_name)
        if value is None:
            return remote
        try:
            return self.decrypt_user_id(value)
        except ValueError:
            return remote

    def _blocked_for(self, user_id: str) -> float | None:
        with self._lock:
            until = self.blocked_users.get(user_id)
            if until is None:
                return None
            now = self._clock()
            if now > until:
                del self.blocked_users[user_id]
                return None
            return until - now

    def _block(self, user_id: str) -> None:
        with self._lock:
            self.blocked_users[user_id] = self._clock() + _BLOCK_SECONDS

    def _user_limiter(self, user_id: str) -> TokenBucket:
        with self._lock:
            bucket = self.user_limiters.get(user_id)
            if bucket is None:
                bucket = TokenBucket(
                    self.config.user_requests_per_second, self.config.user_burst, self._clock
                )
                self.user_limiters[user_id] = bucket
            return bucket

    def _user_cookie(self, user_id: str) -> str | None:
        try:
            value = self.encrypt_user_id(user_id)
        except OSError as exc:
            _log.error("encrypt user id error err=%s userID=%s", exc, user_id)
            return None
        parts = [f"{self.config.cookie_name}={value}", "Path=/"]
        if self.config.cookie_max_age > 0:
            parts.append(f"Max-Age={self.config.cookie_max_age}")
        elif self.config.cookie_max_age < 0:
            parts.append("Max-Age=0")
        parts.extend(["HttpOnly", "Secure", "SameSite=Lax"])
        return "; ".join(parts)

    def middleware(self, app):
        """Wrap a WSGI app with global and per-user rate limiting."""

        def wrapped(environ, start_response):
            if not self.global_limiter.take():
                return _too_many(start_response, "Server too busy")

            user_id = self._user_identifier(environ)

            remaining = self._blocked_for(user_id)
            if remaining is not None:
                retry_after = formatdate(time.time() + remaining, usegmt=True)
                return _too_many(start_response, "Too many requests", [("Retry-After", retry_after)])

            if not self._user_limiter(user_id).take():
                self._block(user_id)
                return _too_many(start_response, "Too many requests")

            cookie = self._user_cookie(user_id)
            if cookie is None:
                return app(environ, start_response)

            def start_with_cookie(status, headers, exc_info=None):
                return start_response(status, [*headers, ("Set-Cookie", cookie)], exc_info)

            return app(environ, start_with_cookie)

        return wrapped