"""WSGI middleware for exception recovery, security headers, forwarded headers, request logging and rate limiting, plus RSA helpers."""

__version__ = "0.1.0"

__all__ = ["forwarded", "hlog", "ratelimit", "recover", "rsacrypt"]