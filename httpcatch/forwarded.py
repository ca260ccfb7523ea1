"""Resolve client host, scheme and address from proxy headers in a WSGI environ."""

from __future__ import annotations

import ipaddress

_PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(block)
    for block in (
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)


def parse_forwarded(value: str) -> tuple[str, str, str]:
    """Parse an RFC 7239 ``Forwarded`` header into ``(for, proto, host)``.

    Missing parameters come back as empty strings; a later parameter overrides
    an earlier one of the same name.
    """
    addr = proto = host = ""
    if not value:
        return addr, proto, host
    for pair in value.split(";"):
        token, sep, raw = pair.partition("=")
        if not sep:
            continue
        field = raw.strip('"').strip()
        match token.strip().lower():
            case "for":
                addr = field
            case "proto":
                proto = field
            case "host":
                host = field
    return addr, proto, host


def request_host(environ: dict) -> str:
    """Return the host from forwarding headers, falling back to the request's own host."""
    host = environ.get("HTTP_X_FORWARDED_HOST", "")
    if host:
        return host
    _, _, host = parse_forwarded(environ.get("HTTP_FORWARDED", ""))
    if host:
        return host
    return environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")


def request_proto(environ: dict) -> str:
    """Return the scheme from forwarding headers, then the request's scheme, then ``https``."""
    proto = environ.get("HTTP_X_FORWARDED_PROTO", "")
    if proto:
        return proto
    _, proto, _ = parse_forwarded(environ.get("HTTP_FORWARDED", ""))
    if proto:
        return proto
    return environ.get("wsgi.url_scheme") or "https"


def is_private_address(address: str) -> bool:
    """Tell whether an IP address lies in a loopback, private or link-local range."""
    if "%" in address:
        raise ValueError("address is not valid")
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        raise ValueError("address is not valid") from None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip in network for network in _PRIVATE_NETWORKS if network.version == ip.version)


def _strip_port(addr: str) -> str:
    if addr.startswith("["):
        host, sep, _ = addr[1:].partition("]")
        return host if sep else ""
    if addr.count(":") == 1:
        return addr.partition(":")[0]
    return addr


def real_ip_from_request(environ: dict) -> str:
    """Return the client address: the first public ``X-Forwarded-For`` entry,
    else ``X-Real-Ip``, else the remote address without its port."""
    x_real_ip = environ.get("HTTP_X_REAL_IP", "")
    x_forwarded_for = environ.get("HTTP_X_FORWARDED_FOR", "")

    if not x_real_ip and not x_forwarded_for:
        return _strip_port(environ.get("REMOTE_ADDR", ""))

    for candidate in x_forwarded_for.split(","):
        address = candidate.strip()
        try:
            if not is_private_address(address):
                return address
        except ValueError:
            continue

    return x_real_ip


def request_forwarded_host_proto_middleware(app):
    """Rewrite host, scheme and remote address in the environ from proxy headers."""

    def wrapped(environ, start_response):
        environ["HTTP_HOST"] = request_host(environ)
        environ["wsgi.url_scheme"] = request_proto(environ)
        environ["REMOTE_ADDR"] = real_ip_from_request(environ)
        return app(environ, start_response)

    return wrapped