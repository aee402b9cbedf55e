"""Deterministic record names for cluster secrets.

Names have the form ``<prefix>-<host>-<fnv32a(uri)>``. The hash covers the URI
exactly as given so that names stay identical to the ones already stored by
existing deployments; compare servers with :func:`normalize_server` instead.
"""
import ipaddress
from urllib.parse import SplitResult, urlsplit

from clusterreg.errors import InvalidArgument

# Kubernetes object names are DNS subdomains
MAX_NAME_LENGTH = 253

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193

_DEFAULT_PORTS = {"http": 80, "https": 443}


def fnv32a(data: bytes) -> int:
    h = _FNV32_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def _parse_request_uri(uri: str) -> SplitResult:
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in uri):
        raise InvalidArgument(f"invalid URI {uri!r}: contains control characters")
    try:
        parts = urlsplit(uri)
    except ValueError as e:
        raise InvalidArgument(f"invalid URI {uri!r}: {e}") from e
    if not parts.scheme and not uri.startswith("/"):
        raise InvalidArgument(f"invalid URI {uri!r}: missing scheme")
    return parts


def _canonical_ip(literal: str, uri: str) -> str:
    try:
        return ipaddress.ip_address(literal).compressed
    except ValueError as e:
        raise InvalidArgument(f"invalid URI {uri!r}: bad IP literal {literal!r}") from e


def _host_stem(netloc: str, uri: str) -> str:
    host = netloc.rpartition("@")[2]
    if host.startswith("["):
        end = host.find("]")
        if end >= 0:
            host = _canonical_ip(host[1:end], uri).replace(":", "-")
    else:
        port = host.find(":")
        if port >= 0:
            host = host[:port]
    return host.lower()


def uri_to_secret_name(prefix: str, uri: str) -> str:
    """Return the secret name under which the record for ``uri`` is stored.

    Raises:
        InvalidArgument: if ``uri`` cannot be parsed as a request URI.
    """
    parts = _parse_request_uri(uri)
    host = _host_stem(parts.netloc, uri)
    checksum = str(fnv32a(uri.encode("utf-8")))
    budget = MAX_NAME_LENGTH - len(prefix) - len(checksum) - 2
    if len(host) > budget:
        host = host[:max(budget, 0)].rstrip(".-")
    return f"{prefix}-{host}-{checksum}"


def normalize_server(server: str) -> str:
    """Canonical form of a server URL used to compare and index clusters.

    Lower-cases scheme and host, canonicalizes IP literals, drops the scheme's
    default port and trailing slashes. Unparseable values are only stripped of
    trailing slashes.
    """
    try:
        parts = urlsplit(server)
        port = parts.port
    except ValueError:
        return server.rstrip("/")
    if not parts.netloc or parts.hostname is None:
        return server.rstrip("/")

    host = parts.hostname
    try:
        host = ipaddress.ip_address(host).compressed
        if ":" in host:
            host = f"[{host}]"
    except ValueError:
        pass
    scheme = parts.scheme.lower()
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        host = f"{host}:{port}"
    userinfo, sep, _ = parts.netloc.rpartition("@")
    netloc = f"{userinfo}{sep}{host}"
    return SplitResult(scheme, netloc, parts.path.rstrip("/"), parts.query, parts.fragment).geturl()
