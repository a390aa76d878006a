"""Bound endpoints — model, address parsing, and the shared lookup cache.

The :class:`EndpointCache` holds an immutable hostname → :class:`Endpoint`
snapshot. Refreshes build a complete new snapshot and swap it in under a
lock, so concurrent dialers see either the old or the new snapshot, never a
partially updated one.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit

from ngrokd.api.models import BoundEndpoint
from ngrokd.errors import AddressParseError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 80
_SCHEME_PORTS = {"http": 80, "https": 443}
_EXPLICIT_PORT_SCHEMES = frozenset({"tcp", "tls"})
_FALLBACK_PORT = 443


class TransportKind(str, Enum):
    """How a bound endpoint carries traffic."""

    HTTP = "http"
    HTTPS = "https"
    TCP = "tcp"
    TLS = "tls"


@dataclass(frozen=True)
class Endpoint:
    """A bound endpoint reachable through the relay.

    Parameters
    ----------
    id:
        Stable endpoint identifier assigned by the directory API.
    hostname:
        Hostname dial addresses are matched against.
    proto:
        Transport kind of the endpoint.
    port:
        Port sent in the binding request.
    url:
        Canonical endpoint URL.
    """

    id: str
    hostname: str
    proto: TransportKind
    port: int
    url: str


# ------------------------------------------------------------------
# Address parsing
# ------------------------------------------------------------------


def _parse_port(address: str, text: str) -> int:
    if not text.isdigit():
        raise AddressParseError(address, f"invalid port {text!r}")
    port = int(text)
    if not 0 < port <= 65535:
        raise AddressParseError(address, f"port {port} out of range")
    return port


def parse_address(address: str) -> tuple[str, int]:
    """Split a dial address into ``(hostname, port)``.

    Accepted forms::

        app.example              -> ("app.example", 80)
        app.example:8080         -> ("app.example", 8080)
        http://app.example       -> ("app.example", 80)
        https://app.example      -> ("app.example", 443)
        tcp://app.example:5432   -> ("app.example", 5432)

    ``tcp://`` and ``tls://`` addresses must name a port. Hostnames are
    lower-cased.

    Raises
    ------
    AddressParseError
        If the address is empty, the port is invalid, or a port is required
        but missing.
    """
    text = address.strip()
    if not text:
        raise AddressParseError(address, "empty address")

    if "://" in text:
        parts = urlsplit(text)
        scheme = parts.scheme.lower()
        hostname = parts.hostname or ""
        try:
            port = parts.port
        except ValueError as exc:
            raise AddressParseError(address, str(exc)) from exc
        if not hostname:
            raise AddressParseError(address, "missing hostname")
        if port is None:
            if scheme in _EXPLICIT_PORT_SCHEMES:
                raise AddressParseError(address, f"{scheme}:// addresses require a port")
            port = _SCHEME_PORTS.get(scheme, _FALLBACK_PORT)
        elif port == 0:
            raise AddressParseError(address, "port 0 out of range")
        return hostname, port

    if text.startswith("["):
        close = text.find("]")
        if close == -1:
            raise AddressParseError(address, "unterminated IPv6 literal")
        hostname, rest = text[1:close], text[close + 1 :]
        if not hostname:
            raise AddressParseError(address, "missing hostname")
        if not rest:
            return hostname.lower(), DEFAULT_PORT
        if not rest.startswith(":"):
            raise AddressParseError(address, f"unexpected {rest!r} after IPv6 literal")
        return hostname.lower(), _parse_port(address, rest[1:])

    if text.count(":") > 1:
        # Bare IPv6 literal without brackets cannot carry a port.
        return text.lower(), DEFAULT_PORT

    if ":" in text:
        hostname, _, port_text = text.rpartition(":")
        if not hostname:
            raise AddressParseError(address, "missing hostname")
        return hostname.lower(), _parse_port(address, port_text)

    return text.lower(), DEFAULT_PORT


def _url_host_port(url: str) -> tuple[str, int]:
    """Extract hostname and port from an endpoint URL, lenient on defaults."""
    parts = urlsplit(url if "://" in url else f"//{url}")
    hostname = parts.hostname or url
    try:
        port = parts.port
    except ValueError:
        port = None
    if port is None:
        port = _SCHEME_PORTS.get(parts.scheme.lower(), _FALLBACK_PORT)
    return hostname, port


def endpoints_from_listing(listing: Iterable[BoundEndpoint]) -> list[Endpoint]:
    """Convert a directory listing into endpoints.

    Entries sharing a URL are collapsed, keeping the first. Entries with an
    unknown transport kind are skipped.
    """
    seen_urls: set[str] = set()
    endpoints: list[Endpoint] = []
    for raw in listing:
        if raw.url in seen_urls:
            continue
        seen_urls.add(raw.url)

        try:
            proto = TransportKind(raw.proto.lower())
        except ValueError:
            logger.warning("Skipping endpoint %s with unknown transport %r", raw.id, raw.proto)
            continue

        hostname, url_port = _url_host_port(raw.url)
        endpoints.append(
            Endpoint(
                id=raw.id,
                hostname=hostname.lower(),
                proto=proto,
                port=raw.port or url_port,
                url=raw.url,
            )
        )
    return endpoints


# ------------------------------------------------------------------
# Cache
# ------------------------------------------------------------------


class EndpointCache:
    """Hostname-keyed snapshot of bound endpoints.

    Thread-safe. :meth:`replace` swaps in a complete new snapshot; lookups
    read whichever snapshot is current.

    Example
    -------
    ::

        cache = EndpointCache()
        cache.replace(endpoints_from_listing(listing))
        endpoint = cache.get("app.example")
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot: Mapping[str, Endpoint] = MappingProxyType({})

    def replace(self, endpoints: Iterable[Endpoint]) -> None:
        """Replace the whole snapshot. Later entries win on duplicate hostnames."""
        fresh = {ep.hostname: ep for ep in endpoints}
        with self._lock:
            self._snapshot = MappingProxyType(fresh)

    def get(self, hostname: str) -> Optional[Endpoint]:
        """Return the endpoint for an exact hostname, or None."""
        return self.snapshot().get(hostname.lower())

    def snapshot(self) -> Mapping[str, Endpoint]:
        """Return the current immutable snapshot."""
        with self._lock:
            return self._snapshot

    def clear(self) -> None:
        """Drop all cached endpoints."""
        self.replace(())

    def __contains__(self, hostname: object) -> bool:
        return isinstance(hostname, str) and self.get(hostname) is not None

    def __len__(self) -> int:
        return len(self.snapshot())
