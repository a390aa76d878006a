"""Pluggable TCP dialers.

A context dialer is anything with a
``dial_context(ctx, network, address) -> socket`` method. The binding dialer
uses one to reach the relay ingress and, optionally, another as the fallback
for addresses that are not bound endpoints. :class:`NetDialer` is the plain
TCP implementation.
"""
from __future__ import annotations

import errno
import os
import selectors
import socket
import time
from typing import Optional, Protocol, runtime_checkable

from ngrokd.context import Context
from ngrokd.errors import ContextCancelledError, DeadlineExceededError


@runtime_checkable
class ContextDialer(Protocol):
    """Anything that can open a connection under a cancellation context."""

    def dial_context(self, ctx: Context, network: str, address: str) -> socket.socket:
        ...


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` for IPv6) into its parts."""
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        if not rest.startswith(":"):
            raise ValueError(f"missing port in address {address!r}")
        return host, int(rest[1:])
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"missing port in address {address!r}")
    return host, int(port)


_FAMILIES = {
    "tcp": socket.AF_UNSPEC,
    "tcp4": socket.AF_INET,
    "tcp6": socket.AF_INET6,
}


# Upper bound on how long a pending connect goes without checking its context.
POLL_INTERVAL = 0.05


def abort_socket(sock: socket.socket) -> None:
    """Shut down and close *sock* so a thread blocked on it returns at once.

    ``close()`` alone does not wake a thread already blocked in ``recv`` or
    ``poll`` on the same descriptor; ``shutdown()`` does. The plain socket
    method is used so a TLS socket is shut down below the TLS layer.
    """
    try:
        socket.socket.shutdown(sock, socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


class NetDialer:
    """Plain TCP dialer.

    Each resolved address is tried in turn. Connects are non-blocking and
    the context is checked at least every :data:`POLL_INTERVAL` seconds, so
    cancelling *ctx* abandons a pending connect promptly.

    Parameters
    ----------
    timeout:
        Seconds allowed for the whole dial; the context deadline may
        shorten it. None waits indefinitely.
    """

    def __init__(self, timeout: Optional[float] = 30.0) -> None:
        self._timeout = timeout

    def dial_context(self, ctx: Context, network: str, address: str) -> socket.socket:
        if network not in _FAMILIES:
            raise ValueError(f"unsupported network {network!r}")
        ctx.raise_if_done()
        host, port = split_host_port(address)
        deadline = None if self._timeout is None else time.monotonic() + self._timeout

        last_error: Optional[OSError] = None
        for family, socktype, proto, _, sockaddr in socket.getaddrinfo(
            host, port, _FAMILIES[network], socket.SOCK_STREAM
        ):
            sock = socket.socket(family, socktype, proto)
            try:
                self._connect(ctx, sock, sockaddr, deadline)
            except ContextCancelledError:
                sock.close()
                raise
            except OSError as exc:
                sock.close()
                last_error = exc
                continue
            except BaseException:
                sock.close()
                raise
            return sock

        if last_error is not None:
            raise last_error
        raise OSError(f"no addresses found for {host!r}")

    def _connect(
        self,
        ctx: Context,
        sock: socket.socket,
        sockaddr: tuple,
        deadline: Optional[float],
    ) -> None:
        """Connect *sock* without blocking past *deadline* or the end of *ctx*.

        Leaves the socket in blocking mode on success.
        """
        sock.setblocking(False)
        err = sock.connect_ex(sockaddr)
        if err not in (0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN):
            raise OSError(err, os.strerror(err))

        with selectors.DefaultSelector() as selector:
            selector.register(sock, selectors.EVENT_WRITE)
            while err != 0:
                ctx.raise_if_done()
                if ctx.remaining() == 0:
                    raise DeadlineExceededError()
                wait = self._wait_slice(ctx, deadline)
                if wait <= 0:
                    raise TimeoutError(f"connect to {sockaddr!r} timed out")
                if selector.select(wait):
                    err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
                    if err:
                        raise OSError(err, os.strerror(err))
                    break

        sock.setblocking(True)

    @staticmethod
    def _wait_slice(ctx: Context, deadline: Optional[float]) -> float:
        wait = POLL_INTERVAL
        remaining = ctx.remaining()
        if remaining is not None:
            wait = min(wait, remaining)
        if deadline is not None:
            wait = min(wait, deadline - time.monotonic())
        return wait

    def __repr__(self) -> str:
        return f"NetDialer(timeout={self._timeout!r})"
