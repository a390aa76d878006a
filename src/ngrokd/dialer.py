"""BindingDialer — connect to bound endpoints through the relay ingress.

A dial to a bound endpoint opens TCP to the fixed ingress address, performs
a mutual-TLS handshake with the provisioned identity, and sends one binding
request naming the endpoint. Failed attempts are retried with jittered
exponential backoff. Addresses that are not bound endpoints go to the
fallback dialer when one is configured.

Example
-------
::

    from ngrokd import BindingDialer, DialerConfig, NetDialer

    with BindingDialer.create(DialerConfig(api_key="...", fallback_dialer=NetDialer())) as dialer:
        dialer.discover_endpoints()
        conn = dialer.dial("tcp", "my-app.internal:443")
"""
from __future__ import annotations

import dataclasses
import logging
import random
import socket
import ssl
import threading
from typing import Callable, Optional

from ngrokd.api.client import DirectoryClient
from ngrokd.config import DialerConfig, RetryPolicy
from ngrokd.context import Context
from ngrokd.endpoints import Endpoint, EndpointCache, endpoints_from_listing, parse_address
from ngrokd.errors import (
    BindingRejectedError,
    ContextCancelledError,
    DialAttemptError,
    DialerClosedError,
    DialStage,
    DirectoryError,
    EndpointNotFoundError,
    NgrokdError,
    ProtocolDecodeError,
    ProvisioningError,
    TransportError,
    UpgradeError,
)
from ngrokd.identity import Identity, client_ssl_context
from ngrokd.net import ContextDialer, NetDialer, abort_socket
from ngrokd.provisioning import IdentityProvisioner
from ngrokd.wire import ConnectResponse, upgrade

logger = logging.getLogger(__name__)

REFRESH_TIMEOUT = 30.0
JITTER_FRACTION = 0.25


def compute_backoff(
    policy: RetryPolicy,
    retry: int,
    rand: Callable[[], float] = random.random,
) -> float:
    """Return the wait in seconds before retry number *retry* (one-based).

    The base wait is ``initial_backoff * multiplier ** (retry - 1)`` capped at
    ``max_backoff``, then perturbed by up to ±25 % and capped again.
    """
    base = policy.initial_backoff * policy.multiplier ** (retry - 1)
    base = min(base, policy.max_backoff)
    jitter = (rand() - 0.5) * 2 * JITTER_FRACTION * base
    return min(max(base + jitter, 0.0), policy.max_backoff)


class BindingDialer:
    """Dials bound endpoints through the relay ingress.

    Use :meth:`create` to build one from a :class:`~ngrokd.config.DialerConfig`;
    it resolves the client identity first. The dialer is safe to share
    between threads. When it can discover endpoints and a polling interval
    is configured, a background thread refreshes the endpoint cache until
    :meth:`close`.

    Parameters
    ----------
    config:
        Dialer configuration.
    identity:
        Client identity presented to the ingress.
    client:
        Directory client for discovery, or None for a dialer that only
        uses endpoints it is told about.
    """

    def __init__(
        self,
        config: DialerConfig,
        identity: Identity,
        client: Optional[DirectoryClient] = None,
    ) -> None:
        if not identity.cert_pem:
            raise ProvisioningError("identity has an empty certificate")

        self._config = config
        self._identity = identity
        self._operator_id = identity.operator_id or config.operator_id
        self._client = client
        self._ssl_context = client_ssl_context(identity, config.root_cas)
        self._ingress_dialer: ContextDialer = config.ingress_dialer or NetDialer(timeout=config.dial_timeout)
        self._fallback_dialer = config.fallback_dialer
        self._cache = EndpointCache()
        self._tls_session: Optional[ssl.SSLSession] = None
        self._session_lock = threading.Lock()

        self._shutdown = Context.background()
        self._close_lock = threading.Lock()
        self._refresh_thread: Optional[threading.Thread] = None

        if self._client is not None and self._operator_id and config.polling_interval:
            self._refresh_thread = threading.Thread(
                target=self._refresh_loop,
                args=(config.polling_interval,),
                name="ngrokd-refresh",
                daemon=True,
            )
            self._refresh_thread.start()

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, config: Optional[DialerConfig] = None, ctx: Optional[Context] = None) -> "BindingDialer":
        """Resolve the client identity and build a dialer.

        The identity comes from, in order: ``config.identity``; provisioning
        through the directory API when ``config.api_key`` is set; an identity
        already saved in ``config.cert_store``.

        Raises
        ------
        ProvisioningError
            If no usable identity can be obtained.
        """
        config = config or DialerConfig()
        ctx = ctx or Context.background()
        client = DirectoryClient(config.api_key, base_url=config.api_url) if config.api_key else None

        try:
            if config.identity is not None:
                identity = config.identity
                if config.operator_id and not identity.operator_id:
                    identity = dataclasses.replace(identity, operator_id=config.operator_id)
            else:
                provisioner = IdentityProvisioner(
                    store=config.cert_store,  # type: ignore[arg-type]
                    client=client,
                    endpoint_selectors=config.endpoint_selectors,
                    description=config.description,
                    metadata=config.metadata,
                    region=config.region,
                )
                identity = provisioner.ensure_identity(ctx)
            dialer = cls(config, identity, client)
        except BaseException:
            if client is not None:
                client.close()
            raise

        logger.info("Dialer ready for operator %r", dialer.operator_id)
        return dialer

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def operator_id(self) -> str:
        """Registration ID of the identity in use."""
        return self._operator_id

    @property
    def identity(self) -> Identity:
        return self._identity

    @property
    def closed(self) -> bool:
        return self._shutdown.err() is not None

    def endpoints(self) -> dict[str, Endpoint]:
        """Return a copy of the cached hostname → endpoint mapping."""
        return dict(self._cache.snapshot())

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover_endpoints(self, ctx: Optional[Context] = None) -> list[Endpoint]:
        """Fetch bound endpoints and replace the cache with them.

        On failure the cache keeps its previous contents.

        Raises
        ------
        DialerClosedError
            If the dialer has been closed, including while the request was
            in flight.
        DirectoryError
            If discovery is unavailable or the directory API fails.
        """
        self._check_open()
        if self._client is None:
            raise DirectoryError("endpoint discovery requires an API key")
        if not self._operator_id:
            raise DirectoryError("operator ID not set")

        ctx = ctx or Context.background()
        try:
            listing = self._client.list_bound_endpoints(ctx, self._operator_id)
        except Exception as exc:
            if self.closed:
                raise DialerClosedError() from exc
            raise
        endpoints = endpoints_from_listing(listing)
        with self._close_lock:
            self._check_open()
            self._cache.replace(endpoints)
        logger.debug("Discovered %d bound endpoint(s)", len(endpoints))
        return endpoints

    def _refresh_loop(self, interval: float) -> None:
        while not self._shutdown.wait(interval):
            with self._shutdown.with_timeout(REFRESH_TIMEOUT) as ctx:
                try:
                    self.discover_endpoints(ctx)
                except DialerClosedError:
                    return
                except ContextCancelledError:
                    if self.closed:
                        return
                    logger.warning("Background endpoint refresh timed out")
                except NgrokdError as exc:
                    logger.warning("Background endpoint refresh failed: %s", exc)
                except Exception:
                    logger.exception("Unexpected error in background endpoint refresh")

    # ------------------------------------------------------------------
    # Dialing
    # ------------------------------------------------------------------

    def dial(self, network: str, address: str) -> socket.socket:
        """Connect to *address* without a deadline. See :meth:`dial_context`."""
        return self.dial_context(Context.background(), network, address)

    def dial_context(self, ctx: Context, network: str, address: str) -> socket.socket:
        """Connect to *address*, through the relay when it is a bound endpoint.

        Parameters
        ----------
        ctx:
            Cancellation context for the whole call, retries included.
        network:
            Network name passed to the fallback dialer, e.g. ``"tcp"``.
        address:
            ``host``, ``host:port``, or a URL such as ``https://host``.

        Returns
        -------
        socket.socket
            A connected socket; a TLS socket for bound endpoints.

        Raises
        ------
        DialerClosedError
            If the dialer has been closed.
        AddressParseError
            If *address* cannot be parsed.
        EndpointNotFoundError
            If the host is not a bound endpoint and there is no fallback.
        TransportError, UpgradeError
            The last attempt's failure once retries are exhausted.
        ContextCancelledError
            If *ctx* ends first.
        """
        self._check_open()
        hostname, port = parse_address(address)

        endpoint = self._cache.get(hostname)
        if endpoint is None and self._config.discover_on_miss and self._client is not None:
            try:
                self.discover_endpoints(ctx)
            except DirectoryError as exc:
                logger.warning("Discovery on cache miss for %s failed: %s", hostname, exc)
            endpoint = self._cache.get(hostname)

        if endpoint is None:
            if self._fallback_dialer is not None:
                logger.debug("Using fallback dialer for %s", address)
                return self._fallback_dialer.dial_context(ctx, network, address)
            raise EndpointNotFoundError(hostname)

        return self._dial_with_retry(ctx, hostname, port)

    def create_connection(
        self,
        address: tuple[str, int],
        timeout: Optional[float] = None,
    ) -> socket.socket:
        """:func:`socket.create_connection`-style entry point for HTTP clients."""
        host, port = address
        target = f"[{host}]:{port}" if ":" in host else f"{host}:{port}"
        if timeout is None:
            return self.dial("tcp", target)
        with Context.background().with_timeout(timeout) as ctx:
            conn = self.dial_context(ctx, "tcp", target)
        return conn

    def _dial_with_retry(self, ctx: Context, hostname: str, port: int) -> socket.socket:
        policy = self._config.retry
        last_error: Optional[DialAttemptError] = None

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                delay = compute_backoff(policy, attempt - 1)
                logger.debug(
                    "Retrying dial to %s:%d, attempt %d after %.3fs",
                    hostname,
                    port,
                    attempt,
                    delay,
                )
                self._sleep(ctx, delay)

            try:
                return self._dial_once(ctx, hostname, port, attempt)
            except DialAttemptError as exc:
                last_error = exc
                logger.debug("Dial attempt %d failed: %s", attempt, exc)
                ctx.raise_if_done()

        assert last_error is not None
        raise last_error

    def _sleep(self, ctx: Context, delay: float) -> None:
        """Wait *delay* seconds unless *ctx* ends or the dialer closes first."""
        wake = threading.Event()
        unregister_ctx = ctx.after_cancel(wake.set)
        unregister_shutdown = self._shutdown.after_cancel(wake.set)
        try:
            wake.wait(delay)
        finally:
            unregister_ctx()
            unregister_shutdown()
        ctx.raise_if_done()
        self._check_open()

    def _dial_once(self, ctx: Context, hostname: str, port: int, attempt: int) -> socket.socket:
        ingress = self._config.ingress_endpoint
        logger.debug("Dialing %s:%d via %s", hostname, port, ingress)

        with ctx.with_timeout(self._config.dial_timeout) as attempt_ctx:
            try:
                raw = self._ingress_dialer.dial_context(attempt_ctx, "tcp", ingress)
            except (OSError, ValueError, ContextCancelledError) as exc:
                ctx.raise_if_done()
                raise TransportError(
                    hostname, port, DialStage.DIAL, attempt, f"dial {ingress}: {exc}"
                ) from exc

            conn = self._wrap(attempt_ctx, raw, hostname, port, attempt)
            # Ending the attempt context shuts the socket down under any blocked handshake or read.
            unregister = attempt_ctx.after_cancel(lambda: abort_socket(conn))
            try:
                self._handshake(conn, hostname, port, attempt)
                response = self._upgrade(conn, hostname, port, attempt)
            except BaseException:
                unregister()
                conn.close()
                raise
            unregister()

        conn.settimeout(None)
        self._remember_session(conn)
        logger.debug(
            "Connection to %s:%d upgraded, endpoint=%s proto=%s",
            hostname,
            port,
            response.endpoint_id,
            response.proto,
        )
        return conn

    def _wrap(
        self,
        ctx: Context,
        raw: socket.socket,
        hostname: str,
        port: int,
        attempt: int,
    ) -> ssl.SSLSocket:
        with self._session_lock:
            session = self._tls_session
        try:
            raw.settimeout(ctx.remaining())
            return self._ssl_context.wrap_socket(
                raw,
                server_hostname=self._config.ingress_host,
                do_handshake_on_connect=False,
                session=session,
            )
        except OSError as exc:
            raw.close()
            raise TransportError(hostname, port, DialStage.HANDSHAKE, attempt, str(exc)) from exc

    def _handshake(self, conn: ssl.SSLSocket, hostname: str, port: int, attempt: int) -> None:
        try:
            conn.do_handshake()
        except OSError as exc:
            raise TransportError(hostname, port, DialStage.HANDSHAKE, attempt, str(exc)) from exc

    def _remember_session(self, conn: ssl.SSLSocket) -> None:
        """Keep the ingress TLS session so the next dial can resume it."""
        session = conn.session
        if session is not None:
            with self._session_lock:
                self._tls_session = session

    def _upgrade(self, conn: socket.socket, hostname: str, port: int, attempt: int) -> ConnectResponse:
        try:
            return upgrade(conn, hostname, port)
        except BindingRejectedError as exc:
            raise UpgradeError(
                hostname,
                port,
                attempt,
                message=str(exc),
                error_code=exc.error_code,
                error_message=exc.error_message,
            ) from exc
        except (OSError, ProtocolDecodeError) as exc:
            raise UpgradeError(hostname, port, attempt, message=str(exc)) from exc

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop background refresh and reject further dials. Idempotent.

        Returns once the refresh thread has exited.
        """
        with self._close_lock:
            first = not self.closed
            if first:
                self._shutdown.cancel()
                self._cache.clear()

        thread = self._refresh_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

        if first:
            if self._client is not None:
                self._client.close()
            logger.info("Dialer for operator %r closed", self._operator_id)

    def _check_open(self) -> None:
        if self.closed:
            raise DialerClosedError()

    def __enter__(self) -> "BindingDialer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"BindingDialer(operator_id={self._operator_id!r}, "
            f"endpoints={len(self._cache)}, closed={self.closed})"
        )
