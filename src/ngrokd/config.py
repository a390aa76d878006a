"""Dialer configuration.

:class:`DialerConfig` collects everything a :class:`~ngrokd.dialer.BindingDialer`
needs. Unset fields are filled with computed defaults when the config is
created: the API key falls back to the ``NGROK_API_KEY`` environment variable
and identities are stored under :func:`~ngrokd.store.default_cert_dir`.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from ngrokd.api.client import DEFAULT_API_URL
from ngrokd.identity import Identity, TrustRoots
from ngrokd.net import ContextDialer, split_host_port
from ngrokd.provisioning import DEFAULT_DESCRIPTION, DEFAULT_METADATA, DEFAULT_REGION, DEFAULT_SELECTORS
from ngrokd.store import FileIdentityStore, IdentityStore

API_KEY_ENV = "NGROK_API_KEY"
DEFAULT_INGRESS_ENDPOINT = "kubernetes-binding-ingress.ngrok.io:443"
DEFAULT_POLLING_INTERVAL = 30.0
DEFAULT_DIAL_TIMEOUT = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and backoff settings shared by every dial attempt.

    Parameters
    ----------
    max_retries:
        Retries after the first attempt; a dial makes at most
        ``max_retries + 1`` attempts.
    initial_backoff:
        Wait in seconds before the first retry.
    max_backoff:
        Upper bound in seconds for any wait.
    multiplier:
        Growth factor applied to the wait for each further retry.
    """

    max_retries: int = 3
    initial_backoff: float = 0.1
    max_backoff: float = 5.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {self.max_retries}")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff durations must be non-negative")
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be at least 1.0, got {self.multiplier}")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        """Return a policy that makes exactly one attempt."""
        return cls(max_retries=0)


@dataclass
class DialerConfig:
    """Configuration for a BindingDialer.

    Either an ``identity`` or an ``api_key`` is normally supplied. With only
    a ``cert_store`` holding a previously provisioned identity, the dialer
    runs without discovery.

    Parameters
    ----------
    api_key:
        Directory API key. Defaults to ``$NGROK_API_KEY``.
    identity:
        Pre-provisioned client identity; skips provisioning.
    operator_id:
        Registration ID to use with an explicit ``identity``.
    cert_store:
        Where provisioned identities are kept. Defaults to a
        :class:`~ngrokd.store.FileIdentityStore` in the per-user directory.
    api_url:
        Directory API root URL.
    ingress_endpoint:
        ``host:port`` of the relay ingress.
    root_cas:
        CA bundle for verifying the ingress. Without it the ingress
        certificate is not verified.
    ingress_dialer:
        Opens the TCP connection to the ingress. Defaults to
        :class:`~ngrokd.net.NetDialer`.
    fallback_dialer:
        Receives dials for addresses that are not bound endpoints. Without
        one, such dials raise EndpointNotFoundError.
    endpoint_selectors:
        Selector expressions sent at registration.
    polling_interval:
        Seconds between background discovery polls; None or 0 disables.
    dial_timeout:
        Seconds allowed for each whole attempt, upgrade included.
    retry:
        Retry and backoff policy.
    discover_on_miss:
        Run one synchronous discovery when a hostname is not cached.
    """

    api_key: str = ""
    identity: Optional[Identity] = None
    operator_id: str = ""
    cert_store: Optional[IdentityStore] = None
    api_url: str = DEFAULT_API_URL
    ingress_endpoint: str = DEFAULT_INGRESS_ENDPOINT
    root_cas: Optional[TrustRoots] = None
    ingress_dialer: Optional[ContextDialer] = None
    fallback_dialer: Optional[ContextDialer] = None
    endpoint_selectors: list[str] = field(default_factory=lambda: list(DEFAULT_SELECTORS))
    description: str = DEFAULT_DESCRIPTION
    metadata: str = DEFAULT_METADATA
    region: str = DEFAULT_REGION
    polling_interval: Optional[float] = DEFAULT_POLLING_INTERVAL
    dial_timeout: float = DEFAULT_DIAL_TIMEOUT
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    discover_on_miss: bool = False

    def __post_init__(self) -> None:
        if not self.api_key:
            self.api_key = os.environ.get(API_KEY_ENV, "")
        if self.cert_store is None:
            self.cert_store = FileIdentityStore()
        if not self.endpoint_selectors:
            self.endpoint_selectors = list(DEFAULT_SELECTORS)
        if self.dial_timeout <= 0:
            raise ValueError(f"dial_timeout must be positive, got {self.dial_timeout}")
        if self.polling_interval is not None and self.polling_interval < 0:
            raise ValueError(f"polling_interval must be non-negative, got {self.polling_interval}")

    @property
    def ingress_host(self) -> str:
        """Hostname part of ``ingress_endpoint``, used as the TLS server name."""
        try:
            host, _ = split_host_port(self.ingress_endpoint)
        except ValueError:
            return self.ingress_endpoint
        return host
