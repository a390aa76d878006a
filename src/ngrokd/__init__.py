"""ngrokd — dial private, identity-bound endpoints through a cloud relay.

Public API
----------
The stable public surface is everything exported from this module.
Anything inside submodules not re-exported here is considered private
and may change without notice.

Example
-------
>>> import ngrokd
>>> ngrokd.__version__
'0.1.0'

Quick start
-----------
::

    from ngrokd import BindingDialer, DialerConfig, NetDialer

    dialer = BindingDialer.create(
        DialerConfig(api_key="...", fallback_dialer=NetDialer())
    )
    dialer.discover_endpoints()
    conn = dialer.dial("tcp", "my-app.internal:443")
"""
from __future__ import annotations

__version__: str = "0.1.0"

from ngrokd.config import DialerConfig, RetryPolicy
from ngrokd.context import Context
from ngrokd.convenience import discovery_dialer
from ngrokd.dialer import BindingDialer, compute_backoff
from ngrokd.endpoints import Endpoint, EndpointCache, TransportKind, parse_address
from ngrokd.errors import (
    AddressParseError,
    APIError,
    BindingRejectedError,
    ContextCancelledError,
    DeadlineExceededError,
    DialAttemptError,
    DialerClosedError,
    DialStage,
    DirectoryError,
    EndpointNotFoundError,
    FrameTooLargeError,
    IdentityNotFoundError,
    InvalidIdentityError,
    NgrokdError,
    ProtocolDecodeError,
    ProvisioningError,
    TransportError,
    UpgradeError,
)
from ngrokd.identity import Identity
from ngrokd.net import ContextDialer, NetDialer
from ngrokd.provisioning import IdentityProvisioner
from ngrokd.store import FileIdentityStore, IdentityStore, MemoryIdentityStore, default_cert_dir
from ngrokd.wire import ConnectRequest, ConnectResponse

__all__ = [
    "__version__",
    # dialer
    "BindingDialer",
    "ContextDialer",
    "DialerConfig",
    "NetDialer",
    "RetryPolicy",
    "compute_backoff",
    "discovery_dialer",
    # context
    "Context",
    # endpoints
    "Endpoint",
    "EndpointCache",
    "TransportKind",
    "parse_address",
    # identity
    "FileIdentityStore",
    "Identity",
    "IdentityProvisioner",
    "IdentityStore",
    "MemoryIdentityStore",
    "default_cert_dir",
    # wire
    "ConnectRequest",
    "ConnectResponse",
    # errors
    "APIError",
    "AddressParseError",
    "BindingRejectedError",
    "ContextCancelledError",
    "DeadlineExceededError",
    "DialAttemptError",
    "DialStage",
    "DialerClosedError",
    "DirectoryError",
    "EndpointNotFoundError",
    "FrameTooLargeError",
    "IdentityNotFoundError",
    "InvalidIdentityError",
    "NgrokdError",
    "ProtocolDecodeError",
    "ProvisioningError",
    "TransportError",
    "UpgradeError",
]
