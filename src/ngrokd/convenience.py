"""Convenience API for ngrokd — one call to a ready-to-use dialer.

Example
-------
::

    from ngrokd import discovery_dialer

    dialer = discovery_dialer(api_key="...")
    print(sorted(dialer.endpoints()))

"""
from __future__ import annotations

import dataclasses
from typing import Any, Optional

from ngrokd.config import DialerConfig
from ngrokd.context import Context
from ngrokd.dialer import BindingDialer
from ngrokd.errors import ProvisioningError


def discovery_dialer(
    config: Optional[DialerConfig] = None,
    ctx: Optional[Context] = None,
    **overrides: Any,
) -> BindingDialer:
    """Create a dialer and run an initial endpoint discovery.

    Unlike :meth:`BindingDialer.create`, this requires an API key, since a
    dialer that cannot discover endpoints has nothing to dial.

    Parameters
    ----------
    config:
        Base configuration. A default one is built when omitted.
    ctx:
        Cancellation context for provisioning and the first discovery.
    **overrides:
        Field values applied to a copy of *config*, e.g. ``api_key="..."``.
        The copy is validated like a freshly built config.

    Raises
    ------
    ProvisioningError
        If no API key is available or provisioning fails.
    DirectoryError
        If the initial discovery fails.
    """
    if config is None:
        config = DialerConfig(**overrides)
    elif overrides:
        config = dataclasses.replace(config, **overrides)

    if not config.api_key:
        raise ProvisioningError("discovery_dialer requires an API key")

    dialer = BindingDialer.create(config, ctx)
    try:
        dialer.discover_endpoints(ctx)
    except BaseException:
        dialer.close()
        raise
    return dialer
