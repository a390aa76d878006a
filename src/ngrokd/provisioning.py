"""Identity provisioning — load a stored identity or register a fresh one.

IdentityProvisioner returns the identity kept in an IdentityStore when it is
usable. Otherwise it generates a P-384 key, has the directory API sign a CSR
for it, and saves the result before returning. Provisioning is thread-safe.
"""
from __future__ import annotations

import json
import logging
import threading
from typing import Optional

from ngrokd.api.client import DirectoryClient
from ngrokd.api.models import OperatorBindingCreate, OperatorCreateRequest
from ngrokd.context import Context
from ngrokd.errors import (
    ContextCancelledError,
    DirectoryError,
    IdentityNotFoundError,
    InvalidIdentityError,
    ProvisioningError,
)
from ngrokd.identity import Identity, build_csr, generate_private_key, private_key_pem
from ngrokd.store import IdentityStore

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "ngrokd-sdk"
DEFAULT_METADATA = json.dumps({"type": "sdk"}, separators=(",", ":"))
DEFAULT_REGION = "global"
DEFAULT_SELECTORS = ("true",)


class IdentityProvisioner:
    """Ensures a usable client identity exists.

    Parameters
    ----------
    store:
        Where identities are loaded from and saved to.
    client:
        Directory client used to register new identities. May be None, in
        which case only stored identities can be returned.
    endpoint_selectors:
        Expressions restricting which endpoints the identity may reach.
    description:
        Registration description.
    metadata:
        Registration metadata string.
    region:
        Registration region.
    """

    def __init__(
        self,
        store: IdentityStore,
        client: Optional[DirectoryClient] = None,
        endpoint_selectors: Optional[list[str]] = None,
        description: str = DEFAULT_DESCRIPTION,
        metadata: str = DEFAULT_METADATA,
        region: str = DEFAULT_REGION,
    ) -> None:
        self._store = store
        self._client = client
        self._endpoint_selectors = list(endpoint_selectors or DEFAULT_SELECTORS)
        self._description = description
        self._metadata = metadata
        self._region = region
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def ensure_identity(self, ctx: Optional[Context] = None, force: bool = False) -> Identity:
        """Return the stored identity, provisioning a new one when needed.

        A stored identity that cannot be parsed is treated as absent and
        replaced.

        Parameters
        ----------
        ctx:
            Cancellation context for the registration call.
        force:
            Skip the store and always register a fresh identity.

        Raises
        ------
        ProvisioningError
            If the store cannot be read or written, or registration fails.
        """
        ctx = ctx or Context.background()
        with self._lock:
            if not force:
                stored = self._load_stored()
                if stored is not None:
                    return stored
            return self._provision(ctx)

    def load_stored(self) -> Optional[Identity]:
        """Return the stored identity if it is present and valid, else None."""
        with self._lock:
            return self._load_stored()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _load_stored(self) -> Optional[Identity]:
        try:
            if not self._store.exists():
                return None
            key_pem, cert_pem, operator_id = self._store.load()
        except IdentityNotFoundError:
            return None
        except OSError as exc:
            raise ProvisioningError(f"failed to read identity store: {exc}") from exc

        try:
            identity = Identity.from_pem(key_pem, cert_pem, operator_id)
        except InvalidIdentityError as exc:
            logger.warning("Stored identity is unusable, provisioning a new one: %s", exc)
            return None

        logger.debug("Loaded stored identity for operator %r", operator_id)
        return identity

    def _provision(self, ctx: Context) -> Identity:
        if self._client is None:
            raise ProvisioningError("no stored identity and no API key to provision one")

        key = generate_private_key()
        key_pem = private_key_pem(key)
        csr_pem = build_csr(key).decode("ascii")

        request = OperatorCreateRequest(
            description=self._description,
            metadata=self._metadata,
            enabled_features=["bindings"],
            region=self._region,
            binding=OperatorBindingCreate(
                endpoint_selectors=self._endpoint_selectors,
                csr=csr_pem,
            ),
        )

        try:
            operator = self._client.create_operator(ctx, request)
        except (DirectoryError, ContextCancelledError) as exc:
            raise ProvisioningError(f"failed to register: {exc}") from exc

        if operator.binding is None or not operator.binding.cert.cert:
            raise ProvisioningError("no certificate in registration response")

        cert_pem = operator.binding.cert.cert.encode("ascii")
        try:
            identity = Identity.from_pem(key_pem, cert_pem, operator.id)
        except InvalidIdentityError as exc:
            raise ProvisioningError(f"registration returned an unusable certificate: {exc}") from exc

        try:
            self._store.save(key_pem, cert_pem, operator.id)
        except OSError as exc:
            raise ProvisioningError(f"failed to save identity: {exc}") from exc

        logger.info(
            "Provisioned identity for operator %r, valid until %s",
            operator.id,
            identity.not_after.isoformat(),
        )
        return identity
