"""Client identity — private key, signed certificate, and operator ID.

An :class:`Identity` is what the dialer presents to the relay ingress during
the mutual-TLS handshake. Fresh identities start from an ECDSA P-384 key
and a certificate signing request that the directory API signs.
"""
from __future__ import annotations

import datetime
import ssl
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from ngrokd.errors import InvalidIdentityError

CSR_ORGANIZATION = "ngrokd-sdk"

# A CA bundle given as a path, or PEM/DER bytes.
TrustRoots = Union[str, Path, bytes]


@dataclass(frozen=True)
class Identity:
    """A provisioned client identity.

    Parameters
    ----------
    key_pem:
        PEM-encoded private key.
    cert_pem:
        PEM-encoded certificate signed by the relay's issuing authority.
    operator_id:
        Registration identifier the certificate was issued for.
    """

    key_pem: bytes
    cert_pem: bytes
    operator_id: str = ""

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    def from_pem(cls, key_pem: bytes, cert_pem: bytes, operator_id: str = "") -> "Identity":
        """Build an identity from PEM material, validating it first.

        Raises
        ------
        InvalidIdentityError
            If the certificate is empty, either PEM fails to parse, or the
            certificate's public key does not belong to the private key.
        """
        if not cert_pem or not cert_pem.strip():
            raise InvalidIdentityError("certificate is empty")
        if not key_pem or not key_pem.strip():
            raise InvalidIdentityError("private key is empty")

        try:
            cert = x509.load_pem_x509_certificate(cert_pem)
        except ValueError as exc:
            raise InvalidIdentityError(f"certificate is not valid PEM: {exc}") from exc
        try:
            key = serialization.load_pem_private_key(key_pem, password=None)
        except (ValueError, TypeError) as exc:
            raise InvalidIdentityError(f"private key is not valid PEM: {exc}") from exc

        if _public_bytes(cert.public_key()) != _public_bytes(key.public_key()):
            raise InvalidIdentityError("certificate public key does not match private key")

        return cls(key_pem=key_pem, cert_pem=cert_pem, operator_id=operator_id)

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def certificate(self) -> x509.Certificate:
        """Parse and return the X.509 certificate object."""
        return x509.load_pem_x509_certificate(self.cert_pem)

    @property
    def not_after(self) -> datetime.datetime:
        return self.certificate().not_valid_after_utc

    def is_expired(self) -> bool:
        """Return True if the certificate has passed its not_after date."""
        return datetime.datetime.now(datetime.timezone.utc) > self.not_after

    def days_remaining(self) -> int:
        """Return number of days until expiry (negative if already expired)."""
        delta = self.not_after - datetime.datetime.now(datetime.timezone.utc)
        return delta.days

    def __repr__(self) -> str:
        return f"Identity(operator_id={self.operator_id!r})"


def _public_bytes(public_key: object) -> bytes:
    return public_key.public_bytes(  # type: ignore[attr-defined]
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


# ------------------------------------------------------------------
# Key and CSR generation
# ------------------------------------------------------------------


def generate_private_key() -> ec.EllipticCurvePrivateKey:
    """Generate a new ECDSA key on the P-384 curve."""
    return ec.generate_private_key(ec.SECP384R1())


def private_key_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    """Return the unencrypted SEC1 PEM encoding of *key*."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def build_csr(key: ec.EllipticCurvePrivateKey) -> bytes:
    """Build and sign a PEM certificate signing request for *key*.

    The subject carries only the fixed organization name; the directory API
    decides everything else about the issued certificate.
    """
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, CSR_ORGANIZATION)]))
        .sign(key, hashes.SHA384())
    )
    return csr.public_bytes(serialization.Encoding.PEM)


# ------------------------------------------------------------------
# TLS
# ------------------------------------------------------------------


def client_ssl_context(identity: Identity, root_cas: TrustRoots | None = None) -> ssl.SSLContext:
    """Build a TLS client context presenting *identity*.

    When *root_cas* is given the ingress certificate is verified against it.
    Without it server verification is skipped, because the relay's issuing
    authority is not part of the default system trust stores.

    The returned context is read-only after construction and may be shared
    across threads; the server name is supplied per connection.

    Parameters
    ----------
    identity:
        The client identity to present.
    root_cas:
        CA bundle path, or PEM / DER encoded CA certificates.
    """
    if not identity.cert_pem:
        raise InvalidIdentityError("refusing to build a TLS context for an empty certificate")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    if root_cas is None:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    elif isinstance(root_cas, bytes):
        if b"-----BEGIN" in root_cas:
            context.load_verify_locations(cadata=root_cas.decode("ascii"))
        else:
            context.load_verify_locations(cadata=root_cas)
    else:
        context.load_verify_locations(cafile=str(root_cas))

    # load_cert_chain only accepts paths; the files live for the duration of the call.
    with tempfile.TemporaryDirectory(prefix="ngrokd-") as tmp:
        cert_file = Path(tmp) / "tls.crt"
        key_file = Path(tmp) / "tls.key"
        cert_file.write_bytes(identity.cert_pem)
        key_file.touch(mode=0o600)
        key_file.write_bytes(identity.key_pem)
        context.load_cert_chain(certfile=str(cert_file), keyfile=str(key_file))

    return context
