"""Identity storage — abstract interface plus file and in-memory backends.

IdentityStore defines the storage contract used by identity provisioning.
FileIdentityStore persists the identity as three files under a directory;
MemoryIdentityStore keeps it in process memory for ephemeral environments,
optionally pre-seeded from an external secret source.

Custom backends (a secrets manager, a database) implement the same three
methods with the same failure behaviour.
"""
from __future__ import annotations

import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from ngrokd.errors import IdentityNotFoundError

KEY_FILENAME = "tls.key"
CERT_FILENAME = "tls.crt"
OPERATOR_ID_FILENAME = "operator_id"


def default_cert_dir() -> Path:
    """Return the default per-user directory for stored identities."""
    return Path.home() / ".ngrokd" / "certs"


class IdentityStore(ABC):
    """Abstract base class for identity storage backends."""

    @abstractmethod
    def exists(self) -> bool:
        """Return True if an identity has been saved."""

    @abstractmethod
    def load(self) -> tuple[bytes, bytes, str]:
        """Retrieve the stored identity.

        Returns
        -------
        tuple[bytes, bytes, str]
            PEM private key, PEM certificate, and operator ID.

        Raises
        ------
        IdentityNotFoundError
            If no identity has been saved.
        """

    @abstractmethod
    def save(self, key_pem: bytes, cert_pem: bytes, operator_id: str) -> None:
        """Persist an identity, replacing any previously stored one.

        Parameters
        ----------
        key_pem:
            PEM-encoded private key.
        cert_pem:
            PEM-encoded signed certificate.
        operator_id:
            Registration identifier returned by the directory API.
        """


class FileIdentityStore(IdentityStore):
    """Filesystem-backed identity storage.

    The identity is stored under *directory* as ``tls.key``, ``tls.crt`` and
    ``operator_id``. The directory is created with mode 0700 and every file
    with mode 0600. Each file is written to a temporary sibling and renamed
    into place, so a reader never sees a half-written file.

    Parameters
    ----------
    directory:
        Directory holding the identity files. Defaults to
        :func:`default_cert_dir`.
    """

    def __init__(self, directory: Path | str | None = None) -> None:
        self._directory = Path(directory) if directory is not None else default_cert_dir()

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def key_path(self) -> Path:
        return self._directory / KEY_FILENAME

    @property
    def cert_path(self) -> Path:
        return self._directory / CERT_FILENAME

    @property
    def operator_id_path(self) -> Path:
        return self._directory / OPERATOR_ID_FILENAME

    # ------------------------------------------------------------------
    # IdentityStore interface
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        """Return True when both the key and certificate files are present."""
        return self.key_path.is_file() and self.cert_path.is_file()

    def load(self) -> tuple[bytes, bytes, str]:
        """Read the identity files.

        The operator ID file is optional; a missing one loads as ``""``.

        Raises
        ------
        IdentityNotFoundError
            If the key or certificate file is missing.
        """
        try:
            key_pem = self.key_path.read_bytes()
            cert_pem = self.cert_path.read_bytes()
        except FileNotFoundError as exc:
            raise IdentityNotFoundError(
                f"no identity stored in {self._directory}: {exc.filename} is missing"
            ) from exc

        try:
            operator_id = self.operator_id_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            operator_id = ""

        return key_pem, cert_pem, operator_id

    def save(self, key_pem: bytes, cert_pem: bytes, operator_id: str) -> None:
        """Write all three identity files with owner-only permissions."""
        self._directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        os.chmod(self._directory, 0o700)

        self._replace(self.key_path, key_pem)
        self._replace(self.cert_path, cert_pem)
        self._replace(self.operator_id_path, operator_id.encode("utf-8"))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _replace(self, path: Path, data: bytes) -> None:
        """Atomically replace *path* with *data*."""
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=self._directory)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def __repr__(self) -> str:
        return f"FileIdentityStore(directory={str(self._directory)!r})"


class MemoryIdentityStore(IdentityStore):
    """In-memory identity storage.

    The identity is lost when the process exits. Useful for stateless
    deployments and tests, or when the identity is fetched from an external
    secret source and handed in with :meth:`with_identity`.

    Thread-safe. Saves are serialized by an internal lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._key_pem = b""
        self._cert_pem = b""
        self._operator_id = ""
        self._stored = False

    @classmethod
    def with_identity(cls, key_pem: bytes, cert_pem: bytes, operator_id: str) -> "MemoryIdentityStore":
        """Return a store pre-loaded with an existing identity."""
        store = cls()
        store.save(key_pem, cert_pem, operator_id)
        return store

    def exists(self) -> bool:
        with self._lock:
            return self._stored

    def load(self) -> tuple[bytes, bytes, str]:
        """Return the stored identity.

        Raises
        ------
        IdentityNotFoundError
            If nothing has been saved yet.
        """
        with self._lock:
            if not self._stored:
                raise IdentityNotFoundError()
            return self._key_pem, self._cert_pem, self._operator_id

    def save(self, key_pem: bytes, cert_pem: bytes, operator_id: str) -> None:
        with self._lock:
            self._key_pem = bytes(key_pem)
            self._cert_pem = bytes(cert_pem)
            self._operator_id = operator_id
            self._stored = True
