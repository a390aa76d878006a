"""Exception hierarchy for ngrokd.

Every error raised by the library derives from :class:`NgrokdError`. Errors
that describe a lookup or parse failure also derive from the matching
builtin so callers can catch them broadly.

Classification
--------------
- :class:`AddressParseError` — malformed address, never retried.
- :class:`EndpointNotFoundError` — hostname is not a bound endpoint and no
  fallback dialer is configured.
- :class:`TransportError` — TCP connect or TLS handshake failure, retried.
- :class:`UpgradeError` — binding-protocol failure or relay rejection, retried.
- :class:`ProvisioningError` — identity could not be loaded or registered.
- :class:`DialerClosedError` — operation attempted after :meth:`close`.
- :class:`ContextCancelledError` / :class:`DeadlineExceededError` — the
  caller's context ended.
"""
from __future__ import annotations

from enum import Enum


class NgrokdError(Exception):
    """Base class for all ngrokd errors."""


# ------------------------------------------------------------------
# Context
# ------------------------------------------------------------------


class ContextCancelledError(NgrokdError):
    """Raised when an operation is aborted because its context was cancelled."""

    def __init__(self, message: str = "context cancelled") -> None:
        super().__init__(message)


class DeadlineExceededError(ContextCancelledError, TimeoutError):
    """Raised when an operation is aborted because its context deadline passed."""

    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)


# ------------------------------------------------------------------
# Dialer
# ------------------------------------------------------------------


class DialerClosedError(NgrokdError):
    """Raised when the dialer is used after it has been closed."""

    def __init__(self) -> None:
        super().__init__("dialer is closed")


class AddressParseError(NgrokdError, ValueError):
    """Raised when a dial address cannot be parsed into hostname and port."""

    def __init__(self, address: str, reason: str) -> None:
        self.address = address
        self.reason = reason
        super().__init__(f"invalid address {address!r}: {reason}")


class EndpointNotFoundError(NgrokdError, LookupError):
    """Raised when a hostname is not a known bound endpoint."""

    def __init__(self, hostname: str) -> None:
        self.hostname = hostname
        super().__init__(f"endpoint not found: {hostname}")


class DialStage(str, Enum):
    """The stage of a dial attempt at which a failure occurred."""

    DIAL = "dial"
    HANDSHAKE = "handshake"
    UPGRADE = "upgrade"


class DialAttemptError(NgrokdError):
    """Base class for failures of a single attempt to reach a bound endpoint.

    Parameters
    ----------
    hostname:
        The bound endpoint hostname being dialled.
    port:
        The bound endpoint port being dialled.
    stage:
        Which stage of the attempt failed.
    attempt:
        One-based number of the attempt that produced this error.
    message:
        Optional human-readable detail.
    """

    def __init__(
        self,
        hostname: str,
        port: int,
        stage: DialStage,
        attempt: int = 1,
        message: str = "",
    ) -> None:
        self.hostname = hostname
        self.port = port
        self.stage = stage
        self.attempt = attempt
        self.message = message
        super().__init__(self._format())

    def _format(self) -> str:
        text = f"{self.stage.value} failed for {self.hostname}:{self.port} (attempt {self.attempt})"
        if self.message:
            text = f"{text}: {self.message}"
        return text


class TransportError(DialAttemptError):
    """TCP connect or TLS handshake to the relay ingress failed."""


class UpgradeError(DialAttemptError):
    """The binding-protocol exchange failed or the relay refused the connection.

    ``error_code`` and ``error_message`` are populated when the relay answered
    with a rejection; both are empty for I/O or decode failures.
    """

    def __init__(
        self,
        hostname: str,
        port: int,
        attempt: int = 1,
        message: str = "",
        error_code: str = "",
        error_message: str = "",
    ) -> None:
        self.error_code = error_code
        self.error_message = error_message
        super().__init__(hostname, port, DialStage.UPGRADE, attempt, message)

    @property
    def rejected(self) -> bool:
        """True when the relay explicitly rejected the connection."""
        return bool(self.error_code or self.error_message)


# ------------------------------------------------------------------
# Wire protocol
# ------------------------------------------------------------------


class ProtocolDecodeError(NgrokdError, ValueError):
    """Raised when a binding-protocol frame body is truncated or malformed."""


class FrameTooLargeError(NgrokdError, ValueError):
    """Raised when an encoded message does not fit in a single frame."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"encoded message is {size} bytes, frame limit is {limit}")


class BindingRejectedError(NgrokdError):
    """Raised when the relay answers the binding request with an error."""

    def __init__(self, error_code: str, error_message: str) -> None:
        self.error_code = error_code
        self.error_message = error_message
        super().__init__(f"binding error [{error_code}]: {error_message}")


# ------------------------------------------------------------------
# Identity
# ------------------------------------------------------------------


class IdentityNotFoundError(NgrokdError, KeyError):
    """Raised by an identity store when no identity has been saved."""

    def __init__(self, detail: str = "no identity stored") -> None:
        super().__init__(detail)


class InvalidIdentityError(NgrokdError, ValueError):
    """Raised when key and certificate material do not form a usable identity."""


class ProvisioningError(NgrokdError):
    """Raised when an identity cannot be loaded, generated, or registered."""


# ------------------------------------------------------------------
# Directory API
# ------------------------------------------------------------------


class DirectoryError(NgrokdError):
    """Raised when the directory API cannot be reached."""


class APIError(DirectoryError):
    """Raised when the directory API answers with an error or unreadable body.

    Parameters
    ----------
    status_code:
        HTTP status of the response.
    body:
        Raw response body, decoded as text.
    detail:
        Optional description of what went wrong beyond the status.
    """

    def __init__(self, status_code: int, body: str, detail: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.detail = detail
        message = f"API error {status_code}: {body}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
