"""Binding-protocol wire codec.

After the TLS handshake with the relay ingress, the client sends exactly one
:class:`ConnectRequest` frame naming the bound endpoint it wants and reads
one :class:`ConnectResponse` frame back. Application bytes follow.

Frame layout::

    +----------------+---------------------------+
    | uint16 (LE)    | body (length bytes)       |
    +----------------+---------------------------+

The body is a fixed-schema subset of the protobuf encoding: each present
field is a varint tag ``(field_number << 3) | wire_kind`` followed by either a
base-128 varint (kind 0) or a varint length plus raw bytes (kind 2). Fields
holding a zero value are omitted and decode back as zero.

Every read from a body is bounds-checked against the bytes actually
available; a declared length is never trusted on its own.
"""
from __future__ import annotations

import socket
import struct
from dataclasses import dataclass

from ngrokd.errors import BindingRejectedError, FrameTooLargeError, ProtocolDecodeError

MAX_FRAME_SIZE = 0xFFFF

WIRE_VARINT = 0
WIRE_BYTES = 2

_MAX_VARINT_BYTES = 10
_LENGTH_PREFIX = struct.Struct("<H")


# ------------------------------------------------------------------
# Varints and fields
# ------------------------------------------------------------------


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as a base-128 varint."""
    if value < 0:
        raise ValueError(f"varint value must be non-negative, got {value}")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def decode_varint(data: bytes, pos: int) -> tuple[int, int]:
    """Decode a varint starting at *pos*.

    Returns
    -------
    tuple[int, int]
        The decoded value and the position just past it.

    Raises
    ------
    ProtocolDecodeError
        If the buffer ends before the final byte or the varint is longer
        than ten bytes.
    """
    value = 0
    for i in range(_MAX_VARINT_BYTES):
        if pos + i >= len(data):
            raise ProtocolDecodeError(f"truncated varint at offset {pos}")
        byte = data[pos + i]
        value |= (byte & 0x7F) << (7 * i)
        if byte < 0x80:
            return value, pos + i + 1
    raise ProtocolDecodeError(f"varint at offset {pos} exceeds {_MAX_VARINT_BYTES} bytes")


def _tag(field_number: int, wire_kind: int) -> bytes:
    return encode_varint((field_number << 3) | wire_kind)


def _bytes_field(field_number: int, value: str) -> bytes:
    raw = value.encode("utf-8")
    return _tag(field_number, WIRE_BYTES) + encode_varint(len(raw)) + raw


def _varint_field(field_number: int, value: int) -> bytes:
    return _tag(field_number, WIRE_VARINT) + encode_varint(value)


def iter_fields(data: bytes):
    """Yield ``(field_number, wire_kind, value)`` for each field in *data*.

    Varint fields yield an ``int``; length-delimited fields yield ``bytes``.

    Raises
    ------
    ProtocolDecodeError
        On an unsupported wire kind or a length running past the buffer.
    """
    pos = 0
    while pos < len(data):
        key, pos = decode_varint(data, pos)
        field_number, wire_kind = key >> 3, key & 0x07
        if wire_kind == WIRE_VARINT:
            value, pos = decode_varint(data, pos)
            yield field_number, wire_kind, value
        elif wire_kind == WIRE_BYTES:
            length, pos = decode_varint(data, pos)
            end = pos + length
            if end > len(data):
                raise ProtocolDecodeError(
                    f"field {field_number} declares {length} bytes, "
                    f"only {len(data) - pos} remain"
                )
            yield field_number, wire_kind, data[pos:end]
            pos = end
        else:
            raise ProtocolDecodeError(f"unsupported wire type: {wire_kind}")


def _as_str(field_number: int, wire_kind: int, value: object) -> str:
    if wire_kind != WIRE_BYTES:
        raise ProtocolDecodeError(f"field {field_number} must be length-delimited")
    try:
        return bytes(value).decode("utf-8")  # type: ignore[arg-type]
    except UnicodeDecodeError as exc:
        raise ProtocolDecodeError(f"field {field_number} is not valid UTF-8") from exc


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectRequest:
    """Names the bound endpoint a relay connection is for.

    Parameters
    ----------
    host:
        Bound endpoint hostname (field 1).
    port:
        Bound endpoint port (field 2).
    """

    host: str = ""
    port: int = 0

    def marshal(self) -> bytes:
        """Encode the request body, omitting empty fields."""
        body = b""
        if self.host:
            body += _bytes_field(1, self.host)
        if self.port:
            body += _varint_field(2, self.port)
        return body

    @classmethod
    def unmarshal(cls, data: bytes) -> "ConnectRequest":
        """Decode a request body; unknown fields are skipped."""
        host, port = "", 0
        for field_number, wire_kind, value in iter_fields(data):
            if field_number == 1:
                host = _as_str(field_number, wire_kind, value)
            elif field_number == 2:
                if wire_kind != WIRE_VARINT:
                    raise ProtocolDecodeError("field 2 must be a varint")
                port = int(value)  # type: ignore[arg-type]
        return cls(host=host, port=port)


@dataclass(frozen=True)
class ConnectResponse:
    """The relay's answer to a :class:`ConnectRequest`.

    A response carrying an ``error_code`` or ``error_message`` decodes
    successfully but means the relay refused the connection; see
    :attr:`failed`.
    """

    endpoint_id: str = ""
    proto: str = ""
    error_code: str = ""
    error_message: str = ""

    @property
    def failed(self) -> bool:
        """True when the relay reported an error."""
        return bool(self.error_code or self.error_message)

    def marshal(self) -> bytes:
        """Encode the response body, omitting empty fields."""
        body = b""
        for number, value in enumerate(
            (self.endpoint_id, self.proto, self.error_code, self.error_message), start=1
        ):
            if value:
                body += _bytes_field(number, value)
        return body

    @classmethod
    def unmarshal(cls, data: bytes) -> "ConnectResponse":
        """Decode a response body; unknown fields are skipped."""
        values = ["", "", "", ""]
        for field_number, wire_kind, value in iter_fields(data):
            if 1 <= field_number <= 4:
                values[field_number - 1] = _as_str(field_number, wire_kind, value)
        return cls(*values)


# ------------------------------------------------------------------
# Framing
# ------------------------------------------------------------------


def encode_frame(body: bytes) -> bytes:
    """Prefix *body* with its little-endian uint16 length.

    Raises
    ------
    FrameTooLargeError
        If *body* is longer than 65535 bytes.
    """
    if len(body) > MAX_FRAME_SIZE:
        raise FrameTooLargeError(len(body), MAX_FRAME_SIZE)
    return _LENGTH_PREFIX.pack(len(body)) + body


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Read exactly *size* bytes from *sock*.

    Raises
    ------
    ConnectionError
        If the peer closes the connection first.
    """
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            raise ConnectionError(f"connection closed after {len(buf)} of {size} bytes")
        buf.extend(chunk)
    return bytes(buf)


def write_frame(sock: socket.socket, body: bytes) -> None:
    """Write one length-prefixed frame to *sock*."""
    sock.sendall(encode_frame(body))


def read_frame(sock: socket.socket) -> bytes:
    """Read one length-prefixed frame body from *sock*."""
    (length,) = _LENGTH_PREFIX.unpack(recv_exact(sock, _LENGTH_PREFIX.size))
    return recv_exact(sock, length)


def upgrade(sock: socket.socket, host: str, port: int) -> ConnectResponse:
    """Perform the binding handshake on an established relay connection.

    Parameters
    ----------
    sock:
        A TLS connection to the relay ingress.
    host:
        Bound endpoint hostname to connect to.
    port:
        Bound endpoint port to connect to.

    Returns
    -------
    ConnectResponse
        The relay's successful answer.

    Raises
    ------
    OSError
        On any I/O failure while writing or reading.
    ProtocolDecodeError
        If the response body is malformed.
    BindingRejectedError
        If the relay answered with an error code or message.
    """
    write_frame(sock, ConnectRequest(host=host, port=port).marshal())
    response = ConnectResponse.unmarshal(read_frame(sock))
    if response.failed:
        raise BindingRejectedError(response.error_code, response.error_message)
    return response
