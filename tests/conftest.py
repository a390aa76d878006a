"""Shared fixtures: a throwaway CA, identities, a mock directory API, a local relay."""
from __future__ import annotations

import datetime
import ipaddress
import json
import socket
import ssl
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from ngrokd.api.client import DirectoryClient
from ngrokd.identity import Identity, generate_private_key, private_key_pem
from ngrokd.wire import ConnectRequest, ConnectResponse, encode_frame, read_frame


# ---------------------------------------------------------------------------
# Test certificate authority
# ---------------------------------------------------------------------------


@dataclass
class TestCA:
    __test__ = False

    key: ec.EllipticCurvePrivateKey
    cert: x509.Certificate

    @classmethod
    def generate(cls, name: str = "ngrokd test CA") -> "TestCA":
        key = ec.generate_private_key(ec.SECP256R1())
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
        now = datetime.datetime.now(datetime.timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(key, hashes.SHA256())
        )
        return cls(key=key, cert=cert)

    @property
    def cert_pem(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.PEM)

    def issue(
        self,
        public_key: object,
        common_name: str = "client",
        sans: Optional[list[x509.GeneralName]] = None,
        days: int = 1,
    ) -> bytes:
        now = datetime.datetime.now(datetime.timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .issuer_name(self.cert.subject)
            .public_key(public_key)  # type: ignore[arg-type]
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=days))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        )
        if sans:
            builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
        return builder.sign(self.key, hashes.SHA256()).public_bytes(serialization.Encoding.PEM)

    def sign_csr(self, csr_pem: str) -> bytes:
        csr = x509.load_pem_x509_csr(csr_pem.encode("ascii"))
        return self.issue(csr.public_key(), common_name="operator")


@pytest.fixture(scope="session")
def ca() -> TestCA:
    return TestCA.generate()


@pytest.fixture(scope="session")
def other_ca() -> TestCA:
    return TestCA.generate("unrelated CA")


@pytest.fixture(scope="session")
def identity(ca: TestCA) -> Identity:
    key = generate_private_key()
    cert_pem = ca.issue(key.public_key())
    return Identity.from_pem(private_key_pem(key), cert_pem, "op_test")


# ---------------------------------------------------------------------------
# Mock directory API
# ---------------------------------------------------------------------------


@dataclass
class FakeDirectory:
    """In-process stand-in for the directory API, served through httpx.MockTransport."""

    ca: TestCA
    bound: list[dict[str, object]] = field(default_factory=list)
    known: Optional[list[dict[str, object]]] = None
    operator_id: str = "op_123"
    fail_validation: bool = False
    fail_listing: bool = False
    requests: list[httpx.Request] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path == "/kubernetes_operators":
            body = json.loads(request.content)
            cert = self.ca.sign_csr(body["binding"]["csr"]).decode("ascii")
            return httpx.Response(
                201,
                json={
                    "id": self.operator_id,
                    "binding": {"cert": {"cert": cert, "not_before": "", "not_after": ""}},
                },
            )
        if request.method == "GET" and path.endswith("/bound_endpoints"):
            if self.fail_listing:
                return httpx.Response(500, text="listing unavailable")
            return httpx.Response(200, json={"endpoints": self.bound})
        if request.method == "GET" and path == "/endpoints":
            if self.fail_validation:
                return httpx.Response(503, text="validation unavailable")
            known = self.known
            if known is None:
                known = [{"id": ep["id"], "bindings": ["kubernetes"]} for ep in self.bound]
            return httpx.Response(200, json={"endpoints": known})
        return httpx.Response(404, text=f"no route for {request.method} {path}")

    def client(self) -> DirectoryClient:
        return DirectoryClient("test-key", base_url="https://api.test", transport=httpx.MockTransport(self.handler))


@pytest.fixture()
def directory(ca: TestCA) -> FakeDirectory:
    return FakeDirectory(ca=ca)


# ---------------------------------------------------------------------------
# Local relay ingress
# ---------------------------------------------------------------------------


class FakeRelay:
    """A TLS server that performs the relay side of the binding handshake.

    Each accepted connection reads one ConnectRequest, records it together
    with the client certificate, answers with ``respond(request)`` and then
    writes ``greeting`` before closing.
    """

    def __init__(
        self,
        ca: TestCA,
        tmp_path: Path,
        respond: Callable[[ConnectRequest], ConnectResponse],
        greeting: bytes = b"hello",
    ) -> None:
        key = ec.generate_private_key(ec.SECP256R1())
        cert_pem = ca.issue(
            key.public_key(),
            common_name="localhost",
            sans=[x509.DNSName("localhost"), x509.IPAddress(ipaddress.ip_address("127.0.0.1"))],
        )
        cert_file = tmp_path / "relay.crt"
        key_file = tmp_path / "relay.key"
        cert_file.write_bytes(cert_pem)
        key_file.write_bytes(private_key_pem(key))  # type: ignore[arg-type]

        self._ssl = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self._ssl.load_cert_chain(str(cert_file), str(key_file))
        self._ssl.load_verify_locations(cadata=ca.cert_pem.decode("ascii"))
        self._ssl.verify_mode = ssl.CERT_REQUIRED

        self._respond = respond
        self._greeting = greeting
        self._listener = socket.create_server(("127.0.0.1", 0))
        self._listener.settimeout(0.2)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self.requests: list[ConnectRequest] = []
        self.client_subjects: list[str] = []

    @property
    def address(self) -> str:
        host, port = self._listener.getsockname()[:2]
        return f"{host}:{port}"

    def start(self) -> "FakeRelay":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=5)
        self._listener.close()

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                raw, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=self._handle, args=(raw,), daemon=True).start()

    def _handle(self, raw: socket.socket) -> None:
        raw.settimeout(5)
        try:
            with self._ssl.wrap_socket(raw, server_side=True) as conn:
                peer = conn.getpeercert() or {}
                subject = dict(item[0] for item in peer.get("subject", ()))
                self.client_subjects.append(str(subject.get("commonName", "")))
                request = ConnectRequest.unmarshal(read_frame(conn))
                self.requests.append(request)
                conn.sendall(encode_frame(self._respond(request).marshal()))
                conn.sendall(self._greeting)
        except (OSError, ValueError):
            raw.close()


@pytest.fixture()
def relay_factory(ca: TestCA, tmp_path: Path):
    relays: list[FakeRelay] = []

    def make(
        respond: Callable[[ConnectRequest], ConnectResponse] = lambda req: ConnectResponse(
            endpoint_id="ep_1", proto="https"
        ),
        greeting: bytes = b"hello",
    ) -> FakeRelay:
        relay = FakeRelay(ca, tmp_path, respond, greeting).start()
        relays.append(relay)
        return relay

    yield make
    for relay in relays:
        relay.stop()
