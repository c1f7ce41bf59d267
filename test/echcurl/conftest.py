from __future__ import annotations

import base64
import datetime
import ipaddress
import socket
import ssl
import struct
import threading

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from echcurl.dns import DNSMessage
from echcurl.net import ech
from echcurl.net.dns import stamps
from echcurl.resolve.upstream import Upstream

ECH_SUITE = ech.CipherSuite(ech.KDF_HKDF_SHA256, ech.AEAD_AES_128_GCM)


def pack_ech_config(
    public_name: str = "public.example",
    *,
    config_id: int = 7,
    kem_id: int = ech.KEM_X25519_HKDF_SHA256,
    public_key: bytes = b"\x01" * 32,
    cipher_suites=(ECH_SUITE,),
    maximum_name_length: int = 0,
    extensions: bytes = b"",
    version: int = ech.VERSION_DRAFT_13,
) -> bytes:
    suites = b"".join(struct.pack("!HH", cs.kdf_id, cs.aead_id) for cs in cipher_suites)
    name = public_name.encode("ascii")
    contents = (
        struct.pack("!BHH", config_id, kem_id, len(public_key))
        + public_key
        + struct.pack("!H", len(suites))
        + suites
        + struct.pack("!BB", maximum_name_length, len(name))
        + name
        + struct.pack("!H", len(extensions))
        + extensions
    )
    return struct.pack("!HH", version, len(contents)) + contents


def encode_stamp(stamp: stamps.Stamp) -> str:
    def lp(value: bytes) -> bytes:
        return bytes([len(value)]) + value

    buf = bytearray([stamp.protocol])
    buf += struct.pack("<Q", stamp.props)
    buf += lp(stamp.address.encode())
    if stamp.protocol == stamps.Protocol.DNSCRYPT:
        buf += lp(stamp.public_key)
        buf += lp(stamp.provider_name.encode())
    elif stamp.protocol != stamps.Protocol.PLAIN:
        hashes = stamp.hashes or [b""]
        for i, h in enumerate(hashes):
            buf.append(len(h) | (0x80 if i < len(hashes) - 1 else 0))
            buf += h
        buf += lp(stamp.provider_name.encode())
        if stamp.protocol == stamps.Protocol.DOH:
            buf += lp(stamp.path.encode())
    return "sdns://" + base64.urlsafe_b64encode(bytes(buf)).decode().rstrip("=")


class TServer(threading.Thread):
    """
    A loopback TCP server that hands every accepted connection to `handler`,
    optionally after a TLS handshake.
    """

    def __init__(self, handler, ssl_context: ssl.SSLContext | None = None):
        super().__init__(daemon=True)
        self.handler = handler
        self.ssl_context = ssl_context
        self.sock = socket.create_server(("127.0.0.1", 0))
        self.sock.settimeout(0.1)
        self.address = self.sock.getsockname()[:2]
        self.stopped = threading.Event()
        self.connections = 0

    def run(self):
        while not self.stopped.is_set():
            try:
                conn, _ = self.sock.accept()
            except TimeoutError:
                continue
            except OSError:
                return
            self.connections += 1
            conn.settimeout(5)
            try:
                if self.ssl_context is not None:
                    conn = self.ssl_context.wrap_socket(conn, server_side=True)
                self.handler(conn)
            except OSError:
                pass
            finally:
                conn.close()

    def shutdown(self):
        self.stopped.set()
        self.join(2)
        self.sock.close()


class UDPServer(threading.Thread):
    """A loopback UDP server that sends back whatever `handler` returns for a datagram."""

    def __init__(self, handler):
        super().__init__(daemon=True)
        self.handler = handler
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.1)
        self.address = self.sock.getsockname()[:2]
        self.stopped = threading.Event()

    def run(self):
        while not self.stopped.is_set():
            try:
                data, addr = self.sock.recvfrom(65536)
            except TimeoutError:
                continue
            except OSError:
                return
            for reply in self.handler(data, addr) or ():
                self.sock.sendto(reply, addr)

    def shutdown(self):
        self.stopped.set()
        self.join(2)
        self.sock.close()


class StubUpstream(Upstream):
    def __init__(self, name: str, responder):
        super().__init__(name, 53)
        self.responder = responder
        self.queries: list[DNSMessage] = []

    @property
    def address(self) -> str:
        return self.host

    def _exchange(self, query: DNSMessage) -> DNSMessage:
        self.queries.append(query)
        return self.responder(query)


@pytest.fixture
def tcp_server():
    servers = []

    def start(handler, ssl_context: ssl.SSLContext | None = None) -> TServer:
        server = TServer(handler, ssl_context)
        server.start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.shutdown()


@pytest.fixture
def udp_server():
    servers = []

    def start(handler) -> UDPServer:
        server = UDPServer(handler)
        server.start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.shutdown()


@pytest.fixture(scope="session")
def tls_certificate(tmp_path_factory) -> tuple[str, str]:
    """A self-signed certificate for localhost and 127.0.0.1, as (certfile, keyfile)."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.DNSName("localhost"),
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                ]
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    d = tmp_path_factory.mktemp("tls")
    certfile = d / "cert.pem"
    keyfile = d / "key.pem"
    certfile.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    keyfile.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return str(certfile), str(keyfile)


@pytest.fixture
def tls_server_context(tls_certificate):
    def make(alpn: tuple[str, ...] = ("http/1.1",)) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(*tls_certificate)
        if alpn:
            context.set_alpn_protocols(list(alpn))
        return context

    return make


@pytest.fixture
def stub_upstream():
    def make(responder, name: str = "stub") -> StubUpstream:
        return StubUpstream(name, responder)

    return make


@pytest.fixture
def ech_config_list():
    """Builds a serialized ECHConfigList with one entry per public name."""

    def make(
        *public_names: str,
        kem_id: int = ech.KEM_X25519_HKDF_SHA256,
        cipher_suites: tuple[ech.CipherSuite, ...] = (ECH_SUITE,),
    ) -> bytes:
        entries = b"".join(
            pack_ech_config(
                name,
                config_id=i,
                kem_id=kem_id,
                public_key=bytes(range(32)),
                cipher_suites=cipher_suites,
            )
            for i, name in enumerate(public_names or ("public.example",))
        )
        return struct.pack("!H", len(entries)) + entries

    return make


@pytest.fixture
def ech_config_entry():
    """Builds a single serialized ECHConfig."""
    return pack_ech_config


@pytest.fixture
def sdns():
    """Converts a stamp into its sdns:// form."""
    return encode_stamp
