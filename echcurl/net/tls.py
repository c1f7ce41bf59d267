import ipaddress
import os
import threading
from collections.abc import Iterable
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import BinaryIO

import certifi
from OpenSSL import SSL

try:
    SSL._lib.TLS_client_method  # type: ignore
except AttributeError as e:  # pragma: no cover
    raise RuntimeError(
        "Your installation of the cryptography Python package is outdated."
    ) from e


class Version(Enum):
    UNBOUNDED = 0
    TLS1_2 = SSL.TLS1_2_VERSION
    TLS1_3 = SSL.TLS1_3_VERSION

    @classmethod
    def from_str(cls, value: str) -> "Version":
        """Accepts "1.2" and "1.3"."""
        try:
            return {"1.2": cls.TLS1_2, "1.3": cls.TLS1_3}[value]
        except KeyError:
            raise ValueError(f"Invalid TLS version: {value} (expected 1.2 or 1.3)")


class Verify(Enum):
    VERIFY_NONE = SSL.VERIFY_NONE
    VERIFY_PEER = SSL.VERIFY_PEER


DEFAULT_MIN_VERSION = Version.TLS1_2
DEFAULT_MAX_VERSION = Version.UNBOUNDED
DEFAULT_OPTIONS = SSL.OP_NO_COMPRESSION

# Hybrid post-quantum group first, classical groups as fallback.
POST_QUANTUM_GROUPS = ("X25519MLKEM768", "X25519", "P-256")

DEFAULT_HOSTFLAGS = (
    SSL._lib.X509_CHECK_FLAG_NO_PARTIAL_WILDCARDS  # type: ignore
    | getattr(SSL._lib, "X509_CHECK_FLAG_NEVER_CHECK_SUBJECT", 0)  # type: ignore
)

# TLS record content type and handshake message type of a ClientHello.
CONTENT_TYPE_HANDSHAKE = 0x16
HANDSHAKE_CLIENT_HELLO = 0x01


class MasterSecretLogger:
    def __init__(self, filename: Path):
        self.filename = filename.expanduser()
        self.f: BinaryIO | None = None
        self.lock = threading.Lock()

    # required for functools.wraps, which pyOpenSSL uses.
    __name__ = "MasterSecretLogger"

    def __call__(self, connection: SSL.Connection, keymaterial: bytes) -> None:
        with self.lock:
            if self.f is None:
                self.filename.parent.mkdir(parents=True, exist_ok=True)
                self.f = self.filename.open("ab")
                self.f.write(b"\n")
            self.f.write(keymaterial + b"\n")
            self.f.flush()

    def close(self):
        with self.lock:
            if self.f is not None:
                self.f.close()


def make_master_secret_logger(filename: str | None) -> MasterSecretLogger | None:
    if filename:
        return MasterSecretLogger(Path(filename))
    return None


log_master_secret = make_master_secret_logger(
    os.getenv("ECHCURL_SSLKEYLOGFILE") or os.getenv("SSLKEYLOGFILE")
)


def _set_groups(context: SSL.Context, groups: Iterable[str]) -> None:
    set_groups = getattr(SSL._lib, "SSL_CTX_set1_groups_list", None)  # type: ignore
    if set_groups is None:
        raise RuntimeError(
            "Cannot configure key exchange groups: "
            "SSL_CTX_set1_groups_list is unavailable in your libssl bindings."
        )
    groups_list = ":".join(groups)
    if set_groups(context._context, groups_list.encode()) != 1:  # type: ignore
        raise RuntimeError(
            f"Error setting key exchange groups ({groups_list}). "
            "The groups you specified may be unavailable in your libssl."
        )


@lru_cache(256)
def create_client_context(
    *,
    min_version: Version = DEFAULT_MIN_VERSION,
    max_version: Version = DEFAULT_MAX_VERSION,
    cipher_list: tuple[str, ...] | None = None,
    groups: tuple[str, ...] | None = None,
    verify: Verify = Verify.VERIFY_PEER,
    ca_pemfile: str | None = None,
) -> SSL.Context:
    """
    Creates a pyOpenSSL client context.

    *Raises:*
     - RuntimeError, if the versions, ciphers, groups or trust store cannot be applied.
    """
    context = SSL.Context(SSL.TLS_CLIENT_METHOD)

    ok = SSL._lib.SSL_CTX_set_min_proto_version(context._context, min_version.value)  # type: ignore
    ok += SSL._lib.SSL_CTX_set_max_proto_version(context._context, max_version.value)  # type: ignore
    if ok != 2:
        raise RuntimeError(
            f"Error setting TLS versions ({min_version=}, {max_version=}). "
            "The version you specified may be unavailable in your libssl."
        )

    context.set_options(DEFAULT_OPTIONS)

    if cipher_list is not None:
        try:
            context.set_cipher_list(b":".join(x.encode() for x in cipher_list))
        except SSL.Error as e:
            raise RuntimeError(f"SSL cipher specification error: {e}") from e

    if groups is not None:
        _set_groups(context, groups)

    context.set_verify(verify.value, None)
    if verify is not Verify.VERIFY_NONE:
        try:
            context.load_verify_locations(ca_pemfile or certifi.where())
        except SSL.Error as e:
            raise RuntimeError(f"Cannot load trusted certificates ({ca_pemfile=}).") from e

    if log_master_secret:
        context.set_keylog_callback(log_master_secret)

    return context


def new_client_connection(
    context: SSL.Context,
    server_name: str | None,
    alpn_protos: Iterable[bytes] = (),
    verify_hostname: bool = True,
) -> SSL.Connection:
    """
    Creates a client connection that talks through memory BIOs,
    with SNI and (unless disabled) hostname verification for `server_name`.
    """
    conn = SSL.Connection(context, None)
    if server_name:
        try:
            ip: bytes = ipaddress.ip_address(server_name).packed
        except ValueError:
            host_name = server_name.encode("idna")
            conn.set_tlsext_host_name(host_name)
            if verify_hostname:
                # https://wiki.openssl.org/index.php/Hostname_validation
                param = SSL._lib.SSL_get0_param(conn._ssl)  # type: ignore
                SSL._lib.X509_VERIFY_PARAM_set_hostflags(param, DEFAULT_HOSTFLAGS)  # type: ignore
                ok = SSL._lib.X509_VERIFY_PARAM_set1_host(  # type: ignore
                    param, host_name, len(host_name)
                )
                SSL._openssl_assert(ok == 1)  # type: ignore
        else:
            # RFC 6066: Literal IPv4 and IPv6 addresses are not permitted in "HostName",
            # so we don't call set_tlsext_host_name.
            if verify_hostname:
                param = SSL._lib.SSL_get0_param(conn._ssl)  # type: ignore
                ok = SSL._lib.X509_VERIFY_PARAM_set1_ip(param, ip, len(ip))  # type: ignore
                SSL._openssl_assert(ok == 1)  # type: ignore
    alpn = list(alpn_protos)
    if alpn:
        conn.set_alpn_protos(alpn)
    conn.set_connect_state()
    return conn


def is_client_hello(d: bytes) -> bool:
    """
    A best-effort check whether a write carries a ClientHello record:
    handshake content type, TLS major version 3, and handshake type 1
    right after the 5-byte record header.
    """
    return (
        len(d) >= 6
        and d[0] == CONTENT_TYPE_HANDSHAKE
        and d[1] == 0x03
        and d[5] == HANDSHAKE_CLIENT_HELLO
    )


class ClientStream:
    """
    Drives a memory-BIO SSL.Connection over any transport with sendall() and recv().

    Every flight of TLS records produced by OpenSSL is handed to the transport
    in a single sendall() call.
    """

    def __init__(self, ssl_conn: SSL.Connection, transport):
        self.ssl_conn = ssl_conn
        self.transport = transport
        self.eof = False

    def _flush(self) -> None:
        buf = bytearray()
        while True:
            try:
                buf += self.ssl_conn.bio_read(65536)
            except SSL.WantReadError:
                break
        if buf:
            self.transport.sendall(bytes(buf))

    def _fill(self) -> bool:
        data = self.transport.recv(65536)
        if not data:
            self.eof = True
            self.ssl_conn.bio_shutdown()
            return False
        self.ssl_conn.bio_write(data)
        return True

    def do_handshake(self) -> None:
        """
        Raises:
            SSL.Error, if the handshake fails.
            ConnectionError, if the peer closes the connection during the handshake.
        """
        while True:
            try:
                self.ssl_conn.do_handshake()
            except SSL.WantReadError:
                self._flush()
                if not self._fill():
                    raise ConnectionResetError("connection closed during TLS handshake")
            else:
                self._flush()
                return

    def sendall(self, data: bytes) -> None:
        self.ssl_conn.sendall(data)
        self._flush()

    def recv(self, bufsize: int) -> bytes:
        while True:
            try:
                return self.ssl_conn.recv(bufsize)
            except SSL.WantReadError:
                self._flush()
                if not self._fill():
                    return b""
            except SSL.ZeroReturnError:
                return b""
            except SSL.Error:
                # peers that close without a close_notify alert
                if self.eof:
                    return b""
                raise

    def shutdown(self) -> None:
        try:
            self.ssl_conn.shutdown()
            self._flush()
        except (SSL.Error, OSError):
            pass
