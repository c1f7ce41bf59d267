"""
The TLS handshake dispatcher.

Depending on the parameters, a handshake takes one of two paths:

 - plain: pyOpenSSL with the configured versions, ciphers and ALPN.
 - enhanced: ECH and/or post-quantum key exchange. Post-quantum alone stays on
   pyOpenSSL with an extended group list. ECH needs an `ssl` module that was
   built with ECH support, as pyOpenSSL does not expose it.

Both backends talk through memory BIOs, so every TLS record passes through the
wrapped connection (and thereby through the TLS split stage, if any).
Whichever backend was used, callers get a SecureConnection with a uniform TlsState.
"""

from __future__ import annotations

import enum
import logging
import ssl
from dataclasses import dataclass
from dataclasses import field

import certifi
from cryptography import x509
from OpenSSL import SSL

from echcurl import exceptions
from echcurl.client.kinds import TransportKind
from echcurl.config import Config
from echcurl.net import ech
from echcurl.net import tls
from echcurl.net.connection import Connection
from echcurl.net.connection import WrappedConnection
from echcurl.resolve.resolver import Resolver

logger = logging.getLogger(__name__)

ALPN_HTTP1_1 = "http/1.1"
ALPN_H2 = "h2"
ALPN_H3 = "h3"


@dataclass(frozen=True)
class TlsParameters:
    server_name: str
    min_version: tls.Version = tls.DEFAULT_MIN_VERSION
    max_version: tls.Version = tls.DEFAULT_MAX_VERSION
    cipher_list: tuple[str, ...] | None = None
    alpn_protocols: tuple[str, ...] = (ALPN_H2, ALPN_HTTP1_1)
    ech: bool = False
    ech_grease: bool = False
    ech_configs: tuple[ech.ECHConfig, ...] = ()
    post_quantum: bool = False
    client_random: bytes | None = None
    insecure: bool = False

    @property
    def enhanced(self) -> bool:
        return self.ech or self.ech_grease or self.post_quantum

    @classmethod
    def from_config(
        cls,
        config: Config,
        host: str,
        transport_kind: TransportKind,
        websocket: bool = False,
    ) -> TlsParameters:
        if websocket:
            # The upgrade handshake only exists in HTTP/1.1.
            alpn: tuple[str, ...] = (ALPN_HTTP1_1,)
        elif transport_kind is TransportKind.HTTP3:
            alpn = (ALPN_H3,)
        elif transport_kind is TransportKind.HTTP2:
            alpn = (ALPN_H2,)
        elif config.force_http11:
            alpn = (ALPN_HTTP1_1,)
        else:
            alpn = (ALPN_H2, ALPN_HTTP1_1)

        return cls(
            server_name=config.tls_server_name or host,
            min_version=config.tls_min_version,
            max_version=config.tls_max_version,
            cipher_list=config.ciphers,
            alpn_protocols=alpn,
            ech=config.ech,
            ech_grease=config.ech_grease,
            ech_configs=tuple(config.ech_configs),
            post_quantum=config.post_quantum,
            client_random=config.tls_random,
            insecure=config.insecure,
        )


@dataclass(frozen=True)
class TlsState:
    version: str
    cipher: str | None
    alpn: str | None
    server_name: str
    peer_certificates: tuple[x509.Certificate, ...] = field(default=(), repr=False)
    did_resume: bool = False
    ech_accepted: bool = False


class SecureConnection(WrappedConnection):
    """A connection with an established TLS session, whichever backend produced it."""

    tls_state: TlsState


class OpenSSLConnection(SecureConnection):
    def __init__(self, inner: Connection, stream: tls.ClientStream, server_name: str):
        super().__init__(inner)
        self.stream = stream
        ssl_conn = stream.ssl_conn
        alpn = ssl_conn.get_alpn_proto_negotiated()
        # on the client side, the chain already starts with the leaf.
        chain = ssl_conn.get_peer_cert_chain() or []
        self.tls_state = TlsState(
            version=ssl_conn.get_protocol_version_name(),
            cipher=ssl_conn.get_cipher_name(),
            alpn=alpn.decode() if alpn else None,
            server_name=server_name,
            peer_certificates=tuple(c.to_cryptography() for c in chain),
            did_resume=ssl_conn.session_reused(),
        )

    def sendall(self, data: bytes) -> None:
        self.stream.sendall(data)

    def recv(self, bufsize: int) -> bytes:
        return self.stream.recv(bufsize)

    def close(self) -> None:
        self.stream.shutdown()
        self.inner.close()


class SSLObjectConnection(SecureConnection):
    """Drives an `ssl.SSLObject` over a pair of memory BIOs."""

    def __init__(
        self,
        inner: Connection,
        sslobj: ssl.SSLObject,
        incoming: ssl.MemoryBIO,
        outgoing: ssl.MemoryBIO,
        server_name: str,
    ):
        super().__init__(inner)
        self.sslobj = sslobj
        self.incoming = incoming
        self.outgoing = outgoing
        self.tls_state = TlsState(
            version=sslobj.version() or "",
            cipher=(sslobj.cipher() or (None,))[0],
            alpn=sslobj.selected_alpn_protocol(),
            server_name=server_name,
            peer_certificates=_sslobject_peer_certificates(sslobj),
            did_resume=sslobj.session_reused,
            ech_accepted=_ech_status(sslobj) == "ECH_STATUS_SUCCESS",
        )

    def _flush(self) -> None:
        data = self.outgoing.read()
        if data:
            self.inner.sendall(data)

    def sendall(self, data: bytes) -> None:
        self.sslobj.write(data)
        self._flush()

    def recv(self, bufsize: int) -> bytes:
        while True:
            try:
                return self.sslobj.read(bufsize)
            except ssl.SSLWantReadError:
                self._flush()
                data = self.inner.recv(65536)
                if not data:
                    self.incoming.write_eof()
                    return b""
                self.incoming.write(data)
            except (ssl.SSLZeroReturnError, ssl.SSLEOFError):
                return b""

    def close(self) -> None:
        try:
            self.sslobj.unwrap()
            self._flush()
        except (ssl.SSLError, OSError):
            pass
        self.inner.close()


def _sslobject_peer_certificates(sslobj: ssl.SSLObject) -> tuple[x509.Certificate, ...]:
    get_chain = getattr(sslobj, "get_verified_chain", None)
    ders: list[bytes] = []
    if get_chain is not None:
        try:
            ders = [bytes(c) for c in get_chain()]
        except (ssl.SSLError, ValueError):
            ders = []
    if not ders:
        leaf = sslobj.getpeercert(binary_form=True)
        ders = [leaf] if leaf else []
    return tuple(x509.load_der_x509_certificate(d) for d in ders)


def ech_supported() -> bool:
    """True if the running interpreter's ssl module can send Encrypted ClientHellos."""
    return hasattr(ssl.SSLContext, "set_ech_config") and hasattr(ssl, "OP_ECH_GREASE")


def _ech_status(sslobj: ssl.SSLObject) -> str | None:
    for obj in (sslobj, getattr(sslobj, "_sslobj", None)):
        get_status = getattr(obj, "get_ech_status", None)
        if get_status is not None:
            status = get_status()
            return getattr(status, "name", str(status))
    return None


def _describe_ssl_error(e: SSL.Error, ssl_conn: SSL.Connection) -> str:
    last_err = e.args and isinstance(e.args[0], list) and e.args[0] and e.args[0][-1]
    if isinstance(last_err, tuple) and last_err[2] == "certificate verify failed":
        verify_result = SSL._lib.SSL_get_verify_result(ssl_conn._ssl)  # type: ignore
        error = SSL._ffi.string(  # type: ignore
            SSL._lib.X509_verify_cert_error_string(verify_result)  # type: ignore
        ).decode()
        return f"Certificate verify failed: {error}"
    if isinstance(last_err, tuple) and last_err[2] in (
        "tlsv1 alert protocol version",
        "unsupported protocol",
    ):
        return "The server and echcurl cannot agree on a TLS version to use."
    if isinstance(last_err, tuple) and last_err[2] in (
        "wrong version number",
        "packet length too long",
        "record layer failure",
    ):
        return "The remote server does not speak TLS."
    return f"OpenSSL {e!r}"


_SSL_VERSIONS = {
    tls.Version.TLS1_2: ssl.TLSVersion.TLSv1_2,
    tls.Version.TLS1_3: ssl.TLSVersion.TLSv1_3,
}


class HandshakeState(enum.Enum):
    NONE = "none"
    IN_PROGRESS = "in progress"
    ESTABLISHED = "established"
    FAILED = "failed"


class HandshakeDispatcher:
    """
    Performs the TLS handshake for one connection.

    The path is decided once from the parameters. Failing to discover an ECH
    configuration is the only failure that is recovered from: we log it and
    continue without ECH. Everything else fails the handshake.
    """

    def __init__(self, params: TlsParameters, resolver: Resolver | None = None):
        self.params = params
        self.resolver = resolver
        self.state = HandshakeState.NONE

    def handshake(self, conn: Connection) -> SecureConnection:
        """
        *Raises:*
         - HandshakeError, on any handshake failure.
        """
        if self.state is not HandshakeState.NONE:
            raise exceptions.HandshakeError(
                f"handshake already {self.state.value}", self.params.server_name
            )
        self.state = HandshakeState.IN_PROGRESS
        try:
            if self.params.enhanced:
                secure = self._enhanced(conn)
            else:
                logger.debug("Starting TLS handshake")
                secure = self._openssl(conn, groups=None)
        except Exception:
            self.state = HandshakeState.FAILED
            raise
        self.state = HandshakeState.ESTABLISHED
        logger.debug(f"TLS connection has been established: {secure.tls_state}")
        return secure

    def _fail(self, message: str) -> exceptions.HandshakeError:
        return exceptions.HandshakeError(message, self.params.server_name)

    def _check_client_random(self) -> None:
        if self.params.client_random is not None:
            raise self._fail(
                "a custom ClientHello random cannot be set, OpenSSL does not allow overriding it"
            )

    def _ech_config(self) -> ech.ECHConfig | None:
        params = self.params
        if not params.ech:
            return None
        if params.ech_configs:
            config = ech.select(params.ech_configs)
            if config is None:
                raise self._fail("none of the given ECH configurations is supported")
            return config
        if self.resolver is None:
            logger.warning(
                f"ECH config not found for {params.server_name}: no resolver available"
            )
            return None
        try:
            configs = self.resolver.lookup_ech_configs(params.server_name)
        except exceptions.ResolutionError as e:
            logger.warning(f"ECH config not found for {params.server_name}: {e}")
            return None
        config = ech.select(configs)
        if config is None:
            logger.warning(
                f"ECH config not found for {params.server_name}: no supported configuration"
            )
        return config

    def _enhanced(self, conn: Connection) -> SecureConnection:
        logger.debug("Attempting to establish an enhanced TLS connection")
        if (self.params.ech or self.params.ech_grease) and not ech_supported():
            raise self._fail(
                f"ECH is not supported by the ssl module of this Python ({ssl.OPENSSL_VERSION})"
            )
        config = self._ech_config()
        if config is not None or self.params.ech_grease:
            return self._ssl_module(conn, config)
        groups = tls.POST_QUANTUM_GROUPS if self.params.post_quantum else None
        return self._openssl(conn, groups)

    def _openssl(
        self, conn: Connection, groups: tuple[str, ...] | None
    ) -> OpenSSLConnection:
        self._check_client_random()
        params = self.params
        try:
            context = tls.create_client_context(
                min_version=params.min_version,
                max_version=params.max_version,
                cipher_list=params.cipher_list,
                groups=groups,
                verify=tls.Verify.VERIFY_NONE if params.insecure else tls.Verify.VERIFY_PEER,
            )
        except RuntimeError as e:
            raise self._fail(str(e)) from e

        ssl_conn = tls.new_client_connection(
            context,
            params.server_name,
            [p.encode() for p in params.alpn_protocols],
            verify_hostname=not params.insecure,
        )
        stream = tls.ClientStream(ssl_conn, conn)
        try:
            stream.do_handshake()
        except SSL.Error as e:
            raise self._fail(_describe_ssl_error(e, ssl_conn)) from e
        except OSError as e:
            raise self._fail(f"TLS handshake with {params.server_name} failed: {e}") from e
        return OpenSSLConnection(conn, stream, params.server_name)

    def _ssl_context(self, config: ech.ECHConfig | None) -> ssl.SSLContext:
        params = self.params
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.minimum_version = _SSL_VERSIONS.get(
            params.min_version, ssl.TLSVersion.MINIMUM_SUPPORTED
        )
        context.maximum_version = _SSL_VERSIONS.get(
            params.max_version, ssl.TLSVersion.MAXIMUM_SUPPORTED
        )
        if params.cipher_list:
            context.set_ciphers(":".join(params.cipher_list))
        context.set_alpn_protocols(list(params.alpn_protocols))
        if params.insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        else:
            context.load_verify_locations(cafile=certifi.where())
        if params.post_quantum:
            set_groups = getattr(context, "set_groups", None)
            if set_groups is None:
                raise self._fail(
                    "Cannot combine ECH with post-quantum key exchange: "
                    "the ssl module does not allow setting key exchange groups."
                )
            set_groups(":".join(tls.POST_QUANTUM_GROUPS))
        if params.ech_grease:
            context.options |= ssl.OP_ECH_GREASE  # type: ignore[attr-defined]
        if config is not None:
            context.set_ech_config(ech.pack_list([config]))  # type: ignore[attr-defined]
        return context

    def _ssl_module(
        self, conn: Connection, config: ech.ECHConfig | None
    ) -> SSLObjectConnection:
        self._check_client_random()
        params = self.params
        try:
            context = self._ssl_context(config)
        except ssl.SSLError as e:
            raise self._fail(f"Cannot configure TLS: {e}") from e
        if config is not None:
            logger.debug(
                f"Using ECH config {config.config_id} with public name {config.public_name}"
            )
        else:
            logger.debug("Sending a GREASE ECH extension")

        incoming = ssl.MemoryBIO()
        outgoing = ssl.MemoryBIO()
        sslobj = context.wrap_bio(incoming, outgoing, server_hostname=params.server_name)
        try:
            while True:
                try:
                    sslobj.do_handshake()
                except ssl.SSLWantReadError:
                    data = outgoing.read()
                    if data:
                        conn.sendall(data)
                    received = conn.recv(65536)
                    if not received:
                        raise ConnectionResetError("connection closed during TLS handshake")
                    incoming.write(received)
                else:
                    data = outgoing.read()
                    if data:
                        conn.sendall(data)
                    break
        except ssl.SSLCertVerificationError as e:
            raise self._fail(f"Certificate verify failed: {e.verify_message}") from e
        except (ssl.SSLError, OSError) as e:
            raise self._fail(f"TLS handshake with {params.server_name} failed: {e}") from e

        secure = SSLObjectConnection(conn, sslobj, incoming, outgoing, params.server_name)
        if config is not None and not secure.tls_state.ech_accepted:
            logger.debug(f"Server did not accept ECH (status: {_ech_status(sslobj)})")
        return secure
