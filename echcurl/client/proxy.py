"""
The proxy stage of the dialer chain: SOCKS5 and HTTP(S) CONNECT tunnels.

Connections to the proxy itself are opened through the next inner stage, so
the proxy host is resolved like any other target.
"""

from __future__ import annotations

import base64
import ipaddress
import logging
import struct
import urllib.parse
from dataclasses import dataclass

import h11
from OpenSSL import SSL

from echcurl import exceptions
from echcurl import version
from echcurl.client.context import DialContext
from echcurl.client.dialer import Dialer
from echcurl.client.dialer import Network
from echcurl.net import socks
from echcurl.net import tls
from echcurl.net.connection import Address
from echcurl.net.connection import BufferedConnection
from echcurl.net.connection import Connection
from echcurl.net.connection import WrappedConnection
from echcurl.resolve.resolver import Resolver
from echcurl.utils import human

logger = logging.getLogger(__name__)

SOCKS_TIMEOUT = 60.0
HTTPS_PROXY_HANDSHAKE_TIMEOUT = 30.0

DEFAULT_PORTS = {
    "socks5": 1080,
    "socks5h": 1080,
    "http": 80,
    "https": 443,
}


@dataclass(frozen=True)
class ProxySpec:
    scheme: str
    address: Address
    username: str | None = None
    password: str | None = None

    @property
    def credentials(self) -> bool:
        return self.username is not None

    def __str__(self) -> str:
        return f"{self.scheme}://{human.format_address(self.address)}"


def parse_proxy_url(url: str) -> ProxySpec:
    """
    Parses [PROTOCOL://][USER:PASSWORD@]HOST[:PORT]. A missing scheme means http.

    *Raises:*
     - ConfigError, if the URL is invalid or uses an unsupported scheme.
    """
    if "://" not in url:
        url = "http://" + url
    parsed = urllib.parse.urlsplit(url)
    scheme = parsed.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise exceptions.ConfigError(f"unsupported proxy scheme: {scheme}")
    try:
        port = parsed.port or DEFAULT_PORTS[scheme]
    except ValueError as e:
        raise exceptions.ConfigError(f"invalid proxy URL {url}: {e}") from e
    if not parsed.hostname:
        raise exceptions.ConfigError(f"invalid proxy URL {url}: missing host")
    username = password = None
    if parsed.username is not None:
        username = urllib.parse.unquote(parsed.username)
        password = urllib.parse.unquote(parsed.password or "")
    return ProxySpec(scheme, (parsed.hostname, port), username, password)


class TunnelConnection(WrappedConnection):
    """A connection to the proxy that carries traffic for `address`."""

    def __init__(self, inner: Connection, address: Address):
        super().__init__(inner)
        self._address = address

    @property
    def address(self) -> Address:  # type: ignore[override]
        return self._address


class TlsConnection(WrappedConnection):
    """Application data over a TLS session with the proxy."""

    def __init__(self, inner: Connection, stream: tls.ClientStream):
        super().__init__(inner)
        self.stream = stream

    def sendall(self, data: bytes) -> None:
        self.stream.sendall(data)

    def recv(self, bufsize: int) -> bytes:
        return self.stream.recv(bufsize)

    def close(self) -> None:
        self.stream.shutdown()
        self.inner.close()


class SocksDatagramConnection(WrappedConnection):
    """
    Relays datagrams for `address` through a SOCKS5 UDP association.

    The control connection is held open for as long as the association is in use,
    closing it tears the association down on the proxy.
    """

    def __init__(self, relay: Connection, control: Connection, address: Address):
        super().__init__(relay)
        self.control = control
        self._address = address

    @property
    def address(self) -> Address:  # type: ignore[override]
        return self._address

    @property
    def peername(self) -> Address:
        return self._address

    def sendall(self, data: bytes) -> None:
        self.inner.sendall(socks.pack_udp_datagram(*self._address, data))

    def sendto(self, data: bytes, addr: Address) -> None:
        self.sendall(data)

    def recv(self, bufsize: int) -> bytes:
        while True:
            data = self.inner.recv(bufsize + 262)
            try:
                _, payload = socks.unpack_udp_datagram(data)
            except socks.SocksError as e:
                logger.debug(f"Dropping datagram from SOCKS relay: {e}")
                continue
            return payload

    def recvfrom(self, bufsize: int) -> tuple[bytes, Address]:
        return self.recv(bufsize), self._address

    def close(self) -> None:
        try:
            self.inner.close()
        finally:
            self.control.close()


class Proxy:
    """
    Opens connections through a SOCKS5 or HTTP(S) CONNECT proxy.
    Proxy failures are never retried or bypassed.
    """

    def __init__(
        self,
        url: str,
        forward: Dialer,
        resolver: Resolver,
        connect_timeout: float | None = None,
    ):
        self.spec = parse_proxy_url(url)
        self.forward = forward
        self.resolver = resolver
        self.connect_timeout = connect_timeout
        logger.debug(f"Using proxy {self.spec}")

    @property
    def stage(self) -> str:
        return f"{self.spec.scheme} proxy"

    def dial(
        self, network: Network, address: Address, ctx: DialContext | None = None
    ) -> Connection:
        ctx = ctx or DialContext()
        logger.debug(f"Connecting through proxy to {human.format_address(address)}")
        match self.spec.scheme:
            case "socks5" | "socks5h":
                return self._dial_socks5(network, address, ctx)
            case _:
                return self._dial_http(network, address, ctx)

    def _fail(self, message: str, address: Address) -> exceptions.DialError:
        return exceptions.DialError(message, self.stage, address)

    # SOCKS5

    def _socks_target(self, host: str) -> str:
        # socks5 resolves locally, socks5h leaves it to the proxy.
        if self.spec.scheme == "socks5h":
            return host
        return str(self.resolver.lookup_host(host)[0])

    def _socks_handshake(self, ctx: DialContext, address: Address) -> Connection:
        conn = self.forward.dial(Network.TCP, self.spec.address, ctx)
        conn.settimeout(ctx.timeout(SOCKS_TIMEOUT))
        methods = [socks.METHOD.NO_AUTHENTICATION_REQUIRED]
        if self.spec.credentials:
            methods.append(socks.METHOD.USERNAME_PASSWORD)
        try:
            conn.sendall(socks.pack_greeting(methods))
            method = socks.read_server_greeting(conn.read_exactly)
            if method == socks.METHOD.USERNAME_PASSWORD:
                if not self.spec.credentials:
                    raise socks.SocksError(
                        method, "SOCKS proxy requires authentication"
                    )
                assert self.spec.username is not None
                conn.sendall(
                    socks.pack_username_password(
                        self.spec.username, self.spec.password or ""
                    )
                )
                socks.read_username_password_response(conn.read_exactly)
            elif method != socks.METHOD.NO_AUTHENTICATION_REQUIRED:
                raise socks.SocksError(
                    method, f"SOCKS proxy selected unsupported auth method {method.name}"
                )
        except (socks.SocksError, OSError, ValueError, struct.error) as e:
            conn.close()
            raise self._fail(str(e), address) from e
        return conn

    def _dial_socks5(
        self, network: Network, address: Address, ctx: DialContext
    ) -> Connection:
        host, port = address
        target = self._socks_target(host)
        conn = self._socks_handshake(ctx, address)
        try:
            if network is Network.TCP:
                conn.sendall(socks.pack_request(socks.CMD.CONNECT, target, port))
                socks.read_reply(conn.read_exactly)
                conn.settimeout(None)
                return TunnelConnection(conn, address)

            conn.sendall(socks.pack_request(socks.CMD.UDP_ASSOCIATE, "0.0.0.0", 0))
            reply = socks.read_reply(conn.read_exactly)
        except (socks.SocksError, OSError, struct.error) as e:
            conn.close()
            raise self._fail(str(e), address) from e

        relay_host, relay_port = reply.bound
        try:
            unspecified = ipaddress.ip_address(relay_host).is_unspecified
        except ValueError:
            unspecified = False
        if unspecified:
            relay_host = conn.peername[0]
        logger.debug(
            f"SOCKS UDP association relays through {human.format_address((relay_host, relay_port))}"
        )
        conn.settimeout(None)
        try:
            relay = self.forward.dial(Network.UDP, (relay_host, relay_port), ctx)
        except Exception:
            conn.close()
            raise
        return SocksDatagramConnection(relay, conn, (target, port))

    # HTTP(S) CONNECT

    def _dial_http(
        self, network: Network, address: Address, ctx: DialContext
    ) -> Connection:
        if network is not Network.TCP:
            raise self._fail(f"HTTP proxy does not support {network.value}", address)

        conn = self.forward.dial(Network.TCP, self.spec.address, ctx)
        try:
            if self.spec.scheme == "https":
                conn = self._tls_to_proxy(conn, ctx)
            return self._connect(conn, address)
        except Exception:
            conn.close()
            raise

    def _tls_to_proxy(self, conn: Connection, ctx: DialContext) -> Connection:
        proxy_host = self.spec.address[0]
        conn.settimeout(
            ctx.timeout(self.connect_timeout or HTTPS_PROXY_HANDSHAKE_TIMEOUT)
        )
        try:
            stream = tls.ClientStream(
                tls.new_client_connection(tls.create_client_context(), proxy_host),
                conn,
            )
            stream.do_handshake()
        except (SSL.Error, OSError) as e:
            raise self._fail(
                f"TLS handshake with HTTPS proxy failed: {e}", self.spec.address
            ) from e
        conn.settimeout(None)
        return TlsConnection(conn, stream)

    def _connect(self, conn: Connection, address: Address) -> Connection:
        authority = human.format_address(address)
        headers = [
            ("Host", authority),
            ("User-Agent", version.USER_AGENT),
        ]
        if self.spec.credentials:
            auth = f"{self.spec.username}:{self.spec.password}".encode()
            headers.append(
                ("Proxy-Authorization", b"Basic " + base64.b64encode(auth))
            )
        h11_conn = h11.Connection(our_role=h11.CLIENT)
        try:
            conn.sendall(
                h11_conn.send(h11.Request(method="CONNECT", target=authority, headers=headers))
                + h11_conn.send(h11.EndOfMessage())
            )
            while True:
                event = h11_conn.next_event()
                if event is h11.NEED_DATA:
                    h11_conn.receive_data(conn.recv(65536))
                elif isinstance(event, h11.Response):
                    break
                elif isinstance(event, h11.ConnectionClosed):
                    raise ConnectionError("proxy closed the connection")
        except (h11.ProtocolError, OSError) as e:
            raise self._fail(f"failed to read response from proxy: {e}", address) from e

        if event.status_code != 200:
            raise self._fail(
                f"proxy connection failed: {event.status_code} {event.reason.decode(errors='replace')}",
                address,
            )

        tunnel: Connection = TunnelConnection(conn, address)
        trailing, _ = h11_conn.trailing_data
        if trailing:
            tunnel = BufferedConnection(tunnel, trailing)
        return tunnel
