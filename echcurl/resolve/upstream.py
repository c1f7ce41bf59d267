"""
DNS upstreams: plain DNS over UDP/TCP, DNS-over-TLS, DNS-over-HTTPS and
DNS-over-QUIC. Every upstream exchanges one query for one response and keeps
no state between calls.
"""

from __future__ import annotations

import abc
import logging
import socket
import struct
import time
import urllib.parse

import h11
from aioquic.quic import events as quic_events
from OpenSSL import SSL

from echcurl import exceptions
from echcurl import version
from echcurl.dns import DNSMessage
from echcurl.net import check
from echcurl.net import quic
from echcurl.net import tls
from echcurl.net.connection import DatagramConnection
from echcurl.net.dns import stamps
from echcurl.utils import human

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
MAX_UDP_SIZE = 65535
DOQ_ALPN = "doq"

_LENGTH = struct.Struct("!H")


class Upstream(abc.ABC):
    def __init__(self, host: str, port: int, timeout: float = DEFAULT_TIMEOUT):
        self.host = host
        self.port = port
        self.timeout = timeout

    @property
    @abc.abstractmethod
    def address(self) -> str:
        """The upstream address in the form it was configured with."""

    @abc.abstractmethod
    def _exchange(self, query: DNSMessage) -> DNSMessage:
        raise NotImplementedError

    def exchange(self, query: DNSMessage) -> DNSMessage:
        """
        Sends a query and returns the matching response.

        *Raises:*
         - OSError, on network failures and timeouts.
         - ValueError, if the upstream returns something that is not a response to our query.
        """
        logger.debug(f"Querying {self.address} for {query.question}")
        response = self._exchange(query)
        if response.id != query.id:
            raise ValueError(
                f"response id {response.id} does not match query id {query.id}"
            )
        return response

    def __str__(self) -> str:
        return self.address

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.address!r})"


def _unpack(data: bytes) -> DNSMessage:
    try:
        return DNSMessage.unpack(data)
    except struct.error as e:
        raise ValueError(f"malformed DNS response: {e}") from e


def _read_exactly(read, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        data = read(n - len(buf))
        if not data:
            raise ConnectionError("connection closed before the response was complete")
        buf += data
    return bytes(buf)


def _exchange_length_prefixed(stream, query: DNSMessage) -> DNSMessage:
    packed = query.packed
    stream.sendall(_LENGTH.pack(len(packed)) + packed)
    (length,) = _LENGTH.unpack(_read_exactly(stream.recv, _LENGTH.size))
    return _unpack(_read_exactly(stream.recv, length))


class PlainUpstream(Upstream):
    """Plain DNS over UDP, falling back to TCP for truncated responses."""

    def __init__(
        self,
        host: str,
        port: int = 53,
        timeout: float = DEFAULT_TIMEOUT,
        tcp_only: bool = False,
    ):
        super().__init__(host, port, timeout)
        self.tcp_only = tcp_only

    @property
    def address(self) -> str:
        addr = human.format_address((self.host, self.port))
        return f"tcp://{addr}" if self.tcp_only else addr

    def _exchange(self, query: DNSMessage) -> DNSMessage:
        if not self.tcp_only:
            response = self._exchange_udp(query)
            if not response.truncation:
                return response
            logger.debug(f"Truncated response from {self.address}, retrying over TCP")
        return self._exchange_tcp(query)

    def _exchange_udp(self, query: DNSMessage) -> DNSMessage:
        family, type_, proto, _, sockaddr = socket.getaddrinfo(
            self.host, self.port, type=socket.SOCK_DGRAM
        )[0]
        with socket.socket(family, type_, proto) as sock:
            sock.settimeout(self.timeout)
            sock.connect(sockaddr)
            sock.send(query.packed)
            while True:
                response = _unpack(sock.recv(MAX_UDP_SIZE))
                # ignore stray datagrams, e.g. late responses to an earlier query.
                if response.id == query.id:
                    return response

    def _exchange_tcp(self, query: DNSMessage) -> DNSMessage:
        with socket.create_connection((self.host, self.port), self.timeout) as sock:
            return _exchange_length_prefixed(sock, query)


class TlsUpstream(Upstream):
    """DNS-over-TLS, RFC 7858."""

    def __init__(self, host: str, port: int = 853, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(host, port, timeout)

    @property
    def address(self) -> str:
        return f"tls://{human.format_address((self.host, self.port))}"

    def _exchange(self, query: DNSMessage) -> DNSMessage:
        with socket.create_connection((self.host, self.port), self.timeout) as sock:
            stream = _tls_stream(sock, self.host, alpn=())
            return _exchange_length_prefixed(stream, query)


def _tls_stream(sock: socket.socket, server_name: str, alpn) -> tls.ClientStream:
    context = tls.create_client_context()
    stream = tls.ClientStream(
        tls.new_client_connection(context, server_name, alpn), sock
    )
    try:
        stream.do_handshake()
    except SSL.Error as e:
        raise ConnectionError(f"TLS handshake with {server_name} failed: {e}") from e
    return stream


class HttpsUpstream(Upstream):
    """DNS-over-HTTPS, RFC 8484, using POST over HTTP/1.1."""

    def __init__(
        self,
        host: str,
        port: int = 443,
        path: str = "/dns-query",
        timeout: float = DEFAULT_TIMEOUT,
    ):
        super().__init__(host, port, timeout)
        self.path = path or "/dns-query"

    @property
    def address(self) -> str:
        port = "" if self.port == 443 else f":{self.port}"
        return f"https://{self.host}{port}{self.path}"

    def _exchange(self, query: DNSMessage) -> DNSMessage:
        # RFC 8484 recommends an id of 0 for cache friendliness, but we keep ours to match responses.
        body = query.packed
        with socket.create_connection((self.host, self.port), self.timeout) as sock:
            stream = _tls_stream(sock, self.host, alpn=(b"http/1.1",))
            conn = h11.Connection(our_role=h11.CLIENT)
            request = h11.Request(
                method="POST",
                target=self.path,
                headers=[
                    ("Host", self.host),
                    ("User-Agent", version.USER_AGENT),
                    ("Accept", "application/dns-message"),
                    ("Content-Type", "application/dns-message"),
                    ("Content-Length", str(len(body))),
                    ("Connection", "close"),
                ],
            )
            stream.sendall(
                conn.send(request) + conn.send(h11.Data(data=body)) + conn.send(h11.EndOfMessage())
            )

            status = None
            data = bytearray()
            try:
                while True:
                    event = conn.next_event()
                    if event is h11.NEED_DATA:
                        conn.receive_data(stream.recv(65536))
                    elif isinstance(event, h11.Response):
                        status = event.status_code
                    elif isinstance(event, h11.Data):
                        data += event.data
                    elif isinstance(event, (h11.EndOfMessage, h11.ConnectionClosed)):
                        break
            except h11.ProtocolError as e:
                raise ValueError(f"invalid HTTP response: {e}") from e
            if status != 200:
                raise ValueError(f"DNS-over-HTTPS server responded with status {status}")
            return _unpack(bytes(data))


class QuicUpstream(Upstream):
    """DNS-over-QUIC, RFC 9250. Every query uses a fresh connection and stream."""

    def __init__(self, host: str, port: int = 853, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(host, port, timeout)

    @property
    def address(self) -> str:
        return f"quic://{human.format_address((self.host, self.port))}"

    def _exchange(self, query: DNSMessage) -> DNSMessage:
        family, type_, proto, _, sockaddr = socket.getaddrinfo(
            self.host, self.port, type=socket.SOCK_DGRAM
        )[0]
        conn = DatagramConnection(socket.socket(family, type_, proto), (self.host, self.port))
        try:
            conn.sock.connect(sockaddr)
            session = quic.QuicSession(
                quic.client_configuration(alpn_protocols=[DOQ_ALPN], server_name=self.host),
                conn,
                sockaddr[:2],
            )
            try:
                return self._query(session, query)
            finally:
                session.close()
        finally:
            conn.close()

    def _query(self, session: quic.QuicSession, query: DNSMessage) -> DNSMessage:
        session.connect(self.timeout)
        stream_id = session.quic.get_next_available_stream_id()
        # The DNS message id must be 0 on DoQ.
        packed = b"\x00\x00" + query.packed[2:]
        session.quic.send_stream_data(
            stream_id, _LENGTH.pack(len(packed)) + packed, end_stream=True
        )
        session.transmit()

        data = bytearray()
        deadline = _deadline(self.timeout)
        while True:
            for event in session.poll(deadline):
                if (
                    isinstance(event, quic_events.StreamDataReceived)
                    and event.stream_id == stream_id
                ):
                    data += event.data
                    if event.end_stream:
                        response = _unpack_doq(bytes(data))
                        response.id = query.id
                        return response
                elif isinstance(event, quic_events.StreamReset):
                    raise ConnectionError(f"DoQ stream reset by {self.address}")


def _unpack_doq(data: bytes) -> DNSMessage:
    """
    Unpacks a length-prefixed DoQ stream.

    *Raises:*
     - ValueError, if the stream is truncated or the message is malformed.
    """
    if len(data) < _LENGTH.size:
        raise ValueError("malformed DoQ response")
    (length,) = _LENGTH.unpack_from(data, 0)
    if _LENGTH.size + length > len(data):
        raise ValueError("malformed DoQ response")
    return _unpack(data[_LENGTH.size : _LENGTH.size + length])


def _deadline(timeout: float | None) -> float | None:
    return None if timeout is None else time.monotonic() + timeout


def _parse_host_port(spec: str, default_port: int) -> tuple[str, int]:
    host, port = human.split_host_port(spec)
    if not host or not check.is_valid_host(host):
        raise ValueError(f"invalid host {host!r}")
    if port is None:
        port = default_port
    if not check.is_valid_port(port):
        raise ValueError(f"invalid port {port}")
    return host, port


def _from_stamp(addr: str, timeout: float) -> Upstream:
    stamp = stamps.parse(addr)
    match stamp.protocol:
        case stamps.Protocol.PLAIN:
            return PlainUpstream(*_parse_host_port(stamp.address, 53), timeout=timeout)
        case stamps.Protocol.DOH:
            host, port = _parse_host_port(stamp.provider_name, 443)
            return HttpsUpstream(host, port, stamp.path, timeout=timeout)
        case stamps.Protocol.DOT:
            return TlsUpstream(*_parse_host_port(stamp.provider_name, 853), timeout=timeout)
        case stamps.Protocol.DOQ:
            return QuicUpstream(*_parse_host_port(stamp.provider_name, 853), timeout=timeout)
        case _:
            raise ValueError("DNSCrypt upstreams are not supported")


def address_to_upstream(addr: str, timeout: float = DEFAULT_TIMEOUT) -> Upstream:
    """
    Creates an upstream from an address such as `8.8.8.8`, `tcp://1.1.1.1`,
    `tls://dns.google`, `https://dns.google/dns-query`, `quic://dns.adguard-dns.com`
    or an `sdns://` stamp.

    *Raises:*
     - InvalidResolverError, if the address cannot be parsed or uses an unsupported protocol.
    """
    addr = addr.strip()
    try:
        if addr.startswith("sdns://"):
            return _from_stamp(addr, timeout)

        scheme, sep, rest = addr.partition("://")
        if not sep:
            scheme, rest = "udp", addr
        match scheme:
            case "udp":
                return PlainUpstream(*_parse_host_port(rest, 53), timeout=timeout)
            case "tcp":
                return PlainUpstream(
                    *_parse_host_port(rest, 53), timeout=timeout, tcp_only=True
                )
            case "tls":
                return TlsUpstream(*_parse_host_port(rest, 853), timeout=timeout)
            case "quic":
                return QuicUpstream(*_parse_host_port(rest, 853), timeout=timeout)
            case "https":
                url = urllib.parse.urlsplit(addr)
                if not url.hostname:
                    raise ValueError("missing host")
                return HttpsUpstream(
                    url.hostname, url.port or 443, url.path, timeout=timeout
                )
            case _:
                raise ValueError(f"unsupported scheme {scheme}")
    except ValueError as e:
        raise exceptions.InvalidResolverError(
            f"invalid resolver {addr}: {e}"
        ) from e
