"""
Request engines. Which one is used is decided once per run (see TransportKind):

 - NEGOTIATED: HTTP/1.1 via h11 or HTTP/2 via h2, depending on the ALPN result.
 - HTTP2: always HTTP/2, with prior knowledge on plaintext connections.
 - HTTP3: HTTP/3 via aioquic over a datagram connection from the dialer chain.

Every transport remembers the connection used by the last request in `conn`, which
is how callers get at the TLS state and, after a 101 response, at the raw stream.
"""

from __future__ import annotations

import logging

import h2.config
import h2.connection
import h2.events
import h2.exceptions
import h11
import hyperframe.exceptions
import hyperframe.frame
from aioquic.h3 import events as h3_events
from aioquic.h3.connection import H3Connection

from echcurl import exceptions
from echcurl.client.chain import ChainBuilder
from echcurl.client.context import DialContext
from echcurl.client.dialer import Dialer
from echcurl.client.dialer import Network
from echcurl.client.handshake import HandshakeDispatcher
from echcurl.client.handshake import SecureConnection
from echcurl.client.handshake import TlsParameters
from echcurl.client.handshake import TlsState
from echcurl.client.kinds import TransportKind
from echcurl.client.request import Request
from echcurl.client.request import Response
from echcurl.config import Config
from echcurl.net import quic
from echcurl.net import tls
from echcurl.net.connection import BufferedConnection
from echcurl.net.connection import Connection
from echcurl.resolve.resolver import Resolver

logger = logging.getLogger(__name__)

QUIC_HANDSHAKE_TIMEOUT = 30.0

# Connection-specific headers that must not be sent over HTTP/2 and HTTP/3.
_CONNECTION_HEADERS = frozenset(
    {"connection", "keep-alive", "proxy-connection", "transfer-encoding", "upgrade", "host"}
)
# The first 3 bytes of "HTTP/1.1 ..." read as an HTTP/2 frame length.
_HTTP1_FRAME_LENGTH = int.from_bytes(b"HTT", "big")


def _decode(value: bytes) -> str:
    return value.decode("utf-8", "surrogateescape")


class Transport:
    kind: TransportKind

    def __init__(self, config: Config, resolver: Resolver, dialer: Dialer):
        self.config = config
        self.resolver = resolver
        self.dialer = dialer
        self.conn: Connection | None = None
        self.tls_state: TlsState | None = None

    def round_trip(self, request: Request) -> Response:
        """
        Sends the request and reads the complete response.

        *Raises:*
         - ResolutionError, DialError, HandshakeError, if the connection cannot be established.
         - ProtocolError, if the exchange itself fails.
        """
        self.close()
        self.tls_state = None
        try:
            response = self._round_trip(request)
        except OSError as e:
            raise exceptions.ProtocolError(f"{request.authority}: {e}") from e
        # An upgrade may have replaced self.conn by the raw stream.
        if self.tls_state is not None:
            response.tls = self.tls_state
        return response

    def _round_trip(self, request: Request) -> Response:
        raise NotImplementedError

    def _tls_parameters(self, request: Request) -> TlsParameters:
        return TlsParameters.from_config(
            self.config, request.host, self.kind, self.config.websocket
        )

    def _connect(self, request: Request) -> Connection:
        conn = self.dialer.dial(Network.TCP, (request.host, request.port), DialContext())
        self.conn = conn
        if request.secure:
            dispatcher = HandshakeDispatcher(self._tls_parameters(request), self.resolver)
            try:
                conn = dispatcher.handshake(conn)
            except Exception:
                self.close()
                raise
            self.conn = conn
            self.tls_state = conn.tls_state
        return conn

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None


class NegotiatedTransport(Transport):
    kind = TransportKind.NEGOTIATED

    def _round_trip(self, request: Request) -> Response:
        conn = self._connect(request)
        if isinstance(conn, SecureConnection) and conn.tls_state.alpn == "h2":
            return http2_round_trip(conn, request)
        response, upgraded = http1_round_trip(conn, request)
        if upgraded is not None:
            self.conn = upgraded
        return response


class Http2Transport(Transport):
    kind = TransportKind.HTTP2

    def _round_trip(self, request: Request) -> Response:
        conn = self._connect(request)
        if isinstance(conn, SecureConnection) and conn.tls_state.alpn not in (None, "h2"):
            raise exceptions.ProtocolError(
                f"server negotiated {conn.tls_state.alpn} instead of h2"
            )
        return http2_round_trip(conn, request)


class Http3Transport(Transport):
    kind = TransportKind.HTTP3

    def _check_config(self) -> None:
        config = self.config
        if config.tls_max_version is tls.Version.TLS1_2:
            raise exceptions.HandshakeError("HTTP/3 requires TLS 1.3")
        if config.tls_random is not None:
            raise exceptions.HandshakeError(
                "a custom ClientHello random cannot be used with HTTP/3"
            )
        if config.post_quantum:
            logger.warning(
                "Post-quantum key exchange cannot be configured for HTTP/3, "
                "aioquic uses its own key exchange groups"
            )
        if config.ech or config.ech_grease:
            logger.warning("ECH is not supported with HTTP/3, continuing without it")

    def _round_trip(self, request: Request) -> Response:
        self._check_config()
        params = self._tls_parameters(request)
        try:
            configuration = quic.client_configuration(
                alpn_protocols=params.alpn_protocols,
                server_name=params.server_name,
                insecure=params.insecure,
                cipher_suites=params.cipher_list,
            )
        except ValueError as e:
            raise exceptions.HandshakeError(str(e), params.server_name) from e

        conn = self.dialer.dial(Network.UDP, (request.host, request.port), DialContext())
        self.conn = conn
        session = quic.QuicSession(configuration, conn, conn.peername)
        try:
            session.connect(self.config.connect_timeout or QUIC_HANDSHAKE_TIMEOUT)
        except (TimeoutError, ConnectionError) as e:
            session.close()
            raise exceptions.ProtocolError(f"QUIC handshake with {request.authority} failed: {e}") from e

        try:
            response = http3_round_trip(session, request)
        except ConnectionError as e:
            raise exceptions.ProtocolError(f"HTTP/3 request to {request.authority} failed: {e}") from e
        finally:
            session.close()
        response.tls = TlsState(
            version="TLSv1.3",
            cipher=session.cipher_suite,
            alpn=session.alpn_protocol,
            server_name=params.server_name,
            peer_certificates=tuple(session.peer_certificates),
        )
        return response


def new_transport(config: Config, resolver: Resolver | None = None) -> Transport:
    """
    Builds the dialer chain and the request engine for this configuration.

    *Raises:*
     - ConfigError, if the proxy URL is invalid.
     - ResolutionError, if no DNS upstream can be set up.
    """
    resolver = resolver or Resolver.from_config(config)
    dialer = ChainBuilder.from_config(config, resolver).build()
    kind = TransportKind.select(config)
    logger.debug(f"Using {kind.value} transport")
    match kind:
        case TransportKind.HTTP3:
            return Http3Transport(config, resolver, dialer)
        case TransportKind.HTTP2:
            return Http2Transport(config, resolver, dialer)
        case _:
            return NegotiatedTransport(config, resolver, dialer)


# HTTP/1.1


def http1_round_trip(
    conn: Connection, request: Request
) -> tuple[Response, Connection | None]:
    """
    Returns the response and, if the server switched protocols, the connection
    with any bytes that followed the response head.
    """
    headers = [("Host", request.header("Host") or request.authority)]
    headers += [(k, v) for k, v in request.headers if k.lower() != "host"]
    if request.content and request.header("Content-Length") is None:
        headers.append(("Content-Length", str(len(request.content))))
    if request.header("Connection") is None:
        headers.append(("Connection", "close"))

    h11_conn = h11.Connection(our_role=h11.CLIENT)
    try:
        data = h11_conn.send(
            h11.Request(method=request.method, target=request.target, headers=headers)
        )
        if request.content:
            data += h11_conn.send(h11.Data(data=request.content))
        data += h11_conn.send(h11.EndOfMessage())
        conn.sendall(data)

        response: Response | None = None
        body = bytearray()
        while True:
            event = h11_conn.next_event()
            if event is h11.NEED_DATA:
                h11_conn.receive_data(conn.recv(65536))
            elif event is h11.PAUSED:
                break
            elif isinstance(event, (h11.Response, h11.InformationalResponse)):
                if isinstance(event, h11.InformationalResponse) and event.status_code != 101:
                    continue
                response = Response(
                    http_version=f"HTTP/{_decode(event.http_version)}",
                    status_code=event.status_code,
                    reason=_decode(event.reason),
                    headers=[(_decode(k), _decode(v)) for k, v in event.headers.raw_items()],
                )
            elif isinstance(event, h11.Data):
                body += event.data
            elif isinstance(event, (h11.EndOfMessage, h11.ConnectionClosed)):
                break
    except h11.ProtocolError as e:
        raise exceptions.ProtocolError(f"invalid HTTP/1.1 response: {e}") from e

    if response is None:
        raise exceptions.ProtocolError("server closed the connection without a response")
    response.content = bytes(body)

    if response.status_code == 101:
        trailing, _ = h11_conn.trailing_data
        return response, BufferedConnection(conn, trailing) if trailing else conn
    return response, None


# HTTP/2


def _h2_request_headers(request: Request) -> list[tuple[bytes, bytes]]:
    headers = [
        (b":method", request.method.encode()),
        (b":scheme", request.scheme.encode()),
        (b":authority", (request.header("Host") or request.authority).encode()),
        (b":path", request.target.encode()),
    ]
    for k, v in request.headers:
        if k.lower() not in _CONNECTION_HEADERS:
            headers.append((k.lower().encode(), v.encode()))
    if request.content and request.header("Content-Length") is None:
        headers.append((b"content-length", str(len(request.content)).encode()))
    return headers


def _check_server_preface(data: bytes) -> None:
    """The server's connection preface must start with a SETTINGS frame."""
    if len(data) < 9:
        return
    try:
        frame, length = hyperframe.frame.Frame.parse_frame_header(memoryview(data[:9]))
    except hyperframe.exceptions.HyperframeError as e:
        raise exceptions.ProtocolError(f"HTTP/2 connection preface failed: {e}") from e
    if length == _HTTP1_FRAME_LENGTH:
        raise exceptions.ProtocolError(
            "HTTP/2 connection preface failed: server responded with HTTP/1.1"
        )
    if not isinstance(frame, hyperframe.frame.SettingsFrame):
        raise exceptions.ProtocolError(
            f"HTTP/2 connection preface failed: expected SETTINGS, got {type(frame).__name__}"
        )


def http2_round_trip(conn: Connection, request: Request) -> Response:
    h2_conn = h2.connection.H2Connection(
        config=h2.config.H2Configuration(client_side=True, header_encoding=None)
    )
    h2_conn.local_settings.enable_push = 0
    h2_conn.initiate_connection()
    stream_id = h2_conn.get_next_available_stream_id()
    h2_conn.send_headers(stream_id, _h2_request_headers(request), end_stream=not request.content)
    conn.sendall(h2_conn.data_to_send())

    pending = memoryview(request.content)
    preface = bytearray()
    settings_received = False
    response: Response | None = None
    body = bytearray()
    done = False
    while not done:
        while pending:
            try:
                window = min(
                    h2_conn.local_flow_control_window(stream_id),
                    h2_conn.max_outbound_frame_size,
                )
            except h2.exceptions.StreamClosedError:
                pending = memoryview(b"")
                break
            if window <= 0:
                break
            chunk, pending = pending[:window], pending[window:]
            h2_conn.send_data(stream_id, bytes(chunk), end_stream=not pending)
        if outgoing := h2_conn.data_to_send():
            conn.sendall(outgoing)

        data = conn.recv(65536)
        if not data:
            if not settings_received:
                raise exceptions.ProtocolError(
                    "HTTP/2 connection preface failed: connection closed"
                )
            raise exceptions.ProtocolError("connection closed before the response was complete")
        if not settings_received and len(preface) < 9:
            preface += data
            _check_server_preface(bytes(preface))

        try:
            events = h2_conn.receive_data(data)
        except h2.exceptions.ProtocolError as e:
            stage = "protocol error" if settings_received else "connection preface failed"
            raise exceptions.ProtocolError(f"HTTP/2 {stage}: {e}") from e

        for event in events:
            if isinstance(event, h2.events.RemoteSettingsChanged):
                settings_received = True
            elif isinstance(event, h2.events.ResponseReceived) and event.stream_id == stream_id:
                headers = [(_decode(k), _decode(v)) for k, v in event.headers]
                status = dict(headers).get(":status", "0")
                response = Response(
                    http_version="HTTP/2.0",
                    status_code=int(status),
                    headers=[(k, v) for k, v in headers if not k.startswith(":")],
                )
            elif isinstance(event, h2.events.DataReceived) and event.stream_id == stream_id:
                body += event.data
                h2_conn.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
            elif isinstance(event, h2.events.StreamEnded) and event.stream_id == stream_id:
                done = True
            elif isinstance(event, h2.events.StreamReset) and event.stream_id == stream_id:
                raise exceptions.ProtocolError(
                    f"HTTP/2 stream reset by server (error code {event.error_code})"
                )
            elif isinstance(event, h2.events.ConnectionTerminated) and not done:
                raise exceptions.ProtocolError(
                    f"HTTP/2 connection terminated by server (error code {event.error_code})"
                )

    h2_conn.close_connection()
    conn.sendall(h2_conn.data_to_send())
    if response is None:
        raise exceptions.ProtocolError("HTTP/2 stream ended without a response")
    response.content = bytes(body)
    return response


# HTTP/3


def http3_round_trip(session: quic.QuicSession, request: Request) -> Response:
    h3 = H3Connection(session.quic)
    stream_id = session.quic.get_next_available_stream_id()
    h3.send_headers(stream_id, _h2_request_headers(request), end_stream=not request.content)
    if request.content:
        h3.send_data(stream_id, request.content, end_stream=True)
    session.transmit()

    response: Response | None = None
    body = bytearray()
    while True:
        for quic_event in session.poll():
            for event in h3.handle_event(quic_event):
                if isinstance(event, h3_events.HeadersReceived) and event.stream_id == stream_id:
                    headers = [(_decode(k), _decode(v)) for k, v in event.headers]
                    # a second HEADERS frame carries trailers.
                    if response is None:
                        response = Response(
                            http_version="HTTP/3",
                            status_code=int(dict(headers).get(":status", "0")),
                            headers=[(k, v) for k, v in headers if not k.startswith(":")],
                        )
                elif isinstance(event, h3_events.DataReceived) and event.stream_id == stream_id:
                    body += event.data
                else:
                    continue
                if event.stream_ended:
                    if response is None:
                        raise exceptions.ProtocolError("HTTP/3 stream ended without a response")
                    response.content = bytes(body)
                    return response
        session.transmit()
