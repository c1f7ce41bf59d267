import ipaddress
import logging
from unittest import mock

import h2.config
import h2.connection
import h2.events
import pytest

from echcurl import config
from echcurl import exceptions
from echcurl.client import transport
from echcurl.client.request import Request
from echcurl.client.request import new_request
from echcurl.net import tls
from echcurl.net.connection import BufferedConnection
from echcurl.net.connection import Connection
from echcurl.net.connection import ConnectionKind
from echcurl.resolve.resolver import Resolver

LOCALHOST = ipaddress.IPv4Address("127.0.0.1")


class ScriptedConnection(Connection):
    """Replays canned reads and records writes."""

    kind = ConnectionKind.STREAM

    def __init__(self, *chunks: bytes):
        self.address = ("example.com", 80)
        self.chunks = list(chunks)
        self.sent = b""
        self.closed = False

    def sendall(self, data: bytes) -> None:
        self.sent += data

    def recv(self, bufsize: int) -> bytes:
        if self.chunks:
            return self.chunks.pop(0)
        return b""

    def close(self) -> None:
        self.closed = True


def _request(url="http://example.com/x", **kwargs) -> Request:
    return Request(kwargs.pop("method", "GET"), config.parse_url(url), **kwargs)


def _recv_head(conn) -> bytes:
    data = b""
    while b"\r\n\r\n" not in data:
        chunk = conn.recv(4096)
        if not chunk:
            raise ConnectionError("closed")
        data += chunk
    return data


def _http1_handler(requests, response=b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\nok"):
    def handler(conn):
        requests.append(_recv_head(conn))
        conn.sendall(response)

    return handler


def _h2_handler(requests):
    def handler(conn):
        h = h2.connection.H2Connection(
            config=h2.config.H2Configuration(client_side=False, header_encoding=None)
        )
        h.initiate_connection()
        conn.sendall(h.data_to_send())
        while True:
            data = conn.recv(65536)
            if not data:
                return
            for event in h.receive_data(data):
                if isinstance(event, h2.events.RequestReceived):
                    requests.append(dict(event.headers))
                elif isinstance(event, h2.events.StreamEnded):
                    h.send_headers(
                        event.stream_id, [(b":status", b"200"), (b"content-length", b"2")]
                    )
                    h.send_data(event.stream_id, b"ok", end_stream=True)
            conn.sendall(h.data_to_send())

    return handler


class TestHttp1RoundTrip:
    def test_simple(self):
        conn = ScriptedConnection(b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\nX-A: b\r\n\r\nhi")
        response, upgraded = transport.http1_round_trip(conn, _request())
        assert upgraded is None
        assert response.http_version == "HTTP/1.1"
        assert response.status_code == 200
        assert response.reason == "OK"
        assert response.headers == [("Content-Length", "2"), ("X-A", "b")]
        assert response.content == b"hi"
        assert conn.sent.startswith(b"GET /x HTTP/1.1\r\nHost: example.com\r\n")
        assert b"Connection: close\r\n" in conn.sent

    def test_post(self):
        conn = ScriptedConnection(b"HTTP/1.1 204 No Content\r\n\r\n")
        response, _ = transport.http1_round_trip(
            conn, _request(method="POST", content=b"a=b")
        )
        assert response.status_code == 204
        assert b"Content-Length: 3\r\n" in conn.sent
        assert conn.sent.endswith(b"\r\n\r\na=b")

    def test_host_header(self):
        conn = ScriptedConnection(b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n")
        transport.http1_round_trip(conn, _request(headers=[("host", "other.example")]))
        assert conn.sent.startswith(b"GET /x HTTP/1.1\r\nHost: other.example\r\n")
        assert conn.sent.count(b"other.example") == 1

    def test_chunked(self):
        conn = ScriptedConnection(
            b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked\r\n\r\n",
            b"2\r\nhi\r\n",
            b"3\r\n!!!\r\n0\r\n\r\n",
        )
        response, _ = transport.http1_round_trip(conn, _request())
        assert response.content == b"hi!!!"

    def test_read_until_close(self):
        conn = ScriptedConnection(b"HTTP/1.1 200 OK\r\n\r\nbo", b"dy")
        response, _ = transport.http1_round_trip(conn, _request())
        assert response.content == b"body"

    def test_interim_responses(self):
        conn = ScriptedConnection(
            b"HTTP/1.1 100 Continue\r\n\r\nHTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n"
        )
        response, _ = transport.http1_round_trip(conn, _request())
        assert response.status_code == 200

    def test_switching_protocols(self):
        conn = ScriptedConnection(
            b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\nConnection: Upgrade\r\n\r\n\x81\x02hi"
        )
        request = _request(
            "ws://example.com/chat",
            headers=[("Connection", "Upgrade"), ("Upgrade", "websocket")],
        )
        response, upgraded = transport.http1_round_trip(conn, request)
        assert response.status_code == 101
        assert isinstance(upgraded, BufferedConnection)
        assert upgraded.recv(100) == b"\x81\x02hi"
        assert b"Connection: close" not in conn.sent

    def test_no_response(self):
        with pytest.raises(exceptions.ProtocolError):
            transport.http1_round_trip(ScriptedConnection(), _request())

    def test_invalid_response(self):
        with pytest.raises(exceptions.ProtocolError, match="invalid HTTP/1.1 response"):
            transport.http1_round_trip(ScriptedConnection(b"garbage\r\n\r\n"), _request())


class TestHttp2Preface:
    def test_http1_reply(self):
        conn = ScriptedConnection(b"HTTP/1.1 400 Bad Request\r\nContent-Length: 0\r\n\r\n")
        with pytest.raises(exceptions.ProtocolError, match="server responded with HTTP/1.1"):
            transport.http2_round_trip(conn, _request())

    def test_closed(self):
        with pytest.raises(exceptions.ProtocolError, match="connection preface failed: connection closed"):
            transport.http2_round_trip(ScriptedConnection(), _request())

    def test_not_settings(self):
        # a PING frame
        conn = ScriptedConnection(b"\x00\x00\x08\x06\x00\x00\x00\x00\x00" + bytes(8))
        with pytest.raises(exceptions.ProtocolError, match="expected SETTINGS, got PingFrame"):
            transport.http2_round_trip(conn, _request())


@pytest.mark.timeout(10)
class TestTransports:
    def test_connect_to(self, tcp_server):
        requests = []
        server = tcp_server(_http1_handler(requests))
        cfg = config.Config(
            url=config.parse_url("http://example.com/"),
            connect_to={("example.com", 80): ("127.0.0.1", server.address[1])},
        )
        t = transport.new_transport(cfg, Resolver([]))
        response = t.round_trip(new_request(cfg))
        t.close()
        assert response.content == b"ok"
        assert response.tls is None
        assert b"\r\nHost: example.com\r\n" in requests[0]

    def test_http2_prior_knowledge(self, tcp_server):
        requests = []
        server = tcp_server(_h2_handler(requests))
        cfg = config.Config(
            url=config.parse_url(f"http://127.0.0.1:{server.address[1]}/h2"), force_http2=True
        )
        t = transport.new_transport(cfg, Resolver([]))
        assert isinstance(t, transport.Http2Transport)
        response = t.round_trip(new_request(cfg))
        t.close()
        assert response.http_version == "HTTP/2.0"
        assert response.status_code == 200
        assert response.content == b"ok"
        assert requests[0][b":path"] == b"/h2"
        assert requests[0][b":scheme"] == b"http"
        assert requests[0][b":authority"] == f"127.0.0.1:{server.address[1]}".encode()

    def test_http1_over_tls(self, tcp_server, tls_server_context):
        requests = []
        server = tcp_server(_http1_handler(requests), tls_server_context(alpn=("http/1.1",)))
        cfg = config.Config(
            url=config.parse_url(f"https://localhost:{server.address[1]}/"), insecure=True
        )
        t = transport.new_transport(cfg, Resolver([], {"localhost": [LOCALHOST]}))
        response = t.round_trip(new_request(cfg))
        t.close()
        assert response.content == b"ok"
        assert response.tls is not None
        assert response.tls.alpn == "http/1.1"
        assert response.tls.server_name == "localhost"

    def test_websocket_upgrade_over_tls(self, tcp_server, tls_server_context):
        requests = []
        server = tcp_server(
            _http1_handler(
                requests,
                b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\n"
                b"Connection: Upgrade\r\n\r\n\x81\x02hi",
            ),
            tls_server_context(alpn=("http/1.1",)),
        )
        cfg = config.Config(
            url=config.parse_url(f"wss://localhost:{server.address[1]}/chat"), insecure=True
        )
        t = transport.new_transport(cfg, Resolver([], {"localhost": [LOCALHOST]}))
        try:
            response = t.round_trip(new_request(cfg))
            assert response.status_code == 101
            assert t.conn.recv(100) == b"\x81\x02hi"
            assert response.tls is not None
            assert response.tls.alpn == "http/1.1"
        finally:
            t.close()
        assert b"\r\nUpgrade: websocket\r\n" in requests[0]

    def test_h2_over_tls(self, tcp_server, tls_server_context):
        requests = []
        server = tcp_server(_h2_handler(requests), tls_server_context(alpn=("h2",)))
        cfg = config.Config(
            url=config.parse_url(f"https://localhost:{server.address[1]}/"), insecure=True
        )
        t = transport.new_transport(cfg, Resolver([], {"localhost": [LOCALHOST]}))
        assert isinstance(t, transport.NegotiatedTransport)
        response = t.round_trip(new_request(cfg))
        t.close()
        assert response.http_version == "HTTP/2.0"
        assert response.tls.alpn == "h2"
        assert requests[0][b":scheme"] == b"https"

    def test_handshake_error_closes(self, tcp_server, tls_server_context):
        server = tcp_server(lambda conn: None, tls_server_context())
        cfg = config.Config(url=config.parse_url(f"https://localhost:{server.address[1]}/"))
        t = transport.new_transport(cfg, Resolver([], {"localhost": [LOCALHOST]}))
        with pytest.raises(exceptions.HandshakeError, match="Certificate verify failed"):
            t.round_trip(new_request(cfg))
        assert t.conn is None

    def test_os_error(self):
        class Broken(ScriptedConnection):
            def sendall(self, data: bytes) -> None:
                raise BrokenPipeError("broken pipe")

        cfg = config.Config(url=config.parse_url("http://example.com/"))
        dialer = mock.Mock()
        dialer.dial.return_value = Broken()
        t = transport.NegotiatedTransport(cfg, Resolver([]), dialer)
        with pytest.raises(exceptions.ProtocolError, match="example.com: broken pipe"):
            t.round_trip(new_request(cfg))

    def test_quic_timeout(self, udp_server):
        server = udp_server(lambda data, addr: [])
        cfg = config.Config(
            url=config.parse_url(f"https://127.0.0.1:{server.address[1]}/"),
            force_http3=True,
            connect_timeout=0.3,
        )
        t = transport.new_transport(cfg, Resolver([]))
        with pytest.raises(exceptions.ProtocolError, match="QUIC handshake with 127.0.0.1"):
            t.round_trip(new_request(cfg))
        t.close()


class TestNewTransport:
    @pytest.mark.parametrize(
        "kwargs, cls",
        [
            ({}, transport.NegotiatedTransport),
            ({"force_http11": True}, transport.NegotiatedTransport),
            ({"force_http2": True}, transport.Http2Transport),
            ({"force_http3": True}, transport.Http3Transport),
        ],
    )
    def test_kind(self, kwargs, cls):
        cfg = config.Config(url=config.parse_url("https://example.com"), **kwargs)
        assert type(transport.new_transport(cfg, Resolver([]))) is cls

    def test_invalid_proxy(self):
        cfg = config.Config(url=config.parse_url("https://example.com"), proxy_url="ftp://x")
        with pytest.raises(exceptions.ConfigError):
            transport.new_transport(cfg, Resolver([]))


class TestHttp3Config:
    def _transport(self, **kwargs):
        cfg = config.Config(
            url=config.parse_url("https://example.com"), force_http3=True, **kwargs
        )
        return transport.Http3Transport(cfg, Resolver([]), mock.Mock())

    def test_tls12(self):
        with pytest.raises(exceptions.HandshakeError, match="HTTP/3 requires TLS 1.3"):
            self._transport(tls_max_version=tls.Version.TLS1_2)._check_config()

    def test_client_random(self):
        with pytest.raises(exceptions.HandshakeError, match="custom ClientHello random"):
            self._transport(tls_random=bytes(32))._check_config()

    def test_warnings(self, caplog):
        caplog.set_level(logging.WARNING)
        self._transport(experiments={"pq": ""}, ech_enabled=True)._check_config()
        assert "Post-quantum key exchange cannot be configured for HTTP/3" in caplog.text
        assert "ECH is not supported with HTTP/3" in caplog.text
