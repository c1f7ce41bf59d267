import socket

import pytest
from hypothesis import given
from hypothesis import strategies as st
from OpenSSL import SSL

from echcurl.net import tls

CLIENT_HELLO = b"\x16\x03\x01\x01\x27\x01" + b"\x00" * 0x126


def test_version_from_str():
    assert tls.Version.from_str("1.2") is tls.Version.TLS1_2
    assert tls.Version.from_str("1.3") is tls.Version.TLS1_3
    with pytest.raises(ValueError, match="Invalid TLS version"):
        tls.Version.from_str("1.1")


class TestIsClientHello:
    def test_simple(self):
        assert tls.is_client_hello(CLIENT_HELLO)
        assert tls.is_client_hello(CLIENT_HELLO[:6])
        assert not tls.is_client_hello(CLIENT_HELLO[:5])
        # application data
        assert not tls.is_client_hello(b"\x17\x03\x03\x00\x10\x01")
        # ServerHello
        assert not tls.is_client_hello(b"\x16\x03\x03\x00\x10\x02")
        assert not tls.is_client_hello(b"GET / HTTP/1.1\r\n")

    @given(st.binary())
    def test_fuzz(self, data):
        assert tls.is_client_hello(data) == (
            len(data) >= 6 and data[0] == 0x16 and data[1] == 3 and data[5] == 1
        )


class TestCreateClientContext:
    def test_simple(self):
        ctx = tls.create_client_context()
        assert isinstance(ctx, SSL.Context)
        assert tls.create_client_context() is ctx

    def test_insecure(self):
        ctx = tls.create_client_context(verify=tls.Verify.VERIFY_NONE)
        assert ctx.get_verify_mode() == SSL.VERIFY_NONE

    def test_invalid_ciphers(self):
        with pytest.raises(RuntimeError, match="SSL cipher specification error"):
            tls.create_client_context(cipher_list=("NOT-A-CIPHER",))

    def test_invalid_groups(self):
        with pytest.raises(RuntimeError, match="key exchange groups"):
            tls.create_client_context(groups=("not-a-group",))


def test_new_client_connection():
    ctx = tls.create_client_context()
    conn = tls.new_client_connection(ctx, "example.com", [b"h2", b"http/1.1"])
    assert conn.get_servername() == b"example.com"

    conn = tls.new_client_connection(ctx, "127.0.0.1")
    assert conn.get_servername() is None


def test_master_secret_logger(tmp_path):
    assert tls.make_master_secret_logger(None) is None
    logger = tls.make_master_secret_logger(str(tmp_path / "keys" / "sslkeylog"))
    logger(None, b"CLIENT_RANDOM 00 11")
    logger(None, b"CLIENT_RANDOM 22 33")
    logger.close()
    assert (tmp_path / "keys" / "sslkeylog").read_bytes() == (
        b"\nCLIENT_RANDOM 00 11\nCLIENT_RANDOM 22 33\n"
    )


@pytest.mark.timeout(10)
def test_client_stream(tcp_server, tls_server_context):
    def handler(conn):
        data = conn.recv(1024)
        conn.sendall(data.upper())

    server = tcp_server(handler, tls_server_context())
    ctx = tls.create_client_context(verify=tls.Verify.VERIFY_NONE)
    with socket.create_connection(server.address, timeout=5) as sock:
        stream = tls.ClientStream(
            tls.new_client_connection(ctx, "localhost", [b"http/1.1"], verify_hostname=False),
            sock,
        )
        stream.do_handshake()
        assert stream.ssl_conn.get_alpn_proto_negotiated() == b"http/1.1"
        stream.sendall(b"hello")
        assert stream.recv(1024) == b"HELLO"
        assert stream.recv(1024) == b""
        stream.shutdown()


@pytest.mark.timeout(10)
def test_client_stream_verify(tcp_server, tls_server_context, tls_certificate):
    server = tcp_server(lambda conn: None, tls_server_context())
    certfile, _ = tls_certificate

    ctx = tls.create_client_context(ca_pemfile=certfile)
    with socket.create_connection(server.address, timeout=5) as sock:
        stream = tls.ClientStream(tls.new_client_connection(ctx, "localhost"), sock)
        stream.do_handshake()

    with socket.create_connection(server.address, timeout=5) as sock:
        stream = tls.ClientStream(tls.new_client_connection(ctx, "example.com"), sock)
        with pytest.raises(SSL.Error):
            stream.do_handshake()


@pytest.mark.timeout(10)
def test_client_stream_closed(tcp_server):
    server = tcp_server(lambda conn: None)
    ctx = tls.create_client_context(verify=tls.Verify.VERIFY_NONE)
    with socket.create_connection(server.address, timeout=5) as sock:
        stream = tls.ClientStream(tls.new_client_connection(ctx, "localhost"), sock)
        with pytest.raises(ConnectionError):
            stream.do_handshake()
