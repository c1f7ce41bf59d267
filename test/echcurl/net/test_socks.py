import ipaddress
from io import BytesIO

import pytest

from echcurl.net import socks


def _reader(data: bytes):
    return BytesIO(data).read


def test_greeting():
    assert socks.pack_greeting([socks.METHOD.NO_AUTHENTICATION_REQUIRED]) == b"\x05\x01\x00"
    assert (
        socks.pack_greeting(
            [socks.METHOD.NO_AUTHENTICATION_REQUIRED, socks.METHOD.USERNAME_PASSWORD]
        )
        == b"\x05\x02\x00\x02"
    )

    assert (
        socks.read_server_greeting(_reader(b"\x05\x02"))
        == socks.METHOD.USERNAME_PASSWORD
    )
    with pytest.raises(socks.SocksError, match="Probably not a SOCKS proxy"):
        socks.read_server_greeting(_reader(b"HTTP/1.1 400 Bad Request"))
    with pytest.raises(socks.SocksError, match="Invalid SOCKS version"):
        socks.read_server_greeting(_reader(b"\x04\x00"))
    with pytest.raises(socks.SocksError, match="accepted none"):
        socks.read_server_greeting(_reader(b"\x05\xff"))
    with pytest.raises(socks.SocksError, match="unknown auth method"):
        socks.read_server_greeting(_reader(b"\x05\x42"))


def test_username_password():
    assert socks.pack_username_password("user", "pass") == b"\x01\x04user\x04pass"
    with pytest.raises(ValueError, match="at most 255 bytes"):
        socks.pack_username_password("u" * 256, "")

    socks.read_username_password_response(_reader(b"\x01\x00"))
    with pytest.raises(socks.SocksError, match="rejected"):
        socks.read_username_password_response(_reader(b"\x01\x01"))
    with pytest.raises(socks.SocksError, match="Invalid auth version"):
        socks.read_username_password_response(_reader(b"\x05\x00"))


def test_pack_address():
    assert socks.pack_address("1.2.3.4", 80) == b"\x01\x01\x02\x03\x04\x00\x50"
    assert (
        socks.pack_address("::1", 443)
        == b"\x04" + ipaddress.IPv6Address("::1").packed + b"\x01\xbb"
    )
    assert socks.pack_address("example.com", 80) == b"\x03\x0bexample.com\x00\x50"
    with pytest.raises(socks.SocksError, match="Invalid hostname"):
        socks.pack_address("exa mple.com", 80)


def test_unpack_address():
    data = b"xx" + socks.pack_address("example.com", 8080) + b"rest"
    assert socks.unpack_address(data, 2) == (("example.com", 8080), len(data) - 4)
    assert socks.unpack_address(socks.pack_address("::1", 1), 0) == (("::1", 1), 19)
    with pytest.raises(socks.SocksError, match="Unknown ATYP"):
        socks.unpack_address(b"\x02\x00\x00", 0)


def test_pack_request():
    assert (
        socks.pack_request(socks.CMD.CONNECT, "1.2.3.4", 443)
        == b"\x05\x01\x00\x01\x01\x02\x03\x04\x01\xbb"
    )
    assert socks.pack_request(socks.CMD.UDP_ASSOCIATE, "0.0.0.0", 0) == (
        b"\x05\x03\x00\x01\x00\x00\x00\x00\x00\x00"
    )


class TestReadReply:
    def test_ipv4(self):
        reply = socks.read_reply(_reader(b"\x05\x00\x00\x01\x7f\x00\x00\x01\x04\x38"))
        assert reply.rep == socks.REP.SUCCEEDED
        assert reply.bound == ("127.0.0.1", 1080)

    def test_domain(self):
        reply = socks.read_reply(
            _reader(b"\x05\x00\x00\x03\x09relay.lan\x00\x35")
        )
        assert reply.bound == ("relay.lan", 53)

    def test_errors(self):
        with pytest.raises(socks.SocksError, match="connection refused") as exc:
            socks.read_reply(_reader(b"\x05\x05\x00\x01" + bytes(6)))
        assert exc.value.code == socks.REP.CONNECTION_REFUSED
        with pytest.raises(socks.SocksError, match="unknown reply code 0x42"):
            socks.read_reply(_reader(b"\x05\x42\x00\x01" + bytes(6)))
        with pytest.raises(socks.SocksError, match="Invalid SOCKS version"):
            socks.read_reply(_reader(b"\x04\x00\x00\x01" + bytes(6)))
        with pytest.raises(socks.SocksError, match="Unknown ATYP"):
            socks.read_reply(_reader(b"\x05\x00\x00\x07" + bytes(6)))


def test_udp_datagram():
    datagram = socks.pack_udp_datagram("example.com", 443, b"payload")
    assert datagram.startswith(b"\x00\x00\x00\x03")
    assert socks.unpack_udp_datagram(datagram) == (("example.com", 443), b"payload")

    with pytest.raises(socks.SocksError, match="Fragmented"):
        socks.unpack_udp_datagram(b"\x00\x00\x01" + socks.pack_address("1.2.3.4", 1))
    with pytest.raises(socks.SocksError, match="Malformed"):
        socks.unpack_udp_datagram(b"\x00\x00")
    with pytest.raises(socks.SocksError, match="Malformed"):
        socks.unpack_udp_datagram(b"\x00\x00\x00\x03\x01a")
