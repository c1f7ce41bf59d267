"""
SOCKS5 client messages (RFC 1928) and username/password authentication (RFC 1929).
"""

from __future__ import annotations

import enum
import ipaddress
import struct
from collections.abc import Callable
from dataclasses import dataclass

from echcurl.net import check

type ReadExactly = Callable[[int], bytes]

SOCKS5 = 0x05
USERNAME_PASSWORD_VERSION = 0x01


class SocksError(Exception):
    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


class CMD(enum.IntEnum):
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class ATYP(enum.IntEnum):
    IPV4_ADDRESS = 0x01
    DOMAINNAME = 0x03
    IPV6_ADDRESS = 0x04


class REP(enum.IntEnum):
    SUCCEEDED = 0x00
    GENERAL_SOCKS_SERVER_FAILURE = 0x01
    CONNECTION_NOT_ALLOWED_BY_RULESET = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


class METHOD(enum.IntEnum):
    NO_AUTHENTICATION_REQUIRED = 0x00
    GSSAPI = 0x01
    USERNAME_PASSWORD = 0x02
    NO_ACCEPTABLE_METHODS = 0xFF


def _reply_text(code: int) -> str:
    try:
        return REP(code).name.replace("_", " ").lower()
    except ValueError:
        return f"unknown reply code {code:#x}"


def pack_greeting(methods: list[METHOD]) -> bytes:
    return struct.pack("!BB", SOCKS5, len(methods)) + bytes(methods)


def read_server_greeting(read: ReadExactly) -> METHOD:
    ver, method = struct.unpack("!BB", read(2))
    if ver != SOCKS5:
        if ver == ord("H") and method == ord("T"):
            guess = "Probably not a SOCKS proxy but a regular HTTP server. "
        else:
            guess = ""
        raise SocksError(
            REP.GENERAL_SOCKS_SERVER_FAILURE,
            f"{guess}Invalid SOCKS version. Expected 0x05, got {ver:#x}",
        )
    if method == METHOD.NO_ACCEPTABLE_METHODS:
        raise SocksError(method, "SOCKS proxy accepted none of the offered auth methods")
    try:
        return METHOD(method)
    except ValueError:
        raise SocksError(method, f"SOCKS proxy selected unknown auth method {method:#x}")


def pack_username_password(username: str, password: str) -> bytes:
    user = username.encode()
    pw = password.encode()
    if len(user) > 255 or len(pw) > 255:
        raise ValueError("SOCKS username and password must be at most 255 bytes")
    return (
        struct.pack("!BB", USERNAME_PASSWORD_VERSION, len(user))
        + user
        + struct.pack("!B", len(pw))
        + pw
    )


def read_username_password_response(read: ReadExactly) -> None:
    ver, status = struct.unpack("!BB", read(2))
    if ver != USERNAME_PASSWORD_VERSION:
        raise SocksError(0, f"Invalid auth version. Expected 0x01, got {ver:#x}")
    if status != 0:
        raise SocksError(status, "SOCKS proxy rejected username/password")


def pack_address(host: str, port: int) -> bytes:
    """Encodes ATYP, DST.ADDR and DST.PORT."""
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        name = host.encode("idna")
        if len(name) > 255 or not check.is_valid_host(host):
            raise SocksError(REP.GENERAL_SOCKS_SERVER_FAILURE, f"Invalid hostname: {host}")
        buf = struct.pack("!BB", ATYP.DOMAINNAME, len(name)) + name
    else:
        atyp = ATYP.IPV4_ADDRESS if ip.version == 4 else ATYP.IPV6_ADDRESS
        buf = struct.pack("!B", atyp) + ip.packed
    return buf + struct.pack("!H", port)


def unpack_address(data: bytes, offset: int) -> tuple[tuple[str, int], int]:
    """Decodes ATYP, ADDR and PORT at offset and returns the address and the end offset."""
    (atyp,) = struct.unpack_from("!B", data, offset)
    offset += 1
    if atyp == ATYP.IPV4_ADDRESS:
        host = str(ipaddress.IPv4Address(data[offset : offset + 4]))
        offset += 4
    elif atyp == ATYP.IPV6_ADDRESS:
        host = str(ipaddress.IPv6Address(data[offset : offset + 16]))
        offset += 16
    elif atyp == ATYP.DOMAINNAME:
        (length,) = struct.unpack_from("!B", data, offset)
        host = data[offset + 1 : offset + 1 + length].decode("idna")
        offset += 1 + length
    else:
        raise SocksError(REP.ADDRESS_TYPE_NOT_SUPPORTED, f"Unknown ATYP: {atyp}")
    (port,) = struct.unpack_from("!H", data, offset)
    return (host, port), offset + 2


def pack_request(cmd: CMD, host: str, port: int) -> bytes:
    return struct.pack("!BBB", SOCKS5, cmd, 0x00) + pack_address(host, port)


@dataclass
class Reply:
    rep: int
    bound: tuple[str, int]


def read_reply(read: ReadExactly) -> Reply:
    ver, rep, rsv, atyp = struct.unpack("!BBBB", read(4))
    if ver != SOCKS5:
        raise SocksError(
            REP.GENERAL_SOCKS_SERVER_FAILURE,
            f"Invalid SOCKS version. Expected 0x05, got {ver:#x}",
        )
    if rep != REP.SUCCEEDED:
        raise SocksError(rep, f"SOCKS proxy replied: {_reply_text(rep)}")
    match atyp:
        case ATYP.IPV4_ADDRESS:
            rest = read(4 + 2)
        case ATYP.IPV6_ADDRESS:
            rest = read(16 + 2)
        case ATYP.DOMAINNAME:
            length = read(1)
            rest = length + read(length[0] + 2)
        case _:
            raise SocksError(REP.ADDRESS_TYPE_NOT_SUPPORTED, f"Unknown ATYP: {atyp}")
    bound, _ = unpack_address(bytes([atyp]) + rest, 0)
    return Reply(rep, bound)


def pack_udp_datagram(host: str, port: int, payload: bytes) -> bytes:
    """Prepends the UDP request header (RSV, FRAG, address) to a datagram."""
    return b"\x00\x00\x00" + pack_address(host, port) + payload


def unpack_udp_datagram(data: bytes) -> tuple[tuple[str, int], bytes]:
    """
    Raises:
        SocksError, if the datagram is fragmented or malformed.
    """
    try:
        rsv, frag = struct.unpack_from("!HB", data, 0)
        if frag != 0:
            raise SocksError(0, "Fragmented SOCKS UDP datagrams are not supported")
        address, offset = unpack_address(data, 3)
    except (struct.error, ValueError) as e:
        raise SocksError(0, f"Malformed SOCKS UDP datagram: {e}") from e
    return address, data[offset:]
