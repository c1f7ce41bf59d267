"""
DNS stamps encode everything needed to reach a DNS server in a single
`sdns://` string: https://dnscrypt.info/stamps-specifications
"""

import base64
import enum
import struct
from dataclasses import dataclass
from dataclasses import field


class Protocol(enum.IntEnum):
    PLAIN = 0x00
    DNSCRYPT = 0x01
    DOH = 0x02
    DOT = 0x03
    DOQ = 0x04
    ODOH_TARGET = 0x05


@dataclass
class Stamp:
    protocol: Protocol
    props: int = 0
    address: str = ""
    """IP address with optional port, may be empty for encrypted protocols."""
    hashes: list[bytes] = field(default_factory=list)
    provider_name: str = ""
    """Host name (with optional port) for DoH/DoT/DoQ, provider name for DNSCrypt."""
    path: str = ""
    public_key: bytes = b""


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def take(self, n: int) -> bytes:
        if self.offset + n > len(self.data):
            raise ValueError("stamp is too short")
        ret = self.data[self.offset : self.offset + n]
        self.offset += n
        return ret

    def lp(self) -> bytes:
        (length,) = self.take(1)
        return self.take(length)

    def vlp(self) -> list[bytes]:
        ret = []
        while True:
            (length,) = self.take(1)
            ret.append(self.take(length & 0x7F))
            if not length & 0x80:
                break
        return [x for x in ret if x]

    @property
    def done(self) -> bool:
        return self.offset == len(self.data)


def parse(stamp: str) -> Stamp:
    """
    Parses an sdns:// stamp.

    Raises:
        ValueError, if the stamp is malformed or uses an unknown protocol.
    """
    if not stamp.startswith("sdns://"):
        raise ValueError(f"Not a DNS stamp: {stamp}")
    payload = stamp.removeprefix("sdns://")
    try:
        raw = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
    except ValueError as e:
        raise ValueError(f"Invalid DNS stamp encoding: {e}") from e

    r = _Reader(raw)
    try:
        proto = Protocol(r.take(1)[0])
    except ValueError as e:
        raise ValueError(f"Unsupported DNS stamp protocol: {e}") from e
    if proto == Protocol.ODOH_TARGET:
        raise ValueError("Oblivious DoH stamps are not supported")

    (props,) = struct.unpack("<Q", r.take(8))
    ret = Stamp(protocol=proto, props=props, address=r.lp().decode())
    match proto:
        case Protocol.PLAIN:
            pass
        case Protocol.DNSCRYPT:
            ret.public_key = r.lp()
            ret.provider_name = r.lp().decode()
        case Protocol.DOH:
            ret.hashes = r.vlp()
            ret.provider_name = r.lp().decode()
            ret.path = r.lp().decode()
        case Protocol.DOT | Protocol.DOQ:
            ret.hashes = r.vlp()
            ret.provider_name = r.lp().decode()
    # Optional bootstrap IPs are ignored.
    return ret

