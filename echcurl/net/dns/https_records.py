"""
HTTPS records (RFC 9460) carry a 2-octet SvcPriority, an uncompressed TargetName,
and SvcParams filling the rest of the RDATA. Each SvcParam is a 2-octet key, a
2-octet length, and a value whose format depends on the key.
"""

import enum
import struct
from dataclasses import dataclass
from dataclasses import field

from . import domain_names

_PARAM_HEADER = struct.Struct("!HH")


class SVCParamKeys(enum.Enum):
    MANDATORY = 0
    ALPN = 1
    NO_DEFAULT_ALPN = 2
    PORT = 3
    IPV4HINT = 4
    ECH = 5
    IPV6HINT = 6


@dataclass
class HTTPSRecord:
    priority: int
    target_name: str
    params: dict[int, bytes] = field(default_factory=dict)

    @property
    def alpn(self) -> tuple[bytes, ...]:
        alpn_bytes = self.params.get(SVCParamKeys.ALPN.value, b"")
        ret = []
        i = 0
        while i < len(alpn_bytes):
            token_len = alpn_bytes[i]
            ret.append(alpn_bytes[i + 1 : i + 1 + token_len])
            i += token_len + 1
        return tuple(ret)

    @property
    def ech(self) -> bytes | None:
        return self.params.get(SVCParamKeys.ECH.value)


def unpack(data: bytes) -> HTTPSRecord:
    """
    Unpacks HTTPS RDATA from byte data.

    Raises:
        struct.error if the record is malformed.
    """
    (priority,) = struct.unpack_from("!H", data, 0)
    target_name, offset = domain_names.unpack_from(data, 2)

    params = {}
    while offset < len(data):
        key, length = _PARAM_HEADER.unpack_from(data, offset)
        offset += _PARAM_HEADER.size
        if offset + length > len(data):
            raise struct.error(f"unpack requires a buffer of {offset + length} bytes")
        params[key] = data[offset : offset + length]
        offset += length

    return HTTPSRecord(priority=priority, target_name=target_name, params=params)


def pack(record: HTTPSRecord) -> bytes:
    """Packs the HTTPS record into its bytes form."""
    buffer = bytearray()
    buffer.extend(struct.pack("!H", record.priority))
    buffer.extend(domain_names.pack(record.target_name))
    for k, v in sorted(record.params.items()):
        buffer.extend(_PARAM_HEADER.pack(k, len(v)))
        buffer.extend(v)
    return bytes(buffer)
