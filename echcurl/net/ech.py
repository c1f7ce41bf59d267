"""
Encrypted Client Hello configuration lists, as published in the `ech` SvcParam
of HTTPS records (draft-ietf-tls-esni, RFC 9849):

    ECHConfigList: u16 length, then ECHConfig entries
    ECHConfig: u16 version, u16 length, contents
    ECHConfigContents (version 0xfe0d):
        HpkeKeyConfig:
            u8 config_id, u16 kem_id, u16-prefixed public_key,
            u16-prefixed list of (u16 kdf_id, u16 aead_id)
        u8 maximum_name_length
        u8-prefixed public_name
        u16-prefixed extensions

Configurations with an unknown version are skipped, as clients must ignore them.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable
from collections.abc import Sequence
from dataclasses import dataclass

VERSION_DRAFT_13 = 0xFE0D

# HPKE identifiers, https://www.iana.org/assignments/hpke/hpke.xhtml
KEM_P256_HKDF_SHA256 = 0x0010
KEM_X25519_HKDF_SHA256 = 0x0020
KDF_HKDF_SHA256 = 0x0001
KDF_HKDF_SHA384 = 0x0002
KDF_HKDF_SHA512 = 0x0003
AEAD_AES_128_GCM = 0x0001
AEAD_AES_256_GCM = 0x0002
AEAD_CHACHA20_POLY1305 = 0x0003

SUPPORTED_KEMS = frozenset({KEM_P256_HKDF_SHA256, KEM_X25519_HKDF_SHA256})
SUPPORTED_KDFS = frozenset({KDF_HKDF_SHA256, KDF_HKDF_SHA384, KDF_HKDF_SHA512})
SUPPORTED_AEADS = frozenset(
    {AEAD_AES_128_GCM, AEAD_AES_256_GCM, AEAD_CHACHA20_POLY1305}
)

_U8 = struct.Struct("!B")
_U16 = struct.Struct("!H")


@dataclass(frozen=True)
class CipherSuite:
    kdf_id: int
    aead_id: int


@dataclass(frozen=True)
class ECHConfig:
    version: int
    config_id: int
    kem_id: int
    public_key: bytes
    cipher_suites: tuple[CipherSuite, ...]
    maximum_name_length: int
    public_name: str
    extensions: bytes
    raw: bytes
    """The complete ECHConfig entry, including version and length."""

    @property
    def supported(self) -> bool:
        """True if we can encrypt a ClientHello for this configuration."""
        return self.kem_id in SUPPORTED_KEMS and any(
            cs.kdf_id in SUPPORTED_KDFS and cs.aead_id in SUPPORTED_AEADS
            for cs in self.cipher_suites
        )


class _Buffer:
    def __init__(self, data: bytes, offset: int = 0, end: int | None = None):
        self.data = data
        self.offset = offset
        self.end = len(data) if end is None else end

    def u8(self) -> int:
        (v,) = _U8.unpack_from(self._take(_U8.size), 0)
        return v

    def u16(self) -> int:
        (v,) = _U16.unpack_from(self._take(_U16.size), 0)
        return v

    def vec8(self) -> bytes:
        return self._take(self.u8())

    def vec16(self) -> bytes:
        return self._take(self.u16())

    def _take(self, n: int) -> bytes:
        if self.offset + n > self.end:
            raise struct.error(f"unpack requires a buffer of {self.offset + n} bytes")
        ret = self.data[self.offset : self.offset + n]
        self.offset += n
        return ret

    @property
    def remaining(self) -> int:
        return self.end - self.offset


def _unpack_contents(version: int, contents: bytes, raw: bytes) -> ECHConfig:
    buf = _Buffer(contents)
    config_id = buf.u8()
    kem_id = buf.u16()
    public_key = buf.vec16()
    suites_buf = _Buffer(buf.vec16())
    if suites_buf.remaining == 0 or suites_buf.remaining % 4:
        raise struct.error("invalid cipher suite list")
    cipher_suites = []
    while suites_buf.remaining:
        cipher_suites.append(CipherSuite(suites_buf.u16(), suites_buf.u16()))
    maximum_name_length = buf.u8()
    public_name_bytes = buf.vec8()
    if not public_name_bytes:
        raise struct.error("empty public name")
    try:
        public_name = public_name_bytes.decode("ascii")
    except UnicodeDecodeError as e:
        raise struct.error(f"invalid public name: {e}") from e
    extensions = buf.vec16()
    if buf.remaining:
        raise struct.error(f"{buf.remaining} trailing bytes in ECHConfigContents")
    return ECHConfig(
        version=version,
        config_id=config_id,
        kem_id=kem_id,
        public_key=public_key,
        cipher_suites=tuple(cipher_suites),
        maximum_name_length=maximum_name_length,
        public_name=public_name,
        extensions=extensions,
        raw=raw,
    )


def unpack_list(data: bytes) -> list[ECHConfig]:
    """
    Parses an ECHConfigList.

    Raises:
        struct.error, if the list is malformed.
    """
    outer = _Buffer(data)
    list_bytes = outer.vec16()
    if outer.remaining:
        raise struct.error(f"{outer.remaining} trailing bytes after ECHConfigList")
    buf = _Buffer(list_bytes)
    configs = []
    while buf.remaining:
        start = buf.offset
        version = buf.u16()
        contents = buf.vec16()
        if version != VERSION_DRAFT_13:
            continue
        configs.append(_unpack_contents(version, contents, list_bytes[start : buf.offset]))
    return configs


def pack_list(configs: Iterable[ECHConfig]) -> bytes:
    """Converts configurations back into an ECHConfigList."""
    body = b"".join(c.raw for c in configs)
    return _U16.pack(len(body)) + body


def select(configs: Sequence[ECHConfig]) -> ECHConfig | None:
    """
    Returns the first configuration with a cipher suite we can use.
    Configurations are tried in the order they were published.
    """
    for config in configs:
        if config.supported:
            return config
    return None
