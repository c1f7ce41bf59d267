import struct

_LABEL_SIZE = struct.Struct("!B")
_POINTER_OFFSET = struct.Struct("!H")
_POINTER_INDICATOR = 0b11000000

type Cache = dict[int, tuple[str, int] | None]


def cache() -> Cache:
    return dict()


def _unpack_label_into(labels: list[str], buffer: bytes, offset: int) -> int:
    (size,) = _LABEL_SIZE.unpack_from(buffer, offset)
    if size >= 64:
        raise struct.error(f"unpack encountered a label of length {size}")
    if size == 0:
        return _LABEL_SIZE.size
    offset += _LABEL_SIZE.size
    end_label = offset + size
    if len(buffer) < end_label:
        raise struct.error(f"unpack requires a label buffer of {size} bytes")
    try:
        labels.append(buffer[offset:end_label].decode("idna"))
    except UnicodeError:
        raise struct.error(f"unpack encountered illegal characters at offset {offset}")
    return _LABEL_SIZE.size + size


def unpack_from_with_compression(
    buffer: bytes, offset: int, cache: Cache
) -> tuple[str, int]:
    """Converts a (possibly compressed) name at offset and returns it with its size on the wire."""
    if offset in cache:
        result = cache[offset]
        if result is None:
            raise struct.error("unpack encountered domain name loop")
        return result
    cache[offset] = None  # marks the offset as being unpacked
    start_offset = offset
    labels: list[str] = []
    while True:
        (size,) = _LABEL_SIZE.unpack_from(buffer, offset)
        if size & _POINTER_INDICATOR == _POINTER_INDICATOR:
            (pointer,) = _POINTER_OFFSET.unpack_from(buffer, offset)
            offset += _POINTER_OFFSET.size
            label, _ = unpack_from_with_compression(
                buffer, pointer & ~(_POINTER_INDICATOR << 8), cache
            )
            if label:
                labels.append(label)
            break
        offset += _unpack_label_into(labels, buffer, offset)
        if size == 0:
            break
    result = ".".join(labels), offset - start_offset
    cache[start_offset] = result
    return result


def unpack_from(buffer: bytes, offset: int) -> tuple[str, int]:
    """Converts RDATA into a domain name without pointer compression from a given offset and also returns the end offset."""
    labels: list[str] = []
    while True:
        (size,) = _LABEL_SIZE.unpack_from(buffer, offset)
        if size & _POINTER_INDICATOR == _POINTER_INDICATOR:
            raise struct.error("unpack encountered a pointer which is not supported in RDATA")
        offset += _unpack_label_into(labels, buffer, offset)
        if size == 0:
            break
    return ".".join(labels), offset


def pack(name: str) -> bytes:
    """Converts a domain name into its wire format without pointer compression."""
    buffer = bytearray()
    name = name.rstrip(".")
    if name:
        for part in name.split("."):
            label = part.encode("idna")
            size = len(label)
            if size == 0:
                raise ValueError(f"domain name '{name}' contains empty labels")
            if size >= 64:
                raise ValueError(
                    f"encoded label '{part}' of domain name '{name}' is too long ({size} bytes)"
                )
            buffer.extend(_LABEL_SIZE.pack(size))
            buffer.extend(label)
    buffer.extend(_LABEL_SIZE.pack(0))
    return bytes(buffer)
