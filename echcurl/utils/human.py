import functools
import ipaddress


def pretty_duration(secs: float | None) -> str:
    formatters = [
        (100, "{:.0f}s"),
        (10, "{:2.1f}s"),
        (1, "{:1.2f}s"),
    ]
    if secs is None:
        return ""

    for limit, formatter in formatters:
        if secs >= limit:
            return formatter.format(secs)
    # less than 1 sec
    return f"{secs * 1000:.0f}ms"


@functools.lru_cache
def format_address(address: tuple | None) -> str:
    """
    This function accepts IPv4/IPv6 tuples and
    returns the formatted address string with port number
    """
    if address is None:
        return "<no address>"
    try:
        host = ipaddress.ip_address(address[0])
        if host.is_unspecified:
            return f"*:{address[1]}"
        if isinstance(host, ipaddress.IPv4Address):
            return f"{host}:{address[1]}"
        # If IPv6 is mapped to IPv4
        elif host.ipv4_mapped:
            return f"{host.ipv4_mapped}:{address[1]}"
        return f"[{host}]:{address[1]}"
    except ValueError:
        return f"{address[0]}:{address[1]}"


def split_host_port(spec: str) -> tuple[str, int | None]:
    """
    Splits "host:port", "[v6]:port", "host" or "v6" into host and optional port.

    Raises:
        ValueError, if the port is not a number.
    """
    if spec.startswith("["):
        host, _, rest = spec[1:].partition("]")
        if rest and not rest.startswith(":"):
            raise ValueError(f"Invalid address: {spec}")
        return host, int(rest[1:]) if rest else None
    if spec.count(":") > 1:
        # bare IPv6 address
        return spec, None
    host, sep, port = spec.partition(":")
    return host, int(port) if sep else None
