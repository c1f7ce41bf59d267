import ipaddress
import re

# Allow underscore in host name
# Note: This could be a DNS label, a hostname, a FQDN, or an IP
_label_valid = re.compile(r"[A-Z\d\-_]{1,63}$", re.IGNORECASE)


def is_valid_host(host: str) -> bool:
    """
    Checks if the passed string is a valid DNS hostname or an IPv4/IPv6 address.
    """
    try:
        host.encode("idna")
    except UnicodeError:
        return False
    # RFC1035: 255 bytes or less.
    if not host or len(host) > 255:
        return False
    if is_ip_address(host):
        return True
    if host.endswith("."):
        host = host[:-1]
    return all(_label_valid.match(x) for x in host.split("."))


def is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def is_valid_port(port: int) -> bool:
    return 0 <= port <= 65535
