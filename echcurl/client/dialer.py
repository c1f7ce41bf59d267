"""
The innermost stage of the dialer chain and the interface all stages share.
"""

from __future__ import annotations

import enum
import logging
import socket
from typing import Protocol

from echcurl import exceptions
from echcurl.client.context import DialContext
from echcurl.net.connection import Address
from echcurl.net.connection import Connection
from echcurl.net.connection import DatagramConnection
from echcurl.net.connection import StreamConnection
from echcurl.resolve.resolver import Resolver
from echcurl.utils import human

logger = logging.getLogger(__name__)


class Network(enum.Enum):
    TCP = "tcp"
    UDP = "udp"


class Dialer(Protocol):
    def dial(
        self, network: Network, address: Address, ctx: DialContext | None = None
    ) -> Connection:
        """
        Opens a connection to `address`.

        *Raises:*
         - DialError, if this or any inner stage fails.
         - ResolutionError, if the target host cannot be resolved.
        """
        ...


class Direct:
    """
    Resolves the target through the Resolver and connects to the first address.
    """

    def __init__(self, resolver: Resolver, connect_timeout: float | None = None):
        self.resolver = resolver
        self.connect_timeout = connect_timeout

    def dial(
        self, network: Network, address: Address, ctx: DialContext | None = None
    ) -> Connection:
        ctx = ctx or DialContext()
        ctx.check("direct", address)
        host, port = address
        logger.debug(f"Connecting to {network.value}://{human.format_address(address)}")

        ip = str(self.resolver.lookup_host(host)[0])
        if ip != host:
            logger.debug(
                f"Connecting to {network.value}://{human.format_address((ip, port))}"
            )
        ctx.check("direct", address)

        try:
            match network:
                case Network.TCP:
                    sock = socket.create_connection(
                        (ip, port), ctx.timeout(self.connect_timeout)
                    )
                    # only the connect itself is bounded.
                    sock.settimeout(None)
                    return StreamConnection(sock, address)
                case Network.UDP:
                    family = socket.AF_INET6 if ":" in ip else socket.AF_INET
                    sock = socket.socket(family, socket.SOCK_DGRAM)
                    try:
                        sock.connect((ip, port))
                    except OSError:
                        sock.close()
                        raise
                    return DatagramConnection(sock, address)
        except OSError as e:
            raise exceptions.DialError(str(e) or repr(e), "direct", address) from e
        raise AssertionError(f"unknown network: {network}")  # pragma: no cover
