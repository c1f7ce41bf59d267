from __future__ import annotations

import logging
from collections.abc import Mapping

from echcurl.client.context import DialContext
from echcurl.client.dialer import Dialer
from echcurl.client.dialer import Network
from echcurl.net.connection import Address
from echcurl.net.connection import Connection
from echcurl.utils import human

logger = logging.getLogger(__name__)


class ConnectTo:
    """
    Redirects dials for an exact (host, port) to another address.
    Everything above the dialer keeps seeing the original address.
    """

    def __init__(self, mapping: Mapping[Address, Address], forward: Dialer):
        self.mapping = {
            (host.lower(), port): target for (host, port), target in mapping.items()
        }
        self.forward = forward

    def dial(
        self, network: Network, address: Address, ctx: DialContext | None = None
    ) -> Connection:
        host, port = address
        target = self.mapping.get((host.lower(), port))
        if target is not None:
            logger.debug(
                f"Redirecting {human.format_address(address)} to {human.format_address(target)}"
            )
            address = target
        return self.forward.dial(network, address, ctx)
