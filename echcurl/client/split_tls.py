"""
Splits the TLS ClientHello into two writes, which is enough to confuse some
DPI middleboxes that only look at the first segment.
"""

from __future__ import annotations

import enum
import logging
import time

from echcurl.client.context import DialContext
from echcurl.client.dialer import Dialer
from echcurl.client.dialer import Network
from echcurl.net import tls
from echcurl.net.connection import Address
from echcurl.net.connection import Connection
from echcurl.net.connection import WrappedConnection

logger = logging.getLogger(__name__)

# Writes that precede the ClientHello, e.g. a proxy handshake, are tolerated up to this many.
MAX_WATCHED_WRITES = 5


class SplitState(enum.Enum):
    WATCHING = "watching"
    DONE = "done"


class SplitConnection(WrappedConnection):
    def __init__(self, inner: Connection, chunk_size: int, delay_ms: int):
        super().__init__(inner)
        self.chunk_size = chunk_size
        self.delay_ms = delay_ms
        self.state = SplitState.WATCHING
        self.watched = 0

    def sendall(self, data: bytes) -> None:
        if self.state is SplitState.DONE:
            self.inner.sendall(data)
            return

        self.watched += 1
        if not tls.is_client_hello(data):
            if self.watched >= MAX_WATCHED_WRITES:
                logger.debug(f"No ClientHello in {self.watched} writes, not splitting")
                self.state = SplitState.DONE
            self.inner.sendall(data)
            return

        self.state = SplitState.DONE
        if len(data) <= self.chunk_size:
            self.inner.sendall(data)
            return
        logger.debug(
            f"Found ClientHello, splitting it into {self.chunk_size} and {len(data) - self.chunk_size} bytes"
        )
        self.inner.sendall(data[: self.chunk_size])
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000)
        self.inner.sendall(data[self.chunk_size :])


class TlsSplit:
    def __init__(self, forward: Dialer, chunk_size: int, delay_ms: int = 0):
        self.forward = forward
        self.chunk_size = chunk_size
        self.delay_ms = delay_ms
        logger.debug(
            f"Splitting TLS ClientHello is enabled. First chunk size is {chunk_size}, delay is {delay_ms}ms"
        )

    def dial(
        self, network: Network, address: Address, ctx: DialContext | None = None
    ) -> Connection:
        conn = self.forward.dial(network, address, ctx)
        return SplitConnection(conn, self.chunk_size, self.delay_ms)
