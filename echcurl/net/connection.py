"""
Connections handed around by the dialer chain.

The kind of a connection (stream or datagram) is decided when the socket is
opened and never inferred later on. Wrappers forward everything they do not
override to the connection they wrap and own it exclusively.
"""

from __future__ import annotations

import enum
import socket
from typing import ClassVar
from typing import Self

type Address = tuple[str, int]


class ConnectionKind(enum.Enum):
    STREAM = "stream"
    DATAGRAM = "datagram"


class Connection:
    kind: ClassVar[ConnectionKind]
    address: Address
    """The (host, port) this connection was requested for."""

    def sendall(self, data: bytes) -> None:
        raise NotImplementedError

    def recv(self, bufsize: int) -> bytes:
        raise NotImplementedError

    def settimeout(self, timeout: float | None) -> None:
        raise NotImplementedError

    def gettimeout(self) -> float | None:
        raise NotImplementedError

    @property
    def peername(self) -> Address:
        raise NotImplementedError

    @property
    def sockname(self) -> Address:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def read_exactly(self, n: int) -> bytes:
        """
        Raises:
            ConnectionError, if the peer closes the connection before n bytes arrived.
        """
        buf = bytearray()
        while len(buf) < n:
            data = self.recv(n - len(buf))
            if not data:
                raise ConnectionError(
                    f"connection closed after {len(buf)} of {n} expected bytes"
                )
            buf += data
        return bytes(buf)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class SocketConnection(Connection):
    def __init__(self, sock: socket.socket, address: Address):
        self.sock = sock
        self.address = address

    def sendall(self, data: bytes) -> None:
        self.sock.sendall(data)

    def recv(self, bufsize: int) -> bytes:
        return self.sock.recv(bufsize)

    def settimeout(self, timeout: float | None) -> None:
        self.sock.settimeout(timeout)

    def gettimeout(self) -> float | None:
        return self.sock.gettimeout()

    @property
    def peername(self) -> Address:
        return self.sock.getpeername()[:2]

    @property
    def sockname(self) -> Address:
        return self.sock.getsockname()[:2]

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError:  # pragma: no cover
            pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.address[0]}:{self.address[1]}>"


class StreamConnection(SocketConnection):
    kind = ConnectionKind.STREAM


class DatagramConnection(SocketConnection):
    """
    A connected datagram socket that also offers address-aware I/O,
    as expected by packet-oriented protocols such as QUIC.
    """

    kind = ConnectionKind.DATAGRAM

    def sendto(self, data: bytes, addr: Address) -> None:
        # The socket is connected, so the destination is fixed.
        self.sock.send(data)

    def recvfrom(self, bufsize: int) -> tuple[bytes, Address]:
        return self.sock.recv(bufsize), self.peername


class WrappedConnection(Connection):
    """Forwards to an inner connection. Subclasses override what they change."""

    def __init__(self, inner: Connection):
        self.inner = inner

    @property
    def kind(self) -> ConnectionKind:  # type: ignore[override]
        return self.inner.kind

    @property
    def address(self) -> Address:  # type: ignore[override]
        return self.inner.address

    def sendall(self, data: bytes) -> None:
        self.inner.sendall(data)

    def recv(self, bufsize: int) -> bytes:
        return self.inner.recv(bufsize)

    def settimeout(self, timeout: float | None) -> None:
        self.inner.settimeout(timeout)

    def gettimeout(self) -> float | None:
        return self.inner.gettimeout()

    @property
    def peername(self) -> Address:
        return self.inner.peername

    @property
    def sockname(self) -> Address:
        return self.inner.sockname

    def close(self) -> None:
        self.inner.close()

    def __getattr__(self, attr):
        # datagram operations and anything else we don't know about.
        if attr == "inner":
            raise AttributeError(attr)
        return getattr(self.inner, attr)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.inner!r}>"


class BufferedConnection(WrappedConnection):
    """Hands out bytes that were read ahead before reading from the inner connection."""

    def __init__(self, inner: Connection, buffered: bytes):
        super().__init__(inner)
        self.buffered = buffered

    def recv(self, bufsize: int) -> bytes:
        if self.buffered:
            ret, self.buffered = self.buffered[:bufsize], self.buffered[bufsize:]
            return ret
        return self.inner.recv(bufsize)
