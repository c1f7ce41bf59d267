"""
A blocking driver for aioquic's sans-IO QuicConnection.

aioquic leaves all I/O to the caller: we feed it datagrams and timer events and
flush whatever it wants to send after each step.
"""

from __future__ import annotations

import logging
import ssl
import time
from collections.abc import Iterable
from typing import Protocol

import certifi
from aioquic.quic import events as quic_events
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.connection import QuicConnection
from aioquic.tls import CipherSuite
from cryptography import x509

logger = logging.getLogger(__name__)

type Address = tuple[str, int]


class PacketConnection(Protocol):
    def sendto(self, data: bytes, addr: Address) -> None: ...

    def recvfrom(self, bufsize: int) -> tuple[bytes, Address]: ...

    def settimeout(self, timeout: float | None) -> None: ...


class QuicTerminated(ConnectionError):
    def __init__(self, event: quic_events.ConnectionTerminated):
        self.event = event
        super().__init__(
            f"QUIC connection terminated: {event.reason_phrase or 'no reason'} "
            f"(error code {event.error_code:#x})"
        )


def client_configuration(
    *,
    alpn_protocols: Iterable[str],
    server_name: str | None,
    insecure: bool = False,
    cipher_suites: Iterable[str] | None = None,
) -> QuicConfiguration:
    """
    *Raises:*
     - ValueError, if a cipher suite name is unknown to aioquic.
    """
    configuration = QuicConfiguration(
        alpn_protocols=list(alpn_protocols),
        is_client=True,
        server_name=server_name,
    )
    if insecure:
        configuration.verify_mode = ssl.CERT_NONE
    else:
        configuration.cafile = certifi.where()
    if cipher_suites:
        suites = []
        for name in cipher_suites:
            try:
                suites.append(CipherSuite[name.upper().removeprefix("TLS_")])
            except KeyError:
                raise ValueError(f"Unknown QUIC cipher suite: {name}")
        configuration.cipher_suites = suites
    return configuration


class QuicSession:
    """
    Owns a QuicConnection and the packet connection it runs over.
    Events that are not consumed while connecting are kept for the caller.
    """

    def __init__(
        self,
        configuration: QuicConfiguration,
        conn: PacketConnection,
        peer: Address,
    ):
        self.quic = QuicConnection(configuration=configuration)
        self.conn = conn
        self.peer = peer
        self.pending: list[quic_events.QuicEvent] = []
        self.alpn_protocol: str | None = None

    def transmit(self) -> None:
        for data, _ in self.quic.datagrams_to_send(now=time.monotonic()):
            self.conn.sendto(data, self.peer)

    def connect(self, timeout: float | None) -> None:
        """
        *Raises:*
         - TimeoutError, if the handshake does not complete in time.
         - QuicTerminated, if the peer or the handshake aborts the connection.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        self.quic.connect(self.peer, now=time.monotonic())
        self.transmit()
        stash: list[quic_events.QuicEvent] = []
        while True:
            evs = self.poll(deadline)
            for i, event in enumerate(evs):
                if isinstance(event, quic_events.HandshakeCompleted):
                    logger.debug(
                        f"QUIC handshake completed (alpn={event.alpn_protocol})"
                    )
                    self.alpn_protocol = event.alpn_protocol
                    self.pending = stash + evs[i + 1 :]
                    return
                stash.append(event)

    def poll(self, deadline: float | None = None) -> list[quic_events.QuicEvent]:
        """
        Waits for one datagram or timer expiry and returns the resulting events.
        """
        if self.pending:
            ret, self.pending = self.pending, []
            return ret

        now = time.monotonic()
        if deadline is not None and now >= deadline:
            raise TimeoutError("QUIC operation timed out")
        timer = self.quic.get_timer()
        wakeups = [t for t in (timer, deadline) if t is not None]
        self.conn.settimeout(max(0.001, min(wakeups) - now) if wakeups else None)
        try:
            data, _ = self.conn.recvfrom(65536)
        except TimeoutError:
            if timer is not None and time.monotonic() >= timer:
                self.quic.handle_timer(now=time.monotonic())
        else:
            self.quic.receive_datagram(data, self.peer, now=time.monotonic())
        self.transmit()

        ret = []
        while (event := self.quic.next_event()) is not None:
            if isinstance(event, quic_events.ConnectionTerminated):
                raise QuicTerminated(event)
            ret.append(event)
        return ret

    @property
    def cipher_suite(self) -> str | None:
        key_schedule = getattr(getattr(self.quic, "tls", None), "key_schedule", None)
        suite = getattr(key_schedule, "cipher_suite", None)
        return None if suite is None else f"TLS_{suite.name}"

    @property
    def peer_certificates(self) -> list[x509.Certificate]:
        tls = getattr(self.quic, "tls", None)
        if tls is None:
            return []
        certs = []
        if tls._peer_certificate is not None:
            certs.append(tls._peer_certificate)
        certs.extend(tls._peer_certificate_chain)
        return certs

    def close(self) -> None:
        self.quic.close()
        try:
            self.transmit()
        except OSError:
            pass
