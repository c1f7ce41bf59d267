from __future__ import annotations

import enum

from echcurl.config import Config


class TransportKind(enum.Enum):
    """The request engine for a run, decided once from the configuration."""

    NEGOTIATED = "negotiated"
    """HTTP/1.1 or HTTP/2, whichever ALPN settles on."""
    HTTP2 = "h2"
    HTTP3 = "h3"

    @classmethod
    def select(cls, config: Config) -> TransportKind:
        if config.force_http3:
            return cls.HTTP3
        if config.force_http2:
            return cls.HTTP2
        return cls.NEGOTIATED
