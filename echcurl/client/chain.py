from __future__ import annotations

from collections.abc import Mapping
from typing import Self

from echcurl.client.connect_to import ConnectTo
from echcurl.client.dialer import Dialer
from echcurl.client.dialer import Direct
from echcurl.client.proxy import Proxy
from echcurl.client.split_tls import TlsSplit
from echcurl.config import Config
from echcurl.net.connection import Address
from echcurl.resolve.resolver import Resolver


class ChainBuilder:
    """
    Collects the optional dialer stages and composes them in a fixed order,
    Direct inside Proxy inside ConnectTo inside TlsSplit, whatever order they were added in.
    """

    def __init__(self, resolver: Resolver, connect_timeout: float | None = None):
        self.resolver = resolver
        self.connect_timeout = connect_timeout
        self._proxy_url: str | None = None
        self._connect_to: dict[Address, Address] = {}
        self._split: tuple[int, int] | None = None

    @classmethod
    def from_config(cls, config: Config, resolver: Resolver) -> Self:
        builder = cls(resolver, config.connect_timeout)
        if config.proxy_url:
            builder.proxy(config.proxy_url)
        if config.connect_to:
            builder.connect_to(config.connect_to)
        if config.tls_split_chunk_size > 0:
            builder.tls_split(config.tls_split_chunk_size, config.tls_split_delay)
        return builder

    def proxy(self, url: str) -> Self:
        self._proxy_url = url
        return self

    def connect_to(self, mapping: Mapping[Address, Address]) -> Self:
        self._connect_to.update(mapping)
        return self

    def tls_split(self, chunk_size: int, delay_ms: int = 0) -> Self:
        self._split = (chunk_size, delay_ms)
        return self

    def build(self) -> Dialer:
        """
        *Raises:*
         - ConfigError, if the proxy URL is invalid.
        """
        dialer: Dialer = Direct(self.resolver, self.connect_timeout)
        if self._proxy_url:
            dialer = Proxy(
                self._proxy_url, dialer, self.resolver, self.connect_timeout
            )
        if self._connect_to:
            dialer = ConnectTo(self._connect_to, dialer)
        if self._split is not None and self._split[0] > 0:
            dialer = TlsSplit(dialer, *self._split)
        return dialer
