from __future__ import annotations

import base64
import os
import urllib.parse
from dataclasses import dataclass
from dataclasses import field

from echcurl import version
from echcurl.client.handshake import TlsState
from echcurl.config import Config

DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}
WEBSOCKET_VERSION = "13"


def _get(headers: list[tuple[str, str]], name: str) -> str | None:
    name = name.lower()
    for k, v in headers:
        if k.lower() == name:
            return v
    return None


@dataclass
class Request:
    method: str
    url: urllib.parse.SplitResult
    headers: list[tuple[str, str]] = field(default_factory=list)
    content: bytes = b""

    @property
    def scheme(self) -> str:
        """The scheme on the wire: WebSocket URLs are dialed as http and https."""
        return {"ws": "http", "wss": "https"}.get(self.url.scheme, self.url.scheme)

    @property
    def secure(self) -> bool:
        return self.scheme == "https"

    @property
    def host(self) -> str:
        assert self.url.hostname
        return self.url.hostname

    @property
    def port(self) -> int:
        return self.url.port or DEFAULT_PORTS[self.url.scheme]

    @property
    def authority(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.url.port is None:
            return host
        return f"{host}:{self.url.port}"

    @property
    def target(self) -> str:
        path = self.url.path or "/"
        if self.url.query:
            path += "?" + self.url.query
        return path

    def header(self, name: str) -> str | None:
        return _get(self.headers, name)


@dataclass
class Response:
    http_version: str
    status_code: int
    reason: str = ""
    headers: list[tuple[str, str]] = field(default_factory=list)
    content: bytes = b""
    tls: TlsState | None = None

    def header(self, name: str) -> str | None:
        return _get(self.headers, name)


def websocket_key() -> str:
    return base64.b64encode(os.urandom(16)).decode()


def new_request(config: Config) -> Request:
    """
    Builds the request from the command line options.

    The method is -X if given, otherwise HEAD for -I, POST for -d and GET for everything else.
    Headers given with -H take precedence over the ones we add.
    """
    if config.method:
        method = config.method
    elif config.head:
        method = "HEAD"
    elif config.data is not None:
        method = "POST"
    else:
        method = "GET"

    content = b""
    headers = list(config.headers)
    if config.data is not None:
        content = config.data.encode()
        if _get(headers, "Content-Type") is None:
            headers.append(("Content-Type", "application/x-www-form-urlencoded"))
    if _get(headers, "User-Agent") is None:
        headers.append(("User-Agent", version.USER_AGENT))
    if config.websocket:
        for name, value in (
            ("Connection", "Upgrade"),
            ("Upgrade", "websocket"),
            ("Sec-WebSocket-Version", WEBSOCKET_VERSION),
            ("Sec-WebSocket-Key", websocket_key()),
        ):
            if _get(headers, name) is None:
                headers.append((name, value))

    return Request(method=method.upper(), url=config.url, headers=headers, content=content)
