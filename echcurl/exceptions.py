"""
We use builtin exceptions where they fit and specialize where callers need to
tell failures apart. Every exception that might be externally visible to users
shall be a subclass of EchcurlException; lower-level causes (OSError, SSL.Error,
struct.error, ...) are chained with `raise ... from e`.
"""

from __future__ import annotations

from collections.abc import Sequence

from echcurl.utils import human


class EchcurlException(Exception):
    """
    Base class for all exceptions thrown by echcurl.
    """

    def __init__(self, message=None):
        super().__init__(message)


class ConfigError(EchcurlException):
    pass


class ResolutionError(EchcurlException):
    """
    A hostname could not be turned into addresses or ECH configurations.

    `errors` holds every failure collected while falling back through the upstreams.
    """

    def __init__(self, message: str, errors: Sequence[Exception | str] = ()):
        self.errors = list(errors)
        if self.errors:
            message = message + ": " + "; ".join(str(e) for e in self.errors)
        super().__init__(message)


class EmptyResponseError(ResolutionError):
    def __init__(self, errors: Sequence[Exception | str] = ()):
        super().__init__("empty response", errors)


class NoResolversError(ResolutionError):
    def __init__(self, errors: Sequence[Exception | str] = ()):
        super().__init__("no resolvers", errors)


class InvalidResolverError(ResolutionError):
    pass


class DialError(EchcurlException):
    def __init__(
        self,
        message: str,
        stage: str = "direct",
        address: tuple[str, int] | None = None,
    ):
        self.stage = stage
        self.address = address
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        if self.address is None:
            return f"{self.stage}: {self.message}"
        return f"{self.stage} {human.format_address(self.address)}: {self.message}"


class HandshakeError(EchcurlException):
    def __init__(self, message: str, server_name: str | None = None):
        self.server_name = server_name
        super().__init__(message)


class ProtocolError(EchcurlException):
    pass
