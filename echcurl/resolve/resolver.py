from __future__ import annotations

import ipaddress
import logging
import struct
from collections.abc import Mapping
from collections.abc import Sequence

import h11
import mitmproxy_rs
from OpenSSL import SSL

from echcurl import exceptions
from echcurl.config import Config
from echcurl.config import IPAddress
from echcurl.config import normalize_ip
from echcurl.dns import DNSMessage
from echcurl.net import ech
from echcurl.net.dns import response_codes
from echcurl.net.dns import types
from echcurl.resolve.upstream import Upstream
from echcurl.resolve.upstream import address_to_upstream

logger = logging.getLogger(__name__)

WILDCARD = "*"

# Everything an upstream may raise for a single failed exchange.
_EXCHANGE_ERRORS = (OSError, ValueError, SSL.Error, h11.ProtocolError)


def system_upstreams() -> list[Upstream]:
    """
    Returns the operating system's name servers.

    *Raises:*
     - NoResolversError, if they cannot be determined.
    """
    try:
        servers = mitmproxy_rs.dns.get_system_dns_servers()
    except RuntimeError as e:
        raise exceptions.NoResolversError([e]) from e
    if not servers:
        raise exceptions.NoResolversError()
    return [address_to_upstream(s) for s in servers]


class Resolver:
    """
    Resolves hostnames to addresses and ECH configurations.

    Instances hold no per-lookup state and may be shared between threads.
    """

    def __init__(
        self,
        upstreams: Sequence[Upstream],
        overrides: Mapping[str, Sequence[IPAddress]] | None = None,
        *,
        ipv4_only: bool = False,
        ipv6_only: bool = False,
        ech_configs: Sequence[ech.ECHConfig] | None = None,
    ):
        if ipv4_only and ipv6_only:
            raise ValueError("ipv4_only and ipv6_only are mutually exclusive")
        self.upstreams = tuple(upstreams)
        self.overrides = {k.lower(): tuple(v) for k, v in (overrides or {}).items()}
        for host, addrs in self.overrides.items():
            if not addrs:
                raise ValueError(f"no addresses for {host}")
        self.ech_configs = tuple(ech_configs or ())
        if ipv4_only:
            self.query_types: tuple[int, ...] = (types.A,)
        elif ipv6_only:
            self.query_types = (types.AAAA,)
        else:
            self.query_types = (types.A, types.AAAA)

    @classmethod
    def from_config(cls, config: Config) -> Resolver:
        """
        *Raises:*
         - InvalidResolverError, if a configured DNS server cannot be used.
         - NoResolversError, if no DNS servers are configured and the system ones are unknown.
        """
        if config.dns_servers:
            upstreams = [address_to_upstream(s) for s in config.dns_servers]
        else:
            upstreams = system_upstreams()
        logger.debug(f"Using DNS upstreams: {', '.join(map(str, upstreams))}")
        return cls(
            upstreams,
            config.resolve,
            ipv4_only=config.ipv4,
            ipv6_only=config.ipv6,
            ech_configs=config.ech_configs,
        )

    def lookup_host(self, hostname: str) -> list[IPAddress]:
        """
        *Raises:*
         - EmptyResponseError, if no upstream returned any address.
        """
        try:
            return [normalize_ip(ipaddress.ip_address(hostname.strip("[]")))]
        except ValueError:
            pass

        for key in (hostname.lower(), WILDCARD):
            if key in self.overrides:
                logger.debug(f"Using resolve override for {hostname}")
                return list(self.overrides[key])

        addrs: list[IPAddress] = []
        errors: list[Exception | str] = []
        for qtype in self.query_types:
            try:
                response = self._query(hostname, qtype)
            except exceptions.ResolutionError as e:
                errors.extend(e.errors)
                continue
            for rr in response.answers_of_type(qtype):
                try:
                    if qtype == types.A:
                        addrs.append(rr.ipv4_address)
                    else:
                        addrs.append(normalize_ip(rr.ipv6_address))
                except ValueError as e:
                    errors.append(e)

        if not addrs:
            raise exceptions.EmptyResponseError(errors)
        logger.debug(f"Resolved {hostname} to {', '.join(map(str, addrs))}")
        return addrs

    def lookup_ech_configs(self, hostname: str) -> list[ech.ECHConfig]:
        """
        *Raises:*
         - EmptyResponseError, if no valid ECH configuration was found.
        """
        if self.ech_configs:
            return list(self.ech_configs)

        response = self._query(hostname, types.HTTPS)
        configs: list[ech.ECHConfig] = []
        errors: list[Exception | str] = []
        for rr in response.answers_of_type(types.HTTPS):
            try:
                ech_config_list = rr.https_ech
                if ech_config_list is None:
                    continue
                configs.extend(ech.unpack_list(ech_config_list))
            except struct.error as e:
                logger.debug(f"Skipping invalid ECH configuration for {hostname}: {e}")
                errors.append(e)

        if not configs:
            raise exceptions.EmptyResponseError(errors)
        return configs

    def _query(self, hostname: str, qtype: int) -> DNSMessage:
        """
        Tries every upstream in order and returns the first successful, non-empty response.

        *Raises:*
         - EmptyResponseError, with one entry per failed upstream.
        """
        errors: list[Exception | str] = []
        for upstream in self.upstreams:
            query = DNSMessage.query_for(hostname, qtype)
            try:
                response = upstream.exchange(query)
            except _EXCHANGE_ERRORS as e:
                logger.debug(f"{upstream} failed: {e}")
                errors.append(f"{upstream}: {e}")
                continue
            if response.response_code != response_codes.NOERROR:
                errors.append(
                    f"dns response {types.to_str(qtype)} code from {upstream}: "
                    f"{response_codes.to_str(response.response_code)}"
                )
                continue
            if not response.answers_of_type(qtype):
                errors.append(f"no {types.to_str(qtype)} resource records from {upstream}")
                continue
            return response
        raise exceptions.EmptyResponseError(errors)
