"""
Parsed and validated command line configuration.

The `parse_*` helpers raise ValueError on invalid input; `Config.from_args`
turns those into ConfigError so that callers only need to handle one type.
"""

from __future__ import annotations

import argparse
import base64
import binascii
import ipaddress
import re
import struct
import urllib.parse
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field

from echcurl import exceptions
from echcurl.net import check
from echcurl.net import ech
from echcurl.net import tls

type IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
type Address = tuple[str, int]

EXPERIMENT_POST_QUANTUM = "pq"
EXPERIMENTS = frozenset({EXPERIMENT_POST_QUANTUM})

TLS_RANDOM_SIZE = 32

_tls_split_re = re.compile(r"^(?P<chunk>\d+):(?P<delay>\d+)$")


def _port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ValueError(f"invalid port {value!r}")
    if not check.is_valid_port(port):
        raise ValueError(f"invalid port {port}")
    return port


def normalize_ip(ip: IPAddress) -> IPAddress:
    """IPv4-mapped IPv6 addresses are returned in their 4-byte form."""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        return ip.ipv4_mapped
    return ip


def parse_connect_to(spec: str) -> tuple[Address, Address]:
    """
    Parses HOST1:PORT1:HOST2:PORT2.

    *Raises:*
     - ValueError, if the specification is invalid.
    """
    parts = spec.split(":", 3)
    if len(parts) != 4:
        raise ValueError(
            f"invalid connect-to format {spec}, expected HOST1:PORT1:HOST2:PORT2"
        )
    host1, port1, host2, port2 = parts
    return (host1.lower(), _port(port1)), (host2, _port(port2))


def parse_resolve(spec: str) -> tuple[str, list[IPAddress]]:
    """
    Parses [+]HOST:PORT:ADDR[,ADDR...]. The port is accepted but ignored,
    HOST may be `*` to match every host.

    *Raises:*
     - ValueError, if the specification is invalid.
    """
    parts = spec.removeprefix("+").split(":", 2)
    if len(parts) != 3:
        raise ValueError(f"invalid resolve format {spec}, expected HOST:PORT:ADDRS")
    host, _, addrs = parts
    ips: list[IPAddress] = []
    for a in addrs.split(","):
        a = a.strip().removeprefix("[").removesuffix("]")
        if not a:
            continue
        try:
            ips.append(normalize_ip(ipaddress.ip_address(a)))
        except ValueError:
            raise ValueError(f"invalid addr {a}")
    if not ips:
        raise ValueError(f"no addrs for {host}")
    return host.lower(), ips


def parse_tls_split(spec: str) -> tuple[int, int]:
    """Parses CHUNKSIZE:DELAY_MS."""
    m = _tls_split_re.match(spec)
    if not m:
        raise ValueError(f"invalid tls-split-hello format: {spec}, expected CHUNKSIZE:DELAY")
    return int(m.group("chunk")), int(m.group("delay"))


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64: {e}") from e


def parse_ech_config(value: str) -> list[ech.ECHConfig]:
    """Parses a base64-encoded ECHConfigList."""
    try:
        configs = ech.unpack_list(_b64decode(value))
    except struct.error as e:
        raise ValueError(f"invalid echconfig: {e}") from e
    if not configs:
        raise ValueError("invalid echconfig: no supported configurations")
    return configs


def parse_tls_random(value: str) -> bytes:
    raw = _b64decode(value)
    if len(raw) != TLS_RANDOM_SIZE:
        raise ValueError(
            f"invalid tls-random: expected {TLS_RANDOM_SIZE} bytes, got {len(raw)}"
        )
    return raw


def parse_experiments(specs: Sequence[str]) -> dict[str, str]:
    """Parses name[:value] experiment specifications."""
    ret = {}
    for spec in specs:
        name, _, value = spec.partition(":")
        if name not in EXPERIMENTS:
            raise ValueError(f"invalid experiment name: {name}")
        ret[name] = value
    return ret


def parse_dns_servers(spec: str) -> list[str]:
    return [x.strip() for x in spec.split(",") if x.strip()]


def parse_header(spec: str) -> tuple[str, str]:
    name, _, value = spec.partition(":")
    if not name.strip():
        raise ValueError(f"invalid header: {spec}")
    return name.strip(), value.strip()


def parse_url(url: str) -> urllib.parse.SplitResult:
    if "://" not in url:
        url = "http://" + url
    parsed = urllib.parse.urlsplit(url)
    if parsed.scheme not in ("http", "https", "ws", "wss"):
        raise ValueError(f"unsupported URL scheme: {parsed.scheme}")
    if not parsed.hostname:
        raise ValueError(f"invalid URL: {url}")
    # accessing .port validates it
    parsed.port
    return parsed


@dataclass
class Config:
    url: urllib.parse.SplitResult
    method: str = ""
    head: bool = False
    data: str | None = None
    headers: list[tuple[str, str]] = field(default_factory=list)
    proxy_url: str | None = None
    connect_to: dict[Address, Address] = field(default_factory=dict)
    insecure: bool = False
    tls_min_version: tls.Version = tls.DEFAULT_MIN_VERSION
    tls_max_version: tls.Version = tls.DEFAULT_MAX_VERSION
    ciphers: tuple[str, ...] | None = None
    tls_server_name: str | None = None
    tls_random: bytes | None = None
    force_http11: bool = False
    force_http2: bool = False
    force_http3: bool = False
    ech_enabled: bool = False
    ech_grease: bool = False
    ech_configs: list[ech.ECHConfig] = field(default_factory=list)
    resolve: dict[str, list[IPAddress]] = field(default_factory=dict)
    ipv4: bool = False
    ipv6: bool = False
    dns_servers: list[str] = field(default_factory=list)
    tls_split_chunk_size: int = 0
    tls_split_delay: int = 0
    connect_timeout: float | None = None
    output_path: str | None = None
    verbose: bool = False
    experiments: dict[str, str] = field(default_factory=dict)

    @property
    def ech(self) -> bool:
        return self.ech_enabled or bool(self.ech_configs)

    @property
    def post_quantum(self) -> bool:
        return EXPERIMENT_POST_QUANTUM in self.experiments

    @property
    def websocket(self) -> bool:
        return self.url.scheme in ("ws", "wss")

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> Config:
        """
        *Raises:*
         - ConfigError, if any option is invalid.
        """
        try:
            return cls._from_args(args)
        except ValueError as e:
            raise exceptions.ConfigError(str(e)) from e

    @classmethod
    def _from_args(cls, args: argparse.Namespace) -> Config:
        if args.ipv4 and args.ipv6:
            raise ValueError("-4 and -6 are mutually exclusive")
        if sum((args.http1_1, args.http2, args.http3)) > 1:
            raise ValueError("only one of --http1.1, --http2 and --http3 may be set")

        cfg = cls(
            url=parse_url(args.url),
            method=args.method or "",
            head=args.head,
            data=args.data,
            headers=[parse_header(h) for h in args.headers],
            proxy_url=args.proxy or None,
            insecure=args.insecure,
            tls_server_name=args.tls_servername or None,
            force_http11=args.http1_1,
            force_http2=args.http2,
            force_http3=args.http3,
            ech_enabled=args.ech,
            ech_grease=args.echgrease,
            ipv4=args.ipv4,
            ipv6=args.ipv6,
            output_path=args.output,
            verbose=bool(args.verbose),
        )

        for spec in args.connect_to:
            src, dst = parse_connect_to(spec)
            cfg.connect_to[src] = dst
        for spec in args.resolve:
            host, ips = parse_resolve(spec)
            cfg.resolve[host] = ips
        if args.dns_servers:
            cfg.dns_servers = parse_dns_servers(args.dns_servers)

        if args.tlsv1_2:
            cfg.tls_min_version = tls.Version.TLS1_2
        if args.tlsv1_3:
            cfg.tls_min_version = tls.Version.TLS1_3
        if args.tls_max:
            cfg.tls_max_version = tls.Version.from_str(args.tls_max)
        if args.ciphers:
            cfg.ciphers = tuple(x for x in re.split(r"[:,\s]+", args.ciphers) if x)
        if args.tls_random:
            cfg.tls_random = parse_tls_random(args.tls_random)
        if args.tls_split_hello:
            cfg.tls_split_chunk_size, cfg.tls_split_delay = parse_tls_split(
                args.tls_split_hello
            )
        if args.echconfig:
            cfg.ech_configs = parse_ech_config(args.echconfig)
        if args.experiment:
            cfg.experiments = parse_experiments(args.experiment)
        if args.connect_timeout is not None:
            if args.connect_timeout < 0:
                raise ValueError("connect-timeout must not be negative")
            cfg.connect_timeout = args.connect_timeout or None
        return cfg
