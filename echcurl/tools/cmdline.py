import argparse

from echcurl import version


def request_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("Request")
    group.add_argument(
        "-X",
        "--request",
        dest="method",
        metavar="METHOD",
        help="HTTP method. Defaults to GET, HEAD with -I and POST with -d.",
    )
    group.add_argument(
        "-d",
        "--data",
        dest="data",
        metavar="DATA",
        help="Sends the specified data in a POST request as application/x-www-form-urlencoded.",
    )
    group.add_argument(
        "-H",
        "--header",
        dest="headers",
        action="append",
        default=[],
        metavar="'NAME: VALUE'",
        help="Extra header to include in the request. Can be specified multiple times.",
    )
    group.add_argument(
        "-I", "--head", dest="head", action="store_true", help="Fetch the headers only."
    )
    group.add_argument(
        "-o",
        "--output",
        dest="output",
        metavar="FILE",
        help="Write the response body to FILE instead of stdout.",
    )


def connection_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("Connection")
    group.add_argument(
        "-x",
        "--proxy",
        dest="proxy",
        metavar="[PROTOCOL://][USER:PASSWORD@]HOST[:PORT]",
        help="Use the specified proxy. Supported protocols: http, https, socks5, socks5h.",
    )
    group.add_argument(
        "--connect-to",
        dest="connect_to",
        action="append",
        default=[],
        metavar="HOST1:PORT1:HOST2:PORT2",
        help="Connect to HOST2:PORT2 whenever a request targets HOST1:PORT1. Can be specified multiple times.",
    )
    group.add_argument(
        "--resolve",
        dest="resolve",
        action="append",
        default=[],
        metavar="[+]HOST:PORT:ADDR[,ADDR]...",
        help="Use the given addresses for HOST instead of DNS. HOST may be '*'. Can be specified multiple times.",
    )
    group.add_argument(
        "--dns-servers",
        dest="dns_servers",
        metavar="ADDR[,ADDR]...",
        help="""
            DNS servers to use instead of the system ones. Supports plain DNS,
            tls://, https://, quic:// and sdns:// stamps.
        """,
    )
    group.add_argument(
        "-4", "--ipv4", dest="ipv4", action="store_true", help="Resolve names to IPv4 addresses only."
    )
    group.add_argument(
        "-6", "--ipv6", dest="ipv6", action="store_true", help="Resolve names to IPv6 addresses only."
    )
    group.add_argument(
        "--connect-timeout",
        dest="connect_timeout",
        type=float,
        metavar="SECONDS",
        help="Maximum time allowed for establishing a connection.",
    )
    group.add_argument(
        "--tls-split-hello",
        dest="tls_split_hello",
        metavar="CHUNKSIZE:DELAY",
        help="Split the TLS ClientHello into two writes, the first CHUNKSIZE bytes long, DELAY milliseconds apart.",
    )


def tls_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("TLS")
    group.add_argument(
        "-k",
        "--insecure",
        dest="insecure",
        action="store_true",
        help="Do not verify the server certificate.",
    )
    group.add_argument(
        "--tlsv1.2", dest="tlsv1_2", action="store_true", help="Use TLS 1.2 or newer."
    )
    group.add_argument(
        "--tlsv1.3", dest="tlsv1_3", action="store_true", help="Use TLS 1.3 or newer."
    )
    group.add_argument(
        "--tls-max",
        dest="tls_max",
        choices=["1.2", "1.3"],
        help="Maximum TLS version.",
    )
    group.add_argument(
        "--ciphers",
        dest="ciphers",
        metavar="LIST",
        help="OpenSSL cipher names to use, separated by colons, commas or spaces.",
    )
    group.add_argument(
        "--tls-servername",
        dest="tls_servername",
        metavar="NAME",
        help="Server name to send in the ClientHello instead of the URL host.",
    )
    group.add_argument(
        "--tls-random",
        dest="tls_random",
        metavar="BASE64",
        help="Base64-encoded 32 bytes to use as the ClientHello random.",
    )
    group.add_argument(
        "--ech",
        dest="ech",
        action="store_true",
        help="Enable Encrypted ClientHello. The configuration is looked up in the HTTPS DNS record.",
    )
    group.add_argument(
        "--echgrease",
        dest="echgrease",
        action="store_true",
        help="Send a GREASE ECH extension.",
    )
    group.add_argument(
        "--echconfig",
        dest="echconfig",
        metavar="BASE64",
        help="Base64-encoded ECHConfigList to use. Implies --ech.",
    )


def protocol_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("Protocol")
    ex = group.add_mutually_exclusive_group()
    ex.add_argument(
        "--http1.1", dest="http1_1", action="store_true", help="Force HTTP/1.1."
    )
    ex.add_argument("--http2", dest="http2", action="store_true", help="Force HTTP/2.")
    ex.add_argument(
        "--http3", dest="http3", action="store_true", help="Force HTTP/3 over QUIC."
    )
    group.add_argument(
        "--experiment",
        dest="experiment",
        action="append",
        default=[],
        metavar="NAME[:VALUE]",
        help="Enable an experimental feature. Known experiments: pq (post-quantum key exchange).",
    )


def echcurl() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="echcurl",
        description="A curl-like HTTP client with ECH, encrypted DNS and QUIC support.",
    )
    parser.add_argument("url", metavar="URL", help="The URL to request.")
    parser.add_argument(
        "--version", action="version", version=version.ECHCURL
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_const",
        dest="verbose",
        const="debug",
        help="Increase log verbosity.",
    )
    request_options(parser)
    connection_options(parser)
    tls_options(parser)
    protocol_options(parser)
    return parser
