from __future__ import annotations

import logging
import sys
import time
from collections.abc import Sequence
from typing import TextIO

from echcurl import exceptions
from echcurl.client.request import Request
from echcurl.client.request import Response
from echcurl.client.request import new_request
from echcurl.client.transport import new_transport
from echcurl.config import Config
from echcurl.tools import cmdline
from echcurl.utils import human

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("* %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
    logging.getLogger("h2").setLevel(logging.WARNING)
    logging.getLogger("quic").setLevel(
        logging.WARNING
    )  # aioquic uses a different prefix...


def format_request(request: Request, out: TextIO) -> None:
    print(f"> {request.method} {request.target}", file=out)
    print(f"> Host: {request.header('Host') or request.authority}", file=out)
    for k, v in request.headers:
        if k.lower() != "host":
            print(f"> {k}: {v}", file=out)
    print(">", file=out)


def format_tls(response: Response, out: TextIO) -> None:
    if response.tls is None:
        return
    tls = response.tls
    print(
        f"* TLS: {tls.version}, cipher {tls.cipher or 'unknown'}, "
        f"ALPN {tls.alpn or 'none'}, server name {tls.server_name}, "
        f"ECH {'accepted' if tls.ech_accepted else 'not used'}",
        file=out,
    )
    if tls.peer_certificates:
        print(f"* Server certificate: {tls.peer_certificates[0].subject.rfc4514_string()}", file=out)


def format_head(response: Response, out: TextIO, prefix: str = "") -> None:
    status = f"{response.http_version} {response.status_code}"
    if response.reason:
        status += f" {response.reason}"
    print(f"{prefix}{status}", file=out)
    for k, v in response.headers:
        print(f"{prefix}{k}: {v}", file=out)


def run(config: Config) -> int:
    """
    Performs the request and writes the response.

    *Raises:*
     - EchcurlException, if the request fails.
    """
    request = new_request(config)
    transport = new_transport(config)
    try:
        if config.verbose:
            format_request(request, sys.stderr)
        start = time.monotonic()
        response = transport.round_trip(request)
        logger.debug(
            f"Received response in {human.pretty_duration(time.monotonic() - start)}"
        )
    finally:
        transport.close()

    if config.verbose:
        format_tls(response, sys.stderr)
        format_head(response, sys.stderr, prefix="< ")
    if config.head:
        format_head(response, sys.stdout)
        return 0

    if config.output_path:
        with open(config.output_path, "wb") as f:
            f.write(response.content)
    else:
        sys.stdout.buffer.write(response.content)
        sys.stdout.flush()
    return 0


def echcurl(args: Sequence[str] | None = None) -> int:  # pragma: no cover
    parser = cmdline.echcurl()
    options = parser.parse_args(args)
    setup_logging(bool(options.verbose))
    try:
        config = Config.from_args(options)
        return run(config)
    except exceptions.ConfigError as e:
        print(f"echcurl: {e}", file=sys.stderr)
        return 2
    except exceptions.EchcurlException as e:
        print(f"echcurl: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"echcurl: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover
    sys.exit(echcurl())
