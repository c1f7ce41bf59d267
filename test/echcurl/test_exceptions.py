from echcurl import exceptions


def test_resolution_error():
    e = exceptions.ResolutionError("lookup failed")
    assert str(e) == "lookup failed"
    assert e.errors == []

    e = exceptions.ResolutionError("lookup failed", [ValueError("a"), "b"])
    assert str(e) == "lookup failed: a; b"
    assert len(e.errors) == 2


def test_specialized_resolution_errors():
    assert str(exceptions.EmptyResponseError(["a", "b"])) == "empty response: a; b"
    assert str(exceptions.EmptyResponseError()) == "empty response"
    assert str(exceptions.NoResolversError()) == "no resolvers"
    assert isinstance(exceptions.InvalidResolverError("x"), exceptions.ResolutionError)


def test_dial_error():
    e = exceptions.DialError("refused", "direct", ("1.2.3.4", 443))
    assert str(e) == "direct 1.2.3.4:443: refused"
    assert e.stage == "direct"

    e = exceptions.DialError("ipv6 only", "socks5 proxy")
    assert str(e) == "socks5 proxy: ipv6 only"
    assert e.address is None

    assert str(exceptions.DialError("x", "proxy", ("::1", 80))) == "proxy [::1]:80: x"


def test_handshake_error():
    e = exceptions.HandshakeError("Certificate verify failed", "example.com")
    assert e.server_name == "example.com"
    assert str(e) == "Certificate verify failed"
    assert exceptions.HandshakeError("x").server_name is None


def test_hierarchy():
    for cls in (
        exceptions.ConfigError,
        exceptions.ResolutionError,
        exceptions.DialError,
        exceptions.HandshakeError,
        exceptions.ProtocolError,
    ):
        assert issubclass(cls, exceptions.EchcurlException)
