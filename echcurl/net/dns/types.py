A = 1
NS = 2
CNAME = 5
SOA = 6
PTR = 12
MX = 15
TXT = 16
AAAA = 28
SRV = 33
OPT = 41
SVCB = 64
HTTPS = 65
ANY = 255

_STRINGS = {
    A: "A",
    NS: "NS",
    CNAME: "CNAME",
    SOA: "SOA",
    PTR: "PTR",
    MX: "MX",
    TXT: "TXT",
    AAAA: "AAAA",
    SRV: "SRV",
    OPT: "OPT",
    SVCB: "SVCB",
    HTTPS: "HTTPS",
    ANY: "ANY",
}


def to_str(type_: int) -> str:
    return _STRINGS.get(type_, f"TYPE({type_})")
