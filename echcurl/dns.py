from __future__ import annotations

import itertools
import random
import struct
from dataclasses import dataclass
from dataclasses import field
from ipaddress import IPv4Address
from ipaddress import IPv6Address
from typing import ClassVar

from echcurl.net.dns import classes
from echcurl.net.dns import domain_names
from echcurl.net.dns import https_records
from echcurl.net.dns import response_codes
from echcurl.net.dns import types
from echcurl.net.dns.https_records import HTTPSRecord

# DNS parameters taken from https://www.iana.org/assignments/dns-parameters/dns-parameters.xml


@dataclass
class Question:
    HEADER: ClassVar[struct.Struct] = struct.Struct("!HH")

    name: str
    type: int
    class_: int = classes.IN

    def __str__(self) -> str:
        return f"{self.name} {classes.to_str(self.class_)} {types.to_str(self.type)}"


@dataclass
class ResourceRecord:
    DEFAULT_TTL: ClassVar[int] = 60
    HEADER: ClassVar[struct.Struct] = struct.Struct("!HHIH")

    name: str
    type: int
    class_: int
    ttl: int
    data: bytes

    def __str__(self) -> str:
        try:
            match self.type:
                case types.A:
                    value = str(self.ipv4_address)
                case types.AAAA:
                    value = str(self.ipv6_address)
                case types.CNAME | types.NS | types.PTR:
                    value = self.domain_name
                case _:
                    value = f"0x{self.data.hex()}"
        except (ValueError, struct.error):
            value = f"0x{self.data.hex()} (invalid {types.to_str(self.type)} data)"
        return f"{self.name} {self.ttl} {types.to_str(self.type)} {value}"

    @property
    def ipv4_address(self) -> IPv4Address:
        return IPv4Address(self.data)

    @property
    def ipv6_address(self) -> IPv6Address:
        return IPv6Address(self.data)

    @property
    def domain_name(self) -> str:
        name, length = domain_names.unpack_from(self.data, 0)
        if length != len(self.data):
            raise struct.error(f"unpack requires a buffer of {length} bytes")
        return name

    @property
    def https_record(self) -> HTTPSRecord:
        """
        Raises:
            struct.error, if this is not a well-formed HTTPS/SVCB record.
        """
        return https_records.unpack(self.data)

    @property
    def https_ech(self) -> bytes | None:
        """The raw ECHConfigList carried in the `ech` SvcParam, if any."""
        return self.https_record.ech

    @classmethod
    def A(cls, name: str, ip: IPv4Address, *, ttl: int = DEFAULT_TTL) -> ResourceRecord:
        """Create an IPv4 resource record."""
        return cls(name, types.A, classes.IN, ttl, ip.packed)

    @classmethod
    def AAAA(
        cls, name: str, ip: IPv6Address, *, ttl: int = DEFAULT_TTL
    ) -> ResourceRecord:
        """Create an IPv6 resource record."""
        return cls(name, types.AAAA, classes.IN, ttl, ip.packed)

    @classmethod
    def CNAME(
        cls, alias: str, canonical: str, *, ttl: int = DEFAULT_TTL
    ) -> ResourceRecord:
        return cls(alias, types.CNAME, classes.IN, ttl, domain_names.pack(canonical))

    @classmethod
    def HTTPS(
        cls, name: str, record: HTTPSRecord, *, ttl: int = DEFAULT_TTL
    ) -> ResourceRecord:
        return cls(name, types.HTTPS, classes.IN, ttl, https_records.pack(record))


# comments are taken from rfc1035
@dataclass
class DNSMessage:
    HEADER: ClassVar[struct.Struct] = struct.Struct("!HHHHHH")

    id: int
    """An identifier assigned by the program that generates any kind of query."""
    query: bool
    """A field that specifies whether this message is a query."""
    op_code: int
    authoritative_answer: bool
    truncation: bool
    """Specifies that this message was truncated due to length greater than that permitted on the transmission channel."""
    recursion_desired: bool
    recursion_available: bool
    reserved: int
    response_code: int
    questions: list[Question] = field(default_factory=list)
    answers: list[ResourceRecord] = field(default_factory=list)
    authorities: list[ResourceRecord] = field(default_factory=list)
    additionals: list[ResourceRecord] = field(default_factory=list)

    def __str__(self) -> str:
        return "\r\n".join(
            map(
                str,
                itertools.chain(
                    self.questions, self.answers, self.authorities, self.additionals
                ),
            )
        )

    @classmethod
    def query_for(cls, name: str, type: int, id: int | None = None) -> DNSMessage:
        """Create a recursive query for a single name and record type."""
        return cls(
            id=random.randint(0, 65535) if id is None else id,
            query=True,
            op_code=0,
            authoritative_answer=False,
            truncation=False,
            recursion_desired=True,
            recursion_available=False,
            reserved=0,
            response_code=response_codes.NOERROR,
            questions=[Question(name.rstrip("."), type, classes.IN)],
        )

    @property
    def question(self) -> Question | None:
        """DNS practically only supports a single question at the
        same time, so this is a shorthand for this."""
        if len(self.questions) == 1:
            return self.questions[0]
        return None

    def answers_of_type(self, type: int) -> list[ResourceRecord]:
        return [rr for rr in self.answers if rr.type == type]

    def succeed(self, answers: list[ResourceRecord]) -> DNSMessage:
        return DNSMessage(
            id=self.id,
            query=False,
            op_code=self.op_code,
            authoritative_answer=False,
            truncation=False,
            recursion_desired=self.recursion_desired,
            recursion_available=True,
            reserved=0,
            response_code=response_codes.NOERROR,
            questions=self.questions,
            answers=answers,
        )

    def fail(self, response_code: int) -> DNSMessage:
        if response_code == response_codes.NOERROR:
            raise ValueError("response_code must be an error code.")
        resp = self.succeed([])
        resp.recursion_available = False
        resp.response_code = response_code
        return resp

    @classmethod
    def unpack(cls, buffer: bytes) -> DNSMessage:
        """Converts the entire given buffer into a DNS message."""
        length, msg = cls.unpack_from(buffer, 0)
        if length != len(buffer):
            raise struct.error(f"unpack requires a buffer of {length} bytes")
        return msg

    @classmethod
    def unpack_from(cls, buffer: bytes, offset: int) -> tuple[int, DNSMessage]:
        """Converts the buffer from a given offset into a DNS message and also returns its length."""
        (
            id,
            flags,
            len_questions,
            len_answers,
            len_authorities,
            len_additionals,
        ) = DNSMessage.HEADER.unpack_from(buffer, offset)
        msg = DNSMessage(
            id=id,
            query=(flags & (1 << 15)) == 0,
            op_code=(flags >> 11) & 0b1111,
            authoritative_answer=(flags & (1 << 10)) != 0,
            truncation=(flags & (1 << 9)) != 0,
            recursion_desired=(flags & (1 << 8)) != 0,
            recursion_available=(flags & (1 << 7)) != 0,
            reserved=(flags >> 4) & 0b111,
            response_code=flags & 0b1111,
        )
        offset += DNSMessage.HEADER.size
        cached_names = domain_names.cache()

        def unpack_domain_name() -> str:
            nonlocal offset
            name, length = domain_names.unpack_from_with_compression(
                buffer, offset, cached_names
            )
            offset += length
            return name

        for i in range(len_questions):
            try:
                name = unpack_domain_name()
                type, class_ = Question.HEADER.unpack_from(buffer, offset)
                offset += Question.HEADER.size
                msg.questions.append(Question(name=name, type=type, class_=class_))
            except struct.error as e:
                raise struct.error(f"question #{i}: {e}")

        def unpack_rrs(
            section: list[ResourceRecord], section_name: str, count: int
        ) -> None:
            nonlocal offset
            for i in range(count):
                try:
                    name = unpack_domain_name()
                    type, class_, ttl, len_data = ResourceRecord.HEADER.unpack_from(
                        buffer, offset
                    )
                    offset += ResourceRecord.HEADER.size
                    end_data = offset + len_data
                    if len(buffer) < end_data:
                        raise struct.error(
                            f"unpack requires a data buffer of {len_data} bytes"
                        )
                    section.append(
                        ResourceRecord(name, type, class_, ttl, buffer[offset:end_data])
                    )
                    offset = end_data
                except struct.error as e:
                    raise struct.error(f"{section_name} #{i}: {e}")

        unpack_rrs(msg.answers, "answer", len_answers)
        unpack_rrs(msg.authorities, "authority", len_authorities)
        unpack_rrs(msg.additionals, "additional", len_additionals)
        return offset, msg

    @property
    def packed(self) -> bytes:
        """Converts the message into network bytes."""
        if self.id < 0 or self.id > 65535:
            raise ValueError(f"DNS message's id {self.id} is out of bounds.")
        flags = 0
        if not self.query:
            flags |= 1 << 15
        if self.op_code < 0 or self.op_code > 0b1111:
            raise ValueError(f"DNS message's op_code {self.op_code} is out of bounds.")
        flags |= self.op_code << 11
        if self.authoritative_answer:
            flags |= 1 << 10
        if self.truncation:
            flags |= 1 << 9
        if self.recursion_desired:
            flags |= 1 << 8
        if self.recursion_available:
            flags |= 1 << 7
        flags |= (self.reserved & 0b111) << 4
        if self.response_code < 0 or self.response_code > 0b1111:
            raise ValueError(
                f"DNS message's response_code {self.response_code} is out of bounds."
            )
        flags |= self.response_code
        data = bytearray(
            DNSMessage.HEADER.pack(
                self.id,
                flags,
                len(self.questions),
                len(self.answers),
                len(self.authorities),
                len(self.additionals),
            )
        )
        for question in self.questions:
            data.extend(domain_names.pack(question.name))
            data.extend(Question.HEADER.pack(question.type, question.class_))
        for rr in (*self.answers, *self.authorities, *self.additionals):
            data.extend(domain_names.pack(rr.name))
            data.extend(
                ResourceRecord.HEADER.pack(rr.type, rr.class_, rr.ttl, len(rr.data))
            )
            data.extend(rr.data)
        return bytes(data)
