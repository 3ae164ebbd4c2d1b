"""DNS probe: query the team's server for a configured A or MX record."""

import random
from dataclasses import dataclass, field

import dns.exception
import dns.message
import dns.query
import dns.rdatatype

from ccdc_scoring.checks.base import Service

SUPPORTED_KINDS = ("A", "MX")


@dataclass
class DnsRecord:
    kind: str = "A"
    domain: str = ""
    answer: list = field(default_factory=list)


@dataclass
class Dns(Service):
    record: list = field(default_factory=list)

    service_type = "Dns"
    default_port = 53
    nested = {"record": DnsRecord}

    def validate(self):
        if not self.record:
            raise ValueError(f"dns check {self.name} has no records")
        for r in self.record:
            r.kind = r.kind.upper()
            if r.kind not in SUPPORTED_KINDS:
                raise ValueError(f"dns record kind {r.kind!r} is not one of {SUPPORTED_KINDS}")
            if not r.domain:
                raise ValueError(f"dns check {self.name} has a record without a domain")

    def check(self, target, team_identifier, round_id):
        record = random.choice(self.record)
        fqdn = record.domain.replace("_", team_identifier)
        if not fqdn.endswith("."):
            fqdn += "."
        expected = [a.replace("_", team_identifier) for a in record.answer]

        query = dns.message.make_query(fqdn, dns.rdatatype.from_text(record.kind))
        try:
            response = dns.query.udp(query, target, timeout=self.timeout, port=self.port)
        except dns.exception.Timeout:
            return self.fail("error sending query", f"record {record.domain}: query timed out")
        except (dns.exception.DNSException, OSError) as e:
            return self.fail("error sending query", f"record {record.domain}: {e}")

        received = []
        for rrset in response.answer:
            for rdata in rrset:
                if rdata.rdtype == dns.rdatatype.A:
                    received.append(rdata.address)
                elif rdata.rdtype == dns.rdatatype.MX:
                    received.append(rdata.exchange.to_text().rstrip("."))
        if not received:
            return self.fail("no records received", f"record {record.domain} -> {record.answer}")

        for answer in received:
            if answer in expected:
                return self.ok(
                    f"record {record.domain} returned {answer}. acceptable answers were: {record.answer}"
                )
        return self.fail(
            "incorrect answer(s) received from DNS",
            f"record {record.domain} -> acceptable answers were: {record.answer}, received {received}",
        )
