"""
Unit tests for DNS record verification.

WHY: A domain goes live only when all four records pass. Each check must
tolerate resolver failures (reporting "not verified" rather than raising)
and must not accept look-alike records.

HOW: The resolver's ``resolve`` method is replaced with a lookup table of
fake rdata objects, so no test touches the network.
"""

from types import SimpleNamespace

import dns.exception
import dns.resolver
import pytest

from quota_ledger.services.dns_verifier import DnsVerifier, expected_records


def mx(host: str):
    return SimpleNamespace(exchange=host)


def txt(*parts: str):
    return SimpleNamespace(strings=[p.encode() for p in parts])


def make_verifier(records: dict) -> DnsVerifier:
    verifier = DnsVerifier(mx_host="mx.mail.example.net", spf_include="spf.mail.example.net")

    def resolve(name, rdtype):
        try:
            return records[(name, rdtype)]
        except KeyError:
            raise dns.resolver.NXDOMAIN()

    verifier.resolver.resolve = resolve
    return verifier


PUBLISHED = {
    ("globex.example", "MX"): [mx("mx.mail.example.net.")],
    ("globex.example", "TXT"): [
        txt("google-site-verification=abc"),
        txt("v=spf1 mx include:spf.mail.example.net ~all"),
    ],
    ("dkim._domainkey.globex.example", "TXT"): [txt("v=DKIM1; k=rsa; ", "p=MIIBIjANBgkq")],
    ("_dmarc.globex.example", "TXT"): [txt("v=DMARC1; p=quarantine")],
}


@pytest.mark.asyncio
class TestIndividualChecks:
    """Each record class in isolation."""

    async def test_mx_trailing_dot_and_case_ignored(self):
        verifier = make_verifier({("globex.example", "MX"): [mx("MX.Mail.Example.Net.")]})

        check = await verifier.check_mx("globex.example")

        assert check.verified is True
        assert check.found == ["mx.mail.example.net"]

    async def test_mx_pointing_elsewhere(self):
        verifier = make_verifier({("globex.example", "MX"): [mx("aspmx.l.google.com.")]})

        check = await verifier.check_mx("globex.example")

        assert check.verified is False
        assert check.expected == "mx.mail.example.net"

    async def test_spf_requires_include(self):
        verifier = make_verifier({("globex.example", "TXT"): [txt("v=spf1 mx ~all")]})

        assert (await verifier.check_spf("globex.example")).verified is False

    async def test_dkim_joins_split_strings(self):
        verifier = make_verifier(PUBLISHED)

        check = await verifier.check_dkim("globex.example", "dkim")

        assert check.verified is True
        assert check.found == ["v=DKIM1; k=rsa; p=MIIBIjANBgkq"]

    async def test_dkim_without_key_rejected(self):
        verifier = make_verifier(
            {("dkim._domainkey.globex.example", "TXT"): [txt("v=DKIM1; k=rsa")]}
        )

        assert (await verifier.check_dkim("globex.example", "dkim")).verified is False

    async def test_dmarc_requires_policy(self):
        verifier = make_verifier({("_dmarc.globex.example", "TXT"): [txt("v=DMARC1")]})

        assert (await verifier.check_dmarc("globex.example")).verified is False

    async def test_nxdomain_is_not_verified(self):
        check = await make_verifier({}).check_mx("missing.example")

        assert check.verified is False
        assert check.found == []


@pytest.mark.asyncio
class TestVerifyAll:
    """The combined four-record verdict."""

    async def test_all_published(self):
        result = await make_verifier(PUBLISHED).verify_all("globex.example", "dkim")

        assert result.all_verified is True
        assert result.failing == []
        assert result.as_dict() == {"mx": True, "spf": True, "dkim": True, "dmarc": True}

    async def test_three_of_four_is_not_enough(self):
        records = dict(PUBLISHED)
        del records[("_dmarc.globex.example", "TXT")]

        result = await make_verifier(records).verify_all("globex.example", "dkim")

        assert result.all_verified is False
        assert result.failing == ["dmarc"]

    async def test_resolver_timeout_reported_per_record(self):
        verifier = make_verifier(PUBLISHED)

        def resolve(name, rdtype):
            raise dns.exception.Timeout()

        verifier.resolver.resolve = resolve

        result = await verifier.verify_all("globex.example", "dkim")
        assert result.failing == ["mx", "spf", "dkim", "dmarc"]


def test_expected_records_name_the_selector():
    records = expected_records("globex.example", "s1")

    assert records["dkim_record"].startswith("s1._domainkey.globex.example")
    assert records["spf_record"].startswith("v=spf1")
    assert set(records) == {"mx_record", "spf_record", "dkim_record", "dmarc_record"}
