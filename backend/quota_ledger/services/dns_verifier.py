"""
DNS record checks for hosted mail domains.

WHAT: Read-only MX/TXT lookups that decide whether a customer published the
four records the platform needs (MX, SPF, DKIM, DMARC).

WHY: A domain only goes live when mail will actually route to us and pass
authentication checks at receivers. Each record class is checked
independently so the customer sees exactly which one is missing.

HOW: dnspython's blocking resolver runs in a worker thread
(``asyncio.to_thread``) with ``lifetime`` bounding each lookup. Any
resolver exception (NXDOMAIN, NoAnswer, timeout) counts as "not verified";
nothing here raises.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List

import dns.exception
import dns.resolver

from quota_ledger.core.config import settings

logger = logging.getLogger(__name__)


RECORD_CLASSES = ("mx", "spf", "dkim", "dmarc")


@dataclass
class RecordCheck:
    """Outcome of one record class check."""

    verified: bool
    found: List[str] = field(default_factory=list)
    expected: str = ""


@dataclass
class DnsCheckResult:
    """Outcome of all four checks for a domain."""

    mx: RecordCheck
    spf: RecordCheck
    dkim: RecordCheck
    dmarc: RecordCheck

    @property
    def all_verified(self) -> bool:
        return all(getattr(self, name).verified for name in RECORD_CLASSES)

    @property
    def failing(self) -> List[str]:
        return [name for name in RECORD_CLASSES if not getattr(self, name).verified]

    def as_dict(self) -> Dict[str, bool]:
        return {name: getattr(self, name).verified for name in RECORD_CLASSES}


def _normalize_host(host: str) -> str:
    return host.strip().rstrip(".").lower()


class DnsVerifier:
    """
    Verifies a domain's mail DNS records against platform expectations.

    Args:
        mx_host: Host the domain's MX must point to
        spf_include: Host that must appear as ``include:`` in SPF
        timeout: Per-lookup lifetime in seconds
    """

    def __init__(
        self,
        mx_host: str,
        spf_include: str,
        timeout: float = 5.0,
    ):
        self.mx_host = _normalize_host(mx_host)
        self.spf_include = spf_include.lower()
        self.resolver = dns.resolver.Resolver()
        self.resolver.lifetime = timeout
        self.resolver.timeout = timeout

    # ------------------------------------------------------------------
    # Lookups (blocking; run in a thread)
    # ------------------------------------------------------------------

    def _lookup_mx(self, name: str) -> List[str]:
        answer = self.resolver.resolve(name, "MX")
        return [_normalize_host(str(rdata.exchange)) for rdata in answer]

    def _lookup_txt(self, name: str) -> List[str]:
        answer = self.resolver.resolve(name, "TXT")
        records = []
        for rdata in answer:
            # Long TXT records arrive as several character-strings.
            records.append(
                "".join(
                    part.decode() if isinstance(part, bytes) else str(part)
                    for part in rdata.strings
                )
            )
        return records

    async def _safe_lookup(self, lookup, name: str) -> List[str]:
        try:
            return await asyncio.to_thread(lookup, name)
        except dns.exception.DNSException as e:
            logger.debug(
                f"DNS lookup for {name} failed: {e.__class__.__name__}",
                extra={"dns_name": name},
            )
            return []

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_mx(self, domain_name: str) -> RecordCheck:
        exchanges = await self._safe_lookup(self._lookup_mx, domain_name)
        return RecordCheck(
            verified=self.mx_host in exchanges,
            found=exchanges,
            expected=self.mx_host,
        )

    async def check_spf(self, domain_name: str) -> RecordCheck:
        records = await self._safe_lookup(self._lookup_txt, domain_name)
        spf = [r for r in records if r.lower().startswith("v=spf1")]
        needle = f"include:{self.spf_include}"
        return RecordCheck(
            verified=any(needle in r.lower() for r in spf),
            found=spf,
            expected=needle,
        )

    async def check_dkim(self, domain_name: str, selector: str) -> RecordCheck:
        name = f"{selector}._domainkey.{domain_name}"
        records = await self._safe_lookup(self._lookup_txt, name)

        def valid(record: str) -> bool:
            lowered = record.lower().replace(" ", "")
            return lowered.startswith("v=dkim1") and "k=rsa" in lowered and "p=" in lowered

        return RecordCheck(
            verified=any(valid(r) for r in records),
            found=records,
            expected=name,
        )

    async def check_dmarc(self, domain_name: str) -> RecordCheck:
        name = f"_dmarc.{domain_name}"
        records = await self._safe_lookup(self._lookup_txt, name)

        def valid(record: str) -> bool:
            lowered = record.lower().replace(" ", "")
            return lowered.startswith("v=dmarc1") and "p=" in lowered

        return RecordCheck(
            verified=any(valid(r) for r in records),
            found=records,
            expected=name,
        )

    async def verify_all(self, domain_name: str, dkim_selector: str) -> DnsCheckResult:
        """
        Run all four checks concurrently.

        Returns:
            DnsCheckResult; ``all_verified`` is True only if every check passed
        """
        mx, spf, dkim, dmarc = await asyncio.gather(
            self.check_mx(domain_name),
            self.check_spf(domain_name),
            self.check_dkim(domain_name, dkim_selector),
            self.check_dmarc(domain_name),
        )
        result = DnsCheckResult(mx=mx, spf=spf, dkim=dkim, dmarc=dmarc)
        logger.info(
            f"DNS checks for {domain_name}: {result.as_dict()}",
            extra={"domain_name": domain_name, "all_verified": result.all_verified},
        )
        return result


def expected_records(domain_name: str, dkim_selector: str) -> Dict[str, str]:
    """
    Records the customer must publish, as shown after domain creation.

    The DKIM value is a placeholder until the mail host issues the key.
    """
    return {
        "mx_record": settings.MAIL_MX_HOST,
        "spf_record": f"v=spf1 mx include:{settings.MAIL_SPF_INCLUDE} ~all",
        "dkim_record": f"{dkim_selector}._domainkey.{domain_name} TXT (pending key issuance)",
        "dmarc_record": settings.DMARC_POLICY_RECORD,
    }


def create_dns_verifier() -> DnsVerifier:
    """Create a verifier from application settings."""
    return DnsVerifier(
        mx_host=settings.MAIL_MX_HOST,
        spf_include=settings.MAIL_SPF_INCLUDE,
        timeout=settings.DNS_TIMEOUT_SECONDS,
    )
