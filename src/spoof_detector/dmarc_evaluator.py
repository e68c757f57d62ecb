"""DMARC record discovery, tag parser, and identifier-alignment evaluator (RFC 7489)."""

import logging
import re
from typing import Optional

from publicsuffixlist import PublicSuffixList

from .dns_fetcher import DnsFetcher
from .exceptions import DmarcParseError, InvalidDomainError
from .models import (
    AlignmentMode,
    DkimStatus,
    DmarcDiscovery,
    DmarcEvaluation,
    DmarcPolicy,
    DmarcRecord,
    DnsStatus,
    DomainName,
    SpfEvaluation,
    SpfResultCode,
)

logger = logging.getLogger(__name__)

_DMARC_VERSION = re.compile(r"^v\s*=\s*DMARC1\s*(;|$)", re.IGNORECASE)
_TEMPORARY = (DnsStatus.TIMEOUT, DnsStatus.SERVFAIL, DnsStatus.REFUSED)

_psl: Optional[PublicSuffixList] = None


def organizational_domain(domain: str) -> str:
    """Registrable root of DOMAIN per the Public Suffix List; a public suffix is its own root."""
    global _psl
    if _psl is None:
        _psl = PublicSuffixList()
    name = DomainName.parse(domain).value
    return _psl.privatesuffix(name) or name


def is_aligned(identifier: str, from_domain: str, mode: AlignmentMode) -> bool:
    try:
        identifier = DomainName.parse(identifier).value
        from_domain = DomainName.parse(from_domain).value
    except InvalidDomainError:
        return False
    if mode is AlignmentMode.STRICT:
        return identifier == from_domain
    return organizational_domain(identifier) == organizational_domain(from_domain)


# ── Parsing ────────────────────────────────────────────────────────────────────

def parse_dmarc_record(raw: str) -> DmarcRecord:
    tags = _parse_tags(raw)

    policy = _parse_policy(tags.get("p"))
    if policy is None:
        # RFC 7489 6.6.3: a record with a usable rua= but a bad p= is applied as p=none
        if not tags.get("rua"):
            raise DmarcParseError(f"Missing or invalid p= in {raw!r}")
        policy = DmarcPolicy.NONE

    return DmarcRecord(
        raw=raw,
        policy=policy,
        subdomain_policy=_parse_policy(tags.get("sp")),
        adkim=_parse_alignment(tags.get("adkim")),
        aspf=_parse_alignment(tags.get("aspf")),
        pct=_parse_pct(tags.get("pct", "100")),
        rua=_parse_addresses(tags.get("rua", "")),
        ruf=_parse_addresses(tags.get("ruf", "")),
        fo=tags.get("fo"),
    )


def _parse_tags(record: str) -> dict:
    """Split on ; and extract tag=value pairs."""
    tags = {}
    for part in record.split(";"):
        part = part.strip()
        if not part:
            continue
        if "=" in part:
            key, _, value = part.partition("=")
            tags[key.strip().lower()] = value.strip()
    return tags


def _parse_policy(value: Optional[str]) -> Optional[DmarcPolicy]:
    if not value:
        return None
    mapping = {
        "none": DmarcPolicy.NONE,
        "quarantine": DmarcPolicy.QUARANTINE,
        "reject": DmarcPolicy.REJECT,
    }
    return mapping.get(value.lower().strip())


def _parse_alignment(value: Optional[str]) -> AlignmentMode:
    if value and value.strip().lower() == "s":
        return AlignmentMode.STRICT
    return AlignmentMode.RELAXED


def _parse_addresses(value: str) -> tuple:
    """Parse comma-separated mailto: addresses."""
    result = []
    for addr in value.split(","):
        addr = addr.strip()
        if addr.lower().startswith("mailto:"):
            result.append(addr[7:].strip())
        elif addr:
            result.append(addr)
    return tuple(result)


def _parse_pct(value: str) -> int:
    try:
        return max(0, min(100, int(value)))
    except (ValueError, TypeError):
        return 100


# ── Evaluator ──────────────────────────────────────────────────────────────────

class DmarcEvaluator:
    def __init__(self, fetcher: DnsFetcher):
        self._fetcher = fetcher

    async def discover(self, domain: str) -> DmarcDiscovery:
        """Find the policy record for DOMAIN, falling back to its organizational domain."""
        domain = DomainName.parse(domain).value
        org_domain = organizational_domain(domain)

        record, temperror = await self._lookup(domain)
        if record is None and not temperror and org_domain != domain:
            record, temperror = await self._lookup(org_domain)
            record_domain = org_domain
        else:
            record_domain = domain

        return DmarcDiscovery(
            domain=domain,
            organizational_domain=org_domain,
            record=record,
            record_domain=record_domain if record else None,
            temperror=temperror and record is None,
        )

    async def evaluate(
        self,
        from_domain: str,
        spf: SpfEvaluation,
        spf_domain: Optional[str],
        dkim_results,
    ) -> DmarcEvaluation:
        discovery = await self.discover(from_domain)
        return evaluate_alignment(discovery, spf, spf_domain, dkim_results)

    async def _lookup(self, domain: str) -> tuple:
        """Returns (DmarcRecord | None, temperror)."""
        dmarc_domain = f"_dmarc.{domain}"
        try:
            response = await self._fetcher.query(dmarc_domain, "TXT")
        except InvalidDomainError as e:
            logger.info("No DMARC lookup for %s: %s", dmarc_domain, e)
            return None, False

        if response.status in _TEMPORARY:
            logger.warning("DMARC lookup for %s failed: %s", dmarc_domain, response.status.value)
            return None, True
        if response.status == DnsStatus.NXDOMAIN or not response.records:
            return None, False

        candidates = [v.strip() for v in response.values if _DMARC_VERSION.match(v.strip())]
        if len(candidates) != 1:
            if candidates:
                logger.info("%d DMARC records at %s; treating as absent", len(candidates), dmarc_domain)
            return None, False

        try:
            return parse_dmarc_record(candidates[0]), False
        except DmarcParseError as e:
            logger.info("Ignoring DMARC record at %s: %s", dmarc_domain, e)
            return None, False


def effective_policy(discovery: DmarcDiscovery) -> DmarcPolicy:
    """sp= governs a subdomain whose record was inherited from the organizational domain."""
    record = discovery.record
    if record is None:
        return DmarcPolicy.NONE
    if discovery.record_domain != discovery.domain and record.subdomain_policy is not None:
        return record.subdomain_policy
    return record.policy


def evaluate_alignment(discovery: DmarcDiscovery, spf: SpfEvaluation, spf_domain: Optional[str], dkim_results) -> DmarcEvaluation:
    """Pure part of DMARC evaluation: consumes only categorical SPF/DKIM results and domains."""
    record = discovery.record
    from_domain = discovery.domain
    aspf = record.aspf if record else AlignmentMode.RELAXED
    adkim = record.adkim if record else AlignmentMode.RELAXED

    spf_aligned = bool(
        spf.result is SpfResultCode.PASS and spf_domain and is_aligned(spf_domain, from_domain, aspf)
    )
    aligned_signers = [
        r.domain for r in dkim_results
        if r.status is DkimStatus.PASS and r.domain and is_aligned(r.domain, from_domain, adkim)
    ]
    dkim_aligned = bool(aligned_signers)

    factors = []
    if record is None:
        factors.append("DMARC lookup failed" if discovery.temperror else "no DMARC record")
    if spf_aligned:
        factors.append(f"SPF aligned ({aspf.name.lower()})")
    if dkim_aligned:
        factors.append(f"DKIM aligned (d={aligned_signers[0]}, {adkim.name.lower()})")

    return DmarcEvaluation(
        domain=from_domain,
        passed=record is not None and (spf_aligned or dkim_aligned),
        policy=effective_policy(discovery),
        spf_aligned=spf_aligned,
        dkim_aligned=dkim_aligned,
        organizational_domain=discovery.organizational_domain,
        record=record,
        record_domain=discovery.record_domain,
        temperror=discovery.temperror,
        factors=tuple(factors),
    )
