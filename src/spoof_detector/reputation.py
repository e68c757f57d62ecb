"""Domain reputation: registration age from WHOIS, MX presence, and existence."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .dns_fetcher import DnsFetcher, mx_host
from .exceptions import InvalidDomainError, WhoisError
from .models import DnsResponse, DnsStatus, DomainName, DomainReputation
from .whois_client import WhoisClient

logger = logging.getLogger(__name__)


class ReputationAssessor:
    def __init__(
        self,
        fetcher: DnsFetcher,
        whois_client: WhoisClient,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._fetcher = fetcher
        self._whois = whois_client
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def assess(self, domain: str) -> DomainReputation:
        """Never raises for lookup failures: unknown values stay None."""
        domain = DomainName.parse(domain).value
        (created_at, whois_error), mx, a, aaaa = await asyncio.gather(
            self._creation_date(domain),
            self._query(domain, "MX"),
            self._query(domain, "A"),
            self._query(domain, "AAAA"),
        )

        nxdomain = any(r.status == DnsStatus.NXDOMAIN for r in (mx, a, aaaa))

        mx_count = None
        hosts = ()
        if mx.status == DnsStatus.NOERROR:
            # A null MX ("0 .") publishes that the domain accepts no mail
            hosts = tuple(h for h in (mx_host(v) for v in mx.values) if h)
            mx_count = len(hosts)
        elif mx.status == DnsStatus.NXDOMAIN:
            mx_count = 0

        responses = (mx, a, aaaa)
        if nxdomain:
            exists = False
        elif any(r.status == DnsStatus.NOERROR and r.records for r in responses):
            exists = True
        elif all(r.status == DnsStatus.NOERROR for r in responses):
            exists = False
        else:
            exists = None

        age_days = None
        if created_at is not None:
            age_days = max(0, (self._clock() - created_at).days)

        return DomainReputation(
            domain=domain,
            created_at=created_at,
            age_days=age_days,
            mx_count=mx_count,
            mx_hosts=hosts,
            exists=exists,
            nxdomain=nxdomain,
            whois_error=whois_error,
        )

    async def _query(self, domain: str, record_type: str) -> DnsResponse:
        # A name the resolver refuses to send cannot exist in public DNS
        try:
            return await self._fetcher.query(domain, record_type)
        except InvalidDomainError as e:
            logger.info("%s is not resolvable: %s", domain, e)
            return DnsResponse(domain=domain, record_type=record_type, status=DnsStatus.NXDOMAIN)

    async def _creation_date(self, domain: str) -> tuple:
        try:
            return await self._whois.creation_date(domain), None
        except WhoisError as e:
            logger.warning("%s", e)
            return None, str(e)
