"""DNS query engine: async resolution, bounded retry with backoff, in-memory TTL cache, rate limiting."""

import asyncio
import logging
import re
import threading
import time
from dataclasses import replace
from typing import Optional

import dns.asyncresolver
import dns.exception
import dns.rdatatype
import dns.resolver
import dns.reversename

from .config import Settings, load_settings
from .exceptions import (
    DnsNxdomainError,
    DnsRefusedError,
    DnsServfailError,
    DnsTimeoutError,
    InvalidDomainError,
)
from .models import DnsRecord, DnsResponse, DnsStatus, DomainName

logger = logging.getLogger(__name__)


# ── Rate Limiter ───────────────────────────────────────────────────────────────

class RateLimiter:
    """Token bucket rate limiter for coroutines."""

    def __init__(self, rate: float = 50.0):
        self._rate = rate          # tokens per second
        self._tokens = rate
        self._last_check = time.monotonic()
        self._lock: Optional[asyncio.Lock] = None
        self._loop = None

    async def acquire(self) -> None:
        """Suspend until a token is available."""
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # The lock belongs to the loop that is running now
            self._lock = asyncio.Lock()
            self._loop = loop
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_check
            self._last_check = now
            self._tokens = min(self._rate, self._tokens + elapsed * self._rate)
            if self._tokens < 1.0:
                await asyncio.sleep((1.0 - self._tokens) / self._rate)
                self._tokens = 0.0
            else:
                self._tokens -= 1.0


# ── DNS Cache ──────────────────────────────────────────────────────────────────

class DnsCache:
    """Process-wide response cache keyed by (record type, domain), with TTL enforcement.

    Safe for concurrent readers; entries are immutable DnsResponse values.
    """

    MAX_ENTRIES = 10_000
    MIN_TTL = 300
    MAX_TTL = 86_400
    NXDOMAIN_TTL = 300
    SERVFAIL_TTL = 30

    def __init__(self):
        self._store: dict[str, tuple[DnsResponse, float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _make_key(domain: str, record_type: str) -> str:
        return f"{record_type.upper()}:{domain.lower().rstrip('.')}"

    def get(self, domain: str, record_type: str) -> Optional[DnsResponse]:
        key = self._make_key(domain, record_type)
        with self._lock:
            if key not in self._store:
                return None
            response, expires_at = self._store[key]
            if time.monotonic() > expires_at:
                del self._store[key]
                return None
        return replace(response, cache_hit=True)

    def put(self, domain: str, record_type: str, response: DnsResponse) -> None:
        key = self._make_key(domain, record_type)
        expires_at = time.monotonic() + self._effective_ttl(response)
        with self._lock:
            if len(self._store) >= self.MAX_ENTRIES:
                self._evict_expired()
            self._store[key] = (response, expires_at)

    def _effective_ttl(self, response: DnsResponse) -> int:
        if response.status == DnsStatus.NXDOMAIN:
            return self.NXDOMAIN_TTL
        if response.status in (DnsStatus.SERVFAIL, DnsStatus.TIMEOUT):
            return self.SERVFAIL_TTL
        if not response.records:
            return self.MIN_TTL
        raw_ttl = min(r.ttl for r in response.records)
        return max(self.MIN_TTL, min(self.MAX_TTL, raw_ttl))

    def _evict_expired(self) -> None:
        now = time.monotonic()
        expired = [k for k, (_, exp) in self._store.items() if now > exp]
        for k in expired:
            del self._store[k]


# ── DNS Fetcher ────────────────────────────────────────────────────────────────

_DOMAIN_PATTERN = re.compile(
    r"^(?:_?[a-zA-Z0-9](?:[a-zA-Z0-9\-_]{0,61}[a-zA-Z0-9])?\.)+(?:[a-zA-Z]{2,63}|xn--[a-zA-Z0-9\-]{1,59})$"
)

BACKOFF_SECONDS = 0.2


class DnsFetcher:
    """DNS collaborator. `query` never raises for resolution failures: the
    outcome (NOERROR / NXDOMAIN / SERVFAIL / TIMEOUT / REFUSED) is carried in
    `DnsResponse.status`. Only a syntactically invalid name raises.
    """

    def __init__(
        self,
        cache: Optional[DnsCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        nameservers: tuple = (),
        timeout: float = 5.0,
        retries: int = 2,
    ):
        self._cache = cache or DnsCache()
        self._rate_limiter = rate_limiter or RateLimiter(rate=50.0)
        self._timeout = timeout
        self._retries = max(1, retries)
        self._nameservers = tuple(nameservers)
        self._resolver: Optional[dns.asyncresolver.Resolver] = None

    async def query(self, domain: str, record_type: str) -> DnsResponse:
        """Main entry point. Cache-first; transient failures are retried with backoff."""
        domain = self._validate_domain(domain)
        record_type = record_type.upper()

        cached = self._cache.get(domain, record_type)
        if cached:
            logger.debug("cache hit %s %s", record_type, domain)
            return cached

        last_error: Optional[Exception] = None
        for attempt in range(self._retries):
            try:
                await self._rate_limiter.acquire()
                response = await self._query_resolver(domain, record_type)
            except DnsNxdomainError:
                # NXDOMAIN is definitive: cache and return immediately
                response = DnsResponse(domain=domain, record_type=record_type, status=DnsStatus.NXDOMAIN)
            except DnsRefusedError as e:
                logger.warning("%s", e)
                return DnsResponse(domain=domain, record_type=record_type, status=DnsStatus.REFUSED)
            except (DnsTimeoutError, DnsServfailError) as e:
                last_error = e
                logger.warning("%s (attempt %d/%d)", e, attempt + 1, self._retries)
                if attempt < self._retries - 1:
                    await asyncio.sleep(BACKOFF_SECONDS * 2 ** attempt)
                continue
            self._cache.put(domain, record_type, response)
            return response

        status = DnsStatus.TIMEOUT if isinstance(last_error, DnsTimeoutError) else DnsStatus.SERVFAIL
        response = DnsResponse(domain=domain, record_type=record_type, status=status)
        self._cache.put(domain, record_type, response)
        return response

    def _validate_domain(self, domain: str) -> str:
        name = DomainName.parse(domain).value
        if not _DOMAIN_PATTERN.match(name):
            raise InvalidDomainError(f"Invalid domain name: {domain}")
        return name

    def _get_resolver(self) -> dns.asyncresolver.Resolver:
        if self._resolver is None:
            if self._nameservers:
                resolver = dns.asyncresolver.Resolver(configure=False)
                resolver.nameservers = list(self._nameservers)
            else:
                resolver = dns.asyncresolver.Resolver()
            resolver.timeout = self._timeout
            resolver.lifetime = self._timeout
            self._resolver = resolver
        return self._resolver

    async def _query_resolver(self, domain: str, record_type: str) -> DnsResponse:
        resolver = self._get_resolver()
        start = time.monotonic()
        try:
            rdtype = dns.rdatatype.from_text(record_type)
            answer = await resolver.resolve(domain, rdtype)
            elapsed = (time.monotonic() - start) * 1000
            logger.debug("%s %s -> %d records in %.1f ms", record_type, domain, len(answer), elapsed)
            return DnsResponse(
                domain=domain,
                record_type=record_type,
                status=DnsStatus.NOERROR,
                records=self._parse_records(answer, record_type),
                resolver_used=str(answer.nameserver or ""),
                response_time_ms=elapsed,
            )
        except dns.resolver.NXDOMAIN:
            raise DnsNxdomainError(f"NXDOMAIN: {domain}")
        except dns.resolver.NoAnswer:
            # Record type doesn't exist but domain does
            return DnsResponse(
                domain=domain,
                record_type=record_type,
                status=DnsStatus.NOERROR,
                response_time_ms=(time.monotonic() - start) * 1000,
            )
        except dns.exception.Timeout:
            raise DnsTimeoutError(f"Timeout querying {record_type} {domain}")
        except dns.resolver.NoNameservers as e:
            if "REFUSED" in str(e):
                raise DnsRefusedError(f"Query refused for {record_type} {domain}")
            raise DnsServfailError(f"No nameservers answered for {record_type} {domain}")
        except dns.exception.DNSException as e:
            raise DnsServfailError(f"DNS error for {record_type} {domain}: {e}")

    def _parse_records(self, answer, record_type: str) -> tuple:
        records = []
        ttl = answer.rrset.ttl if answer.rrset else 300

        for rdata in answer:
            if record_type == "TXT":
                # Concatenate multi-string TXT records per RFC
                value = b"".join(rdata.strings).decode("ascii", errors="replace")
            elif record_type == "MX":
                value = f"{rdata.preference} {rdata.exchange}"
            elif record_type in ("A", "AAAA"):
                value = str(rdata.address)
            elif record_type == "PTR":
                value = str(rdata.target)
            else:
                value = str(rdata)
            records.append(DnsRecord(record_type=record_type, value=value, ttl=ttl))

        return tuple(records)

    # ── Convenience methods ────────────────────────────────────────────────────

    async def query_ptr(self, ip: str) -> DnsResponse:
        reverse = dns.reversename.from_address(ip).to_text(omit_final_dot=True)
        return await self.query(reverse, "PTR")


def mx_host(value: str) -> str:
    """Exchange host of a "<preference> <exchange>" MX value; "" for a null MX (RFC 7505)."""
    _, _, host = value.strip().partition(" ")
    return host.strip().rstrip(".").lower()


def create_fetcher(settings: Optional[Settings] = None) -> DnsFetcher:
    """Module-level factory for CLI and API use."""
    settings = settings or load_settings()
    return DnsFetcher(
        cache=DnsCache(),
        rate_limiter=RateLimiter(rate=settings.dns_rate),
        nameservers=settings.dns_nameservers,
        timeout=settings.dns_timeout,
        retries=settings.dns_retries,
    )
