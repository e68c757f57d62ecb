"""Unit tests for DnsFetcher and DnsCache (resolver calls are mocked)."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from spoof_detector import dns_fetcher as dns_fetcher_module
from spoof_detector.dns_fetcher import DnsCache, DnsFetcher, RateLimiter, mx_host
from spoof_detector.exceptions import DnsNxdomainError, DnsRefusedError, DnsServfailError, DnsTimeoutError, InvalidDomainError
from spoof_detector.models import DnsStatus

from .helpers import dns_response

DOMAIN = "example.com"


def make_fetcher(side_effect, retries=2):
    fetcher = DnsFetcher(cache=DnsCache(), rate_limiter=RateLimiter(rate=1000.0), retries=retries)
    fetcher._query_resolver = AsyncMock(side_effect=side_effect)
    return fetcher


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch):
    monkeypatch.setattr(dns_fetcher_module, "BACKOFF_SECONDS", 0.0)


class TestDnsCache:
    def test_miss_returns_none(self):
        assert DnsCache().get(DOMAIN, "TXT") is None

    def test_hit_is_flagged(self):
        cache = DnsCache()
        cache.put(DOMAIN, "TXT", dns_response(DOMAIN, ["v=spf1 -all"]))
        cached = cache.get(DOMAIN, "TXT")
        assert cached.cache_hit
        assert cached.values == ["v=spf1 -all"]

    def test_key_is_case_insensitive(self):
        cache = DnsCache()
        cache.put("Example.COM.", "txt", dns_response(DOMAIN, ["x"]))
        assert cache.get("example.com", "TXT") is not None

    def test_record_types_are_separate(self):
        cache = DnsCache()
        cache.put(DOMAIN, "TXT", dns_response(DOMAIN, ["x"]))
        assert cache.get(DOMAIN, "MX") is None

    def test_ttl_is_clamped(self):
        cache = DnsCache()
        assert cache._effective_ttl(dns_response(DOMAIN, ["x"], ttl=5)) == DnsCache.MIN_TTL
        assert cache._effective_ttl(dns_response(DOMAIN, ["x"], ttl=10**7)) == DnsCache.MAX_TTL

    def test_servfail_ttl_is_short(self):
        response = dns_response(DOMAIN, status=DnsStatus.SERVFAIL)
        assert DnsCache()._effective_ttl(response) == DnsCache.SERVFAIL_TTL


class TestDnsFetcherQuery:
    def test_returns_resolver_answer(self):
        fetcher = make_fetcher([dns_response(DOMAIN, ["v=spf1 -all"])])
        response = asyncio.run(fetcher.query(DOMAIN, "txt"))
        assert response.values == ["v=spf1 -all"]

    def test_second_query_served_from_cache(self):
        fetcher = make_fetcher([dns_response(DOMAIN, ["v=spf1 -all"])])
        asyncio.run(fetcher.query(DOMAIN, "TXT"))
        second = asyncio.run(fetcher.query(DOMAIN, "TXT"))
        assert second.cache_hit
        assert fetcher._query_resolver.await_count == 1

    def test_nxdomain_becomes_status(self):
        fetcher = make_fetcher(DnsNxdomainError("NXDOMAIN: example.com"))
        response = asyncio.run(fetcher.query(DOMAIN, "TXT"))
        assert response.status == DnsStatus.NXDOMAIN
        assert fetcher._query_resolver.await_count == 1

    def test_refused_is_not_retried(self):
        fetcher = make_fetcher(DnsRefusedError("refused"))
        response = asyncio.run(fetcher.query(DOMAIN, "TXT"))
        assert response.status == DnsStatus.REFUSED
        assert fetcher._query_resolver.await_count == 1

    def test_timeout_retried_then_reported(self):
        fetcher = make_fetcher(DnsTimeoutError("timeout"), retries=3)
        response = asyncio.run(fetcher.query(DOMAIN, "TXT"))
        assert response.status == DnsStatus.TIMEOUT
        assert fetcher._query_resolver.await_count == 3

    def test_servfail_then_success(self):
        fetcher = make_fetcher([DnsServfailError("servfail"), dns_response(DOMAIN, ["ok"])])
        response = asyncio.run(fetcher.query(DOMAIN, "TXT"))
        assert response.status == DnsStatus.NOERROR
        assert response.values == ["ok"]

    def test_invalid_name_raises(self):
        fetcher = make_fetcher([])
        with pytest.raises(InvalidDomainError):
            asyncio.run(fetcher.query("not a domain", "TXT"))

    def test_underscore_labels_allowed(self):
        fetcher = make_fetcher([dns_response("_dmarc.example.com", ["v=DMARC1; p=none"])])
        response = asyncio.run(fetcher.query("_dmarc.example.com", "TXT"))
        assert response.status == DnsStatus.NOERROR

    def test_ptr_uses_reverse_name(self):
        fetcher = make_fetcher([dns_response("10.2.0.192.in-addr.arpa", ["mail.example.com."], record_type="PTR")])
        asyncio.run(fetcher.query_ptr("192.0.2.10"))
        assert fetcher._query_resolver.await_args.args == ("10.2.0.192.in-addr.arpa", "PTR")


class TestRateLimiter:
    def test_shared_across_event_loops(self):
        limiter = RateLimiter(rate=100.0)

        async def burst(n):
            await asyncio.gather(*(limiter.acquire() for _ in range(n)))

        # Each burst outruns the bucket, so acquirers queue on the lock
        asyncio.run(burst(102))
        asyncio.run(burst(3))


class TestMxHost:
    def test_exchange_host(self):
        assert mx_host("10 MX1.Example.com.") == "mx1.example.com"

    def test_null_mx(self):
        assert mx_host("0 .") == ""
