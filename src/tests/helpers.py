"""Shared test factories for mock DNS/WHOIS collaborators, DKIM signing, and model objects."""

import base64
import hashlib
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from unittest.mock import AsyncMock, MagicMock

import dns.reversename
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from spoof_detector.canonicalization import signing_input
from spoof_detector.dkim_verifier import compute_body_hash
from spoof_detector.dns_fetcher import DnsCache, DnsFetcher, RateLimiter
from spoof_detector.email_parser import split_message
from spoof_detector.exceptions import DnsNxdomainError, WhoisError
from spoof_detector.models import (
    AlignmentMode,
    Canonicalization,
    DkimFailReason,
    DkimStatus,
    DkimVerification,
    DmarcEvaluation,
    DmarcPolicy,
    DmarcRecord,
    DnsRecord,
    DnsResponse,
    DnsStatus,
    DomainReputation,
    SpfEvaluation,
    SpfResultCode,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


# ── DNS ────────────────────────────────────────────────────────────────────────

def dns_response(domain, values=None, record_type="TXT", status=DnsStatus.NOERROR, ttl=3600):
    """Build a DnsResponse with zero or more records of one type."""
    records = tuple(DnsRecord(record_type=record_type, value=v, ttl=ttl) for v in (values or []))
    return DnsResponse(domain=domain, record_type=record_type, status=status, records=records)


def nxdomain(domain, record_type="TXT"):
    """Return an NXDOMAIN response for a domain."""
    return dns_response(domain, record_type=record_type, status=DnsStatus.NXDOMAIN)


def servfail(domain, record_type="TXT"):
    return dns_response(domain, record_type=record_type, status=DnsStatus.SERVFAIL)


def timeout(domain, record_type="TXT"):
    return dns_response(domain, record_type=record_type, status=DnsStatus.TIMEOUT)


def mock_fetcher(mapping=None, default=None):
    """
    Build a mock DnsFetcher whose async query() answers from `mapping`.

    mapping keys: a domain name (meaning its TXT records) or a
    (domain, record_type) tuple. Values: list[str] of record values, or a
    DnsResponse. Unknown names return an empty NOERROR response, or
    default(domain, record_type) when given.
    """
    mapping = {
        (k if isinstance(k, tuple) else (k, "TXT")): v
        for k, v in (mapping or {}).items()
    }
    mapping = {(name.lower().rstrip("."), rtype.upper()): v for (name, rtype), v in mapping.items()}
    fetcher = MagicMock()

    def _query(domain, record_type):
        key = (domain.lower().rstrip("."), record_type.upper())
        if key not in mapping:
            if default is not None:
                return default(key[0], key[1])
            return dns_response(key[0], record_type=key[1])
        val = mapping[key]
        if isinstance(val, DnsResponse):
            return val
        return dns_response(key[0], val, record_type=key[1])

    def _query_ptr(ip):
        return _query(dns.reversename.from_address(ip).to_text(omit_final_dot=True), "PTR")

    fetcher.query = AsyncMock(side_effect=_query)
    fetcher.query_ptr = AsyncMock(side_effect=_query_ptr)
    return fetcher


def offline_fetcher():
    """A real DnsFetcher (name validation included) whose resolver answers NXDOMAIN to every query."""
    fetcher = DnsFetcher(cache=DnsCache(), rate_limiter=RateLimiter(rate=1000.0))
    fetcher._query_resolver = AsyncMock(side_effect=DnsNxdomainError("NXDOMAIN"))
    return fetcher


def queried(fetcher, record_type=None) -> list:
    """Names passed to fetcher.query, optionally filtered by record type."""
    return [
        c.args[0] for c in fetcher.query.call_args_list
        if record_type is None or c.args[1].upper() == record_type
    ]


# ── WHOIS ──────────────────────────────────────────────────────────────────────

def mock_whois(created=None, error=None, age_days=None):
    """Mock WhoisClient. age_days is relative to NOW; error makes the lookup raise WhoisError."""
    client = MagicMock()
    if error is not None:
        client.creation_date = AsyncMock(side_effect=WhoisError(error))
    else:
        if created is None and age_days is not None:
            created = NOW - timedelta(days=age_days)
        if created is None:
            client.creation_date = AsyncMock(side_effect=WhoisError("No parsable creation date"))
        else:
            client.creation_date = AsyncMock(return_value=created)
    return client


# ── DKIM signing ───────────────────────────────────────────────────────────────

@lru_cache(maxsize=None)
def rsa_private_key(bits=2048):
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)


@lru_cache(maxsize=None)
def ed25519_private_key():
    return ed25519.Ed25519PrivateKey.generate()


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def rsa_key_record(private_key=None, pkcs1=False) -> str:
    public_key = (private_key or rsa_private_key()).public_key()
    fmt = serialization.PublicFormat.PKCS1 if pkcs1 else serialization.PublicFormat.SubjectPublicKeyInfo
    der = public_key.public_bytes(serialization.Encoding.DER, fmt)
    return f"v=DKIM1; k=rsa; p={b64(der)}"


def ed25519_key_record(private_key=None) -> str:
    raw = (private_key or ed25519_private_key()).public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )
    return f"v=DKIM1; k=ed25519; p={b64(raw)}"


MESSAGE = (
    b"From: Alice <alice@example.com>\r\n"
    b"To: bob@example.org\r\n"
    b"Subject: Quarterly  report\r\n"
    b"Date: Sun, 01 Jun 2025 10:00:00 +0000\r\n"
    b"Message-ID: <abc123@example.com>\r\n"
    b"\r\n"
    b"Hello Bob,\r\n"
    b"\r\n"
    b"The numbers   are attached.  \r\n"
    b"\r\n"
    b"\r\n"
)


def sign_message(
    message: bytes = MESSAGE,
    private_key=None,
    domain="example.com",
    selector="sel",
    signed_headers=("from", "to", "subject", "date"),
    canonicalization="relaxed/relaxed",
    algorithm="rsa-sha256",
    extra_tags="",
    body_length=None,
) -> bytes:
    """Prepend a DKIM-Signature to MESSAGE, built with the package's own canonicalization."""
    if private_key is None:
        private_key = ed25519_private_key() if algorithm == "ed25519-sha256" else rsa_private_key()
    headers, body = split_message(message)
    header_c, _, body_c = canonicalization.partition("/")

    bh = b64(compute_body_hash(body, Canonicalization(body_c or "simple"), body_length))
    length_tag = f" l={body_length};" if body_length is not None else ""
    tags = (
        f"v=1; a={algorithm}; c={canonicalization}; d={domain}; s={selector};{length_tag}{extra_tags}"
        f" h={':'.join(signed_headers)}; bh={bh}; b="
    )
    unsigned = f"DKIM-Signature: {tags}\r\n"
    data = signing_input(headers, signed_headers, ("DKIM-Signature", unsigned), Canonicalization(header_c))

    if algorithm == "ed25519-sha256":
        signature = private_key.sign(hashlib.sha256(data).digest())
    else:
        signature = private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    return f"DKIM-Signature: {tags}{b64(signature)}\r\n".encode("ascii") + message


# ── Model object factories ─────────────────────────────────────────────────────

def spf_result(result=SpfResultCode.PASS, domain="example.com", sender_ip="192.0.2.10"):
    return SpfEvaluation(domain=domain, result=result, sender_ip=sender_ip)


def dkim_pass(domain="example.com", selector="sel"):
    return DkimVerification(status=DkimStatus.PASS, domain=domain, selector=selector, algorithm="rsa-sha256")


def dkim_fail(reason=DkimFailReason.SIGNATURE_INVALID, domain="example.com", selector="sel"):
    return DkimVerification(status=DkimStatus.FAIL, reason=reason, domain=domain, selector=selector)


def no_dkim():
    return (DkimVerification(status=DkimStatus.NO_SIGNATURE),)


def dmarc_record(policy=DmarcPolicy.REJECT, pct=100, subdomain_policy=None):
    return DmarcRecord(
        raw=f"v=DMARC1; p={policy.value}; pct={pct}",
        policy=policy,
        subdomain_policy=subdomain_policy,
        adkim=AlignmentMode.RELAXED,
        aspf=AlignmentMode.RELAXED,
        pct=pct,
    )


def dmarc_result(passed=True, policy=DmarcPolicy.REJECT, pct=100, present=True, domain="example.com"):
    return DmarcEvaluation(
        domain=domain,
        passed=passed and present,
        policy=policy if present else DmarcPolicy.NONE,
        spf_aligned=passed and present,
        dkim_aligned=passed and present,
        organizational_domain=domain,
        record=dmarc_record(policy, pct) if present else None,
        record_domain=domain if present else None,
    )


def reputation(age_days=1000, mx_count=1, exists=True, nxdomain=False, domain="example.com"):
    return DomainReputation(
        domain=domain,
        created_at=NOW - timedelta(days=age_days) if age_days is not None else None,
        age_days=age_days,
        mx_count=mx_count,
        mx_hosts=tuple(f"mx{i}.{domain}" for i in range(mx_count or 0)),
        exists=exists,
        nxdomain=nxdomain,
    )
