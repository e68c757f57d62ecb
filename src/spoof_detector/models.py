"""Shared data contracts between all spoof-detector modules.

Every result type is a frozen dataclass: evaluators build results bottom-up
and hand back new values, nothing is mutated after construction.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import idna

from .exceptions import InvalidDomainError


# ── Enums ──────────────────────────────────────────────────────────────────────

class DnsStatus(Enum):
    NOERROR = "NOERROR"
    NXDOMAIN = "NXDOMAIN"
    SERVFAIL = "SERVFAIL"
    REFUSED = "REFUSED"
    TIMEOUT = "TIMEOUT"


class SpfQualifier(Enum):
    PASS = "+"
    FAIL = "-"
    SOFTFAIL = "~"
    NEUTRAL = "?"


class SpfResultCode(Enum):
    PASS = "pass"
    FAIL = "fail"
    SOFTFAIL = "softfail"
    NEUTRAL = "neutral"
    NONE = "none"
    TEMPERROR = "temperror"
    PERMERROR = "permerror"


class DkimAlgorithm(Enum):
    RSA_SHA256 = "rsa-sha256"
    ED25519_SHA256 = "ed25519-sha256"


class Canonicalization(Enum):
    SIMPLE = "simple"
    RELAXED = "relaxed"


class DkimStatus(Enum):
    PASS = "pass"
    FAIL = "fail"
    NO_SIGNATURE = "none"
    TEMPERROR = "temperror"


class DkimFailReason(Enum):
    BODY_HASH_MISMATCH = "body-hash-mismatch"
    SIGNATURE_INVALID = "signature-invalid"
    KEY_NOT_FOUND = "key-not-found"
    KEY_REVOKED = "key-revoked"
    EXPIRED = "expired"
    MALFORMED_HEADER = "malformed-header"


class DkimKeyStatus(Enum):
    PRESENT = "present"
    REVOKED = "revoked"
    ABSENT = "absent"
    TEMPERROR = "temperror"


class DmarcPolicy(Enum):
    NONE = "none"
    QUARANTINE = "quarantine"
    REJECT = "reject"


class AlignmentMode(Enum):
    STRICT = "s"
    RELAXED = "r"


class VerdictLevel(Enum):
    STRONG = "Strong"
    MEDIUM = "Medium"
    WEAK = "Weak"
    INVALID = "Invalid"


# ── Domain names ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DomainName:
    """Lower-cased, trailing-dot-stripped ASCII domain name.

    Internationalized names are converted to their IDNA A-label form, so two
    spellings of the same name compare equal.
    """

    value: str

    @classmethod
    def parse(cls, text) -> "DomainName":
        if isinstance(text, DomainName):
            return text
        name = str(text).strip().rstrip(".").lower()
        if not name:
            raise InvalidDomainError("Empty domain name")
        if not name.isascii():
            try:
                name = idna.encode(name, uts46=True).decode("ascii")
            except idna.IDNAError as e:
                raise InvalidDomainError(f"Invalid internationalized domain {text!r}: {e}") from e
        if len(name) > 253 or any(not label or len(label) > 63 for label in name.split(".")):
            raise InvalidDomainError(f"Invalid domain name: {text!r}")
        return cls(name)

    def is_subdomain_of(self, other: "DomainName") -> bool:
        return self.value == other.value or self.value.endswith("." + other.value)

    def __str__(self) -> str:
        return self.value


# ── DNS Layer ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DnsRecord:
    record_type: str
    value: str
    ttl: int


@dataclass(frozen=True)
class DnsResponse:
    domain: str
    record_type: str
    status: DnsStatus
    records: tuple = ()  # tuple[DnsRecord]
    resolver_used: str = ""
    response_time_ms: float = 0.0
    cache_hit: bool = False
    queried_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def values(self) -> list:
        return [r.value for r in self.records]


# ── SPF Layer ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SpfMechanism:
    order: int
    raw: str
    mtype: str
    qualifier: SpfQualifier
    argument: Optional[str]
    cidr4: Optional[int] = None
    cidr6: Optional[int] = None


@dataclass(frozen=True)
class SpfRecord:
    domain: str
    raw: str
    mechanisms: tuple  # tuple[SpfMechanism]
    redirect: Optional[str] = None
    explanation: Optional[str] = None
    version: str = "spf1"


@dataclass(frozen=True)
class SpfContext:
    """Envelope identities used for macro expansion."""

    sender: Optional[str] = None  # MAIL FROM address
    helo: Optional[str] = None


@dataclass(frozen=True)
class SpfEvaluation:
    domain: str
    result: SpfResultCode
    sender_ip: Optional[str] = None
    mechanism: Optional[str] = None        # raw text of the deciding mechanism
    mechanism_domain: Optional[str] = None  # record the mechanism came from
    lookups: int = 0
    depth: int = 0
    reason: Optional[str] = None
    record: Optional[str] = None           # raw top-level record


# ── DKIM Layer ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DkimSignature:
    raw_header: str
    version: str
    algorithm: DkimAlgorithm
    header_canonicalization: Canonicalization
    body_canonicalization: Canonicalization
    domain: str
    selector: str
    signed_headers: tuple  # tuple[str], lower-cased
    body_hash: bytes
    signature: bytes
    timestamp: Optional[int] = None
    expiration: Optional[int] = None
    body_length: Optional[int] = None
    identity: Optional[str] = None


@dataclass(frozen=True)
class DkimVerification:
    status: DkimStatus
    reason: Optional[DkimFailReason] = None
    domain: Optional[str] = None
    selector: Optional[str] = None
    algorithm: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class DkimKeyProbe:
    domain: str
    selector: str
    status: DkimKeyStatus
    raw_record: Optional[str] = None


# ── DMARC Layer ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DmarcRecord:
    raw: str
    policy: DmarcPolicy
    subdomain_policy: Optional[DmarcPolicy] = None
    adkim: AlignmentMode = AlignmentMode.RELAXED
    aspf: AlignmentMode = AlignmentMode.RELAXED
    pct: int = 100
    rua: tuple = ()  # tuple[str]
    ruf: tuple = ()  # tuple[str]
    fo: Optional[str] = None


@dataclass(frozen=True)
class DmarcDiscovery:
    domain: str
    organizational_domain: str
    record: Optional[DmarcRecord] = None
    record_domain: Optional[str] = None
    temperror: bool = False


@dataclass(frozen=True)
class DmarcEvaluation:
    domain: str
    passed: bool
    policy: DmarcPolicy
    spf_aligned: bool
    dkim_aligned: bool
    organizational_domain: str
    record: Optional[DmarcRecord] = None
    record_domain: Optional[str] = None
    temperror: bool = False
    factors: tuple = ()  # tuple[str]

    @property
    def record_present(self) -> bool:
        return self.record is not None


# ── Reputation Layer ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DomainReputation:
    domain: str
    created_at: Optional[datetime] = None
    age_days: Optional[int] = None  # None = unknown, never 0 by default
    mx_count: Optional[int] = None  # None = MX lookup failed
    mx_hosts: tuple = ()
    exists: Optional[bool] = None   # any A/AAAA/MX; None = undetermined
    nxdomain: bool = False
    whois_error: Optional[str] = None

    @property
    def has_mx(self) -> bool:
        return bool(self.mx_count)


# ── Verdict Layer ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Verdict:
    level: VerdictLevel
    contributing_factors: tuple  # tuple[str], evaluation order
    score: float


# ── Message Layer ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ParsedEmail:
    headers: tuple  # tuple[(name, raw_value)], message order, CRLF line endings
    body: bytes
    from_address: Optional[str] = None
    from_domain: Optional[str] = None
    mail_from: Optional[str] = None
    mail_from_domain: Optional[str] = None
    sender_ip: Optional[str] = None
    helo: Optional[str] = None


# ── Top-Level Results ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EmailAnalysis:
    from_domain: str
    spf_domain: str
    sender_ip: Optional[str]
    spf: SpfEvaluation
    dkim: tuple  # tuple[DkimVerification]
    dmarc: DmarcEvaluation
    reputation: DomainReputation
    verdict: Verdict
    analyzed_at: datetime


@dataclass(frozen=True)
class DomainAnalysis:
    domain: str
    spf: SpfEvaluation
    dkim_keys: tuple  # tuple[DkimKeyProbe]
    dmarc: DmarcDiscovery
    reputation: DomainReputation
    verdict: Verdict
    analyzed_at: datetime
