"""Custom exception hierarchy for spoof-detector."""


class SpoofDetectorError(Exception):
    """Base exception for all spoof-detector errors."""


# ── DNS Errors ─────────────────────────────────────────────────────────────────

class DnsError(SpoofDetectorError):
    """Base class for DNS-related errors."""


class DnsTimeoutError(DnsError):
    """DNS query timed out."""


class DnsNxdomainError(DnsError):
    """Domain or record does not exist."""


class DnsServfailError(DnsError):
    """DNS server returned SERVFAIL."""


class DnsRefusedError(DnsError):
    """DNS server refused the query."""


# ── Validation Errors ──────────────────────────────────────────────────────────

class ValidationError(SpoofDetectorError):
    """Base class for input validation errors."""


class InvalidDomainError(ValidationError):
    """The provided domain name is invalid."""


# ── Parse Errors ───────────────────────────────────────────────────────────────

class ParseError(SpoofDetectorError):
    """Base class for record and message syntax errors. Never retried."""


class SpfParseError(ParseError):
    """Failed to parse SPF record."""


class DkimParseError(ParseError):
    """Failed to parse a DKIM-Signature header or DKIM key record."""


class DmarcParseError(ParseError):
    """Failed to parse DMARC record."""


class EmailParseError(ParseError):
    """The submitted message could not be parsed; analysis was not attempted."""


# ── Evaluation Errors ──────────────────────────────────────────────────────────

class RecursionLimitError(SpoofDetectorError):
    """SPF evaluation exceeded a depth, lookup, or loop limit."""


class CryptoError(SpoofDetectorError):
    """A DKIM key could not be loaded or a signature did not verify."""


class WhoisError(SpoofDetectorError):
    """WHOIS lookup failed or returned no usable creation date."""


class AnalysisTimeoutError(SpoofDetectorError):
    """A whole analysis did not finish within its deadline."""
