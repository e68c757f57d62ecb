"""DKIM verifier (RFC 6376, RFC 8463) and selector key probe.

Verification is fail-closed: every signature yields exactly one of pass,
fail(reason) or temperror, and anything ambiguous is a fail.
"""

import asyncio
import base64
import binascii
import hashlib
import hmac
import logging
import re
import time
from typing import Callable, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from .canonicalization import canonicalize_body, signing_input
from .dns_fetcher import DnsFetcher
from .exceptions import CryptoError, DkimParseError, InvalidDomainError
from .models import (
    Canonicalization,
    DkimAlgorithm,
    DkimFailReason,
    DkimKeyProbe,
    DkimKeyStatus,
    DkimSignature,
    DkimStatus,
    DkimVerification,
    DnsStatus,
    DomainName,
)

logger = logging.getLogger(__name__)

MAX_SIGNATURES = 10
MIN_RSA_BITS = 1024
REQUIRED_TAGS = ("v", "a", "c", "d", "s", "h", "bh", "b")

_KEY_TYPES = {
    DkimAlgorithm.RSA_SHA256: "rsa",
    DkimAlgorithm.ED25519_SHA256: "ed25519",
}
_TEMPORARY = (DnsStatus.TIMEOUT, DnsStatus.SERVFAIL, DnsStatus.REFUSED)


# ── Parsing ────────────────────────────────────────────────────────────────────

def _parse_tags(value: str) -> dict:
    """Split on ; and extract tag=value pairs. Duplicate or nameless tags are errors."""
    tags = {}
    for part in value.split(";"):
        part = part.strip()
        if not part:
            continue
        key, sep, tag_value = part.partition("=")
        key = key.strip().lower()
        if not sep or not key:
            raise DkimParseError(f"Malformed tag {part!r}")
        if key in tags:
            raise DkimParseError(f"Duplicate tag {key}=")
        tags[key] = tag_value.strip()
    return tags


def _decode_base64(value: str, tag: str) -> bytes:
    try:
        decoded = base64.b64decode(re.sub(r"\s+", "", value), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DkimParseError(f"{tag}= is not valid base64") from e
    if not decoded:
        raise DkimParseError(f"{tag}= is empty")
    return decoded


def _parse_int(value: Optional[str], tag: str) -> Optional[int]:
    if value is None:
        return None
    if not value.isdigit():
        raise DkimParseError(f"{tag}= must be a non-negative integer, got {value!r}")
    return int(value)


def parse_signature(raw_header: str) -> DkimSignature:
    """Parse a complete DKIM-Signature field. Raises DkimParseError on any defect."""
    _, _, value = raw_header.partition(":")
    tags = _parse_tags(value)

    missing = [t for t in REQUIRED_TAGS if t not in tags]
    if missing:
        raise DkimParseError(f"Missing required tag(s): {', '.join(missing)}")
    if tags["v"] != "1":
        raise DkimParseError(f"Unsupported version v={tags['v']}")

    try:
        algorithm = DkimAlgorithm(tags["a"].lower())
    except ValueError:
        raise DkimParseError(f"Unsupported algorithm a={tags['a']}")

    header_c, _, body_c = tags["c"].lower().partition("/")
    try:
        header_canonicalization = Canonicalization(header_c)
        body_canonicalization = Canonicalization(body_c or "simple")
    except ValueError:
        raise DkimParseError(f"Unknown canonicalization c={tags['c']}")

    signed_headers = tuple(h.strip().lower() for h in tags["h"].split(":") if h.strip())
    if "from" not in signed_headers:
        raise DkimParseError("h= does not include From")

    try:
        domain = DomainName.parse(tags["d"]).value
    except InvalidDomainError as e:
        raise DkimParseError(f"Invalid signing domain d={tags['d']}") from e
    selector = tags["s"].strip().lower()
    if not selector:
        raise DkimParseError("Empty selector")

    timestamp = _parse_int(tags.get("t"), "t")
    expiration = _parse_int(tags.get("x"), "x")
    if timestamp is not None and expiration is not None and expiration < timestamp:
        raise DkimParseError("x= is earlier than t=")

    identity = tags.get("i")
    if identity is not None:
        _, _, identity_domain = identity.rpartition("@")
        try:
            if not DomainName.parse(identity_domain).is_subdomain_of(DomainName(domain)):
                raise DkimParseError(f"i= domain is not within d={domain}")
        except InvalidDomainError as e:
            raise DkimParseError(f"Invalid identity i={identity}") from e

    return DkimSignature(
        raw_header=raw_header,
        version=tags["v"],
        algorithm=algorithm,
        header_canonicalization=header_canonicalization,
        body_canonicalization=body_canonicalization,
        domain=domain,
        selector=selector,
        signed_headers=signed_headers,
        body_hash=_decode_base64(tags["bh"], "bh"),
        signature=_decode_base64(tags["b"], "b"),
        timestamp=timestamp,
        expiration=expiration,
        body_length=_parse_int(tags.get("l"), "l"),
        identity=identity,
    )


def parse_key_record(txt_value: str) -> Optional[dict]:
    """Tags of a DKIM key record, or None if TXT_VALUE is not one. An empty p= is kept (revoked key)."""
    try:
        tags = _parse_tags(txt_value)
    except DkimParseError:
        return None
    if "v" in tags and tags["v"] != "DKIM1":
        return None
    if "p" not in tags:
        return None
    return tags


def compute_body_hash(body: bytes, method: Canonicalization, length: Optional[int] = None) -> bytes:
    canonical = canonicalize_body(body, method)
    if length is not None:
        if length > len(canonical):
            raise CryptoError(f"l={length} exceeds canonical body length {len(canonical)}")
        canonical = canonical[:length]
    return hashlib.sha256(canonical).digest()


# ── Crypto ─────────────────────────────────────────────────────────────────────

def load_public_key(key_type: str, key_data: bytes):
    """Load a p= key. RSA keys may be SubjectPublicKeyInfo or bare PKCS#1 DER."""
    if key_type == "ed25519":
        if len(key_data) != 32:
            raise CryptoError(f"Ed25519 key must be 32 bytes, got {len(key_data)}")
        return ed25519.Ed25519PublicKey.from_public_bytes(key_data)

    if key_type != "rsa":
        raise CryptoError(f"Unsupported key type k={key_type}")
    try:
        key = serialization.load_der_public_key(key_data)
    except (ValueError, UnsupportedAlgorithm):
        pem = (
            b"-----BEGIN RSA PUBLIC KEY-----\n"
            + base64.encodebytes(key_data)
            + b"-----END RSA PUBLIC KEY-----\n"
        )
        try:
            key = serialization.load_pem_public_key(pem)
        except (ValueError, UnsupportedAlgorithm) as e:
            raise CryptoError(f"Unreadable RSA public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise CryptoError("k=rsa record does not hold an RSA key")
    if key.key_size < MIN_RSA_BITS:
        raise CryptoError(f"RSA key of {key.key_size} bits is below {MIN_RSA_BITS}")
    return key


def verify_signature(public_key, algorithm: DkimAlgorithm, signature: bytes, data: bytes) -> bool:
    try:
        if algorithm is DkimAlgorithm.RSA_SHA256:
            public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        else:
            # RFC 8463: Ed25519 signs the SHA-256 digest of the header data
            public_key.verify(signature, hashlib.sha256(data).digest())
    except InvalidSignature:
        return False
    return True


# ── Verifier ───────────────────────────────────────────────────────────────────

class DkimVerifier:
    def __init__(self, fetcher: DnsFetcher, clock: Optional[Callable[[], float]] = None):
        self._fetcher = fetcher
        self._clock = clock or time.time

    async def verify(self, headers, body: bytes) -> tuple:
        """Verify every DKIM-Signature in HEADERS independently, in header order."""
        signatures = [(name, raw) for name, raw in headers if name.lower() == "dkim-signature"]
        if not signatures:
            return (DkimVerification(status=DkimStatus.NO_SIGNATURE),)
        if len(signatures) > MAX_SIGNATURES:
            logger.warning("Message carries %d DKIM signatures; evaluating the first %d", len(signatures), MAX_SIGNATURES)
            signatures = signatures[:MAX_SIGNATURES]

        results = await asyncio.gather(*(self.verify_one(sig, headers, body) for sig in signatures))
        return tuple(results)

    async def verify_one(self, signature_header: tuple, headers, body: bytes) -> DkimVerification:
        _, raw = signature_header
        try:
            sig = parse_signature(raw)
        except DkimParseError as e:
            logger.debug("Malformed DKIM-Signature: %s", e)
            return DkimVerification(
                status=DkimStatus.FAIL,
                reason=DkimFailReason.MALFORMED_HEADER,
                domain=_peek_tag(raw, "d"),
                selector=_peek_tag(raw, "s"),
                detail=str(e),
            )

        try:
            computed = compute_body_hash(body, sig.body_canonicalization, sig.body_length)
        except CryptoError as e:
            return self._fail(sig, DkimFailReason.BODY_HASH_MISMATCH, str(e))
        if not hmac.compare_digest(computed, sig.body_hash):
            return self._fail(sig, DkimFailReason.BODY_HASH_MISMATCH, "Computed body hash differs from bh=")

        public_key, failure = await self._fetch_key(sig)
        if failure is not None:
            return failure

        data = signing_input(headers, sig.signed_headers, signature_header, sig.header_canonicalization)
        if not verify_signature(public_key, sig.algorithm, sig.signature, data):
            return self._fail(sig, DkimFailReason.SIGNATURE_INVALID, "Signature does not verify")

        if sig.expiration is not None and self._clock() > sig.expiration:
            return self._fail(sig, DkimFailReason.EXPIRED, f"Signature expired at {sig.expiration}")

        logger.debug("DKIM pass d=%s s=%s", sig.domain, sig.selector)
        return DkimVerification(
            status=DkimStatus.PASS,
            domain=sig.domain,
            selector=sig.selector,
            algorithm=sig.algorithm.value,
        )

    async def _fetch_key(self, sig: DkimSignature) -> tuple:
        """Returns (public key, None) or (None, failure result)."""
        name = _build_dkim_domain(sig.selector, sig.domain)
        try:
            response = await self._fetcher.query(name, "TXT")
        except InvalidDomainError as e:
            return None, self._fail(sig, DkimFailReason.KEY_NOT_FOUND, str(e))

        if response.status in _TEMPORARY:
            logger.warning("DKIM key lookup for %s failed: %s", name, response.status.value)
            return None, DkimVerification(
                status=DkimStatus.TEMPERROR,
                domain=sig.domain,
                selector=sig.selector,
                algorithm=sig.algorithm.value,
                detail=f"{response.status.value} resolving {name}",
            )
        if response.status == DnsStatus.NXDOMAIN or not response.records:
            return None, self._fail(sig, DkimFailReason.KEY_NOT_FOUND, f"No key record at {name}")

        key_tags = next((t for t in map(parse_key_record, response.values) if t is not None), None)
        if key_tags is None:
            return None, self._fail(sig, DkimFailReason.KEY_NOT_FOUND, f"No usable key record at {name}")
        if not re.sub(r"\s+", "", key_tags["p"]):
            return None, self._fail(sig, DkimFailReason.KEY_REVOKED, f"Key at {name} is revoked (empty p=)")

        key_type = key_tags.get("k", "rsa").lower()
        if key_type != _KEY_TYPES[sig.algorithm]:
            return None, self._fail(sig, DkimFailReason.SIGNATURE_INVALID, f"Key type k={key_type} does not match a={sig.algorithm.value}")
        if "h" in key_tags and "sha256" not in [h.strip().lower() for h in key_tags["h"].split(":")]:
            return None, self._fail(sig, DkimFailReason.SIGNATURE_INVALID, "Key does not permit sha256")

        try:
            return load_public_key(key_type, _decode_base64(key_tags["p"], "p")), None
        except (CryptoError, DkimParseError) as e:
            return None, self._fail(sig, DkimFailReason.KEY_NOT_FOUND, f"Malformed key at {name}: {e}")

    @staticmethod
    def _fail(sig: DkimSignature, reason: DkimFailReason, detail: str) -> DkimVerification:
        logger.debug("DKIM fail d=%s s=%s: %s", sig.domain, sig.selector, detail)
        return DkimVerification(
            status=DkimStatus.FAIL,
            reason=reason,
            domain=sig.domain,
            selector=sig.selector,
            algorithm=sig.algorithm.value,
            detail=detail,
        )

    # ── Selector probe ─────────────────────────────────────────────────────────

    async def probe(self, domain: str, selectors) -> tuple:
        """Check which of SELECTORS publish a key for DOMAIN. Never guesses beyond the given list."""
        unique = list(dict.fromkeys(s.strip().lower() for s in selectors if s.strip()))
        return tuple(await asyncio.gather(*(self.probe_selector(domain, s) for s in unique)))

    async def probe_selector(self, domain: str, selector: str) -> DkimKeyProbe:
        name = _build_dkim_domain(selector, domain)
        try:
            response = await self._fetcher.query(name, "TXT")
        except InvalidDomainError:
            return DkimKeyProbe(domain=domain, selector=selector, status=DkimKeyStatus.ABSENT)

        if response.status in _TEMPORARY:
            return DkimKeyProbe(domain=domain, selector=selector, status=DkimKeyStatus.TEMPERROR)
        for value in response.values:
            tags = parse_key_record(value)
            if tags is None:
                continue
            status = DkimKeyStatus.PRESENT if tags["p"] else DkimKeyStatus.REVOKED
            return DkimKeyProbe(domain=domain, selector=selector, status=status, raw_record=value)
        return DkimKeyProbe(domain=domain, selector=selector, status=DkimKeyStatus.ABSENT)


def _build_dkim_domain(selector: str, domain: str) -> str:
    return f"{selector}._domainkey.{domain}"


def _peek_tag(raw_header: str, tag: str) -> Optional[str]:
    match = re.search(rf"(?:^|;|:)\s*{tag}\s*=\s*([^;\s]+)", raw_header)
    return match.group(1).lower() if match else None
