"""Tests for DkimVerifier: signatures are produced in-test with real keys, DNS is mocked."""

import asyncio

import pytest

from spoof_detector.dkim_verifier import (
    MAX_SIGNATURES,
    DkimVerifier,
    compute_body_hash,
    load_public_key,
    parse_key_record,
    parse_signature,
)
from spoof_detector.email_parser import parse_email
from spoof_detector.exceptions import CryptoError, DkimParseError
from spoof_detector.models import (
    Canonicalization,
    DkimAlgorithm,
    DkimFailReason,
    DkimKeyStatus,
    DkimStatus,
)

from .helpers import (
    MESSAGE,
    b64,
    ed25519_key_record,
    mock_fetcher,
    rsa_key_record,
    servfail,
    sign_message,
)

DOMAIN = "example.com"
KEY_NAME = "sel._domainkey.example.com"


def verify(message, mapping=None, clock=None):
    if mapping is None:
        mapping = {KEY_NAME: [rsa_key_record()]}
    parsed = parse_email(message)
    verifier = DkimVerifier(mock_fetcher(mapping), clock=clock)
    return asyncio.run(verifier.verify(parsed.headers, parsed.body))


def single(message, mapping=None, clock=None):
    results = verify(message, mapping, clock)
    assert len(results) == 1
    return results[0]


class TestParseSignature:
    BASE = "DKIM-Signature: v=1; a=rsa-sha256; c=relaxed/simple; d=Example.COM; s=sel; h=From:To; bh=YWJj; b=ZGVm"

    def test_fields(self):
        sig = parse_signature(self.BASE)
        assert sig.algorithm is DkimAlgorithm.RSA_SHA256
        assert sig.header_canonicalization is Canonicalization.RELAXED
        assert sig.body_canonicalization is Canonicalization.SIMPLE
        assert sig.domain == "example.com"
        assert sig.signed_headers == ("from", "to")
        assert sig.body_hash == b"abc"
        assert sig.signature == b"def"

    def test_header_only_canonicalization_defaults_body_to_simple(self):
        sig = parse_signature(self.BASE.replace("c=relaxed/simple", "c=relaxed"))
        assert sig.body_canonicalization is Canonicalization.SIMPLE

    def test_missing_required_tag(self):
        with pytest.raises(DkimParseError, match="bh"):
            parse_signature(self.BASE.replace(" bh=YWJj;", ""))

    def test_missing_canonicalization_tag(self):
        with pytest.raises(DkimParseError):
            parse_signature(self.BASE.replace(" c=relaxed/simple;", ""))

    def test_unsupported_algorithm(self):
        with pytest.raises(DkimParseError):
            parse_signature(self.BASE.replace("rsa-sha256", "rsa-sha1"))

    def test_from_must_be_signed(self):
        with pytest.raises(DkimParseError):
            parse_signature(self.BASE.replace("h=From:To", "h=To:Subject"))

    def test_duplicate_tag(self):
        with pytest.raises(DkimParseError):
            parse_signature(self.BASE + "; d=other.com")

    def test_identity_outside_domain(self):
        with pytest.raises(DkimParseError):
            parse_signature(self.BASE + "; i=@evil.net")

    def test_identity_subdomain_allowed(self):
        assert parse_signature(self.BASE + "; i=bounce@mail.example.com").identity == "bounce@mail.example.com"

    def test_expiration_before_timestamp(self):
        with pytest.raises(DkimParseError):
            parse_signature(self.BASE + "; t=200; x=100")


class TestKeyRecords:
    def test_parse_key_record(self):
        assert parse_key_record("v=DKIM1; k=rsa; p=abc")["p"] == "abc"

    def test_non_dkim_txt_ignored(self):
        assert parse_key_record("v=spf1 -all") is None

    def test_revoked_key_kept(self):
        assert parse_key_record("v=DKIM1; p=")["p"] == ""

    def test_ed25519_key_wrong_length(self):
        with pytest.raises(CryptoError):
            load_public_key("ed25519", b"short")

    def test_unknown_key_type(self):
        with pytest.raises(CryptoError):
            load_public_key("dsa", b"whatever")

    def test_garbage_rsa_key(self):
        with pytest.raises(CryptoError):
            load_public_key("rsa", b"\x00\x01garbage")

    def test_body_length_beyond_body(self):
        with pytest.raises(CryptoError):
            compute_body_hash(b"short\r\n", Canonicalization.SIMPLE, 1000)


class TestVerifyPass:
    def test_rsa_relaxed(self):
        result = single(sign_message())
        assert result.status is DkimStatus.PASS
        assert (result.domain, result.selector, result.algorithm) == (DOMAIN, "sel", "rsa-sha256")

    def test_rsa_simple(self):
        assert single(sign_message(canonicalization="simple/simple")).status is DkimStatus.PASS

    def test_rsa_pkcs1_key(self):
        result = single(sign_message(), {KEY_NAME: [rsa_key_record(pkcs1=True)]})
        assert result.status is DkimStatus.PASS

    def test_ed25519(self):
        message = sign_message(algorithm="ed25519-sha256")
        result = single(message, {KEY_NAME: [ed25519_key_record()]})
        assert result.status is DkimStatus.PASS
        assert result.algorithm == "ed25519-sha256"

    def test_relaxed_tolerates_header_whitespace(self):
        message = sign_message().replace(b"Subject: Quarterly  report", b"Subject:Quarterly report")
        assert single(message).status is DkimStatus.PASS

    def test_unsigned_header_may_change(self):
        message = sign_message().replace(b"<abc123@example.com>", b"<other@example.com>")
        assert single(message).status is DkimStatus.PASS

    def test_body_length_allows_appended_content(self):
        message = sign_message(body_length=10) + b"Appended footer\r\n"
        assert single(message).status is DkimStatus.PASS

    def test_unexpired_signature(self):
        message = sign_message(extra_tags=" t=1000; x=2000;")
        assert single(message, clock=lambda: 1500.0).status is DkimStatus.PASS

    def test_key_record_among_other_txt(self):
        result = single(sign_message(), {KEY_NAME: ["unrelated text", rsa_key_record()]})
        assert result.status is DkimStatus.PASS


class TestVerifyFail:
    def test_body_bit_flip(self):
        message = sign_message().replace(b"Hello Bob", b"Iello Bob")
        result = single(message)
        assert result.status is DkimStatus.FAIL
        assert result.reason is DkimFailReason.BODY_HASH_MISMATCH

    def test_simple_body_whitespace_change(self):
        message = sign_message(canonicalization="simple/simple").replace(b"attached.  ", b"attached.")
        assert single(message).reason is DkimFailReason.BODY_HASH_MISMATCH

    def test_signed_header_changed(self):
        message = sign_message().replace(b"Quarterly  report", b"Quarterly  rep0rt")
        result = single(message)
        assert result.status is DkimStatus.FAIL
        assert result.reason is DkimFailReason.SIGNATURE_INVALID

    def test_wrong_key(self):
        from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: PLC0415

        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        result = single(sign_message(), {KEY_NAME: [rsa_key_record(other)]})
        assert result.reason is DkimFailReason.SIGNATURE_INVALID

    def test_key_not_found(self):
        result = single(sign_message(), {})
        assert result.status is DkimStatus.FAIL
        assert result.reason is DkimFailReason.KEY_NOT_FOUND

    def test_key_revoked(self):
        result = single(sign_message(), {KEY_NAME: ["v=DKIM1; k=rsa; p="]})
        assert result.reason is DkimFailReason.KEY_REVOKED

    def test_key_type_mismatch(self):
        message = sign_message(algorithm="ed25519-sha256")
        result = single(message, {KEY_NAME: [rsa_key_record()]})
        assert result.reason is DkimFailReason.SIGNATURE_INVALID

    def test_key_hash_restriction(self):
        record = rsa_key_record().replace("k=rsa;", "k=rsa; h=sha1;")
        assert single(sign_message(), {KEY_NAME: [record]}).reason is DkimFailReason.SIGNATURE_INVALID

    def test_malformed_key_data(self):
        result = single(sign_message(), {KEY_NAME: [f"v=DKIM1; k=rsa; p={b64(b'not a key')}"]})
        assert result.reason is DkimFailReason.KEY_NOT_FOUND

    def test_expired(self):
        message = sign_message(extra_tags=" t=1000; x=2000;")
        result = single(message, clock=lambda: 3000.0)
        assert result.status is DkimStatus.FAIL
        assert result.reason is DkimFailReason.EXPIRED

    def test_malformed_header(self):
        message = b"DKIM-Signature: v=1; a=rsa-sha256; d=example.com; s=sel\r\n" + MESSAGE
        result = single(message)
        assert result.reason is DkimFailReason.MALFORMED_HEADER
        assert result.domain == DOMAIN
        assert result.selector == "sel"

    def test_dns_failure_is_temperror(self):
        result = single(sign_message(), {KEY_NAME: servfail(KEY_NAME)})
        assert result.status is DkimStatus.TEMPERROR
        assert result.reason is None


class TestMultipleSignatures:
    def test_no_signature(self):
        results = verify(MESSAGE)
        assert [r.status for r in results] == [DkimStatus.NO_SIGNATURE]

    def test_each_signature_judged_independently(self):
        message = sign_message(sign_message(), domain="example.net", selector="s2")
        results = verify(message)
        assert [r.domain for r in results] == ["example.net", DOMAIN]
        assert results[0].reason is DkimFailReason.KEY_NOT_FOUND
        assert results[1].status is DkimStatus.PASS

    def test_signature_count_is_capped(self):
        message = b"DKIM-Signature: v=1\r\n" * (MAX_SIGNATURES + 2) + MESSAGE
        results = verify(message)
        assert len(results) == MAX_SIGNATURES
        assert all(r.reason is DkimFailReason.MALFORMED_HEADER for r in results)


class TestProbe:
    def probe(self, mapping, selectors):
        verifier = DkimVerifier(mock_fetcher(mapping))
        return asyncio.run(verifier.probe(DOMAIN, selectors))

    def test_statuses(self):
        probes = self.probe(
            {KEY_NAME: [rsa_key_record()], "old._domainkey.example.com": ["v=DKIM1; p="]},
            ["sel", "old", "missing"],
        )
        assert [(p.selector, p.status) for p in probes] == [
            ("sel", DkimKeyStatus.PRESENT),
            ("old", DkimKeyStatus.REVOKED),
            ("missing", DkimKeyStatus.ABSENT),
        ]

    def test_selectors_deduplicated(self):
        probes = self.probe({}, ["Sel", "sel", " sel "])
        assert len(probes) == 1

    def test_temperror(self):
        probes = self.probe({KEY_NAME: servfail(KEY_NAME)}, ["sel"])
        assert probes[0].status is DkimKeyStatus.TEMPERROR

    def test_present_probe_keeps_record(self):
        record = rsa_key_record()
        probes = self.probe({KEY_NAME: [record]}, ["sel"])
        assert probes[0].raw_record == record
