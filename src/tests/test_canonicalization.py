"""Unit tests for DKIM header/body canonicalization and signing input."""

from spoof_detector.canonicalization import (
    canonicalize_body,
    canonicalize_header,
    select_headers,
    signing_input,
    strip_signature_value,
)
from spoof_detector.models import Canonicalization

RELAXED = Canonicalization.RELAXED
SIMPLE = Canonicalization.SIMPLE


class TestHeaderCanonicalization:
    def test_simple_is_verbatim(self):
        raw = "Subject:  Hello \r\n World\r\n"
        assert canonicalize_header("Subject", raw, SIMPLE) == raw

    def test_relaxed_lowercases_name_and_unfolds(self):
        raw = "SubJect :  Hello \r\n  World \r\n"
        assert canonicalize_header("SubJect ", raw, RELAXED) == "subject:Hello World\r\n"

    def test_relaxed_collapses_tabs(self):
        assert canonicalize_header("To", "To:\ta\t\tb\r\n", RELAXED) == "to:a b\r\n"

    def test_relaxed_empty_value(self):
        assert canonicalize_header("X-Empty", "X-Empty:   \r\n", RELAXED) == "x-empty:\r\n"


class TestSelectHeaders:
    HEADERS = (
        ("Received", "Received: first\r\n"),
        ("From", "From: a@example.com\r\n"),
        ("Received", "Received: second\r\n"),
    )

    def test_repeated_names_taken_bottom_up(self):
        picked = select_headers(self.HEADERS, ["received", "received"])
        assert [raw for _, raw in picked] == ["Received: second\r\n", "Received: first\r\n"]

    def test_extra_instances_contribute_nothing(self):
        picked = select_headers(self.HEADERS, ["from", "from"])
        assert len(picked) == 1

    def test_absent_header_contributes_nothing(self):
        assert select_headers(self.HEADERS, ["subject"]) == []

    def test_name_match_is_case_insensitive(self):
        assert len(select_headers(self.HEADERS, ["FROM"])) == 1


class TestStripSignatureValue:
    def test_last_tag(self):
        raw = "DKIM-Signature: v=1; bh=abc=; b=XYZ+/=\r\n"
        assert strip_signature_value(raw) == "DKIM-Signature: v=1; bh=abc=; b="

    def test_middle_tag_keeps_following_tags(self):
        raw = "DKIM-Signature: v=1; b=XYZ; bh=abc"
        assert strip_signature_value(raw) == "DKIM-Signature: v=1; b=; bh=abc"

    def test_first_tag(self):
        raw = "DKIM-Signature: b=XYZ; v=1"
        assert strip_signature_value(raw) == "DKIM-Signature: b=; v=1"

    def test_folded_value(self):
        raw = "DKIM-Signature: v=1; b=abc\r\n def\r\n ghi; d=example.com\r\n"
        assert strip_signature_value(raw) == "DKIM-Signature: v=1; b=; d=example.com\r\n"

    def test_bh_untouched(self):
        raw = "DKIM-Signature: bh=abc; v=1"
        assert strip_signature_value(raw) == raw


class TestBodyCanonicalization:
    def test_simple_empty_body_is_crlf(self):
        assert canonicalize_body(b"", SIMPLE) == b"\r\n"

    def test_simple_strips_trailing_empty_lines(self):
        assert canonicalize_body(b"a \r\n\r\n\r\n", SIMPLE) == b"a \r\n"

    def test_simple_adds_missing_crlf(self):
        assert canonicalize_body(b"abc", SIMPLE) == b"abc\r\n"

    def test_relaxed_empty_body_is_empty(self):
        assert canonicalize_body(b"", RELAXED) == b""
        assert canonicalize_body(b"\r\n\r\n", RELAXED) == b""

    def test_relaxed_whitespace(self):
        assert canonicalize_body(b"a  b \t\r\n\r\n", RELAXED) == b"a b\r\n"

    def test_relaxed_keeps_inner_empty_lines(self):
        assert canonicalize_body(b"a\r\n\r\nb\r\n", RELAXED) == b"a\r\n\r\nb\r\n"


class TestSigningInput:
    def test_signature_field_last_without_crlf(self):
        headers = (("From", "From: a@example.com\r\n"), ("To", "To: b@example.org\r\n"))
        sig = ("DKIM-Signature", "DKIM-Signature: v=1; h=from:to; b=SIG\r\n")
        data = signing_input(headers, ["from", "to"], sig, RELAXED)
        assert data == b"from:a@example.com\r\nto:b@example.org\r\ndkim-signature:v=1; h=from:to; b="

    def test_simple_signing_input(self):
        headers = (("From", "From: a@example.com\r\n"),)
        sig = ("DKIM-Signature", "DKIM-Signature: v=1; b=SIG\r\n")
        data = signing_input(headers, ["from"], sig, SIMPLE)
        assert data == b"From: a@example.com\r\nDKIM-Signature: v=1; b="
