"""DKIM canonicalization (RFC 6376 section 3.4) and signing-input construction.

Headers are (name, raw) pairs where raw is the complete field as received,
"Name: value" including folding, terminated by CRLF. Bodies are bytes with
CRLF line endings.
"""

import re

from .models import Canonicalization

_FOLD = re.compile(r"\r\n(?=[ \t])")
_WSP_RUN = re.compile(r"[ \t]+")
_BODY_WSP_RUN = re.compile(rb"[ \t]+")
_TRAILING_CRLFS = re.compile(rb"(?:\r\n)+\Z")
_SIGNATURE_VALUE = re.compile(r"(^|[:;])(\s*b\s*=)[^;]*")


# ── Headers ────────────────────────────────────────────────────────────────────

def canonicalize_header(name: str, raw: str, method: Canonicalization) -> str:
    if method is Canonicalization.SIMPLE:
        return raw
    _, _, value = raw.partition(":")
    value = _WSP_RUN.sub(" ", _FOLD.sub("", value)).strip(" \t\r\n")
    return f"{name.strip().lower()}:{value}\r\n"


def select_headers(headers, signed_names) -> list:
    """Pick header instances for an h= list.

    Repeated names consume instances from the bottom of the header block up;
    a name with no instance left contributes nothing.
    """
    remaining = {}
    for name, raw in headers:
        remaining.setdefault(name.lower(), []).append((name, raw))

    selected = []
    for wanted in signed_names:
        instances = remaining.get(wanted.lower())
        if instances:
            selected.append(instances.pop())
    return selected


def strip_signature_value(raw: str) -> str:
    """Empty the b= tag of a DKIM-Signature field, keeping every other byte."""
    return _SIGNATURE_VALUE.sub(r"\1\2", raw)


def signing_input(headers, signed_names, signature_header: tuple, method: Canonicalization) -> bytes:
    """The exact bytes covered by the signature: selected headers, then the
    DKIM-Signature field itself with b= emptied and no trailing CRLF."""
    parts = [canonicalize_header(name, raw, method) for name, raw in select_headers(headers, signed_names)]

    sig_name, sig_raw = signature_header
    own = canonicalize_header(sig_name, strip_signature_value(sig_raw), method)
    if own.endswith("\r\n"):
        own = own[:-2]
    parts.append(own)

    return "".join(parts).encode("utf-8", errors="surrogateescape")


# ── Body ───────────────────────────────────────────────────────────────────────

def canonicalize_body(body: bytes, method: Canonicalization) -> bytes:
    if method is Canonicalization.SIMPLE:
        # An empty body canonicalizes to a single CRLF
        return _TRAILING_CRLFS.sub(b"", body) + b"\r\n"

    lines = [_BODY_WSP_RUN.sub(b" ", line).rstrip(b" \t") for line in body.split(b"\r\n")]
    joined = _TRAILING_CRLFS.sub(b"", b"\r\n".join(lines))
    return joined + b"\r\n" if joined else b""
