"""Header/domain extractor: raw RFC 5322 message -> ParsedEmail.

Header fields are kept byte-for-byte (CRLF line endings, folding intact)
because DKIM simple canonicalization signs them verbatim.
"""

import ipaddress
import logging
import re
from email.utils import getaddresses, parseaddr
from typing import Optional

from .exceptions import EmailParseError, InvalidDomainError
from .models import DomainName, ParsedEmail

logger = logging.getLogger(__name__)

_LINE_ENDING = re.compile(rb"\r?\n")
_FIELD_NAME = re.compile(r"^[!-9;-~]+$")  # printable US-ASCII except colon
_CLIENT_IP = re.compile(r"client-ip\s*=\s*([0-9A-Fa-f:.]+)")
_BRACKETED_IP = re.compile(r"\[(?:IPv6:)?([0-9A-Fa-f:.]+)\]")
_RECEIVED_FROM = re.compile(r"^\s*from\s+([^\s();]+)", re.IGNORECASE)


def split_message(raw: bytes) -> tuple:
    """Split RAW into ((name, raw_field), ...) and the body. Bare LF is normalized to CRLF."""
    data = _LINE_ENDING.sub(b"\r\n", raw)
    head, sep, body = data.partition(b"\r\n\r\n")
    if not sep:
        body = b""

    headers = []
    lines = head.decode("utf-8", errors="surrogateescape").split("\r\n")
    for index, line in enumerate(lines):
        if not line:
            continue
        if index == 0 and line.startswith("From "):
            continue  # mbox envelope line
        if line[0] in " \t":
            if not headers:
                raise EmailParseError("Message begins with a header continuation line")
            name, field = headers[-1]
            headers[-1] = (name, field + line + "\r\n")
            continue
        name, colon, _ = line.partition(":")
        if not colon or not _FIELD_NAME.match(name.rstrip(" \t")):
            raise EmailParseError(f"Malformed header line: {line[:60]!r}")
        headers.append((name.rstrip(" \t"), line + "\r\n"))

    if not headers:
        raise EmailParseError("Message has no header fields")
    return tuple(headers), body


def header_value(raw_field: str) -> str:
    """Unfolded value of a raw header field."""
    _, _, value = raw_field.partition(":")
    return re.sub(r"\r\n(?=[ \t])", "", value).strip()


def get_header(headers, name: str) -> Optional[str]:
    """Value of the topmost NAME header, or None."""
    for field_name, raw in headers:
        if field_name.lower() == name.lower():
            return header_value(raw)
    return None


def get_all_headers(headers, name: str) -> list:
    return [header_value(raw) for field_name, raw in headers if field_name.lower() == name.lower()]


def parse_email(raw) -> ParsedEmail:
    """Extract the identities the evaluators need. Raises EmailParseError when
    the message cannot be analysed at all (no headers, no usable From)."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8", errors="surrogateescape")
    if not raw or not raw.strip():
        raise EmailParseError("Empty message")

    headers, body = split_message(raw)

    from_value = get_header(headers, "From")
    if from_value is None:
        raise EmailParseError("Message has no From header")
    from_address = _first_address(from_value)
    if from_address is None:
        raise EmailParseError(f"No address in From header: {from_value!r}")
    from_domain = _address_domain(from_address)
    if from_domain is None:
        raise EmailParseError(f"From address has no valid domain: {from_address!r}")

    mail_from = None
    return_path = get_header(headers, "Return-Path")
    if return_path:
        _, address = parseaddr(return_path)
        mail_from = address or None  # "<>" is the null reverse-path

    sender_ip, helo = _sender_identity(headers)
    logger.debug("Parsed message from %s (ip=%s, helo=%s)", from_domain, sender_ip, helo)

    return ParsedEmail(
        headers=headers,
        body=body,
        from_address=from_address,
        from_domain=from_domain,
        mail_from=mail_from,
        mail_from_domain=_address_domain(mail_from) if mail_from else None,
        sender_ip=sender_ip,
        helo=helo,
    )


def _first_address(value: str) -> Optional[str]:
    for _, address in getaddresses([value]):
        if "@" in address:
            return address
    return None


def _address_domain(address: str) -> Optional[str]:
    _, _, domain = address.rpartition("@")
    try:
        return DomainName.parse(domain.strip().rstrip(">")).value
    except InvalidDomainError:
        return None


def _sender_identity(headers) -> tuple:
    """(sender IP, HELO) from Received-SPF client-ip= or the topmost Received header."""
    sender_ip = None
    received_spf = get_header(headers, "Received-SPF")
    if received_spf:
        match = _CLIENT_IP.search(received_spf)
        if match:
            sender_ip = _valid_ip(match.group(1))

    helo = None
    received = get_header(headers, "Received")
    if received:
        if sender_ip is None:
            for candidate in _BRACKETED_IP.findall(received):
                sender_ip = _valid_ip(candidate)
                if sender_ip:
                    break
        match = _RECEIVED_FROM.match(received)
        if match:
            helo = match.group(1).lower()
    return sender_ip, helo


def _valid_ip(text: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(text.strip().rstrip(".")))
    except ValueError:
        return None
