"""SPF evaluator: record parser, macro expander, and mechanism matcher (RFC 7208).

`include` and `redirect` are followed with an explicit frame stack rather than
recursion, so the depth, lookup, and loop limits are enforced structurally.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .dns_fetcher import DnsFetcher, mx_host
from .exceptions import (
    DnsError,
    DnsServfailError,
    DnsTimeoutError,
    InvalidDomainError,
    RecursionLimitError,
    SpfParseError,
)
from .models import (
    DnsStatus,
    DomainName,
    SpfContext,
    SpfEvaluation,
    SpfMechanism,
    SpfQualifier,
    SpfRecord,
    SpfResultCode,
)

logger = logging.getLogger(__name__)

MAX_LOOKUPS = 10
MAX_RECURSION_DEPTH = 10
MAX_VOID_LOOKUPS = 2
MAX_MX_HOSTS = 10
MAX_PTR_NAMES = 10
LOOKUP_MECHANISMS = {"include", "a", "mx", "ptr", "exists", "redirect"}
ZERO_LOOKUP_MECHANISMS = {"ip4", "ip6", "all"}
KNOWN_MECHANISMS = (LOOKUP_MECHANISMS | ZERO_LOOKUP_MECHANISMS) - {"redirect"}

_QUALIFIER_RESULTS = {
    SpfQualifier.PASS: SpfResultCode.PASS,
    SpfQualifier.FAIL: SpfResultCode.FAIL,
    SpfQualifier.SOFTFAIL: SpfResultCode.SOFTFAIL,
    SpfQualifier.NEUTRAL: SpfResultCode.NEUTRAL,
}

_MODIFIER = re.compile(r"^([a-zA-Z][a-zA-Z0-9_.\-]*)=(.*)$")
_MECHANISM = re.compile(r"^([a-zA-Z][a-zA-Z0-9]*)(.*)$")
_DUAL_CIDR = re.compile(r"^(?::([^/]+))?(?:/(\d+))?(?://(\d+))?$")
_MACRO = re.compile(r"%(?:\{([a-zA-Z])(\d*)(r?)([.\-+,/_=]*)\}|[%_\-])")


# ── Parsing ────────────────────────────────────────────────────────────────────

def extract_spf_records(txt_values: list) -> list:
    """TXT strings that announce themselves as SPF version 1."""
    records = []
    for value in txt_values:
        stripped = value.strip()
        if stripped.lower() == "v=spf1" or stripped.lower().startswith("v=spf1 "):
            records.append(stripped)
    return records


def parse_record(domain: str, raw: str) -> SpfRecord:
    """Tokenize an SPF record into an SpfRecord. Raises SpfParseError on any syntax error."""
    tokens = raw.split()
    if not tokens or tokens[0].lower() != "v=spf1":
        raise SpfParseError(f"Not an SPF record: {raw!r}")

    mechanisms = []
    redirect = None
    explanation = None

    for i, token in enumerate(tokens[1:], start=1):
        modifier = _MODIFIER.match(token)
        if modifier and ":" not in modifier.group(1):
            name, value = modifier.group(1).lower(), modifier.group(2)
            if name == "redirect":
                if redirect is not None:
                    raise SpfParseError("SPF record has more than one redirect= modifier")
                redirect = _require_domain_spec(value, token)
            elif name == "exp":
                if explanation is not None:
                    raise SpfParseError("SPF record has more than one exp= modifier")
                explanation = value
            continue  # unknown modifiers are ignored

        if token[0] in "+-~?":
            qualifier = _char_to_qualifier(token[0])
            rest = token[1:]
        else:
            qualifier = SpfQualifier.PASS
            rest = token

        match = _MECHANISM.match(rest)
        if not match:
            raise SpfParseError(f"Invalid SPF term: {token!r}")
        mtype, tail = match.group(1).lower(), match.group(2)
        mechanisms.append(_parse_mechanism(i, token, mtype, qualifier, tail))

    return SpfRecord(
        domain=domain,
        raw=raw,
        mechanisms=tuple(mechanisms),
        redirect=redirect,
        explanation=explanation,
    )


def _parse_mechanism(order: int, token: str, mtype: str, qualifier: SpfQualifier, tail: str) -> SpfMechanism:
    if mtype not in KNOWN_MECHANISMS:
        raise SpfParseError(f"Unknown SPF mechanism: {token!r}")

    if mtype == "all":
        if tail:
            raise SpfParseError(f"'all' takes no argument: {token!r}")
        return SpfMechanism(order=order, raw=token, mtype=mtype, qualifier=qualifier, argument=None)

    if mtype in ("ip4", "ip6"):
        if not tail.startswith(":") or len(tail) == 1:
            raise SpfParseError(f"{mtype} requires a network: {token!r}")
        argument = tail[1:]
        try:
            network = ipaddress.ip_network(argument, strict=False)
        except ValueError as e:
            raise SpfParseError(f"Invalid {mtype} network {argument!r}: {e}") from e
        if network.version != (4 if mtype == "ip4" else 6):
            raise SpfParseError(f"Address family mismatch in {token!r}")
        return SpfMechanism(order=order, raw=token, mtype=mtype, qualifier=qualifier, argument=argument)

    if mtype in ("include", "exists"):
        if not tail.startswith(":"):
            raise SpfParseError(f"{mtype} requires a domain: {token!r}")
        argument = _require_domain_spec(tail[1:], token)
        return SpfMechanism(order=order, raw=token, mtype=mtype, qualifier=qualifier, argument=argument)

    if mtype == "ptr":
        if tail and not tail.startswith(":"):
            raise SpfParseError(f"Invalid ptr mechanism: {token!r}")
        argument = _require_domain_spec(tail[1:], token) if tail else None
        return SpfMechanism(order=order, raw=token, mtype=mtype, qualifier=qualifier, argument=argument)

    # a / mx: optional domain-spec and dual CIDR length
    dual = _DUAL_CIDR.match(tail)
    if not dual:
        raise SpfParseError(f"Invalid {mtype} mechanism: {token!r}")
    argument, cidr4, cidr6 = dual.group(1), dual.group(2), dual.group(3)
    cidr4 = int(cidr4) if cidr4 is not None else None
    cidr6 = int(cidr6) if cidr6 is not None else None
    if (cidr4 is not None and cidr4 > 32) or (cidr6 is not None and cidr6 > 128):
        raise SpfParseError(f"CIDR length out of range in {token!r}")
    return SpfMechanism(
        order=order,
        raw=token,
        mtype=mtype,
        qualifier=qualifier,
        argument=argument,
        cidr4=cidr4,
        cidr6=cidr6,
    )


def _require_domain_spec(value: str, token: str) -> str:
    if not value:
        raise SpfParseError(f"Empty domain-spec in {token!r}")
    if "%" in _MACRO.sub("", value):
        raise SpfParseError(f"Invalid macro in {token!r}")
    return value


# ── Evaluation ─────────────────────────────────────────────────────────────────

@dataclass
class _Frame:
    domain: str
    depth: int
    chain: frozenset    # domains visited on the path from the top-level record
    kind: str           # "top" | "include" | "redirect"
    record: Optional[SpfRecord] = None
    position: int = 0


@dataclass
class _EvaluationState:
    """Per-call budget. Never shared between top-level evaluations."""

    lookups: int = 0
    void_lookups: int = 0
    max_depth: int = 0
    top_record: Optional[str] = None
    notes: list = field(default_factory=list)

    def consume_lookup(self, term: str) -> None:
        if self.lookups >= MAX_LOOKUPS:
            raise RecursionLimitError(f"DNS lookup limit of {MAX_LOOKUPS} exceeded at {term}")
        self.lookups += 1

    def record_void_lookup(self, name: str) -> None:
        self.void_lookups += 1
        if self.void_lookups > MAX_VOID_LOOKUPS:
            raise RecursionLimitError(f"More than {MAX_VOID_LOOKUPS} void lookups (last: {name})")


class SpfEvaluator:
    def __init__(self, fetcher: DnsFetcher):
        self._fetcher = fetcher

    async def evaluate(
        self,
        domain: str,
        sender_ip: Optional[str] = None,
        context: Optional[SpfContext] = None,
    ) -> SpfEvaluation:
        """Evaluate DOMAIN's SPF policy for SENDER_IP. Always returns exactly one result.

        With no sender IP, address mechanisms cannot match; the result is what
        an unlisted sender would receive, with every limit still enforced.
        """
        context = context or SpfContext()
        try:
            domain = DomainName.parse(domain).value
        except InvalidDomainError as e:
            return SpfEvaluation(domain=str(domain), result=SpfResultCode.NONE, sender_ip=sender_ip, reason=str(e))

        ip = None
        if sender_ip:
            try:
                ip = _normalize_ip(ipaddress.ip_address(sender_ip.strip()))
            except ValueError:
                return SpfEvaluation(
                    domain=domain,
                    result=SpfResultCode.PERMERROR,
                    sender_ip=sender_ip,
                    reason=f"Invalid sender IP {sender_ip!r}",
                )

        state = _EvaluationState()
        mechanism = mechanism_domain = reason = None
        try:
            result, mechanism, mechanism_domain, reason = await self._run(domain, ip, context, state)
        except (RecursionLimitError, SpfParseError, InvalidDomainError) as e:
            result, reason = SpfResultCode.PERMERROR, str(e)
        except DnsError as e:
            result, reason = SpfResultCode.TEMPERROR, str(e)

        logger.debug("SPF %s for %s from %s (%d lookups): %s", result.value, domain, ip, state.lookups, reason or mechanism)
        return SpfEvaluation(
            domain=domain,
            result=result,
            sender_ip=str(ip) if ip else None,
            mechanism=mechanism.raw if mechanism else None,
            mechanism_domain=mechanism_domain,
            lookups=state.lookups,
            depth=state.max_depth,
            reason=reason,
            record=state.top_record,
        )

    async def _run(self, domain: str, ip, context: SpfContext, state: _EvaluationState) -> tuple:
        top = _Frame(domain=domain, depth=0, chain=frozenset([domain]), kind="top")
        record, reason = await self._load_record(top)
        if record is None:
            return SpfResultCode.NONE, None, None, reason
        top.record = record
        state.top_record = record.raw

        stack = [top]
        outcome = None  # (result, mechanism, mechanism domain) of the frame just popped
        while stack:
            frame = stack[-1]

            if outcome is not None:
                # The child was pushed for the include at frame.position
                include = frame.record.mechanisms[frame.position]
                child_result = outcome[0]
                outcome = None
                if child_result is SpfResultCode.PASS:
                    stack.pop()
                    outcome = (_QUALIFIER_RESULTS[include.qualifier], include, frame.domain)
                    continue
                # fail / softfail / neutral from an include: no match, keep going
                frame.position += 1

            if frame.record is None:
                frame.record, _ = await self._load_record(frame)

            child, done = await self._advance(frame, ip, context, state)
            if done is not None:
                stack.pop()
                outcome = done
            elif child.kind == "redirect":
                stack[-1] = child
            else:
                stack.append(child)
                state.max_depth = max(state.max_depth, child.depth)

        return outcome[0], outcome[1], outcome[2], None

    async def _load_record(self, frame: _Frame) -> tuple:
        """Returns (SpfRecord | None, reason). Only the top-level frame may lack a record."""
        try:
            response = await self._fetcher.query(frame.domain, "TXT")
        except InvalidDomainError as e:
            if frame.kind == "top":
                return None, str(e)
            raise SpfParseError(str(e)) from e
        _raise_for_temporary(response)

        if response.status == DnsStatus.NXDOMAIN:
            spf_records = []
            reason = f"NXDOMAIN: {frame.domain} does not exist"
        else:
            spf_records = extract_spf_records(response.values)
            reason = f"No SPF record at {frame.domain}"

        if not spf_records:
            if frame.kind == "top":
                return None, reason
            raise SpfParseError(f"{frame.kind} target has no SPF record: {reason}")
        if len(spf_records) > 1:
            raise SpfParseError(f"Multiple SPF records at {frame.domain}")
        return parse_record(frame.domain, spf_records[0]), None

    async def _advance(self, frame: _Frame, ip, context: SpfContext, state: _EvaluationState) -> tuple:
        """Run FRAME from its current position. Returns (child frame, None) or (None, outcome)."""
        mechanisms = frame.record.mechanisms
        while frame.position < len(mechanisms):
            mech = mechanisms[frame.position]

            if mech.mtype == "include":
                state.consume_lookup(mech.raw)
                target = self._target(mech, frame.domain, ip, context)
                if frame.depth + 1 > MAX_RECURSION_DEPTH:
                    raise RecursionLimitError(f"SPF include chain exceeded maximum depth at {target}")
                if target in frame.chain:
                    raise RecursionLimitError(f"SPF include loop detected: {target}")
                return _Frame(target, frame.depth + 1, frame.chain | {target}, "include"), None

            if mech.mtype in LOOKUP_MECHANISMS:
                state.consume_lookup(mech.raw)
            if await self._matches(mech, frame.domain, ip, context, state):
                logger.debug("SPF %s matched %s in %s", ip, mech.raw, frame.domain)
                return None, (_QUALIFIER_RESULTS[mech.qualifier], mech, frame.domain)
            frame.position += 1

        if frame.record.redirect:
            state.consume_lookup(f"redirect={frame.record.redirect}")
            target = self._expand(frame.record.redirect, frame.domain, ip, context)
            if target in frame.chain:
                raise RecursionLimitError(f"SPF redirect loop detected: {target}")
            return _Frame(target, frame.depth, frame.chain | {target}, "redirect"), None

        return None, (SpfResultCode.NEUTRAL, None, frame.domain)

    # ── Mechanism matching ─────────────────────────────────────────────────────

    async def _matches(self, mech: SpfMechanism, domain: str, ip, context: SpfContext, state) -> bool:
        if mech.mtype == "all":
            return True
        if ip is None:
            return False
        if mech.mtype in ("ip4", "ip6"):
            network = ipaddress.ip_network(mech.argument, strict=False)
            return ip.version == network.version and ip in network

        target = self._target(mech, domain, ip, context)
        if mech.mtype == "a":
            addresses = await self._resolve(target, _address_type(ip), state)
            return any(_in_cidr(ip, a, mech) for a in addresses)
        if mech.mtype == "mx":
            hosts = [h for h in (mx_host(v) for v in await self._resolve(target, "MX", state)) if h]
            if len(hosts) > MAX_MX_HOSTS:
                raise RecursionLimitError(f"{target} has more than {MAX_MX_HOSTS} MX hosts")
            for host in hosts:
                addresses = await self._resolve(host, _address_type(ip), state, count_void=False)
                if any(_in_cidr(ip, a, mech) for a in addresses):
                    return True
            return False
        if mech.mtype == "exists":
            return bool(await self._resolve(target, "A", state))
        if mech.mtype == "ptr":
            return await self._ptr_matches(target, ip)
        raise SpfParseError(f"Unknown SPF mechanism: {mech.raw!r}")

    async def _ptr_matches(self, target: str, ip) -> bool:
        try:
            target_name = DomainName.parse(target)
        except InvalidDomainError as e:
            raise SpfParseError(str(e)) from e
        # DNS errors during ptr processing mean "no match", not temperror
        response = await self._fetcher.query_ptr(str(ip))
        if response.status != DnsStatus.NOERROR:
            return False
        for name in response.values[:MAX_PTR_NAMES]:
            try:
                candidate = DomainName.parse(name)
                forward = await self._fetcher.query(candidate.value, _address_type(ip))
            except InvalidDomainError:
                continue
            if forward.status != DnsStatus.NOERROR:
                continue
            if any(_same_address(ip, a) for a in forward.values) and candidate.is_subdomain_of(target_name):
                return True
        return False

    async def _resolve(self, name: str, record_type: str, state: _EvaluationState, count_void: bool = True) -> list:
        try:
            response = await self._fetcher.query(name, record_type)
        except InvalidDomainError as e:
            raise SpfParseError(str(e)) from e
        _raise_for_temporary(response)
        if response.status == DnsStatus.NXDOMAIN or not response.records:
            if count_void:
                state.record_void_lookup(name)
            return []
        return response.values

    # ── Macros ─────────────────────────────────────────────────────────────────

    def _target(self, mech: SpfMechanism, domain: str, ip, context: SpfContext) -> str:
        if mech.argument is None:
            return domain
        return self._expand(mech.argument, domain, ip, context)

    def _expand(self, spec: str, domain: str, ip, context: SpfContext) -> str:
        """Expand RFC 7208 section 7 macros in a domain-spec."""
        if "%" not in spec:
            return spec.rstrip(".").lower()

        sender = context.sender or f"postmaster@{domain}"
        local, _, sender_domain = sender.rpartition("@")
        values = {
            "s": sender,
            "l": local or "postmaster",
            "o": sender_domain or domain,
            "d": domain,
            "i": _ip_macro(ip),
            "p": "unknown",
            "v": "ip6" if ip is not None and ip.version == 6 else "in-addr",
            "h": context.helo or domain,
        }

        def _substitute(match) -> str:
            text = match.group(0)
            if text == "%%":
                return "%"
            if text == "%_":
                return " "
            if text == "%-":
                return "%20"
            letter = match.group(1).lower()
            if letter not in values:
                raise SpfParseError(f"Macro %{{{letter}}} not allowed in a domain-spec")
            parts = re.split("[" + re.escape(match.group(4) or ".") + "]", values[letter])
            if match.group(3):
                parts.reverse()
            if match.group(2):
                keep = int(match.group(2))
                if keep == 0:
                    raise SpfParseError("Macro transformer of zero labels")
                parts = parts[-keep:]
            return ".".join(parts)

        expanded = _MACRO.sub(_substitute, spec).rstrip(".").lower()
        while len(expanded) > 253 and "." in expanded:
            expanded = expanded.split(".", 1)[1]
        return expanded


# ── Helpers ────────────────────────────────────────────────────────────────────

def _char_to_qualifier(char: str) -> SpfQualifier:
    return {
        "+": SpfQualifier.PASS,
        "-": SpfQualifier.FAIL,
        "~": SpfQualifier.SOFTFAIL,
        "?": SpfQualifier.NEUTRAL,
    }.get(char, SpfQualifier.PASS)


def _raise_for_temporary(response) -> None:
    if response.status == DnsStatus.TIMEOUT:
        raise DnsTimeoutError(f"Timeout resolving {response.record_type} {response.domain}")
    if response.status in (DnsStatus.SERVFAIL, DnsStatus.REFUSED):
        raise DnsServfailError(f"{response.status.value} resolving {response.record_type} {response.domain}")


def _normalize_ip(ip):
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _address_type(ip) -> str:
    return "A" if ip.version == 4 else "AAAA"


def _in_cidr(ip, address: str, mech: SpfMechanism) -> bool:
    prefix = mech.cidr4 if ip.version == 4 else mech.cidr6
    if prefix is None:
        prefix = 32 if ip.version == 4 else 128
    try:
        network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
    except ValueError:
        return False
    return network.version == ip.version and ip in network


def _same_address(ip, address: str) -> bool:
    try:
        return ipaddress.ip_address(address) == ip
    except ValueError:
        return False


def _ip_macro(ip) -> str:
    if ip is None:
        return "unknown"
    if ip.version == 4:
        return str(ip)
    return ".".join(ip.exploded.replace(":", ""))
