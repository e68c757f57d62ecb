"""Verdict engine: fuses SPF, DKIM, DMARC and reputation results into one level.

Both entry points are pure: identical inputs always produce an identical Verdict.

Email verdict:
    Invalid  domain not resolvable, or no MX and no SPF/DKIM record at all
    Strong   DMARC enforces (reject, or quarantine at pct=100) AND DMARC pass
             AND SPF pass AND a DKIM pass AND domain older than the maturity threshold
    Weak     none of SPF / DKIM / DMARC pass
    Medium   everything else

Domain verdict (no message):
    Invalid  domain does not exist
    Strong   unlisted senders get SPF fail AND DMARC enforces AND domain established
    Medium   DMARC enforces, or unlisted senders get SPF fail or softfail
    Weak     everything else
    Unknown domain age caps the level at Medium.
"""

from .dmarc_evaluator import effective_policy
from .models import (
    DkimFailReason,
    DkimKeyStatus,
    DkimStatus,
    DmarcDiscovery,
    DmarcEvaluation,
    DmarcPolicy,
    DomainReputation,
    SpfEvaluation,
    SpfResultCode,
    Verdict,
    VerdictLevel,
)

DEFAULT_MATURITY_DAYS = 365

# Email score weights, summing to 100
SPF_WEIGHT = 25.0
DKIM_WEIGHT = 25.0
DMARC_PASS_WEIGHT = 20.0
DMARC_POLICY_WEIGHT = 15.0
AGE_WEIGHT = 10.0
MX_WEIGHT = 5.0

# Domain score weights, summing to 100
POSTURE_SPF_WEIGHT = 30.0
POSTURE_DMARC_WEIGHT = 30.0
POSTURE_DKIM_WEIGHT = 20.0
POSTURE_AGE_WEIGHT = 15.0
POSTURE_MX_WEIGHT = 5.0

_POLICY_STRENGTH = {
    DmarcPolicy.NONE: 0.0,
    DmarcPolicy.QUARANTINE: 0.66,
    DmarcPolicy.REJECT: 1.0,
}


class VerdictEngine:
    def __init__(self, maturity_days: int = DEFAULT_MATURITY_DAYS):
        self._maturity_days = maturity_days

    # ── Email verdict ──────────────────────────────────────────────────────────

    def score(self, spf: SpfEvaluation, dkim, dmarc: DmarcEvaluation, reputation: DomainReputation) -> Verdict:
        """Total: every combination of inputs yields a Verdict."""
        factors = []
        unresolvable = self._unresolvable(reputation)
        if unresolvable:
            factors.append("domain not resolvable")

        factors.append(self._spf_factor(spf))
        if spf.sender_ip is None and spf.result is not SpfResultCode.NONE:
            factors.append("sender IP unknown")
        factors.append(self._dkim_factor(dkim))
        factors.extend(self._dmarc_factors(dmarc))
        factors.extend(self._reputation_factors(reputation))

        if unresolvable:
            return Verdict(level=VerdictLevel.INVALID, contributing_factors=tuple(factors), score=0.0)
        if self._no_mail_footprint(spf, dkim, reputation):
            factors.append("no MX, SPF or DKIM record")
            return Verdict(level=VerdictLevel.INVALID, contributing_factors=tuple(factors), score=0.0)

        spf_pass = spf.result is SpfResultCode.PASS
        dkim_pass = _dkim_passed(dkim)

        if self._is_strong(spf_pass, dkim_pass, dmarc, reputation):
            level = VerdictLevel.STRONG
        elif not spf_pass and not dkim_pass and not dmarc.passed:
            level = VerdictLevel.WEAK
        else:
            level = VerdictLevel.MEDIUM

        return Verdict(
            level=level,
            contributing_factors=tuple(factors),
            score=self._email_score(spf, dkim_pass, dmarc, reputation),
        )

    def _is_strong(self, spf_pass: bool, dkim_pass: bool, dmarc: DmarcEvaluation, reputation: DomainReputation) -> bool:
        return (
            dmarc.record is not None
            and _enforcing(dmarc.policy, dmarc.record.pct)
            and dmarc.passed
            and spf_pass
            and dkim_pass
            and self._established(reputation)
        )

    def _no_mail_footprint(self, spf: SpfEvaluation, dkim, reputation: DomainReputation) -> bool:
        no_dkim_record = all(
            r.status is DkimStatus.NO_SIGNATURE or r.reason is DkimFailReason.KEY_NOT_FOUND for r in dkim
        )
        return reputation.mx_count == 0 and spf.result is SpfResultCode.NONE and no_dkim_record

    def _email_score(self, spf: SpfEvaluation, dkim_pass: bool, dmarc: DmarcEvaluation, reputation: DomainReputation) -> float:
        total = 0.0
        if spf.result is SpfResultCode.PASS:
            total += SPF_WEIGHT
        if dkim_pass:
            total += DKIM_WEIGHT
        if dmarc.passed:
            total += DMARC_PASS_WEIGHT
        if dmarc.record is not None:
            total += DMARC_POLICY_WEIGHT * _POLICY_STRENGTH[dmarc.policy] * dmarc.record.pct / 100
        total += AGE_WEIGHT * self._age_fraction(reputation)
        if reputation.has_mx:
            total += MX_WEIGHT
        return round(total, 1)

    # ── Domain verdict ─────────────────────────────────────────────────────────

    def score_domain(self, spf: SpfEvaluation, dkim_keys, dmarc: DmarcDiscovery, reputation: DomainReputation) -> Verdict:
        factors = []
        if self._unresolvable(reputation):
            factors.append("domain not resolvable")
            factors.extend(self._reputation_factors(reputation))
            return Verdict(level=VerdictLevel.INVALID, contributing_factors=tuple(factors), score=0.0)

        factors.append(f"SPF {spf.result.value} for unlisted senders")
        factors.extend(self._dkim_key_factors(dkim_keys))
        record = dmarc.record
        policy = effective_policy(dmarc)
        if record is None:
            factors.append("DMARC lookup failed" if dmarc.temperror else "no DMARC record")
        else:
            factors.append(f"DMARC p={policy.value}" + (f" pct={record.pct}" if record.pct < 100 else ""))
        factors.extend(self._reputation_factors(reputation))

        enforcing = record is not None and _enforcing(policy, record.pct)
        if spf.result is SpfResultCode.FAIL and enforcing and self._established(reputation):
            level = VerdictLevel.STRONG
        elif enforcing or spf.result in (SpfResultCode.FAIL, SpfResultCode.SOFTFAIL):
            level = VerdictLevel.MEDIUM
        else:
            level = VerdictLevel.WEAK

        return Verdict(
            level=level,
            contributing_factors=tuple(factors),
            score=self._domain_score(spf, dkim_keys, dmarc, reputation),
        )

    def _domain_score(self, spf: SpfEvaluation, dkim_keys, dmarc: DmarcDiscovery, reputation: DomainReputation) -> float:
        total = 0.0
        if spf.result is SpfResultCode.FAIL:
            total += POSTURE_SPF_WEIGHT
        elif spf.result is SpfResultCode.SOFTFAIL:
            total += POSTURE_SPF_WEIGHT / 2
        if dmarc.record is not None:
            total += POSTURE_DMARC_WEIGHT * _POLICY_STRENGTH[effective_policy(dmarc)] * dmarc.record.pct / 100
        if any(k.status is DkimKeyStatus.PRESENT for k in dkim_keys):
            total += POSTURE_DKIM_WEIGHT
        total += POSTURE_AGE_WEIGHT * self._age_fraction(reputation)
        if reputation.has_mx:
            total += POSTURE_MX_WEIGHT
        return round(total, 1)

    # ── Shared conditions ──────────────────────────────────────────────────────

    @staticmethod
    def _unresolvable(reputation: DomainReputation) -> bool:
        return reputation.nxdomain or reputation.exists is False

    def _established(self, reputation: DomainReputation) -> bool:
        # Unknown age never counts as established
        return reputation.age_days is not None and reputation.age_days > self._maturity_days

    def _age_fraction(self, reputation: DomainReputation) -> float:
        if reputation.age_days is None or self._maturity_days <= 0:
            return 0.0
        return min(1.0, reputation.age_days / self._maturity_days)

    # ── Factor builders ────────────────────────────────────────────────────────

    @staticmethod
    def _spf_factor(spf: SpfEvaluation) -> str:
        if spf.result is SpfResultCode.NONE:
            return "no SPF record"
        return f"SPF {spf.result.value}"

    @staticmethod
    def _dkim_factor(dkim) -> str:
        passed = [r for r in dkim if r.status is DkimStatus.PASS]
        if passed:
            return f"DKIM pass (d={passed[0].domain})"
        if all(r.status is DkimStatus.NO_SIGNATURE for r in dkim):
            return "no DKIM signature"
        if any(r.status is DkimStatus.TEMPERROR for r in dkim):
            return "DKIM temperror"
        failed = next(r for r in dkim if r.status is DkimStatus.FAIL)
        return f"DKIM fail ({failed.reason.value})"

    @staticmethod
    def _dmarc_factors(dmarc: DmarcEvaluation) -> list:
        if dmarc.record is None:
            return ["DMARC lookup failed" if dmarc.temperror else "no DMARC record"]
        outcome = "pass" if dmarc.passed else "fail"
        factors = [f"DMARC {outcome} (p={dmarc.policy.value})"]
        if dmarc.record.pct < 100:
            factors.append(f"DMARC pct={dmarc.record.pct}")
        return factors

    @staticmethod
    def _dkim_key_factors(dkim_keys) -> list:
        present = [k.selector for k in dkim_keys if k.status is DkimKeyStatus.PRESENT]
        revoked = [k.selector for k in dkim_keys if k.status is DkimKeyStatus.REVOKED]
        factors = []
        if present:
            factors.append(f"DKIM key published (s={', '.join(present)})")
        if revoked:
            factors.append(f"DKIM key revoked (s={', '.join(revoked)})")
        if not present and not revoked:
            factors.append("no DKIM key at probed selectors")
        return factors

    def _reputation_factors(self, reputation: DomainReputation) -> list:
        factors = []
        if reputation.age_days is None:
            factors.append("domain age unknown")
        elif reputation.age_days > self._maturity_days:
            factors.append(f"domain age {reputation.age_days} days")
        else:
            factors.append(f"domain age {reputation.age_days} days (under {self._maturity_days})")

        if reputation.mx_count is None:
            factors.append("MX lookup failed")
        elif reputation.mx_count == 0:
            factors.append("no MX records")
        else:
            factors.append(f"{reputation.mx_count} MX records")
        return factors


def _dkim_passed(dkim) -> bool:
    return any(r.status is DkimStatus.PASS for r in dkim)


def _enforcing(policy: DmarcPolicy, pct: int) -> bool:
    return policy is DmarcPolicy.REJECT or (policy is DmarcPolicy.QUARANTINE and pct == 100)


def score(spf: SpfEvaluation, dkim, dmarc: DmarcEvaluation, reputation: DomainReputation,
          maturity_days: int = DEFAULT_MATURITY_DAYS) -> Verdict:
    return VerdictEngine(maturity_days).score(spf, dkim, dmarc, reputation)


def score_domain(spf: SpfEvaluation, dkim_keys, dmarc: DmarcDiscovery, reputation: DomainReputation,
                 maturity_days: int = DEFAULT_MATURITY_DAYS) -> Verdict:
    return VerdictEngine(maturity_days).score_domain(spf, dkim_keys, dmarc, reputation)
