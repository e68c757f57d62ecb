"""JSON serializer for analyses and the single-protocol subcommands."""

import json
from typing import Optional

from .models import (
    DkimKeyProbe,
    DkimVerification,
    DmarcDiscovery,
    DmarcEvaluation,
    DmarcRecord,
    DomainAnalysis,
    DomainReputation,
    EmailAnalysis,
    SpfEvaluation,
    Verdict,
)


class JsonReporter:
    def render(self, analysis) -> str:
        return json.dumps(self.to_dict(analysis), indent=2, default=str)

    def to_dict(self, analysis) -> dict:
        if isinstance(analysis, DomainAnalysis):
            return self._domain_dict(analysis)
        return self._email_dict(analysis)

    def _email_dict(self, analysis: EmailAnalysis) -> dict:
        return {
            "mode": "email",
            "from_domain": analysis.from_domain,
            "timestamp": analysis.analyzed_at.isoformat(),
            "verdict": self._verdict(analysis.verdict),
            "spf": self.spf_dict(analysis.spf),
            "dkim": [self.dkim_dict(r) for r in analysis.dkim],
            "dmarc": self.dmarc_dict(analysis.dmarc),
            "reputation": self._reputation(analysis.reputation),
        }

    def _domain_dict(self, analysis: DomainAnalysis) -> dict:
        return {
            "mode": "domain",
            "domain": analysis.domain,
            "timestamp": analysis.analyzed_at.isoformat(),
            "verdict": self._verdict(analysis.verdict),
            "spf": self.spf_dict(analysis.spf),
            "dkim_keys": [self._key_probe(k) for k in analysis.dkim_keys],
            "dmarc": self.discovery_dict(analysis.dmarc),
            "reputation": self._reputation(analysis.reputation),
        }

    # ── Sections ───────────────────────────────────────────────────────────────

    def _verdict(self, verdict: Verdict) -> dict:
        return {
            "level": verdict.level.value,
            "score": verdict.score,
            "contributing_factors": list(verdict.contributing_factors),
        }

    def spf_dict(self, spf: SpfEvaluation) -> dict:
        return {
            "domain": spf.domain,
            "result": spf.result.value,
            "sender_ip": spf.sender_ip,
            "mechanism": spf.mechanism,
            "mechanism_domain": spf.mechanism_domain,
            "lookups": spf.lookups,
            "depth": spf.depth,
            "record": spf.record,
            "reason": spf.reason,
        }

    def dkim_dict(self, result: DkimVerification) -> dict:
        return {
            "status": result.status.value,
            "reason": result.reason.value if result.reason else None,
            "domain": result.domain,
            "selector": result.selector,
            "algorithm": result.algorithm,
            "detail": result.detail,
        }

    def _key_probe(self, probe: DkimKeyProbe) -> dict:
        return {
            "selector": probe.selector,
            "status": probe.status.value,
            "record": probe.raw_record,
        }

    def dmarc_dict(self, dmarc: DmarcEvaluation) -> dict:
        return {
            "domain": dmarc.domain,
            "organizational_domain": dmarc.organizational_domain,
            "record_domain": dmarc.record_domain,
            "passed": dmarc.passed,
            "policy": dmarc.policy.value,
            "spf_aligned": dmarc.spf_aligned,
            "dkim_aligned": dmarc.dkim_aligned,
            "temperror": dmarc.temperror,
            "record": self._record(dmarc.record),
            "factors": list(dmarc.factors),
        }

    def discovery_dict(self, discovery: DmarcDiscovery) -> dict:
        return {
            "domain": discovery.domain,
            "organizational_domain": discovery.organizational_domain,
            "record_domain": discovery.record_domain,
            "temperror": discovery.temperror,
            "record": self._record(discovery.record),
        }

    def _record(self, record: Optional[DmarcRecord]) -> Optional[dict]:
        if record is None:
            return None
        return {
            "raw": record.raw,
            "policy": record.policy.value,
            "subdomain_policy": record.subdomain_policy.value if record.subdomain_policy else None,
            "adkim": record.adkim.value,
            "aspf": record.aspf.value,
            "pct": record.pct,
            "rua": list(record.rua),
            "ruf": list(record.ruf),
            "fo": record.fo,
        }

    def _reputation(self, reputation: DomainReputation) -> dict:
        return {
            "domain": reputation.domain,
            "created_at": reputation.created_at.isoformat() if reputation.created_at else None,
            "age_days": reputation.age_days,
            "mx_count": reputation.mx_count,
            "mx_hosts": list(reputation.mx_hosts),
            "exists": reputation.exists,
            "whois_error": reputation.whois_error,
        }

    # ── Subcommand serializers ─────────────────────────────────────────────────

    def render_spf(self, spf: SpfEvaluation) -> str:
        return json.dumps(self.spf_dict(spf), indent=2)

    def render_dmarc(self, discovery: DmarcDiscovery) -> str:
        return json.dumps(self.discovery_dict(discovery), indent=2)

    def render_dkim(self, results) -> str:
        return json.dumps([self.dkim_dict(r) for r in results], indent=2)
