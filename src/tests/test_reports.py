"""Unit tests for the JSON and rich text reporters."""

import io
import json
from dataclasses import replace
from datetime import datetime, timezone

from rich.console import Console

from spoof_detector.models import (
    DkimKeyProbe,
    DkimKeyStatus,
    DmarcDiscovery,
    DomainAnalysis,
    EmailAnalysis,
    SpfResultCode,
)
from spoof_detector.report_json import JsonReporter
from spoof_detector.report_text import TextReporter
from spoof_detector.verdict import score, score_domain

from .helpers import dkim_pass, dmarc_record, dmarc_result, reputation, spf_result

DOMAIN = "example.com"
WHEN = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def email_analysis():
    spf, dkim, dmarc, rep = spf_result(), (dkim_pass(),), dmarc_result(), reputation()
    return EmailAnalysis(
        from_domain=DOMAIN,
        spf_domain=DOMAIN,
        sender_ip="192.0.2.10",
        spf=spf,
        dkim=dkim,
        dmarc=dmarc,
        reputation=rep,
        verdict=score(spf, dkim, dmarc, rep),
        analyzed_at=WHEN,
    )


def domain_analysis():
    spf = spf_result(SpfResultCode.FAIL, sender_ip=None)
    keys = (DkimKeyProbe(DOMAIN, "sel", DkimKeyStatus.PRESENT, "v=DKIM1; p=abc"),)
    dmarc = DmarcDiscovery(DOMAIN, DOMAIN, dmarc_record(), DOMAIN)
    rep = reputation(age_days=None)
    return DomainAnalysis(
        domain=DOMAIN,
        spf=spf,
        dkim_keys=keys,
        dmarc=dmarc,
        reputation=rep,
        verdict=score_domain(spf, keys, dmarc, rep),
        analyzed_at=WHEN,
    )


def render_text(method, *args):
    buffer = io.StringIO()
    reporter = TextReporter(console=Console(file=buffer, width=120, no_color=True))
    getattr(reporter, method)(*args)
    return buffer.getvalue()


class TestJsonReporter:
    def test_email_document(self):
        data = json.loads(JsonReporter().render(email_analysis()))
        assert data["mode"] == "email"
        assert data["timestamp"] == WHEN.isoformat()
        assert data["verdict"] == {
            "level": "Strong",
            "score": 100.0,
            "contributing_factors": [
                "SPF pass",
                "DKIM pass (d=example.com)",
                "DMARC pass (p=reject)",
                "domain age 1000 days",
                "1 MX records",
            ],
        }
        assert data["dmarc"]["record"]["policy"] == "reject"
        assert data["reputation"]["mx_hosts"] == ["mx0.example.com"]

    def test_dmarc_factors_included(self):
        dmarc = replace(dmarc_result(present=False, passed=False), factors=("no DMARC record",))
        data = JsonReporter().to_dict(replace(email_analysis(), dmarc=dmarc))
        assert data["dmarc"]["factors"] == ["no DMARC record"]
        assert data["dmarc"]["record"] is None

    def test_domain_document(self):
        data = JsonReporter().to_dict(domain_analysis())
        assert data["mode"] == "domain"
        assert data["verdict"]["level"] == "Medium"
        assert data["dkim_keys"] == [{"selector": "sel", "status": "present", "record": "v=DKIM1; p=abc"}]
        assert data["dmarc"]["record_domain"] == DOMAIN
        assert data["reputation"]["age_days"] is None

    def test_dkim_list(self):
        data = json.loads(JsonReporter().render_dkim((dkim_pass(),)))
        assert data == [{
            "status": "pass",
            "reason": None,
            "domain": DOMAIN,
            "selector": "sel",
            "algorithm": "rsa-sha256",
            "detail": None,
        }]


class TestTextReporter:
    def test_email_report(self):
        out = render_text("render", email_analysis())
        assert "SPOOF ANALYSIS: EXAMPLE.COM" in out
        assert "STRONG" in out
        assert "DMARC: pass" in out

    def test_domain_report(self):
        out = render_text("render", domain_analysis())
        assert "DOMAIN POSTURE: EXAMPLE.COM" in out
        assert "MEDIUM" in out
        assert "Age: unknown" in out

    def test_spf_only(self):
        out = render_text("render_spf_only", spf_result())
        assert "SPF CHECK: EXAMPLE.COM" in out
        assert "Result: pass" in out
