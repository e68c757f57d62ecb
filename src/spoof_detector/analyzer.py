"""Orchestrates one analysis: independent branches run concurrently, then DMARC, then the verdict."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from .config import Settings, load_settings
from .dkim_verifier import DkimVerifier
from .dmarc_evaluator import DmarcEvaluator
from .dns_fetcher import DnsFetcher, create_fetcher
from .email_parser import parse_email
from .exceptions import AnalysisTimeoutError
from .models import DomainAnalysis, DomainName, EmailAnalysis, ParsedEmail, SpfContext
from .reputation import ReputationAssessor
from .spf_evaluator import SpfEvaluator
from .verdict import VerdictEngine
from .whois_client import WhoisClient, create_whois_client

logger = logging.getLogger(__name__)


class Analyzer:
    def __init__(
        self,
        fetcher: DnsFetcher,
        whois_client: WhoisClient,
        settings: Optional[Settings] = None,
        dkim_clock=None,
    ):
        self._settings = settings or Settings()
        self.spf = SpfEvaluator(fetcher)
        self.dkim = DkimVerifier(fetcher, clock=dkim_clock)
        self.dmarc = DmarcEvaluator(fetcher)
        self.reputation = ReputationAssessor(fetcher, whois_client)
        self.verdict = VerdictEngine(self._settings.maturity_days)

    async def analyze_email(
        self,
        message,
        sender_ip: Optional[str] = None,
        mail_from: Optional[str] = None,
    ) -> EmailAnalysis:
        """Analyze a raw message (bytes/str) or an already parsed one.

        SENDER_IP and MAIL_FROM override what the Received / Return-Path
        headers say. Raises EmailParseError before any lookup if the message
        is unusable, AnalysisTimeoutError if the deadline passes.
        """
        parsed = message if isinstance(message, ParsedEmail) else parse_email(message)
        return await self._with_deadline(self._analyze_parsed(parsed, sender_ip, mail_from))

    async def analyze_domain(self, domain: str, selectors=()) -> DomainAnalysis:
        """Posture of a bare domain: no message, so DKIM keys are probed instead of verified."""
        domain = DomainName.parse(domain).value
        return await self._with_deadline(self._analyze_domain(domain, selectors))

    async def _with_deadline(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self._settings.analysis_timeout)
        except asyncio.TimeoutError:
            raise AnalysisTimeoutError(f"Analysis did not finish within {self._settings.analysis_timeout:.0f}s")

    async def _analyze_parsed(self, parsed: ParsedEmail, sender_ip: Optional[str], mail_from: Optional[str]) -> EmailAnalysis:
        mail_from = mail_from or parsed.mail_from
        spf_domain = parsed.mail_from_domain or parsed.from_domain
        if mail_from and "@" in mail_from:
            spf_domain = DomainName.parse(mail_from.rpartition("@")[2]).value
        ip = sender_ip or parsed.sender_ip
        context = SpfContext(sender=mail_from or f"postmaster@{spf_domain}", helo=parsed.helo)

        logger.info("Analyzing message from %s (SPF domain %s, ip %s)", parsed.from_domain, spf_domain, ip)
        spf, dkim, reputation = await asyncio.gather(
            self.spf.evaluate(spf_domain, ip, context),
            self.dkim.verify(parsed.headers, parsed.body),
            self.reputation.assess(parsed.from_domain),
        )
        dmarc = await self.dmarc.evaluate(parsed.from_domain, spf, spf_domain, dkim)
        verdict = self.verdict.score(spf, dkim, dmarc, reputation)

        return EmailAnalysis(
            from_domain=parsed.from_domain,
            spf_domain=spf_domain,
            sender_ip=ip,
            spf=spf,
            dkim=dkim,
            dmarc=dmarc,
            reputation=reputation,
            verdict=verdict,
            analyzed_at=datetime.now(timezone.utc),
        )

    async def _analyze_domain(self, domain: str, selectors) -> DomainAnalysis:
        selectors = tuple(self._settings.dkim_selectors) + tuple(selectors)
        logger.info("Analyzing domain %s (selectors: %s)", domain, ", ".join(selectors))
        spf, keys, dmarc, reputation = await asyncio.gather(
            self.spf.evaluate(domain, None, SpfContext()),
            self.dkim.probe(domain, selectors),
            self.dmarc.discover(domain),
            self.reputation.assess(domain),
        )
        verdict = self.verdict.score_domain(spf, keys, dmarc, reputation)

        return DomainAnalysis(
            domain=domain,
            spf=spf,
            dkim_keys=keys,
            dmarc=dmarc,
            reputation=reputation,
            verdict=verdict,
            analyzed_at=datetime.now(timezone.utc),
        )


def create_analyzer(settings: Optional[Settings] = None) -> Analyzer:
    """Module-level factory for CLI and API use."""
    settings = settings or load_settings()
    return Analyzer(create_fetcher(settings), create_whois_client(settings), settings)
