"""Rich terminal renderer."""

from typing import Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .models import (
    DkimKeyStatus,
    DkimStatus,
    DmarcDiscovery,
    DmarcPolicy,
    DomainAnalysis,
    DomainReputation,
    EmailAnalysis,
    SpfEvaluation,
    SpfResultCode,
    Verdict,
    VerdictLevel,
)

VERDICT_STYLE = {
    VerdictLevel.STRONG:  "bold white on green",
    VerdictLevel.MEDIUM:  "bold white on dark_orange",
    VerdictLevel.WEAK:    "bold white on red",
    VerdictLevel.INVALID: "bold white on magenta",
}

SPF_STYLE = {
    SpfResultCode.PASS:      "green",
    SpfResultCode.FAIL:      "red",
    SpfResultCode.SOFTFAIL:  "yellow",
    SpfResultCode.NEUTRAL:   "yellow",
    SpfResultCode.NONE:      "dim",
    SpfResultCode.TEMPERROR: "magenta",
    SpfResultCode.PERMERROR: "red",
}

DKIM_STYLE = {
    DkimStatus.PASS:         "green",
    DkimStatus.FAIL:         "red",
    DkimStatus.NO_SIGNATURE: "dim",
    DkimStatus.TEMPERROR:    "magenta",
}

POLICY_STYLE = {
    DmarcPolicy.NONE:       "yellow",
    DmarcPolicy.QUARANTINE: "blue",
    DmarcPolicy.REJECT:     "green",
}


class TextReporter:
    def __init__(self, console: Optional[Console] = None):
        self._console = console or Console()

    def render(self, analysis) -> None:
        if isinstance(analysis, DomainAnalysis):
            self._render_domain(analysis)
        else:
            self._render_email(analysis)

    def _render_email(self, analysis: EmailAnalysis) -> None:
        c = self._console
        c.print()
        c.print(Panel(
            f"[bold]SPOOF ANALYSIS: {analysis.from_domain.upper()}[/bold]\n"
            f"[dim]SPF domain: {analysis.spf_domain}  │  sender IP: {analysis.sender_ip or 'unknown'}[/dim]",
            style="bold blue",
            expand=False,
        ))
        self._render_verdict(analysis.verdict)

        c.print("\n[bold]## AUTHENTICATION[/bold]")
        self._print_spf_line(analysis.spf)
        for result in analysis.dkim:
            style = DKIM_STYLE[result.status]
            if result.status is DkimStatus.NO_SIGNATURE:
                c.print(f"- DKIM: [{style}]no signature[/{style}]")
                continue
            detail = f" ({result.reason.value})" if result.reason else ""
            c.print(f"- DKIM d={result.domain} s={result.selector}: [{style}]{result.status.value}{detail}[/{style}]")

        dmarc = analysis.dmarc
        if dmarc.record is None:
            c.print("- DMARC: [red]" + ("lookup failed" if dmarc.temperror else "no record") + "[/red]")
        else:
            outcome = "[green]pass[/green]" if dmarc.passed else "[red]fail[/red]"
            style = POLICY_STYLE[dmarc.policy]
            c.print(
                f"- DMARC: {outcome}  [{style}]p={dmarc.policy.value}[/{style}]  pct={dmarc.record.pct}  "
                f"aligned: SPF={_yes_no(dmarc.spf_aligned)} DKIM={_yes_no(dmarc.dkim_aligned)}"
            )

        self._render_reputation(analysis.reputation)

    def _render_domain(self, analysis: DomainAnalysis) -> None:
        c = self._console
        c.print()
        c.print(Panel(f"[bold]DOMAIN POSTURE: {analysis.domain.upper()}[/bold]", style="bold blue", expand=False))
        self._render_verdict(analysis.verdict)

        c.print("\n[bold]## AUTHENTICATION[/bold]")
        self._print_spf_line(analysis.spf, label="SPF (unlisted sender)")
        self._print_dmarc_discovery(analysis.dmarc)

        table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
        table.add_column("DKIM selector", width=16)
        table.add_column("Key")
        key_style = {
            DkimKeyStatus.PRESENT: "green",
            DkimKeyStatus.REVOKED: "red",
            DkimKeyStatus.ABSENT: "dim",
            DkimKeyStatus.TEMPERROR: "magenta",
        }
        for probe in analysis.dkim_keys:
            style = key_style[probe.status]
            table.add_row(probe.selector, f"[{style}]{probe.status.value}[/{style}]")
        c.print(table)

        self._render_reputation(analysis.reputation)

    # ── Individual section renderers (also usable for subcommands) ─────────────

    def render_spf_only(self, spf: SpfEvaluation) -> None:
        c = self._console
        c.print()
        c.print(Panel(f"[bold]SPF CHECK: {spf.domain.upper()}[/bold]", style="bold blue", expand=False))
        c.print(f"\n[bold]Record:[/bold] {spf.record or 'Not found'}")
        self._print_spf_line(spf, label="Result")
        c.print(f"[bold]Lookups:[/bold] {spf.lookups}/10  [bold]Depth:[/bold] {spf.depth}")
        if spf.reason:
            c.print(f"[bold]Reason:[/bold] {spf.reason}")

    def render_dmarc_only(self, discovery: DmarcDiscovery) -> None:
        c = self._console
        c.print()
        c.print(Panel(f"[bold]DMARC CHECK: {discovery.domain.upper()}[/bold]", style="bold blue", expand=False))
        c.print(f"\n[bold]Organizational domain:[/bold] {discovery.organizational_domain}")
        self._print_dmarc_discovery(discovery)
        if discovery.record:
            c.print(f"[bold]Record:[/bold] {discovery.record.raw}")

    def render_dkim_only(self, results) -> None:
        c = self._console
        c.print()
        c.print(Panel("[bold]DKIM VERIFICATION[/bold]", style="bold blue", expand=False))
        table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
        table.add_column("Domain")
        table.add_column("Selector")
        table.add_column("Algorithm")
        table.add_column("Result")
        table.add_column("Detail")
        for r in results:
            style = DKIM_STYLE[r.status]
            outcome = r.status.value + (f" ({r.reason.value})" if r.reason else "")
            table.add_row(r.domain or "-", r.selector or "-", r.algorithm or "-", f"[{style}]{outcome}[/{style}]", r.detail or "")
        c.print(table)

    # ── Section Renderers ──────────────────────────────────────────────────────

    def _render_verdict(self, verdict: Verdict) -> None:
        c = self._console
        c.print("\n[bold]## VERDICT[/bold]")
        style = VERDICT_STYLE.get(verdict.level, "bold white")
        c.print(Panel(f" {verdict.level.value.upper()}  ({verdict.score:.1f}/100) ", style=style, expand=False))
        for factor in verdict.contributing_factors:
            c.print(f"  • {factor}")

    def _print_spf_line(self, spf: SpfEvaluation, label: str = "SPF") -> None:
        style = SPF_STYLE[spf.result]
        via = f" via {spf.mechanism} ({spf.mechanism_domain})" if spf.mechanism else ""
        self._console.print(f"- {label}: [{style}]{spf.result.value}[/{style}]{via}")

    def _print_dmarc_discovery(self, discovery: DmarcDiscovery) -> None:
        c = self._console
        record = discovery.record
        if record is None:
            c.print("- DMARC: [red]" + ("lookup failed" if discovery.temperror else "no record") + "[/red]")
            return
        style = POLICY_STYLE[record.policy]
        sp = f"  sp={record.subdomain_policy.value}" if record.subdomain_policy else ""
        c.print(
            f"- DMARC ({discovery.record_domain}): [{style}]p={record.policy.value}[/{style}]{sp}  "
            f"pct={record.pct}  adkim={record.adkim.value}  aspf={record.aspf.value}"
        )

    def _render_reputation(self, reputation: DomainReputation) -> None:
        c = self._console
        c.print("\n[bold]## REPUTATION[/bold]")
        if reputation.age_days is None:
            c.print("- Age: [yellow]unknown[/yellow]" + (f" [dim]({reputation.whois_error})[/dim]" if reputation.whois_error else ""))
        else:
            c.print(f"- Age: {reputation.age_days} days (registered {reputation.created_at:%Y-%m-%d})")
        if reputation.mx_count is None:
            c.print("- MX: [magenta]lookup failed[/magenta]")
        elif reputation.mx_count == 0:
            c.print("- MX: [red]none[/red]")
        else:
            c.print(f"- MX: {reputation.mx_count} ({', '.join(reputation.mx_hosts)})")
        if reputation.exists is False:
            c.print("- Domain: [red]not resolvable[/red]")


def _yes_no(value: bool) -> str:
    return "[green]yes[/green]" if value else "[red]no[/red]"
