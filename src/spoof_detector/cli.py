"""Spoof detector CLI. Analyzes a stored message or a bare domain."""

import asyncio
import sys
from typing import Optional

import click
from rich.console import Console

from . import __version__
from .analyzer import create_analyzer
from .config import configure_logging, load_settings
from .email_parser import parse_email
from .exceptions import InvalidDomainError, SpoofDetectorError
from .models import SpfContext
from .report_json import JsonReporter
from .report_text import TextReporter

FORMAT_OPTION = click.option(
    "--format", "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Output format.",
)


@click.group()
@click.version_option(version=__version__, prog_name="spoof-detector")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log verbosity (default: SPOOF_LOG_LEVEL or WARNING).",
)
@click.pass_context
def cli(ctx, log_level: Optional[str]):
    """Email spoof detector: SPF, DKIM, DMARC and domain reputation.

    Reduces the authentication results for a message (or a bare domain)
    to a single verdict: Strong, Medium, Weak or Invalid.
    """
    settings = load_settings()
    configure_logging((log_level or settings.log_level).upper())
    ctx.obj = settings


@cli.command("analyze")
@click.option("--input", "input_file", default=None, type=click.Path(), help="Stored message (.eml) to analyze.")
@click.option("--domain", default=None, help="Analyze a bare domain instead of a message (no DKIM verification).")
@click.option("--ip", "sender_ip", default=None, help="Sending IP; overrides the Received headers.")
@click.option("--sender", default=None, help="Envelope sender (MAIL FROM); overrides Return-Path.")
@click.option(
    "--dkim-selector", "selectors", multiple=True,
    help="Extra DKIM selector to probe in --domain mode. Repeatable.",
)
@FORMAT_OPTION
@click.option("--output", "output_file", default=None, type=click.Path(), help="Write output to FILE instead of stdout.")
@click.pass_obj
def analyze(settings, input_file, domain, sender_ip, sender, selectors, output_format, output_file):
    """Full analysis of a message (--input) or a domain (--domain)."""
    if bool(input_file) == bool(domain):
        raise click.UsageError("Give exactly one of --input or --domain.")

    console = Console(stderr=True)
    try:
        analyzer = create_analyzer(settings)
        if input_file:
            raw = _read_message(input_file)
            if output_format == "text":
                console.print(f"[dim]Analyzing {input_file}...[/dim]", highlight=False)
            result = asyncio.run(analyzer.analyze_email(raw, sender_ip=sender_ip, mail_from=sender))
        else:
            if output_format == "text":
                console.print(f"[dim]Analyzing domain {domain}...[/dim]", highlight=False)
            result = asyncio.run(analyzer.analyze_domain(domain, selectors))
        _dispatch_output(result, output_format, output_file)
    except OSError as e:
        click.echo(f"Error: {e.filename}: {e.strerror or e}", err=True)
        sys.exit(1)
    except InvalidDomainError as e:
        click.echo(f"Error: Invalid domain: {e}", err=True)
        sys.exit(1)
    except SpoofDetectorError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command("check-spf")
@click.argument("domain")
@click.option("--ip", "sender_ip", default=None, help="Sender IP to evaluate. Omit to see what an unlisted sender gets.")
@click.option("--sender", default=None, help="MAIL FROM address for macro expansion.")
@FORMAT_OPTION
@click.pass_obj
def check_spf(settings, domain: str, sender_ip: Optional[str], sender: Optional[str], output_format: str):
    """Quick SPF evaluation for DOMAIN."""
    try:
        analyzer = create_analyzer(settings)
        result = asyncio.run(analyzer.spf.evaluate(domain, sender_ip, SpfContext(sender=sender)))
        if output_format == "json":
            click.echo(JsonReporter().render_spf(result))
        else:
            TextReporter().render_spf_only(result)
    except SpoofDetectorError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command("check-dmarc")
@click.argument("domain")
@FORMAT_OPTION
@click.pass_obj
def check_dmarc(settings, domain: str, output_format: str):
    """Quick DMARC policy discovery for DOMAIN."""
    try:
        analyzer = create_analyzer(settings)
        result = asyncio.run(analyzer.dmarc.discover(domain))
        if output_format == "json":
            click.echo(JsonReporter().render_dmarc(result))
        else:
            TextReporter().render_dmarc_only(result)
    except SpoofDetectorError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command("verify-dkim")
@click.argument("file", type=click.Path())
@FORMAT_OPTION
@click.pass_obj
def verify_dkim(settings, file: str, output_format: str):
    """Verify every DKIM signature in the stored message FILE."""
    try:
        parsed = parse_email(_read_message(file))
        analyzer = create_analyzer(settings)
        results = asyncio.run(analyzer.dkim.verify(parsed.headers, parsed.body))
        if output_format == "json":
            click.echo(JsonReporter().render_dkim(results))
        else:
            TextReporter().render_dkim_only(results)
    except OSError as e:
        click.echo(f"Error: {e.filename}: {e.strerror or e}", err=True)
        sys.exit(1)
    except SpoofDetectorError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Listen port.")
@click.option(
    "--api-key",
    envvar="SPOOF_API_KEY",
    default=None,
    help="Bearer token required by the API. Also read from SPOOF_API_KEY. Unset: no authentication.",
)
@click.option("--workers", default=1, show_default=True, type=int, help="Uvicorn worker count.")
@click.pass_obj
def serve(settings, host: str, port: int, api_key: Optional[str], workers: int):
    """Start the HTTP API server."""
    import os  # noqa: PLC0415

    import uvicorn  # noqa: PLC0415

    if api_key:
        os.environ["SPOOF_API_KEY"] = api_key
    click.echo(f"Starting spoof-detector API on http://{host}:{port}", err=True)
    click.echo(f"API docs: http://{host}:{port}/docs", err=True)
    uvicorn.run(
        "spoof_detector.api_server:app",
        host=host,
        port=port,
        workers=workers,
        log_level=settings.log_level.lower(),
    )


# ── Output ─────────────────────────────────────────────────────────────────────

def _read_message(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _dispatch_output(result, output_format: str, output_file: Optional[str]) -> None:
    """Route the result to the appropriate reporter."""
    if output_format == "json":
        output = JsonReporter().render(result)
        if output_file:
            _write_file(output_file, output)
            click.echo(f"Report written to: {output_file}", err=True)
        else:
            click.echo(output)

    else:  # text
        if output_file:
            with open(output_file, "w", encoding="utf-8") as f:
                plain_console = Console(file=f, highlight=False, no_color=True)
                TextReporter(console=plain_console).render(result)
            click.echo(f"Report written to: {output_file}", err=True)
        else:
            TextReporter().render(result)


def _write_file(path: str, content: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
