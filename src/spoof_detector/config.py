"""Runtime settings read from the environment (and an optional .env file)."""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler


@dataclass(frozen=True)
class Settings:
    dns_nameservers: tuple = ()    # empty: use the system resolver config
    dns_timeout: float = 5.0
    dns_retries: int = 2
    dns_rate: float = 50.0
    whois_timeout: float = 10.0
    maturity_days: int = 365
    analysis_timeout: float = 30.0
    log_level: str = "WARNING"
    api_key: Optional[str] = None
    dkim_selectors: tuple = field(default=("default", "google", "selector1", "selector2"))


def load_settings() -> Settings:
    """Build Settings from SPOOF_* environment variables."""
    load_dotenv()

    nameservers = os.getenv("SPOOF_DNS_NAMESERVERS", "")
    return Settings(
        dns_nameservers=tuple(ns.strip() for ns in nameservers.split(",") if ns.strip()),
        dns_timeout=float(os.getenv("SPOOF_DNS_TIMEOUT", "5.0")),
        dns_retries=max(1, int(os.getenv("SPOOF_DNS_RETRIES", "2"))),
        dns_rate=float(os.getenv("SPOOF_DNS_RATE", "50")),
        whois_timeout=float(os.getenv("SPOOF_WHOIS_TIMEOUT", "10.0")),
        maturity_days=int(os.getenv("SPOOF_MATURITY_DAYS", "365")),
        analysis_timeout=float(os.getenv("SPOOF_ANALYSIS_TIMEOUT", "30.0")),
        log_level=os.getenv("SPOOF_LOG_LEVEL", "WARNING").upper(),
        api_key=os.getenv("SPOOF_API_KEY") or None,
    )


def configure_logging(level: str = "WARNING") -> None:
    """Route the package's log records to stderr through rich."""
    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    logging.basicConfig(level=level, format="%(message)s", datefmt="[%X]", handlers=[handler], force=True)
