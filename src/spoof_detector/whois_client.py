"""WHOIS collaborator: registration date lookup with an explicit timeout."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import whois

from .config import Settings
from .exceptions import WhoisError

logger = logging.getLogger(__name__)


class WhoisClient:
    def __init__(self, timeout: float = 10.0):
        self._timeout = timeout

    async def creation_date(self, domain: str) -> datetime:
        """Return the registration date of DOMAIN as an aware UTC datetime.

        Raises WhoisError on timeout, transport failure, or a record without
        a usable creation date.
        """
        try:
            info = await asyncio.wait_for(asyncio.to_thread(whois.whois, domain), timeout=self._timeout)
        except asyncio.TimeoutError:
            raise WhoisError(f"WHOIS lookup for {domain} timed out after {self._timeout:.0f}s")
        except Exception as e:  # python-whois surfaces socket and parser errors alike
            raise WhoisError(f"WHOIS lookup for {domain} failed: {e}") from e

        created = _normalize_creation_date(getattr(info, "creation_date", None) if info else None)
        if created is None:
            raise WhoisError(f"No parsable creation date in WHOIS data for {domain}")
        return created


def _normalize_creation_date(value) -> Optional[datetime]:
    """Registrars report one date, several, or none; the earliest one wins."""
    if isinstance(value, list):
        dates = [v for v in (_normalize_creation_date(v) for v in value) if v is not None]
        return min(dates) if dates else None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return None


def create_whois_client(settings: Settings) -> WhoisClient:
    return WhoisClient(timeout=settings.whois_timeout)
