"""Email spoof detector: SPF, DKIM, DMARC and domain reputation fused into one verdict."""

__version__ = "0.1.0"
