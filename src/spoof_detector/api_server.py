"""HTTP API for the spoof detector.

Endpoints:
  GET  /api/v1/health
  POST /analyze          raw message as the body, or JSON {"raw_email": "..."}
  POST /analyze/domain   JSON {"domain": "...", "dkim_selectors": [...]}

Authentication:
  Authorization: Bearer <SPOOF_API_KEY>, only when SPOOF_API_KEY is set.

Rate limit (per API key or client address, sliding 60-second window):
  30 analyses / minute

An Invalid verdict is a normal 200 response; 4xx means the input could not
be analysed at all.
"""

import os
import threading
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError, field_validator

from . import __version__
from .analyzer import Analyzer, create_analyzer
from .config import configure_logging, load_settings
from .exceptions import (
    AnalysisTimeoutError,
    EmailParseError,
    InvalidDomainError,
    SpoofDetectorError,
)
from .report_json import JsonReporter


@asynccontextmanager
async def _lifespan(app: FastAPI):
    configure_logging(load_settings().log_level)
    yield


app = FastAPI(
    title="Spoof Detector API",
    description="SPF, DKIM, DMARC and domain-reputation verdicts for email messages and domains.",
    version=__version__,
    docs_url="/docs",
    openapi_url="/openapi.json",
    lifespan=_lifespan,
)

_reporter = JsonReporter()
_analyzer: Optional[Analyzer] = None


def _get_analyzer() -> Analyzer:
    global _analyzer
    if _analyzer is None:
        _analyzer = create_analyzer()
    return _analyzer


# ── Request models ─────────────────────────────────────────────────────────────

class AnalyzeEmailRequest(BaseModel):
    raw_email: str
    sender_ip: Optional[str] = None
    mail_from: Optional[str] = None

    @field_validator("raw_email")
    @classmethod
    def raw_email_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("raw_email must not be empty")
        return v


class AnalyzeDomainRequest(BaseModel):
    domain: str
    dkim_selectors: list[str] = []

    @field_validator("domain")
    @classmethod
    def domain_not_empty(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("domain must not be empty")
        return v

    @field_validator("dkim_selectors")
    @classmethod
    def selectors_bounded(cls, v: list[str]) -> list[str]:
        if len(v) > 20:
            raise ValueError("maximum 20 DKIM selectors")
        return [s.strip().lower() for s in v if s.strip()]


# ── Rate limiting (sliding 60-second window) ───────────────────────────────────

RATE_LIMIT = 30

_rate_store: dict[str, list[float]] = {}
_rate_lock = threading.Lock()


def _check_rate_limit(client: str) -> bool:
    """Return True if the request is within limit, False if exceeded."""
    now = time.monotonic()
    window_start = now - 60.0
    with _rate_lock:
        timestamps = [t for t in _rate_store.get(client, []) if t > window_start]
        if len(timestamps) >= RATE_LIMIT:
            _rate_store[client] = timestamps
            return False
        timestamps.append(now)
        _rate_store[client] = timestamps
        return True


# ── Auth ───────────────────────────────────────────────────────────────────────

_bearer = HTTPBearer(auto_error=False)


def _require_auth(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> str:
    """Validate the Bearer token when an API key is configured; return the rate-limit identity."""
    expected = os.environ.get("SPOOF_API_KEY", "")
    if not expected:
        return request.client.host if request.client else "anonymous"
    if credentials is None or credentials.credentials != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": {"code": "AUTH_FAILED", "message": "Invalid or missing API key"}},
        )
    return credentials.credentials


# ── Error helpers ──────────────────────────────────────────────────────────────

def _error_response(code: str, message: str, http_status: int, request_id: str = "") -> JSONResponse:
    body = {
        "error": {
            "code": code,
            "message": message,
            "request_id": request_id or str(uuid.uuid4()),
            "timestamp": _now(),
        }
    }
    return JSONResponse(status_code=http_status, content=body)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _run(request_id: str, analysis) -> JSONResponse:
    """Await ANALYSIS and map the failure modes onto HTTP statuses."""
    try:
        result = await analysis
    except (EmailParseError, InvalidDomainError) as exc:
        return _error_response("INVALID_INPUT", str(exc), 400, request_id)
    except AnalysisTimeoutError as exc:
        return _error_response("ANALYSIS_TIMEOUT", str(exc), 504, request_id)
    except SpoofDetectorError as exc:
        return _error_response("ANALYSIS_FAILED", str(exc), 503, request_id)
    return JSONResponse(status_code=200, content={"request_id": request_id, **_reporter.to_dict(result)})


# ── Routes ─────────────────────────────────────────────────────────────────────

@app.get("/api/v1/health", tags=["system"])
def health() -> dict:
    """Returns service health. No authentication required."""
    return {"status": "ok", "timestamp": _now(), "version": __version__}


@app.post("/analyze", tags=["analysis"])
async def analyze_email(request: Request, client: str = Depends(_require_auth)) -> JSONResponse:
    """Analyze one message. The body is the raw RFC 5322 message, or JSON with raw_email."""
    request_id = str(uuid.uuid4())
    if not _check_rate_limit(client):
        return _error_response("RATE_LIMIT_EXCEEDED", "Too many requests. Retry after 60 seconds.", 429, request_id)

    body = await request.body()
    sender_ip = mail_from = None
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            payload = AnalyzeEmailRequest.model_validate_json(body)
        except ValidationError as exc:
            return _error_response("INVALID_INPUT", f"Invalid JSON body: {exc.errors()[0]['msg']}", 400, request_id)
        raw = payload.raw_email.encode("utf-8")
        sender_ip, mail_from = payload.sender_ip, payload.mail_from
    else:
        raw = body
    if not raw.strip():
        return _error_response("INVALID_INPUT", "Empty message body", 400, request_id)

    return await _run(request_id, _get_analyzer().analyze_email(raw, sender_ip=sender_ip, mail_from=mail_from))


@app.post("/analyze/domain", tags=["analysis"])
async def analyze_domain(body: AnalyzeDomainRequest, client: str = Depends(_require_auth)) -> JSONResponse:
    """Posture analysis of a bare domain."""
    request_id = str(uuid.uuid4())
    if not _check_rate_limit(client):
        return _error_response("RATE_LIMIT_EXCEEDED", "Too many requests. Retry after 60 seconds.", 429, request_id)

    return await _run(request_id, _get_analyzer().analyze_domain(body.domain, body.dkim_selectors))


# ── Global exception handlers ──────────────────────────────────────────────────

@app.exception_handler(HTTPException)
async def _http_exc(request: Request, exc: HTTPException) -> JSONResponse:
    """Reformat HTTPException so auth errors use our standard error envelope."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": "HTTP_ERROR", "message": str(exc.detail)}},
    )


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    return _error_response("INTERNAL_ERROR", "An unexpected error occurred.", 500)
