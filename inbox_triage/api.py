"""
FastAPI application exposing triage, pre-filter, tone learning and
snoozing, with rate limiting, API-key auth, health checks and metrics.
"""
from fastapi import FastAPI, HTTPException, Header, Request, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response
import asyncio
import sqlite3
import uuid
from typing import Optional
import time

from inbox_triage.db import init_db, get_session
from inbox_triage.config import settings
from inbox_triage.events import EventDispatcher
from inbox_triage.filters import analyze_email
from inbox_triage.logger import get_logger, set_request_id
from inbox_triage.metrics import http_requests_total, http_request_duration_seconds, active_requests
from inbox_triage.service import TriageService, create_triage_service
from inbox_triage.snooze import (
    SnoozeError,
    SnoozeNotFoundError,
    SnoozeOwnershipError,
    SnoozeRecord,
    SnoozeRequest,
    SnoozeService,
)
from inbox_triage.state import EmailMetadata, FilterResult, TriageResult, UserToneProfile

logger = get_logger(__name__)

VERSION = "1.0.0"

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan events: startup and shutdown logic.
    """
    logger.info("Application starting up...")
    try:
        init_db()
    except Exception as e:
        logger.error("Failed to initialize database", extra={"error": str(e)})
        # Don't crash on DB init failure, allows health checks to run

    dispatcher = EventDispatcher()
    app.state.triage_service = create_triage_service(dispatcher=dispatcher)
    app.state.snooze_service = SnoozeService(dispatcher)
    start_cache = getattr(app.state.triage_service.cache, "start", None)
    if start_cache is not None:
        start_cache()

    yield

    logger.info("Application shutting down...")
    app.state.snooze_service.shutdown()
    await app.state.triage_service.shutdown()


app = FastAPI(
    title="Inbox Triage API",
    version=VERSION,
    description="Email triage: classification, summarization and tone-adapted reply drafts",
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Request/Response Models ---

class TriageRequest(BaseModel):
    """Email triage request model."""
    id: str = Field(..., min_length=1, description="Email id, used for dedup")
    body: str = Field(..., min_length=1, max_length=settings.max_email_length, description="Email body")
    metadata: EmailMetadata = Field(default_factory=EmailMetadata)
    session_id: Optional[str] = Field(default=None, description="Reuse a session id")
    skip_filter: bool = Field(default=False, description="Bypass the rule-based pre-filter")


class FilterRequest(BaseModel):
    subject: str = ""
    sender: str = ""
    body: str = Field(default="", max_length=settings.max_email_length)


class ToneSample(BaseModel):
    content: str = Field(..., min_length=1)
    metadata: EmailMetadata = Field(default_factory=EmailMetadata)


class ToneProfileRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    user_email: str = Field(..., min_length=1)
    emails: list[ToneSample] = Field(..., min_length=1)


class HealthResponse(BaseModel):
    status: str
    environment: str
    version: str
    timestamp: str


class ReadyResponse(BaseModel):
    ready: bool
    checks: dict


# --- Middleware ---

@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    trace_id = str(uuid.uuid4())
    set_request_id(trace_id)
    active_requests.inc()

    try:
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        response.headers["X-Trace-ID"] = trace_id

        http_requests_total.labels(
            method=request.method,
            endpoint=request.url.path,
            status_code=response.status_code
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=request.url.path
        ).observe(process_time)

        return response
    finally:
        active_requests.dec()


# --- Dependencies ---

async def verify_api_key(x_api_key: Optional[str] = Header(None, alias=settings.api_key_header)):
    if settings.is_development and not settings.api_keys:
        return

    if not x_api_key or x_api_key not in settings.api_keys:
        logger.warning("Invalid API key")
        raise HTTPException(status_code=403, detail="Invalid API key")


def get_triage_service(request: Request) -> TriageService:
    return request.app.state.triage_service


def get_snooze_service(request: Request) -> SnoozeService:
    return request.app.state.snooze_service


# --- System Endpoints ---

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    return HealthResponse(
        status="healthy",
        environment=settings.environment,
        version=VERSION,
        timestamp=datetime.now(timezone.utc).isoformat()
    )


def _database_ready() -> bool:
    try:
        with sqlite3.connect(settings.database_path) as conn:
            conn.execute("SELECT 1 FROM triage_sessions LIMIT 1")
        return True
    except sqlite3.Error:
        return False


@app.get("/ready", response_model=ReadyResponse, tags=["System"])
async def readiness_check():
    checks = {
        "database": await asyncio.to_thread(_database_ready),
        "llm": bool(settings.provider_api_key),
    }
    return ReadyResponse(ready=all(checks.values()), checks=checks)


@app.get("/metrics", tags=["System"])
async def metrics():
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# --- Triage Endpoints ---

@app.post(
    "/triage",
    response_model=TriageResult,
    tags=["Triage"],
    dependencies=[Depends(verify_api_key)]
)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def triage_email(
    request: Request,
    triage_request: TriageRequest,
    service: TriageService = Depends(get_triage_service),
):
    logger.info("Triage requested", extra={"email_id": triage_request.id, "length": len(triage_request.body)})
    email_data = {
        "id": triage_request.id,
        "body": triage_request.body,
        "metadata": triage_request.metadata.model_dump(by_alias=True),
    }
    try:
        return await service.process(
            email_data,
            session_id=triage_request.session_id,
            skip_filter=triage_request.skip_filter,
        )
    except Exception as e:
        logger.error("Triage failed", extra={"error": str(e)}, exc_info=True)
        raise HTTPException(status_code=500, detail="Processing error")


@app.post("/filter", response_model=FilterResult, tags=["Triage"], dependencies=[Depends(verify_api_key)])
async def filter_email(filter_request: FilterRequest):
    return analyze_email(
        subject=filter_request.subject,
        sender=filter_request.sender,
        body=filter_request.body,
    )


@app.get("/sessions/{session_id}", tags=["Triage"], dependencies=[Depends(verify_api_key)])
async def read_session(session_id: str):
    session = await asyncio.to_thread(get_session, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.post(
    "/tone-profiles",
    response_model=UserToneProfile,
    tags=["Tone"],
    dependencies=[Depends(verify_api_key)]
)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def learn_tone_profile(
    request: Request,
    profile_request: ToneProfileRequest,
    service: TriageService = Depends(get_triage_service),
):
    history = [(sample.content, sample.metadata) for sample in profile_request.emails]
    try:
        return await service.learn_tone_profile(profile_request.user_id, profile_request.user_email, history)
    except Exception as e:
        logger.error("Tone learning failed", extra={"error": str(e)}, exc_info=True)
        raise HTTPException(status_code=500, detail="Tone learning error")


# --- Snooze Endpoints ---

@app.post(
    "/snoozes",
    response_model=SnoozeRecord,
    status_code=201,
    tags=["Snooze"],
    dependencies=[Depends(verify_api_key)]
)
async def create_snooze(snooze_request: SnoozeRequest, snoozes: SnoozeService = Depends(get_snooze_service)):
    try:
        return await snoozes.snooze_email(snooze_request)
    except SnoozeError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.delete("/snoozes/{snooze_id}", response_model=SnoozeRecord, tags=["Snooze"], dependencies=[Depends(verify_api_key)])
async def cancel_snooze(
    snooze_id: str,
    user_id: str = Query(..., min_length=1),
    snoozes: SnoozeService = Depends(get_snooze_service),
):
    try:
        return await snoozes.cancel_snooze(snooze_id, user_id)
    except SnoozeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SnoozeOwnershipError as e:
        raise HTTPException(status_code=403, detail=str(e))


@app.get("/snoozes", response_model=list[SnoozeRecord], tags=["Snooze"], dependencies=[Depends(verify_api_key)])
async def list_snoozes(
    user_id: str = Query(..., min_length=1),
    snoozes: SnoozeService = Depends(get_snooze_service),
):
    return snoozes.get_active_snoozes(user_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("inbox_triage.api:app", host=settings.api_host, port=settings.api_port)
