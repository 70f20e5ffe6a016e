"""Voice Music Gateway - FastAPI entrypoint."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ServerSelectionTimeoutError

from app.api import alexa, stream
from app.config import settings
from app.db import db_shutdown, init_db
from app.errors import GatewayError, RateLimited
from app.security.certificates import CertificateStore
from app.security.rate_limit import RateLimiter
from app.security.signature import SignatureVerifier
from app.security.stream_tokens import StreamTokenService
from app.services.catalog import TrackCatalog
from app.services.media import MediaProxy, get_s3
from app.services.scheduler import AsyncioScheduler, Scheduler
from app.services.session_repository import MongoSessionRepository, SessionRepository
from app.services.sessions import SessionStore
from app.services.voice_handlers import VoiceSkill

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}
VOICE_CSP = "default-src 'none'; frame-ancestors 'none'"


def configure_services(
    app: FastAPI,
    *,
    http_client: httpx.AsyncClient,
    repository: SessionRepository,
    catalog: TrackCatalog,
    scheduler: Optional[Scheduler] = None,
    s3_factory: Callable[[], Any] = get_s3,
) -> None:
    """Build every component from settings and hang it on ``app.state``."""
    scheduler = scheduler or AsyncioScheduler()
    cert_store = CertificateStore(
        http_client,
        ttl_seconds=settings.cert_cache_ttl_seconds,
        timeout=settings.cert_fetch_timeout_seconds,
    )
    tokens = StreamTokenService(
        settings.stream_token_secret,
        issuer=settings.stream_token_issuer,
        default_ttl_seconds=settings.stream_token_ttl_seconds,
    )
    sessions = SessionStore(
        repository,
        scheduler,
        snapshot_interval_seconds=settings.snapshot_interval_seconds,
    )

    app.state.http_client = http_client
    app.state.scheduler = scheduler
    app.state.catalog = catalog
    app.state.sessions = sessions
    app.state.tokens = tokens
    app.state.rate_limiter = RateLimiter()
    app.state.verifier = SignatureVerifier(cert_store, tolerance_ms=settings.request_timestamp_tolerance_ms)
    app.state.media = MediaProxy(
        s3_factory,
        bucket=settings.s3_bucket_media,
        retries=settings.media_fetch_retries,
        backoff_seconds=settings.media_retry_backoff_seconds,
    )
    app.state.skill = VoiceSkill(
        sessions,
        catalog,
        tokens,
        public_url=settings.public_url,
        issuer_id=settings.token_issuer_id,
        token_ttl_seconds=settings.stream_token_ttl_seconds,
        max_playback_retries=settings.max_playback_retries,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not settings.verify_signature:
        logger.warning("Voice request signature verification is DISABLED")

    try:
        await init_db()
    except ServerSelectionTimeoutError as e:
        logger.error(
            "MongoDB is not running. Start it with: docker compose up -d (from project root)"
        )
        raise RuntimeError(
            "MongoDB connection failed. Start MongoDB (e.g. docker compose up -d)."
        ) from e

    catalog = TrackCatalog()
    await catalog.refresh()
    http_client = httpx.AsyncClient(follow_redirects=False)
    configure_services(
        app,
        http_client=http_client,
        repository=MongoSessionRepository(),
        catalog=catalog,
    )
    await app.state.sessions.recover()
    yield
    app.state.sessions.shutdown()
    await app.state.scheduler.shutdown()
    await http_client.aclose()
    await db_shutdown()


app = FastAPI(
    title=settings.app_name,
    description="Signed voice requests in, token-gated media streams out",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError):
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "kind": exc.kind},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": errors},
    )


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.url.path.startswith("/alexa"):
        response.headers["Content-Security-Policy"] = VOICE_CSP
    return response

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(alexa.router, prefix="/alexa", tags=["Voice"])
app.include_router(stream.router, prefix="/stream", tags=["Stream"])


@app.get("/health")
def health():
    return {
        "status": "ok",
        "app": settings.app_name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
