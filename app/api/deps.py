"""Shared dependencies: services from app.state, client identity, rate limits, body size guard."""
from typing import Annotated

from fastapi import Depends, Request

from app.config import settings
from app.errors import RateLimited, RequestTooLarge
from app.security.rate_limit import RateLimiter
from app.security.signature import SignatureVerifier
from app.security.stream_tokens import StreamTokenService
from app.services.catalog import TrackCatalog
from app.services.media import MediaProxy
from app.services.sessions import SessionStore
from app.services.voice_handlers import VoiceSkill

VOICE_CLASS = "voice"
STREAM_CLASS = "stream"


def client_ip(request: Request) -> str:
    """Address the rate limiter keys on.

    X-Forwarded-For is client-writable, so only the entries appended by our own
    proxies count: with N trusted hops the client is the Nth entry from the right.
    Without trusted proxies (or with a short header) the socket peer is used.
    """
    peer = request.client.host if request.client else "unknown"
    hops = settings.trusted_proxy_hops
    if hops <= 0:
        return peer
    entries = [e.strip() for e in request.headers.get("x-forwarded-for", "").split(",") if e.strip()]
    if len(entries) < hops:
        return peer
    return entries[-hops]


def get_verifier(request: Request) -> SignatureVerifier:
    return request.app.state.verifier


def get_tokens(request: Request) -> StreamTokenService:
    return request.app.state.tokens


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_catalog(request: Request) -> TrackCatalog:
    return request.app.state.catalog


def get_media(request: Request) -> MediaProxy:
    return request.app.state.media


def get_skill(request: Request) -> VoiceSkill:
    return request.app.state.skill


def rate_limit(endpoint_class: str, limit: int, window_seconds: int):
    async def checker(request: Request):
        limiter: RateLimiter = request.app.state.rate_limiter
        decision = limiter.check(client_ip(request), endpoint_class, limit, window_seconds)
        if not decision.allowed:
            raise RateLimited(retry_after=decision.retry_after, limit=limit)
        return decision

    return checker


async def read_limited_body(request: Request) -> bytes:
    """Raw request bytes, refused before reading when Content-Length is over the limit."""
    limit = settings.max_request_body_bytes
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise RequestTooLarge(f"request body exceeds {limit} bytes")

    chunks, size = [], 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise RequestTooLarge(f"request body exceeds {limit} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


# Type aliases for route injection
Verifier = Annotated[SignatureVerifier, Depends(get_verifier)]
Tokens = Annotated[StreamTokenService, Depends(get_tokens)]
Sessions = Annotated[SessionStore, Depends(get_sessions)]
Catalog = Annotated[TrackCatalog, Depends(get_catalog)]
Media = Annotated[MediaProxy, Depends(get_media)]
Skill = Annotated[VoiceSkill, Depends(get_skill)]
RawBody = Annotated[bytes, Depends(read_limited_body)]
VoiceRateLimit = Depends(rate_limit(VOICE_CLASS, settings.rate_limit_voice, settings.rate_limit_voice_window_seconds))
StreamRateLimit = Depends(
    rate_limit(STREAM_CLASS, settings.rate_limit_stream, settings.rate_limit_stream_window_seconds)
)
