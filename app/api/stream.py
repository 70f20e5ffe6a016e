"""Token-gated media proxy."""
import logging
from typing import Optional

from fastapi import APIRouter, Header, Query
from fastapi.responses import StreamingResponse

from app.api.deps import Catalog, Media, StreamRateLimit, Tokens
from app.config import settings
from app.errors import TokenMissing, TrackNotFound

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{track_id}", dependencies=[StreamRateLimit])
async def stream_track(
    track_id: str,
    tokens: Tokens,
    catalog: Catalog,
    media: Media,
    token: Optional[str] = Query(None),
    range_header: Optional[str] = Header(None, alias="Range"),
):
    if not token:
        raise TokenMissing("stream token required")

    tokens.check(token, resource_id=track_id, expected_issuer=settings.token_issuer_id)

    track = catalog.get(track_id)
    if not track:
        raise TrackNotFound(f"unknown track {track_id}")

    stream = await media.open(track, range_header)
    return StreamingResponse(
        stream.body,
        status_code=stream.status_code,
        headers=stream.headers,
        media_type=stream.media_type,
    )
