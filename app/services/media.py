"""AWS S3: media bytes for the stream proxy."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.config import settings
from app.errors import RangeNotSatisfiable, TrackNotFound, UpstreamMediaUnavailable
from app.models.track import TrackInfo

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

_s3 = None


def get_s3():
    global _s3
    if _s3 is None:
        _s3 = boto3.client(
            "s3",
            region_name=settings.aws_region,
            aws_access_key_id=settings.aws_access_key_id or None,
            aws_secret_access_key=settings.aws_secret_access_key or None,
        )
    return _s3


@dataclass
class MediaStream:
    status_code: int
    headers: dict[str, str]
    body: Iterator[bytes]
    media_type: str = "audio/mpeg"


def _iter_body(body, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    try:
        yield from body.iter_chunks(chunk_size)
    finally:
        body.close()


def _error_code(e: ClientError) -> tuple[str, int]:
    err = e.response.get("Error", {})
    status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    return str(err.get("Code", "")), int(status or 0)


class MediaProxy:
    """Fetches a track's object from S3 with bounded retries and linear backoff."""

    def __init__(
        self,
        client_factory: Callable[[], Any] = get_s3,
        *,
        bucket: str,
        retries: int = 2,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client_factory = client_factory
        self._bucket = bucket
        self._retries = retries
        self._backoff = backoff_seconds
        self._sleep = sleep

    async def open(self, track: TrackInfo, range_header: Optional[str] = None) -> MediaStream:
        kwargs = {"Bucket": self._bucket, "Key": track.s3_key}
        if range_header:
            kwargs["Range"] = range_header

        last_error = ""
        for attempt in range(self._retries + 1):
            if attempt:
                await self._sleep(self._backoff * attempt)
            try:
                obj = await asyncio.to_thread(self._client_factory().get_object, **kwargs)
            except ClientError as e:
                code, status = _error_code(e)
                if code in ("NoSuchKey", "404") or status == 404:
                    raise TrackNotFound(f"media object missing for {track.track_id}") from e
                if code == "InvalidRange" or status == 416:
                    raise RangeNotSatisfiable("requested range not satisfiable") from e
                if status and status < 500:
                    raise UpstreamMediaUnavailable(f"media store refused request: {code}") from e
                last_error = code or f"HTTP {status}"
            except BotoCoreError as e:
                last_error = type(e).__name__
            else:
                return self._to_stream(track, obj, ranged=bool(range_header))
            logger.warning(f"Media fetch attempt {attempt + 1} for {track.track_id} failed: {last_error}")

        logger.error(f"Media fetch for {track.track_id} gave up after {self._retries + 1} attempts: {last_error}")
        raise UpstreamMediaUnavailable("media store unavailable")

    @staticmethod
    def _to_stream(track: TrackInfo, obj: dict, *, ranged: bool) -> MediaStream:
        headers = {
            "Accept-Ranges": "bytes",
            "Cache-Control": "public, max-age=3600",
        }
        if obj.get("ContentLength") is not None:
            headers["Content-Length"] = str(obj["ContentLength"])
        if obj.get("ContentRange"):
            headers["Content-Range"] = obj["ContentRange"]

        status = obj.get("ResponseMetadata", {}).get("HTTPStatusCode") or (206 if ranged else 200)
        logger.info(f"Streaming {track.title} ({track.track_id}) status={status}")
        return MediaStream(
            status_code=status,
            headers=headers,
            body=_iter_body(obj["Body"]),
            media_type=track.content_type or "audio/mpeg",
        )
