"""Media catalog entries."""
from datetime import datetime
from typing import Optional

from beanie import Document, Indexed
from pydantic import BaseModel, Field


class TrackInfo(BaseModel):
    """Catalog entry as used by the voice handlers and the media proxy."""

    track_id: str
    title: str
    artist: Optional[str] = None
    album: Optional[str] = None
    duration_ms: Optional[int] = None
    s3_key: str  # object key in the media bucket
    content_type: str = "audio/mpeg"


class Track(Document):
    """Stored catalog entry, written by the library sync tooling."""

    track_id: Indexed(str, unique=True)
    title: str
    artist: Optional[str] = None
    album: Optional[str] = None
    duration_ms: Optional[int] = None
    s3_key: str
    content_type: str = "audio/mpeg"
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "tracks"

    def to_info(self) -> TrackInfo:
        return TrackInfo(**self.model_dump(include=set(TrackInfo.model_fields)))
