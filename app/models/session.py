"""Per-device playback session record and its MongoDB document."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import pymongo
from beanie import Document, Indexed
from pydantic import BaseModel, Field

from app.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlaybackState(str, Enum):
    IDLE = "IDLE"
    PLAYING = "PLAYING"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"


class PlaybackError(BaseModel):
    type: Optional[str] = None
    message: Optional[str] = None
    resource_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class PlaybackSession(BaseModel):
    """One device's queue and playback position; JSON-serializable."""

    session_id: str
    resource_ids: list[str]  # fixed once the session is created
    current_index: int = 0
    playback_state: PlaybackState = PlaybackState.IDLE
    offset_ms: int = 0
    started_at: Optional[datetime] = None  # wall clock when the current run started
    start_offset_ms: int = 0  # offset at started_at
    retry_count: int = 0
    last_error: Optional[PlaybackError] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def current_resource_id(self) -> Optional[str]:
        if 0 <= self.current_index < len(self.resource_ids):
            return self.resource_ids[self.current_index]
        return None

    @property
    def is_playing(self) -> bool:
        return self.playback_state == PlaybackState.PLAYING


class SessionDocument(Document):
    """Stored form of a PlaybackSession; expires ``session_ttl_seconds`` after its last write."""

    session_id: Indexed(str, unique=True)
    updated_at: datetime = Field(default_factory=utcnow)
    record: PlaybackSession

    class Settings:
        name = "playback_sessions"
        indexes = [
            pymongo.IndexModel(
                [("updated_at", pymongo.ASCENDING)],
                name="playback_session_ttl",
                expireAfterSeconds=settings.session_ttl_seconds,
            ),
            pymongo.IndexModel([("record.playback_state", pymongo.ASCENDING)], name="playback_state"),
        ]
