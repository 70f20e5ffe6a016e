"""Beanie document models and Pydantic schemas."""
from app.models.session import PlaybackError, PlaybackSession, PlaybackState, SessionDocument
from app.models.track import Track, TrackInfo

__all__ = [
    "PlaybackError",
    "PlaybackSession",
    "PlaybackState",
    "SessionDocument",
    "Track",
    "TrackInfo",
]
