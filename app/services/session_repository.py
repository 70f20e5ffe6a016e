"""Durable storage seam for playback sessions."""
from typing import Optional, Protocol

from app.models.session import PlaybackSession, PlaybackState, SessionDocument


class SessionRepository(Protocol):
    async def load(self, session_id: str) -> Optional[PlaybackSession]: ...

    async def save(self, session: PlaybackSession) -> None: ...

    async def delete(self, session_id: str) -> bool: ...

    async def list_playing(self) -> list[PlaybackSession]: ...


class MongoSessionRepository:
    """One document per session id; every save is a single-document upsert."""

    async def load(self, session_id: str) -> Optional[PlaybackSession]:
        doc = await SessionDocument.find_one(SessionDocument.session_id == session_id)
        return doc.record if doc else None

    async def save(self, session: PlaybackSession) -> None:
        # Inserts and updates share one $set so the stored record is always JSON-encoded.
        # updated_at stays a BSON date for the TTL index.
        await SessionDocument.get_motor_collection().update_one(
            {"session_id": session.session_id},
            {
                "$set": {
                    "session_id": session.session_id,
                    "updated_at": session.updated_at,
                    "record": session.model_dump(mode="json"),
                }
            },
            upsert=True,
        )

    async def delete(self, session_id: str) -> bool:
        doc = await SessionDocument.find_one(SessionDocument.session_id == session_id)
        if not doc:
            return False
        await doc.delete()
        return True

    async def list_playing(self) -> list[PlaybackSession]:
        docs = await SessionDocument.find({"record.playback_state": PlaybackState.PLAYING.value}).to_list()
        return [d.record for d in docs]
