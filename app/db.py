"""MongoDB connection for playback sessions and the track catalog."""
import logging

from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.config import settings
from app.models import SessionDocument, Track

logger = logging.getLogger(__name__)

DOCUMENT_MODELS = [SessionDocument, Track]

_client = None


async def init_db(mongodb_url: str | None = None, db_name: str | None = None):
    """Connect, fail fast when the server is unreachable, then register documents (creates indexes)."""
    global _client
    _client = AsyncIOMotorClient(mongodb_url or settings.mongodb_url, serverSelectionTimeoutMS=5000)
    await _client.admin.command("ping")
    database = _client[db_name or settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    logger.info(f"MongoDB ready: {database.name} ({len(DOCUMENT_MODELS)} collections)")
    return database


async def db_shutdown():
    """Close MongoDB connection."""
    global _client
    if _client:
        _client.close()
        _client = None
