"""In-process view of the track catalog with normalized substring search."""
import logging
import unicodedata
from typing import Iterable, Optional

from app.models.track import Track, TrackInfo

logger = logging.getLogger(__name__)


def normalize(text: Optional[str]) -> str:
    """Fold full-width forms and case so spoken queries match stored titles."""
    if not text:
        return ""
    return unicodedata.normalize("NFKC", text).casefold().strip()


class TrackCatalog:
    def __init__(self, tracks: Iterable[TrackInfo] = ()):
        self._tracks: list[TrackInfo] = []
        self._by_id: dict[str, TrackInfo] = {}
        self.replace(tracks)

    def __len__(self) -> int:
        return len(self._tracks)

    def replace(self, tracks: Iterable[TrackInfo]) -> None:
        self._tracks = list(tracks)
        self._by_id = {t.track_id: t for t in self._tracks}

    async def refresh(self) -> int:
        """Reload every stored Track document."""
        docs = await Track.find_all().to_list()
        self.replace(d.to_info() for d in docs)
        logger.info(f"Track catalog loaded: {len(self._tracks)} tracks")
        return len(self._tracks)

    def get(self, track_id: str) -> Optional[TrackInfo]:
        return self._by_id.get(track_id)

    def search(self, query: str) -> list[TrackInfo]:
        """Substring match over title, artist and album; title hits first."""
        needle = normalize(query)
        if not needle:
            return []
        title_hits, other_hits = [], []
        for track in self._tracks:
            if needle in normalize(track.title):
                title_hits.append(track)
            elif needle in normalize(track.artist) or needle in normalize(track.album):
                other_hits.append(track)
        return title_hits + other_hits
