"""Playback session state machine with periodic position snapshots.

Every mutation of a session runs under that session's lock, so lifecycle
events and snapshot timers for one device never interleave; different
sessions proceed independently. A snapshot timer is pending for a session
if and only if it is PLAYING. Each firing persists the estimated position,
so after a crash the stored offset is stale by at most one interval.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from app.models.session import PlaybackError, PlaybackSession, PlaybackState, utcnow
from app.services.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from app.services.session_repository import SessionRepository

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_INTERVAL_SECONDS = 30.0


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class SessionStore:
    def __init__(
        self,
        repository: SessionRepository,
        scheduler: Optional[Scheduler] = None,
        *,
        snapshot_interval_seconds: float = DEFAULT_SNAPSHOT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = repository
        self._scheduler = scheduler or AsyncioScheduler()
        self._interval = snapshot_interval_seconds
        self._clock = clock
        self._locks = KeyedLocks()
        self._timers: dict[str, TimerHandle] = {}
        self._timer_generation: dict[str, int] = {}

    @property
    def snapshot_interval_seconds(self) -> float:
        return self._interval

    # ---------- timers ----------

    def has_pending_timer(self, session_id: str) -> bool:
        return session_id in self._timers

    def _arm(self, session_id: str) -> None:
        self._cancel_timer(session_id)
        generation = self._timer_generation.get(session_id, 0) + 1
        self._timer_generation[session_id] = generation

        async def fire():
            await self._on_snapshot(session_id, generation)

        self._timers[session_id] = self._scheduler.call_later(self._interval, fire)

    def _cancel_timer(self, session_id: str) -> None:
        handle = self._timers.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    async def _on_snapshot(self, session_id: str, generation: int) -> None:
        async with self._locks.hold(session_id):
            if self._timer_generation.get(session_id) != generation:
                return  # superseded by a newer arm or a cancel
            self._timers.pop(session_id, None)

            try:
                session = await self._repo.load(session_id)
            except Exception as e:
                # State is unknown; keep the timer so a later firing can retry.
                logger.error(f"[Snapshot] Failed to load {session_id}: {e}")
                self._arm(session_id)
                return
            if session is None or not session.is_playing:
                state = session.playback_state.value if session else "missing"
                logger.info(f"[Snapshot] Session {session_id} is {state}, not re-arming")
                return

            now = self._clock()
            session.offset_ms = self._estimate(session, now)
            session.updated_at = now
            try:
                await self._repo.save(session)
                logger.debug(f"[Snapshot] Saved position for {session_id}: {session.offset_ms}ms")
            except Exception as e:
                logger.error(f"[Snapshot] Failed to persist {session_id}: {e}")
            self._arm(session_id)

    # ---------- position ----------

    def _estimate(self, session: PlaybackSession, now: datetime) -> int:
        if not session.is_playing or session.started_at is None:
            return session.offset_ms
        elapsed_ms = int((now - session.started_at).total_seconds() * 1000)
        return max(0, session.start_offset_ms + elapsed_ms)

    def _start_run(self, session: PlaybackSession, offset_ms: int, now: datetime) -> None:
        session.playback_state = PlaybackState.PLAYING
        session.offset_ms = offset_ms
        session.started_at = now
        session.start_offset_ms = offset_ms

    # ---------- lifecycle ----------

    async def create_session(self, session_id: str, resource_ids: list[str], start_index: int = 0) -> PlaybackSession:
        if not session_id:
            raise ValueError("session_id is required")
        if not resource_ids:
            raise ValueError("resource_ids must not be empty")
        if not 0 <= start_index < len(resource_ids):
            raise ValueError(f"start_index {start_index} out of range")

        async with self._locks.hold(session_id):
            self._cancel_timer(session_id)
            now = self._clock()
            session = PlaybackSession(
                session_id=session_id,
                resource_ids=list(resource_ids),
                current_index=start_index,
                created_at=now,
                updated_at=now,
            )
            await self._repo.save(session)
        logger.info(f"Created session {session_id} with {len(resource_ids)} tracks")
        return session

    async def get_session(self, session_id: str) -> Optional[PlaybackSession]:
        """Return the stored record, or None when there is no prior session."""
        return await self._repo.load(session_id)

    async def delete_session(self, session_id: str) -> bool:
        async with self._locks.hold(session_id):
            self._cancel_timer(session_id)
            self._timer_generation.pop(session_id, None)
            return await self._repo.delete(session_id)

    async def record_playback_start(
        self, session_id: str, offset_ms: int, resource_id: Optional[str] = None
    ) -> Optional[PlaybackSession]:
        """Playback began at ``offset_ms``. A queued ``resource_id`` moves the index to it."""
        async with self._locks.hold(session_id):
            session = await self._repo.load(session_id)
            if session is None:
                return None
            if resource_id and resource_id != session.current_resource_id and resource_id in session.resource_ids:
                session.current_index = session.resource_ids.index(resource_id)
                logger.info(f"Session {session_id} advanced to queued track {resource_id}")
            now = self._clock()
            self._start_run(session, max(0, offset_ms), now)
            session.updated_at = now
            await self._repo.save(session)
            self._arm(session_id)
        logger.info(f"Recorded playback start for {session_id} at {offset_ms}ms")
        return session

    async def update_playback_position(
        self, session_id: str, offset_ms: int, new_state: PlaybackState
    ) -> Optional[PlaybackSession]:
        """Explicit pause/stop/seek. A PLAYING update re-anchors the estimate at ``offset_ms``."""
        async with self._locks.hold(session_id):
            session = await self._repo.load(session_id)
            if session is None:
                return None
            await self._apply_position(session, offset_ms, new_state)
        logger.info(f"Updated position for {session_id}: {session.offset_ms}ms ({new_state.value})")
        return session

    async def set_playback_state(self, session_id: str, new_state: PlaybackState) -> Optional[PlaybackSession]:
        """Change state keeping the current (estimated) position."""
        async with self._locks.hold(session_id):
            session = await self._repo.load(session_id)
            if session is None:
                return None
            offset_ms = self._estimate(session, self._clock())
            await self._apply_position(session, offset_ms, new_state)
        return session

    async def _apply_position(self, session: PlaybackSession, offset_ms: int, new_state: PlaybackState) -> None:
        now = self._clock()
        offset_ms = max(0, offset_ms)
        if new_state == PlaybackState.PLAYING:
            self._start_run(session, offset_ms, now)
        else:
            session.playback_state = new_state
            session.offset_ms = offset_ms
            session.started_at = None
            session.start_offset_ms = offset_ms
        session.updated_at = now
        await self._repo.save(session)

        if new_state == PlaybackState.PLAYING:
            if not self.has_pending_timer(session.session_id):
                self._arm(session.session_id)
        else:
            self._cancel_timer(session.session_id)

    async def estimate_playback_position(self, session_id: str) -> Optional[int]:
        session = await self._repo.load(session_id)
        if session is None:
            return None
        return self._estimate(session, self._clock())

    # ---------- queue ----------

    async def current_track(self, session_id: str) -> Optional[str]:
        session = await self._repo.load(session_id)
        return session.current_resource_id if session else None

    async def peek_next_track(self, session_id: str) -> Optional[str]:
        session = await self._repo.load(session_id)
        if session is None or session.current_index + 1 >= len(session.resource_ids):
            return None
        return session.resource_ids[session.current_index + 1]

    async def has_next_track(self, session_id: str) -> bool:
        return await self.peek_next_track(session_id) is not None

    async def next_track(self, session_id: str) -> Optional[str]:
        return await self._step(session_id, 1)

    async def previous_track(self, session_id: str) -> Optional[str]:
        return await self._step(session_id, -1)

    async def _step(self, session_id: str, delta: int) -> Optional[str]:
        async with self._locks.hold(session_id):
            session = await self._repo.load(session_id)
            if session is None:
                return None
            index = session.current_index + delta
            if not 0 <= index < len(session.resource_ids):
                return None
            await self._move_to(session, index)
            return session.current_resource_id

    async def set_current_index(self, session_id: str, index: int) -> bool:
        async with self._locks.hold(session_id):
            session = await self._repo.load(session_id)
            if session is None or not 0 <= index < len(session.resource_ids):
                return False
            await self._move_to(session, index)
            return True

    async def _move_to(self, session: PlaybackSession, index: int) -> None:
        now = self._clock()
        session.current_index = index
        session.offset_ms = 0
        session.start_offset_ms = 0
        if session.is_playing:
            session.started_at = now
        session.updated_at = now
        await self._repo.save(session)

    # ---------- retry bookkeeping ----------

    async def increment_retry_count(self, session_id: str) -> Optional[int]:
        async with self._locks.hold(session_id):
            session = await self._repo.load(session_id)
            if session is None:
                return None
            session.retry_count += 1
            session.updated_at = self._clock()
            await self._repo.save(session)
            return session.retry_count

    async def reset_retry_count(self, session_id: str) -> bool:
        async with self._locks.hold(session_id):
            session = await self._repo.load(session_id)
            if session is None:
                return False
            if session.retry_count:
                session.retry_count = 0
                session.updated_at = self._clock()
                await self._repo.save(session)
            return True

    async def record_error(
        self,
        session_id: str,
        *,
        error_type: Optional[str],
        message: Optional[str],
        resource_id: Optional[str] = None,
    ) -> bool:
        async with self._locks.hold(session_id):
            session = await self._repo.load(session_id)
            if session is None:
                return False
            now = self._clock()
            session.last_error = PlaybackError(
                type=error_type,
                message=message,
                resource_id=resource_id,
                timestamp=now,
            )
            session.updated_at = now
            await self._repo.save(session)
            return True

    # ---------- process lifecycle ----------

    async def recover(self) -> int:
        """Re-arm snapshot timers for sessions persisted as PLAYING.

        The stored offset is taken as-is and the run is re-anchored at the
        current time, so downtime is never added to the estimate.
        """
        sessions = await self._repo.list_playing()
        for session in sessions:
            async with self._locks.hold(session.session_id):
                if self.has_pending_timer(session.session_id):
                    continue
                now = self._clock()
                session.started_at = now
                session.start_offset_ms = session.offset_ms
                session.updated_at = now
                await self._repo.save(session)
                self._arm(session.session_id)
        if sessions:
            logger.info(f"Re-armed snapshot timers for {len(sessions)} playing session(s)")
        return len(sessions)

    def shutdown(self) -> None:
        for session_id in list(self._timers):
            self._cancel_timer(session_id)
        self._timer_generation.clear()
