"""Voice request dispatch: a static table from request type / intent name to handler."""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from app.models.session import PlaybackState
from app.models.track import TrackInfo
from app.security.stream_tokens import StreamTokenService, build_stream_url
from app.services.catalog import TrackCatalog
from app.services.sessions import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_SEEK_SECONDS = 15


class ResponseBuilder:
    """Accumulates speech and directives into a response envelope."""

    def __init__(self):
        self._response: dict[str, Any] = {}

    def speak(self, text: str) -> "ResponseBuilder":
        self._response["outputSpeech"] = {"type": "PlainText", "text": text}
        return self

    def reprompt(self, text: str) -> "ResponseBuilder":
        self._response["reprompt"] = {"outputSpeech": {"type": "PlainText", "text": text}}
        self._response["shouldEndSession"] = False
        return self

    def end_session(self, value: bool = True) -> "ResponseBuilder":
        self._response["shouldEndSession"] = value
        return self

    def add_directive(self, directive: dict) -> "ResponseBuilder":
        self._response.setdefault("directives", []).append(directive)
        return self

    def build(self) -> dict:
        return {"version": "1.0", "response": dict(self._response)}


@dataclass
class VoiceRequest:
    envelope: dict

    @property
    def request(self) -> dict:
        return self.envelope.get("request") or {}

    @property
    def request_type(self) -> str:
        return self.request.get("type", "")

    @property
    def intent_name(self) -> Optional[str]:
        return (self.request.get("intent") or {}).get("name")

    def slot(self, name: str) -> Optional[str]:
        slots = (self.request.get("intent") or {}).get("slots") or {}
        value = (slots.get(name) or {}).get("value")
        return value.strip() if isinstance(value, str) and value.strip() else None

    @property
    def device_id(self) -> Optional[str]:
        system = (self.envelope.get("context") or {}).get("System") or {}
        return (system.get("device") or {}).get("deviceId")

    @property
    def platform_session_id(self) -> Optional[str]:
        return (self.envelope.get("session") or {}).get("sessionId")

    @property
    def offset_ms(self) -> int:
        try:
            return max(0, int(self.request.get("offsetInMilliseconds") or 0))
        except (TypeError, ValueError):
            return 0


Handler = Callable[["VoiceSkill", VoiceRequest], Awaitable[dict]]


def _seconds_slot(req: VoiceRequest) -> int:
    raw = req.slot("seconds")
    try:
        return max(0, int(raw)) if raw else DEFAULT_SEEK_SECONDS
    except ValueError:
        return DEFAULT_SEEK_SECONDS


class VoiceSkill:
    def __init__(
        self,
        sessions: SessionStore,
        catalog: TrackCatalog,
        tokens: StreamTokenService,
        *,
        public_url: str,
        issuer_id: str,
        token_ttl_seconds: Optional[int] = None,
        max_playback_retries: int = 2,
    ):
        self.sessions = sessions
        self.catalog = catalog
        self.tokens = tokens
        self.public_url = public_url
        self.issuer_id = issuer_id
        self.token_ttl_seconds = token_ttl_seconds
        self.max_playback_retries = max_playback_retries

    async def handle(self, envelope: dict) -> dict:
        req = VoiceRequest(envelope)
        handler = resolve_handler(req)
        if handler is None:
            logger.info(f"No handler for {req.request_type} {req.intent_name or ''}".rstrip())
            return ResponseBuilder().speak("Sorry, I can't help with that.").build()
        return await handler(self, req)

    def audio_directive(self, play_behavior: str, track: TrackInfo, offset_ms: int = 0) -> dict:
        token = self.tokens.issue(track.track_id, self.issuer_id, self.token_ttl_seconds)
        return {
            "type": "AudioPlayer.Play",
            "playBehavior": play_behavior,
            "audioItem": {
                "stream": {
                    "url": build_stream_url(self.public_url, track.track_id, token),
                    "token": track.track_id,
                    "offsetInMilliseconds": offset_ms,
                },
                "metadata": {
                    "title": track.title or "Unknown Title",
                    "subtitle": track.artist or "Unknown Artist",
                },
            },
        }


# ---------- plain requests ----------

async def launch(skill: VoiceSkill, req: VoiceRequest) -> dict:
    text = "What would you like to play?"
    return ResponseBuilder().speak(text).reprompt(text).build()


async def help_intent(skill: VoiceSkill, req: VoiceRequest) -> dict:
    text = "Say the name of a song to play it, for example: play morning walk."
    return ResponseBuilder().speak(text).reprompt(text).build()


async def cancel_and_stop(skill: VoiceSkill, req: VoiceRequest) -> dict:
    return ResponseBuilder().speak("Goodbye.").add_directive({"type": "AudioPlayer.Stop"}).end_session().build()


async def pause(skill: VoiceSkill, req: VoiceRequest) -> dict:
    return ResponseBuilder().add_directive({"type": "AudioPlayer.Stop"}).build()


async def session_ended(skill: VoiceSkill, req: VoiceRequest) -> dict:
    logger.info(f"Session ended: {req.request.get('reason')}")
    return ResponseBuilder().build()


# ---------- playback intents ----------

async def play_music(skill: VoiceSkill, req: VoiceRequest) -> dict:
    query = req.slot("query")
    if not query:
        text = "I didn't catch the title. Please say it again."
        return ResponseBuilder().speak(text).reprompt(text).build()

    results = skill.catalog.search(query)
    if not results:
        text = f"I couldn't find {query}. Please try another title."
        return ResponseBuilder().speak(text).reprompt(text).build()

    device_id = req.device_id
    if not device_id:
        return ResponseBuilder().speak("Sorry, this device can't play music.").build()

    track = results[0]
    await skill.sessions.create_session(device_id, [t.track_id for t in results], 0)
    await skill.sessions.update_playback_position(device_id, 0, PlaybackState.PLAYING)
    await skill.sessions.reset_retry_count(device_id)
    logger.info(f"Playing {track.track_id} with {len(results)} queued")

    return (
        ResponseBuilder()
        .speak(f"Playing {track.title}.")
        .add_directive(skill.audio_directive("REPLACE_ALL", track))
        .build()
    )


async def _play_step(skill: VoiceSkill, req: VoiceRequest, delta: int) -> dict:
    device_id = req.device_id or ""
    if delta > 0:
        track_id = await skill.sessions.next_track(device_id)
        boundary = "This is the last track."
    else:
        track_id = await skill.sessions.previous_track(device_id)
        boundary = "This is the first track."
    if not track_id:
        return ResponseBuilder().speak(boundary).build()

    track = skill.catalog.get(track_id)
    if not track:
        return ResponseBuilder().speak("I couldn't find that track.").build()
    return ResponseBuilder().add_directive(skill.audio_directive("REPLACE_ALL", track)).build()


async def next_track(skill: VoiceSkill, req: VoiceRequest) -> dict:
    return await _play_step(skill, req, 1)


async def previous_track(skill: VoiceSkill, req: VoiceRequest) -> dict:
    return await _play_step(skill, req, -1)


async def resume(skill: VoiceSkill, req: VoiceRequest) -> dict:
    lookup_id = req.device_id
    track_id = await skill.sessions.current_track(lookup_id) if lookup_id else None
    if not track_id and req.platform_session_id:
        lookup_id = req.platform_session_id
        track_id = await skill.sessions.current_track(lookup_id)

    if not track_id:
        text = "There's no playlist to resume. Please say a song title."
        return ResponseBuilder().speak(text).reprompt(text).build()

    track = skill.catalog.get(track_id)
    if not track:
        return ResponseBuilder().speak("I couldn't find that track.").build()

    position = await skill.sessions.estimate_playback_position(lookup_id) or 0
    logger.info(f"Resuming {track_id} from {position}ms")
    return ResponseBuilder().add_directive(skill.audio_directive("REPLACE_ALL", track, position)).build()


async def _seek(skill: VoiceSkill, req: VoiceRequest, direction: int) -> dict:
    device_id = req.device_id or ""
    track_id = await skill.sessions.current_track(device_id)
    if not track_id:
        return ResponseBuilder().speak("Nothing is playing right now.").build()
    track = skill.catalog.get(track_id)
    if not track:
        return ResponseBuilder().speak("I couldn't find that track.").build()

    current = await skill.sessions.estimate_playback_position(device_id) or 0
    target = max(0, current + direction * _seconds_slot(req) * 1000)
    logger.info(f"Seek {track_id}: {current}ms -> {target}ms")
    await skill.sessions.update_playback_position(device_id, target, PlaybackState.PLAYING)
    return ResponseBuilder().add_directive(skill.audio_directive("REPLACE_ALL", track, target)).build()


async def fast_forward(skill: VoiceSkill, req: VoiceRequest) -> dict:
    return await _seek(skill, req, 1)


async def rewind(skill: VoiceSkill, req: VoiceRequest) -> dict:
    return await _seek(skill, req, -1)


# ---------- audio player lifecycle ----------

async def playback_started(skill: VoiceSkill, req: VoiceRequest) -> dict:
    device_id = req.device_id or ""
    await skill.sessions.reset_retry_count(device_id)
    # An enqueued track starting carries its own token; follow it so the next peek is correct.
    await skill.sessions.record_playback_start(device_id, req.offset_ms, req.request.get("token"))
    return ResponseBuilder().build()


async def playback_stopped(skill: VoiceSkill, req: VoiceRequest) -> dict:
    await skill.sessions.update_playback_position(req.device_id or "", req.offset_ms, PlaybackState.PAUSED)
    return ResponseBuilder().build()


async def playback_finished(skill: VoiceSkill, req: VoiceRequest) -> dict:
    await skill.sessions.update_playback_position(req.device_id or "", 0, PlaybackState.IDLE)
    return ResponseBuilder().build()


async def playback_nearly_finished(skill: VoiceSkill, req: VoiceRequest) -> dict:
    track_id = await skill.sessions.peek_next_track(req.device_id or "")
    track = skill.catalog.get(track_id) if track_id else None
    if not track:
        return ResponseBuilder().build()
    logger.info(f"Enqueueing next track {track.track_id}")
    return ResponseBuilder().add_directive(skill.audio_directive("ENQUEUE", track, 0)).build()


async def playback_failed(skill: VoiceSkill, req: VoiceRequest) -> dict:
    device_id = req.device_id or ""
    error = req.request.get("error") or {}
    failed_id = req.request.get("token")
    logger.warning(f"Playback failed for {failed_id}: {error.get('type')}")

    await skill.sessions.record_error(
        device_id,
        error_type=error.get("type"),
        message=error.get("message"),
        resource_id=failed_id,
    )
    session = await skill.sessions.get_session(device_id)
    retries = session.retry_count if session else 0

    if retries < skill.max_playback_retries:
        track = skill.catalog.get(failed_id) if failed_id else None
        if track:
            await skill.sessions.increment_retry_count(device_id)
            logger.info(f"Retrying {track.track_id} (attempt {retries + 1})")
            return ResponseBuilder().add_directive(skill.audio_directive("REPLACE_ALL", track, 0)).build()

    await skill.sessions.reset_retry_count(device_id)
    next_id = await skill.sessions.next_track(device_id)
    next_track_info = skill.catalog.get(next_id) if next_id else None
    if next_track_info:
        return (
            ResponseBuilder()
            .speak("That track couldn't be played. Playing the next one.")
            .add_directive(skill.audio_directive("REPLACE_ALL", next_track_info, 0))
            .build()
        )
    return ResponseBuilder().speak("Sorry, playback failed.").build()


REQUEST_HANDLERS: dict[str, Handler] = {
    "LaunchRequest": launch,
    "SessionEndedRequest": session_ended,
    "AudioPlayer.PlaybackStarted": playback_started,
    "AudioPlayer.PlaybackStopped": playback_stopped,
    "AudioPlayer.PlaybackFinished": playback_finished,
    "AudioPlayer.PlaybackNearlyFinished": playback_nearly_finished,
    "AudioPlayer.PlaybackFailed": playback_failed,
}

INTENT_HANDLERS: dict[str, Handler] = {
    "PlayMusicIntent": play_music,
    "AMAZON.NextIntent": next_track,
    "AMAZON.SkipIntent": next_track,
    "AMAZON.PreviousIntent": previous_track,
    "AMAZON.PauseIntent": pause,
    "AMAZON.ResumeIntent": resume,
    "FastForwardIntent": fast_forward,
    "RewindIntent": rewind,
    "AMAZON.HelpIntent": help_intent,
    "AMAZON.CancelIntent": cancel_and_stop,
    "AMAZON.StopIntent": cancel_and_stop,
}


def resolve_handler(req: VoiceRequest) -> Optional[Handler]:
    if req.request_type == "IntentRequest":
        return INTENT_HANDLERS.get(req.intent_name or "")
    return REQUEST_HANDLERS.get(req.request_type)
