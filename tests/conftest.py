"""Shared fixtures: in-memory session storage, a manual timer clock, a signing identity."""
import os

# Settings refuse the placeholder token secret outside debug mode.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SKILL_ID", "")

import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest
from botocore.exceptions import ClientError
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from app.models.session import PlaybackSession, PlaybackState
from app.models.track import TrackInfo

CERT_URL = "https://s3.amazonaws.com/echo.api/echo-api-cert-12.pem"
EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class InMemorySessionRepository:
    """Stores deep copies so callers can't mutate persisted state by accident."""

    def __init__(self):
        self.records: dict[str, PlaybackSession] = {}
        self.saves = 0

    async def load(self, session_id: str) -> Optional[PlaybackSession]:
        record = self.records.get(session_id)
        return record.model_copy(deep=True) if record else None

    async def save(self, session: PlaybackSession) -> None:
        self.saves += 1
        self.records[session.session_id] = session.model_copy(deep=True)

    async def delete(self, session_id: str) -> bool:
        return self.records.pop(session_id, None) is not None

    async def list_playing(self) -> list[PlaybackSession]:
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if r.playback_state == PlaybackState.PLAYING
        ]


class FakeClock:
    def __init__(self, start: datetime = EPOCH):
        self.start = start
        self.elapsed = 0.0

    def __call__(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds


@dataclass
class ManualTimer:
    due: float
    callback: object
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class ManualScheduler:
    """Timers fire only when the test advances the clock."""

    clock: FakeClock
    timers: list = field(default_factory=list)

    def call_later(self, delay, callback) -> ManualTimer:
        timer = ManualTimer(due=self.clock.elapsed + delay, callback=callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled]

    async def advance(self, seconds: float) -> None:
        target = self.clock.elapsed + seconds
        while True:
            due = [t for t in self.pending if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.timers.remove(timer)
            self.clock.elapsed = timer.due
            await timer.callback()
        self.clock.elapsed = target

    async def shutdown(self) -> None:
        for timer in self.timers:
            timer.cancel()


@dataclass
class SigningIdentity:
    key: rsa.RSAPrivateKey
    cert_pem: str

    def sign(self, body: bytes) -> str:
        signature = self.key.sign(body, padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")

    def headers(self, body: bytes, cert_url: str = CERT_URL) -> dict:
        return {"SignatureCertChainUrl": cert_url, "Signature-256": self.sign(body)}


def make_identity() -> SigningIdentity:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "echo-api.amazon.com")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(EPOCH - timedelta(days=1))
        .not_valid_after(EPOCH + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return SigningIdentity(key=key, cert_pem=cert.public_bytes(serialization.Encoding.PEM).decode("ascii"))


@pytest.fixture(scope="session")
def identity() -> SigningIdentity:
    return make_identity()


def cert_transport(pem: str, requests: Optional[list] = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(str(request.url))
        return httpx.Response(200, text=pem)

    return httpx.MockTransport(handler)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler(clock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture
def repository() -> InMemorySessionRepository:
    return InMemorySessionRepository()


@pytest.fixture
def tracks() -> list[TrackInfo]:
    return [
        TrackInfo(track_id="t1", title="Morning Walk", artist="Aoi", album="Sunrise", s3_key="music/t1.mp3"),
        TrackInfo(track_id="t2", title="Evening Rain", artist="Aoi", album="Sunrise", s3_key="music/t2.mp3"),
        TrackInfo(track_id="t3", title="Ｍｏｒｎｉｎｇ Ｄｅｗ", artist="Kai", album="Walk On", s3_key="music/t3.mp3"),
    ]


class FakeBody:
    def __init__(self, data: bytes):
        self.data = data
        self.closed = False

    def iter_chunks(self, chunk_size):
        for i in range(0, len(self.data), chunk_size):
            yield self.data[i:i + chunk_size]

    def close(self):
        self.closed = True


def client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "GetObject",
    )


class FakeS3:
    """Plays back a scripted sequence of results for get_object."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def get_object(self, **kwargs):
        self.calls.append(kwargs)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def s3_object(data: bytes, status: int = 200, content_range: Optional[str] = None) -> dict:
    obj = {
        "Body": FakeBody(data),
        "ContentLength": len(data),
        "ResponseMetadata": {"HTTPStatusCode": status},
    }
    if content_range:
        obj["ContentRange"] = content_range
    return obj
