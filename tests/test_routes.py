import json
from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main import app, configure_services
from app.security.rate_limit import RateLimitDecision
from app.services.catalog import TrackCatalog
from app.services.media import MediaProxy
from conftest import FakeS3, cert_transport, client_error, no_sleep, s3_object


@pytest.fixture
def s3():
    return FakeS3()


@pytest.fixture
def client(identity, repository, scheduler, tracks, s3):
    configure_services(
        app,
        http_client=httpx.AsyncClient(transport=cert_transport(identity.cert_pem)),
        repository=repository,
        catalog=TrackCatalog(tracks),
        scheduler=scheduler,
        s3_factory=lambda: s3,
    )
    return TestClient(app)


def signed_launch(identity, **extra) -> tuple[bytes, dict]:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    envelope = {
        "version": "1.0",
        "session": {"sessionId": "s-1", "application": {"applicationId": "amzn1.ask.skill.test"}},
        "context": {"System": {"device": {"deviceId": "device-1"}}},
        "request": {"type": "LaunchRequest", "requestId": "r-1", "timestamp": stamp},
        **extra,
    }
    body = json.dumps(envelope).encode("utf-8")
    headers = identity.headers(body)
    headers["Content-Type"] = "application/json"
    return body, headers


class DenyAll:
    def check(self, client_key, endpoint_class, limit, window_seconds):
        return RateLimitDecision(allowed=False, remaining=0, retry_after=17)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "Content-Security-Policy" not in response.headers


def test_signed_launch_request(client, identity):
    body, headers = signed_launch(identity)
    response = client.post("/alexa", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json()["response"]["outputSpeech"]["text"] == "What would you like to play?"
    assert response.headers["Content-Security-Policy"] == "default-src 'none'; frame-ancestors 'none'"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_unsigned_request_is_rejected(client, identity):
    body, _ = signed_launch(identity)
    response = client.post("/alexa", content=body, headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["kind"] == "missing_headers"


def test_tampered_request_is_rejected(client, identity):
    body, headers = signed_launch(identity)
    response = client.post("/alexa", content=body.replace(b"LaunchRequest", b"LaunchRequesT"), headers=headers)
    assert response.status_code == 401
    assert response.json()["kind"] == "signature_invalid"


def test_oversized_body_is_rejected(client, identity):
    body = b"{" + b" " * settings.max_request_body_bytes + b"}"
    response = client.post("/alexa", content=body, headers=identity.headers(body))
    assert response.status_code == 413
    assert response.json()["kind"] == "request_too_large"


def test_rate_limited_voice_request(client, identity):
    app.state.rate_limiter = DenyAll()
    body, headers = signed_launch(identity)
    response = client.post("/alexa", content=body, headers=headers)
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "17"
    assert response.json()["kind"] == "rate_limited"


def test_verification_can_be_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "verify_signature", False)
    body = json.dumps({"request": {"type": "LaunchRequest"}}).encode("utf-8")
    response = client.post("/alexa", content=body, headers={"Content-Type": "application/json"})
    assert response.status_code == 200

    response = client.post("/alexa", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["kind"] == "malformed_request"


def _token(track_id: str) -> str:
    return app.state.tokens.issue(track_id, settings.token_issuer_id)


def test_stream_serves_media(client, s3):
    s3.results.append(s3_object(b"ID3audio"))
    response = client.get("/stream/t1", params={"token": _token("t1")})
    assert response.status_code == 200
    assert response.content == b"ID3audio"
    assert response.headers["content-type"].startswith("audio/mpeg")
    assert response.headers["Accept-Ranges"] == "bytes"
    assert s3.calls[0]["Key"] == "music/t1.mp3"


def test_stream_passes_range_through(client, s3):
    s3.results.append(s3_object(b"audio", status=206, content_range="bytes 3-7/8"))
    response = client.get("/stream/t1", params={"token": _token("t1")}, headers={"Range": "bytes=3-"})
    assert response.status_code == 206
    assert response.headers["Content-Range"] == "bytes 3-7/8"
    assert s3.calls[0]["Range"] == "bytes=3-"


def test_stream_requires_token(client, s3):
    response = client.get("/stream/t1")
    assert response.status_code == 401
    assert response.json()["kind"] == "token_missing"
    assert s3.calls == []


def test_stream_rejects_invalid_token(client):
    response = client.get("/stream/t1", params={"token": _token("t1")[:-2] + "xx"})
    assert response.status_code == 403


def test_stream_rejects_token_for_another_track(client):
    response = client.get("/stream/t1", params={"token": _token("t2")})
    assert response.status_code == 403
    assert response.json()["kind"] == "token_resource_mismatch"


def test_stream_unknown_track(client):
    response = client.get("/stream/nope", params={"token": _token("nope")})
    assert response.status_code == 404
    assert response.json()["kind"] == "track_not_found"


def test_stream_upstream_failure(client, s3):
    s3.results.extend([client_error("InternalError", 500)] * 3)
    app.state.media = MediaProxy(lambda: s3, bucket="media", retries=2, sleep=no_sleep)
    response = client.get("/stream/t1", params={"token": _token("t1")})
    assert response.status_code == 502
    assert response.json()["kind"] == "upstream_media_unavailable"


class RecordingLimiter:
    def __init__(self):
        self.keys = []

    def check(self, client_key, endpoint_class, limit, window_seconds):
        self.keys.append(client_key)
        return RateLimitDecision(allowed=True, remaining=limit)


def test_forwarded_for_is_ignored_without_trusted_proxies(client, identity):
    limiter = app.state.rate_limiter = RecordingLimiter()
    body, headers = signed_launch(identity)
    for i in range(3):
        client.post("/alexa", content=body, headers={**headers, "X-Forwarded-For": f"203.0.113.{i}"})
    assert limiter.keys == ["testclient"] * 3


def test_rotating_forwarded_for_still_hits_the_limit(client, identity):
    body, headers = signed_launch(identity)
    statuses = [
        client.post("/alexa", content=body, headers={**headers, "X-Forwarded-For": f"198.51.100.{i % 250}"}).status_code
        for i in range(settings.rate_limit_voice + 1)
    ]
    assert statuses[:-1] == [200] * settings.rate_limit_voice
    assert statuses[-1] == 429


def test_trusted_proxy_hop_supplies_client_address(client, identity, monkeypatch):
    monkeypatch.setattr(settings, "trusted_proxy_hops", 1)
    limiter = app.state.rate_limiter = RecordingLimiter()
    body, headers = signed_launch(identity)
    client.post("/alexa", content=body, headers={**headers, "X-Forwarded-For": "10.9.9.9, 192.0.2.7"})
    client.post("/alexa", content=body, headers=headers)
    assert limiter.keys == ["192.0.2.7", "testclient"]
