from urllib.parse import parse_qs, urlsplit

import pytest
from jose import jwt

from app.errors import TokenExpired, TokenMalformed, TokenResourceMismatch, TokenTypeMismatch
from app.security.stream_tokens import ALGORITHM, StreamTokenService, build_stream_url

SECRET = "test-secret-0123456789"
ISSUER = "amzn1.ask.skill.test"


class Clock:
    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def service(clock):
    return StreamTokenService(SECRET, issuer="gateway", default_ttl_seconds=3600, clock=clock)


def test_issue_then_verify(service, clock):
    token = service.issue("track-1", ISSUER)
    payload = service.verify(token)
    assert payload.resource_id == "track-1"
    assert payload.issuer_id == ISSUER
    assert payload.type == "stream"
    assert payload.subject == "track-1"
    assert payload.expires_at - payload.issued_at == 3600


def test_claims_layout(service):
    claims = jwt.get_unverified_claims(service.issue("track-1", ISSUER, ttl_seconds=60))
    assert claims["resourceId"] == "track-1"
    assert claims["issuerId"] == ISSUER
    assert claims["iss"] == "gateway"
    assert claims["exp"] - claims["iat"] == 60


def test_expiry_boundary(service, clock):
    token = service.issue("track-1", ISSUER, ttl_seconds=60)
    clock.now += 60
    assert service.verify(token) is not None
    clock.now += 1
    assert service.verify(token) is None
    with pytest.raises(TokenExpired):
        service.check(token)


def test_every_single_character_tamper_is_rejected(service):
    token = service.issue("track-1", ISSUER)
    for i, char in enumerate(token):
        if char == ".":
            continue
        replacement = "A" if char != "A" else "B"
        tampered = token[:i] + replacement + token[i + 1:]
        assert service.verify(tampered) is None, f"tamper at {i} accepted"


def test_wrong_secret(service, clock):
    other = StreamTokenService("another-secret", clock=clock)
    assert other.verify(service.issue("track-1", ISSUER)) is None


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "not.a.jwt"])
def test_malformed_tokens(service, token):
    assert service.verify(token) is None


def test_wrong_type(service, clock):
    claims = {"resourceId": "track-1", "issuerId": ISSUER, "type": "download", "iat": int(clock.now), "exp": int(clock.now) + 60}
    token = jwt.encode(claims, SECRET, algorithm=ALGORITHM)
    with pytest.raises(TokenTypeMismatch):
        service.check(token)


def test_expiry_before_issue_is_malformed(service, clock):
    claims = {"resourceId": "track-1", "issuerId": ISSUER, "type": "stream", "iat": int(clock.now), "exp": int(clock.now)}
    token = jwt.encode(claims, SECRET, algorithm=ALGORITHM)
    with pytest.raises(TokenMalformed):
        service.check(token)


def test_issuer_check(service):
    token = service.issue("track-1", ISSUER)
    assert service.verify(token, expected_issuer=ISSUER) is not None
    assert service.verify(token, expected_issuer="amzn1.ask.skill.other") is None


def test_resource_binding(service):
    token = service.issue("track-1", ISSUER)
    assert service.check(token, resource_id="track-1").resource_id == "track-1"
    with pytest.raises(TokenResourceMismatch):
        service.check(token, resource_id="track-2")


def test_non_positive_ttl(service):
    with pytest.raises(ValueError):
        service.issue("track-1", ISSUER, ttl_seconds=0)


def test_empty_secret():
    with pytest.raises(ValueError):
        StreamTokenService("")


def test_build_stream_url(service):
    token = service.issue("a b/c", ISSUER)
    url = build_stream_url("https://music.example.com/", "a b/c", token)
    parts = urlsplit(url)
    assert parts.path == "/stream/a%20b%2Fc"
    assert parse_qs(parts.query)["token"] == [token]
