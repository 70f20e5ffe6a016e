"""Short-lived HS256 tokens that authorize one media resource."""
import logging
import time
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from jose import JWTError, jwt
from jose.utils import base64url_decode, base64url_encode
from pydantic import BaseModel

from app.errors import (
    GatewayError,
    TokenExpired,
    TokenMalformed,
    TokenResourceMismatch,
    TokenTypeMismatch,
)

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
STREAM_TOKEN_TYPE = "stream"


class StreamTokenPayload(BaseModel):
    resource_id: str
    issuer_id: str
    issued_at: int
    expires_at: int
    subject: str
    type: str

    @classmethod
    def from_claims(cls, claims: dict) -> "StreamTokenPayload":
        return cls(
            resource_id=str(claims["resourceId"]),
            issuer_id=str(claims.get("issuerId", "")),
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
            subject=str(claims.get("sub", "")),
            type=str(claims.get("type", "")),
        )


def _is_canonical_segment(segment: str) -> bool:
    # Rejects signature variants that only differ in unused trailing bits.
    try:
        raw = base64url_decode(segment.encode("ascii"))
    except (ValueError, UnicodeEncodeError):
        return False
    return base64url_encode(raw).decode("ascii") == segment


class StreamTokenService:
    """Issues and verifies stateless stream tokens (no revocation list)."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "voice-music-gateway",
        default_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("stream token secret must not be empty")
        self._secret = secret
        self._issuer = issuer
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    def issue(self, resource_id: str, issuer_id: str, ttl_seconds: Optional[int] = None) -> str:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = int(self._clock())
        claims = {
            "resourceId": resource_id,
            "issuerId": issuer_id,
            "type": STREAM_TOKEN_TYPE,
            "iat": now,
            "exp": now + ttl,
            "iss": self._issuer,
            "sub": resource_id,
        }
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def check(
        self,
        token: str,
        *,
        resource_id: Optional[str] = None,
        expected_issuer: Optional[str] = None,
    ) -> StreamTokenPayload:
        """Like ``verify`` but raises the specific ``Token*`` error."""
        parts = token.split(".") if token else []
        if len(parts) != 3 or not _is_canonical_segment(parts[2]):
            raise TokenMalformed("token is not three canonical segments")

        try:
            # Expiry is checked below against the injected clock.
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
            payload = StreamTokenPayload.from_claims(claims)
        except (JWTError, KeyError, TypeError, ValueError) as e:
            raise TokenMalformed("token signature or payload invalid") from e

        if payload.expires_at <= payload.issued_at:
            raise TokenMalformed("token expiry precedes issuance")
        if int(self._clock()) > payload.expires_at:
            raise TokenExpired("token expired")
        if payload.type != STREAM_TOKEN_TYPE:
            raise TokenTypeMismatch("token is not a stream token")
        if expected_issuer and payload.issuer_id != expected_issuer:
            raise TokenMalformed("token issued for another skill")
        if resource_id is not None and payload.resource_id != resource_id:
            raise TokenResourceMismatch("token bound to another resource")
        return payload

    def verify(self, token: str, expected_issuer: Optional[str] = None) -> Optional[StreamTokenPayload]:
        """Return the payload, or None on any failure."""
        try:
            return self.check(token, expected_issuer=expected_issuer)
        except GatewayError as e:
            logger.info(f"Stream token rejected: kind={e.kind}")
            return None


def build_stream_url(public_url: str, resource_id: str, token: str) -> str:
    base = public_url.rstrip("/")
    return f"{base}/stream/{quote(resource_id, safe='')}?{urlencode({'token': token})}"
