"""Voice platform request verification: certificate, RSA signature, timestamp, skill id."""
import base64
import binascii
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from app.errors import (
    CertParseFailed,
    GatewayError,
    MalformedRequest,
    MissingHeaders,
    SignatureInvalid,
    SkillIdMismatch,
    TimestampExpired,
)
from app.security.asn1 import spki_from_pem
from app.security.certificates import CertificateStore
from app.security.redact import fingerprint

logger = logging.getLogger(__name__)

CERT_URL_HEADER = "signaturecertchainurl"
SIGNATURE_HEADERS = ("signature-256", "signature")  # legacy name as fallback
DEFAULT_TOLERANCE_MS = 150_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 with a trailing ``Z`` or an explicit offset; naive values are UTC."""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def application_id_of(envelope: Mapping[str, Any]) -> Optional[str]:
    session_app = ((envelope.get("session") or {}).get("application") or {}).get("applicationId")
    if session_app:
        return session_app
    system = (envelope.get("context") or {}).get("System") or {}
    return (system.get("application") or {}).get("applicationId")


def load_rsa_public_key(pem: str) -> rsa.RSAPublicKey:
    spki = spki_from_pem(pem)
    try:
        key = serialization.load_der_public_key(spki)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise CertParseFailed(f"public key import failed: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise CertParseFailed("certificate key is not RSA")
    return key


class SignatureVerifier:
    """Authenticates an inbound voice request before any of it is acted upon.

    The signature is checked over the raw body bytes exactly as received; the
    body is only parsed once the signature holds. Certificate chain, validity
    dates and SAN are deliberately not checked (URL allow-listing only).
    """

    def __init__(
        self,
        cert_store: CertificateStore,
        *,
        tolerance_ms: int = DEFAULT_TOLERANCE_MS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._certs = cert_store
        self._tolerance = timedelta(milliseconds=tolerance_ms)
        self._clock = clock

    async def verify(
        self,
        headers: Mapping[str, str],
        raw_body: bytes,
        expected_app_id: Optional[str] = None,
        *,
        client_id: Optional[str] = None,
    ) -> dict:
        """Return the parsed request envelope, or raise a ``GatewayError`` subclass."""
        client = fingerprint(client_id)
        try:
            envelope = await self._verify(headers, raw_body, expected_app_id)
        except GatewayError as e:
            logger.warning(f"Voice request rejected: kind={e.kind} client={client}")
            raise
        logger.info(f"Voice request verified: client={client}")
        return envelope

    async def _verify(self, headers: Mapping[str, str], raw_body: bytes, expected_app_id: Optional[str]) -> dict:
        lowered = {k.lower(): v for k, v in headers.items()}
        cert_url = lowered.get(CERT_URL_HEADER)
        signature = next((lowered[h] for h in SIGNATURE_HEADERS if lowered.get(h)), None)
        if not cert_url or not signature:
            raise MissingHeaders("missing signature headers")

        pem = await self._certs.get(cert_url)
        public_key = load_rsa_public_key(pem)
        self._check_signature(public_key, signature, raw_body)

        try:
            envelope = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedRequest("request body is not JSON") from e
        if not isinstance(envelope, dict):
            raise MalformedRequest("request body is not an object")

        self._check_timestamp(envelope)
        if expected_app_id:
            actual = application_id_of(envelope)
            if actual != expected_app_id:
                raise SkillIdMismatch("application id mismatch")
        return envelope

    @staticmethod
    def _check_signature(public_key: rsa.RSAPublicKey, signature_b64: str, raw_body: bytes) -> None:
        try:
            signature = base64.b64decode(signature_b64.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise SignatureInvalid("signature is not base64") from e
        try:
            public_key.verify(signature, raw_body, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature as e:
            raise SignatureInvalid("signature does not match body") from e

    def _check_timestamp(self, envelope: Mapping[str, Any]) -> None:
        raw = (envelope.get("request") or {}).get("timestamp")
        if not raw or not isinstance(raw, str):
            raise TimestampExpired("missing request timestamp")
        try:
            stamp = parse_timestamp(raw)
        except ValueError as e:
            raise TimestampExpired("unparseable request timestamp") from e
        if abs(self._clock() - stamp) > self._tolerance:
            raise TimestampExpired("request timestamp outside tolerance")
