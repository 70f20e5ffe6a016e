"""Voice platform webhook: authenticate, then dispatch to the skill handlers."""
import json
import logging

from fastapi import APIRouter, Depends, Request

from app.api.deps import RawBody, Skill, Verifier, VoiceRateLimit, client_ip, read_limited_body
from app.config import settings
from app.errors import MalformedRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def _parse_unverified(raw_body: bytes) -> dict:
    try:
        envelope = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedRequest("request body is not JSON") from e
    if not isinstance(envelope, dict):
        raise MalformedRequest("request body is not an object")
    return envelope


# Body size guard runs before the rate limiter; the endpoint reuses the cached body.
@router.post("", dependencies=[Depends(read_limited_body), VoiceRateLimit])
async def voice_request(request: Request, body: RawBody, verifier: Verifier, skill: Skill):
    if settings.verify_signature:
        envelope = await verifier.verify(
            request.headers,
            body,
            settings.skill_id or None,
            client_id=client_ip(request),
        )
    else:
        envelope = _parse_unverified(body)

    request_type = (envelope.get("request") or {}).get("type")
    logger.info(f"Voice request: {request_type}")
    return await skill.handle(envelope)
