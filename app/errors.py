"""Failure taxonomy for request authentication, tokens and media proxying."""
from typing import Optional


class GatewayError(Exception):
    """Base error; each subclass maps to one HTTP status at the edge."""

    kind = "gateway_error"
    status_code = 500

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.kind)
        self.context = context


# Request authentication

class MissingHeaders(GatewayError):
    kind = "missing_headers"
    status_code = 400


class InvalidCertUrl(GatewayError):
    kind = "invalid_cert_url"
    status_code = 400


class CertFetchFailed(GatewayError):
    kind = "cert_fetch_failed"
    status_code = 400


class CertParseFailed(GatewayError):
    kind = "cert_parse_failed"
    status_code = 400


class SignatureInvalid(GatewayError):
    kind = "signature_invalid"
    status_code = 401


class TimestampExpired(GatewayError):
    kind = "timestamp_expired"
    status_code = 401


class SkillIdMismatch(GatewayError):
    kind = "skill_id_mismatch"
    status_code = 403


class RequestTooLarge(GatewayError):
    kind = "request_too_large"
    status_code = 413


# Stream tokens

class TokenMissing(GatewayError):
    kind = "token_missing"
    status_code = 401


class TokenMalformed(GatewayError):
    kind = "token_malformed"
    status_code = 403


class TokenExpired(GatewayError):
    kind = "token_expired"
    status_code = 403


class TokenTypeMismatch(GatewayError):
    kind = "token_type_mismatch"
    status_code = 403


class TokenResourceMismatch(GatewayError):
    kind = "token_resource_mismatch"
    status_code = 403


# Throttling and upstream

class RateLimited(GatewayError):
    kind = "rate_limited"
    status_code = 429

    def __init__(self, message: str = "", *, retry_after: int = 60, limit: Optional[int] = None):
        super().__init__(message or "Rate limit exceeded. Please try again later.")
        self.retry_after = retry_after
        self.limit = limit


class UpstreamMediaUnavailable(GatewayError):
    kind = "upstream_media_unavailable"
    status_code = 502


class RangeNotSatisfiable(GatewayError):
    kind = "range_not_satisfiable"
    status_code = 416


class SessionNotFound(GatewayError):
    """Only raised at the HTTP edge; the session store itself returns None."""

    kind = "session_not_found"
    status_code = 404


class TrackNotFound(GatewayError):
    kind = "track_not_found"
    status_code = 404


class MalformedRequest(GatewayError):
    kind = "malformed_request"
    status_code = 400
