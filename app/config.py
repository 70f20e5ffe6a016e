"""Application configuration using Pydantic Settings."""
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_name: str = "Voice Music Gateway"
    debug: bool = False
    log_level: str = "INFO"
    public_url: str = "http://localhost:8000"  # base for follow-up media URLs

    # MongoDB
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "voice_music"

    # Voice platform request verification
    skill_id: str = ""  # empty disables the application id check
    verify_signature: bool = True
    cert_cache_ttl_seconds: int = 3600
    cert_fetch_timeout_seconds: float = 5.0
    request_timestamp_tolerance_ms: int = 150_000
    max_request_body_bytes: int = 10 * 1024

    # Stream tokens
    stream_token_secret: str = "change-me-in-production"
    stream_token_ttl_seconds: int = 3600
    stream_token_issuer: str = "voice-music-gateway"

    # Sessions
    snapshot_interval_seconds: float = 30.0
    session_ttl_seconds: int = 86400
    max_playback_retries: int = 2

    # Rate limits (requests per window)
    rate_limit_voice: int = 60
    rate_limit_voice_window_seconds: int = 60
    rate_limit_stream: int = 120
    rate_limit_stream_window_seconds: int = 60
    # Reverse proxies in front of the app that append to X-Forwarded-For; 0 trusts only the socket peer
    trusted_proxy_hops: int = 0

    # AWS S3 (media blobs)
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = "ap-northeast-1"
    s3_bucket_media: str = "voice-music-media"
    media_fetch_retries: int = 2
    media_retry_backoff_seconds: float = 0.5

    # CORS (comma-separated origins)
    cors_origins: str = "http://localhost:5173"

    @property
    def token_issuer_id(self) -> str:
        """Issuer bound into stream tokens: the skill id when configured."""
        return self.skill_id or self.stream_token_issuer

    @model_validator(mode="after")
    def _validate_production_secrets(self):
        if not self.debug:
            if self.stream_token_secret in ("change-me-in-production", ""):
                raise ValueError(
                    "STREAM_TOKEN_SECRET must be set to a strong secret when DEBUG is not enabled. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
        return self


settings = Settings()
