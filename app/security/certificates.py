"""Signing-certificate download with URL allow-listing and a TTL cache."""
import asyncio
import logging
import posixpath
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

import httpx

from app.errors import CertFetchFailed, CertParseFailed, InvalidCertUrl

logger = logging.getLogger(__name__)

CERT_HOST = "s3.amazonaws.com"
CERT_HOST_PREFIX = "s3.amazonaws.com-"  # regional aliases
CERT_PATH_PREFIX = "/echo.api/"
PEM_MARKER = "-----BEGIN CERTIFICATE-----"


def is_valid_cert_url(url: str) -> bool:
    """HTTPS, allow-listed host, ``/echo.api/`` path, port unset or 443."""
    try:
        parsed = urlsplit(url)
        port = parsed.port
    except ValueError:
        return False

    if parsed.scheme.lower() != "https":
        return False

    host = (parsed.hostname or "").lower()
    if host != CERT_HOST and not host.startswith(CERT_HOST_PREFIX):
        return False

    path = posixpath.normpath(parsed.path) if parsed.path else ""
    if not path.startswith(CERT_PATH_PREFIX):
        return False

    if port is not None and port != 443:
        return False
    return True


@dataclass
class CachedCertificate:
    pem: str
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now < self.fetched_at + self.ttl


class CertificateStore:
    """Fetches signing certificates by URL and caches the PEM body for ``ttl_seconds``."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        ttl_seconds: float = 3600,
        timeout: float = 5.0,
        retries: int = 2,
        backoff_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._ttl = ttl_seconds
        self._timeout = timeout
        self._retries = retries
        self._backoff = backoff_seconds
        self._clock = clock
        self._sleep = sleep
        self._cache: dict[str, CachedCertificate] = {}

    def cached(self, url: str) -> Optional[str]:
        entry = self._cache.get(url)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            del self._cache[url]
            return None
        return entry.pem

    async def get(self, url: str) -> str:
        if not is_valid_cert_url(url):
            raise InvalidCertUrl("certificate URL failed validation")

        pem = self.cached(url)
        if pem is not None:
            logger.debug("Certificate cache hit")
            return pem

        pem = await self._download(url)
        if PEM_MARKER not in pem:
            raise CertParseFailed("certificate body has no PEM marker")

        self._cache[url] = CachedCertificate(pem=pem, fetched_at=self._clock(), ttl=self._ttl)
        logger.info("Certificate cached")
        return pem

    async def _download(self, url: str) -> str:
        last_error = ""
        for attempt in range(self._retries + 1):
            if attempt:
                await self._sleep(self._backoff * attempt)
            try:
                response = await self._client.get(url, timeout=self._timeout)
            except httpx.HTTPError as e:
                last_error = type(e).__name__
                logger.warning(f"Certificate download attempt {attempt + 1} failed: {last_error}")
                continue
            if response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                logger.warning(f"Certificate download attempt {attempt + 1} failed: {last_error}")
                continue
            if not response.is_success:
                raise CertFetchFailed(f"certificate download failed: HTTP {response.status_code}")
            return response.text
        raise CertFetchFailed(f"certificate download failed after retries: {last_error}")
