import httpx
import pytest

from app.errors import CertFetchFailed, CertParseFailed, InvalidCertUrl
from app.security.certificates import CertificateStore, is_valid_cert_url
from conftest import CERT_URL, cert_transport, no_sleep


@pytest.mark.parametrize(
    "url",
    [
        "https://s3.amazonaws.com/echo.api/echo-api-cert.pem",
        "HTTPS://S3.AMAZONAWS.COM/echo.api/echo-api-cert.pem",
        "https://s3.amazonaws.com:443/echo.api/echo-api-cert.pem",
        "https://s3.amazonaws.com/echo.api/../echo.api/echo-api-cert.pem",
        "https://s3.amazonaws.com-eu-west-1/echo.api/echo-api-cert.pem",
    ],
)
def test_valid_cert_urls(url):
    assert is_valid_cert_url(url)


@pytest.mark.parametrize(
    "url",
    [
        "http://s3.amazonaws.com/echo.api/echo-api-cert.pem",
        "https://notamazon.com/echo.api/echo-api-cert.pem",
        "https://s3.amazonaws.com/EcHo.aPi/echo-api-cert.pem",
        "https://s3.amazonaws.com/invalid.path/echo-api-cert.pem",
        "https://s3.amazonaws.com/echo.api/../invalid.path/echo-api-cert.pem",
        "https://s3.amazonaws.com:563/echo.api/echo-api-cert.pem",
        "https://s3.amazonaws.com:notaport/echo.api/echo-api-cert.pem",
        "",
    ],
)
def test_invalid_cert_urls(url):
    assert not is_valid_cert_url(url)


class MonotonicClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _store(handler, clock=None, **kwargs) -> CertificateStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CertificateStore(client, clock=clock or MonotonicClock(), sleep=no_sleep, **kwargs)


async def test_invalid_url_is_rejected_before_fetch(identity):
    requests = []
    client = httpx.AsyncClient(transport=cert_transport(identity.cert_pem, requests))
    store = CertificateStore(client, sleep=no_sleep)
    with pytest.raises(InvalidCertUrl):
        await store.get("https://evil.example.com/echo.api/cert.pem")
    assert requests == []


async def test_certificate_is_cached_until_ttl(identity):
    requests = []
    clock = MonotonicClock()
    client = httpx.AsyncClient(transport=cert_transport(identity.cert_pem, requests))
    store = CertificateStore(client, ttl_seconds=3600, clock=clock, sleep=no_sleep)

    assert await store.get(CERT_URL) == identity.cert_pem
    assert await store.get(CERT_URL) == identity.cert_pem
    assert len(requests) == 1

    clock.now += 3599
    assert store.cached(CERT_URL) == identity.cert_pem

    clock.now += 1
    assert store.cached(CERT_URL) is None
    await store.get(CERT_URL)
    assert len(requests) == 2


async def test_server_errors_are_retried(identity):
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, text=identity.cert_pem)

    store = _store(handler, retries=2)
    assert await store.get(CERT_URL) == identity.cert_pem
    assert len(attempts) == 3


async def test_gives_up_after_retries():
    attempts = []

    def handler(request):
        attempts.append(request)
        raise httpx.ConnectError("refused", request=request)

    store = _store(handler, retries=2)
    with pytest.raises(CertFetchFailed):
        await store.get(CERT_URL)
    assert len(attempts) == 3


async def test_client_error_is_not_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(404)

    store = _store(handler)
    with pytest.raises(CertFetchFailed):
        await store.get(CERT_URL)
    assert len(attempts) == 1


async def test_body_without_pem_marker():
    store = _store(lambda request: httpx.Response(200, text="<html>nope</html>"))
    with pytest.raises(CertParseFailed):
        await store.get(CERT_URL)
    assert store.cached(CERT_URL) is None
