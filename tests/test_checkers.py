import asyncio
import ssl
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from conftest import mock_http
from sitewatch.services.checkers import (
    ReachabilityChecker, TlsChecker, evaluate_certificate, is_online_status, normalize_url,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_cert(not_before: datetime, not_after: datetime, issuer_cn: str = "Test CA") -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "a.example")])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.DER)


def test_normalize_url_adds_scheme():
    assert normalize_url("a.example/") == "https://a.example"
    assert normalize_url("http://b.example") == "http://b.example"


def test_online_predicate_counts_redirects():
    assert is_online_status(200)
    assert is_online_status(301)
    assert not is_online_status(404)
    assert not is_online_status(503)


@pytest.mark.asyncio
async def test_head_405_falls_back_to_get():
    methods = []

    def handler(request):
        methods.append(request.method)
        return httpx.Response(405 if request.method == "HEAD" else 200)

    async with mock_http(handler) as client:
        result = await ReachabilityChecker(client).check("s1", "https://a.example")

    assert methods == ["HEAD", "GET"]
    assert result.status == "online"
    assert result.status_code == 200
    assert result.error is None


@pytest.mark.asyncio
async def test_head_transport_error_falls_back_to_get():
    def handler(request):
        if request.method == "HEAD":
            raise httpx.ConnectError("HEAD blocked", request=request)
        return httpx.Response(200)

    async with mock_http(handler) as client:
        result = await ReachabilityChecker(client).check("s1", "a.example")

    assert result.status == "online"


@pytest.mark.asyncio
async def test_timeout_is_offline_with_timeout_marker():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with mock_http(handler) as client:
        result = await ReachabilityChecker(client, timeout=10).check("s1", "https://a.example")

    assert result.status == "offline"
    assert result.error_kind == "timeout"
    assert result.status_code == 0
    assert "timeout" in result.error


@pytest.mark.asyncio
async def test_total_unreachability_never_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_http(handler) as client:
        result = await ReachabilityChecker(client).check("s1", "https://down.example")

    assert result.status == "offline"
    assert result.error_kind == "transport"


@pytest.mark.asyncio
async def test_redirect_is_online_and_server_error_is_offline():
    responses = {"a.example": 301, "b.example": 500}

    def handler(request):
        return httpx.Response(responses[request.url.host])

    async with mock_http(handler) as client:
        checker = ReachabilityChecker(client)
        redirect = await checker.check("a", "https://a.example")
        broken = await checker.check("b", "https://b.example")

    assert redirect.status == "online"
    assert broken.status == "offline"
    assert broken.status_code == 500
    assert broken.error_kind is None


def test_certificate_ten_days_left_is_valid():
    der = make_cert(NOW - timedelta(days=80), NOW + timedelta(days=10))
    info = evaluate_certificate(der, now=NOW)
    assert info["days_remaining"] == 10
    assert info["valid"] is True
    assert info["issuer"] == "Test CA"
    assert info["subject"] == "a.example"


def test_expired_certificate_is_invalid():
    der = make_cert(NOW - timedelta(days=90), NOW - timedelta(days=1))
    info = evaluate_certificate(der, now=NOW)
    assert info["valid"] is False
    assert info["days_remaining"] < 0
    assert info["error"] == "certificate expired"


def test_not_yet_valid_certificate():
    der = make_cert(NOW + timedelta(days=1), NOW + timedelta(days=90))
    info = evaluate_certificate(der, now=NOW)
    assert info["valid"] is False
    assert info["error"] == "certificate not yet valid"


@pytest.mark.asyncio
async def test_tls_checker_reports_expired_cert_after_successful_handshake():
    der = make_cert(datetime.now(timezone.utc) - timedelta(days=30),
                    datetime.now(timezone.utc) - timedelta(days=2))
    seen = {}

    async def fetch(host, port, timeout):
        seen.update(host=host, port=port)
        return der

    result = await TlsChecker(fetch=fetch).check("s1", "https://a.example:8443/path")
    assert seen == {"host": "a.example", "port": 8443}
    assert result.status == "offline"
    assert result.error == "certificate expired"
    # Read fine, so not a transport failure.
    assert result.error_kind is None
    assert result.metrics["valid"] is False


@pytest.mark.asyncio
async def test_tls_checker_valid_cert_is_online():
    now = datetime.now(timezone.utc)
    der = make_cert(now - timedelta(days=30), now + timedelta(days=60))

    async def fetch(host, port, timeout):
        return der

    result = await TlsChecker(fetch=fetch).check("s1", "https://a.example")
    assert result.status == "online"
    assert result.error is None
    assert result.metrics["valid"] is True
    assert result.metrics["port"] == 443


@pytest.mark.asyncio
async def test_tls_checker_handshake_failure_is_a_value():
    async def fetch(host, port, timeout):
        raise ssl.SSLError("handshake failure")

    result = await TlsChecker(fetch=fetch).check("s1", "https://a.example")
    assert result.status == "offline"
    assert result.error_kind == "transport"
    assert result.metrics == {"valid": False, "error": result.error}


@pytest.mark.asyncio
async def test_tls_checker_timeout():
    async def fetch(host, port, timeout):
        raise asyncio.TimeoutError()

    result = await TlsChecker(timeout=3, fetch=fetch).check("s1", "a.example")
    assert result.error_kind == "timeout"
    assert result.metrics["valid"] is False
