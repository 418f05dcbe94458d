"""Pinata client tests.

Pinata's HTTP API is replaced with httpx.MockTransport handlers.
"""

import json

import httpx
import pytest

from ecocert_archiver.services.exceptions import IPFSError
from ecocert_archiver.services.ipfs.pinata_client import PinataClient, UploadItem

CID = "bafkreihdwdcefgh4dqkjv67uzcmw7ojee6xedzdetojuzjevtenxquvyku"
PDF_BYTES = b"%PDF-1.4 field report"


def make_client(handler, **kwargs) -> PinataClient:
    return PinataClient(
        jwt_token="test-jwt",
        gateway="https://gateway.test/",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_requires_credentials():
    with pytest.raises(IPFSError) as exc_info:
        PinataClient()
    assert exc_info.value.code == "PINATA_CONFIG_MISSING"

    with pytest.raises(IPFSError) as exc_info:
        PinataClient(jwt_token="jwt", gateway="")
    assert exc_info.value.code == "PINATA_GATEWAY_MISSING"


def test_auth_headers():
    assert PinataClient(jwt_token="jwt").headers == {"Authorization": "Bearer jwt"}
    assert PinataClient(api_key="key", api_secret="secret").headers == {
        "pinata_api_key": "key",
        "pinata_secret_api_key": "secret",
    }


def test_gateway_url_strips_trailing_slash():
    client = make_client(lambda request: httpx.Response(200))
    assert client.get_gateway_url(CID) == f"https://gateway.test/ipfs/{CID}"


@pytest.mark.asyncio
async def test_upload_success():
    """Scenario: a valid PDF is pinned.

    The request is a multipart POST carrying CIDv1 options and project keyvalues;
    the result carries the returned hash and its gateway URL.
    """
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["auth"] = request.headers["authorization"]
        captured["body"] = request.content
        return httpx.Response(200, json={"IpfsHash": CID, "PinSize": len(PDF_BYTES)})

    client = make_client(handler)
    result = await client.upload(PDF_BYTES, "report_1700000000000.pdf")

    assert result.content_identifier == CID
    assert result.size == len(PDF_BYTES)
    assert result.gateway_url == f"https://gateway.test/ipfs/{CID}"
    assert captured["path"] == "/pinning/pinFileToIPFS"
    assert captured["auth"] == "Bearer test-jwt"
    assert b'"cidVersion": 1' in captured["body"]
    assert b'"project": "gainforest-archiver"' in captured["body"]
    assert PDF_BYTES in captured["body"]


@pytest.mark.parametrize(
    ("status", "code", "retryable"),
    [
        (401, "IPFS_AUTH_FAILED", False),
        (403, "IPFS_AUTH_FAILED", False),
        (400, "IPFS_BAD_REQUEST", False),
        (429, "IPFS_RATE_LIMITED", True),
        (500, "IPFS_UNAVAILABLE", True),
        (503, "IPFS_UNAVAILABLE", True),
        (404, "IPFS_UPLOAD_FAILED", False),
    ],
)
@pytest.mark.asyncio
async def test_upload_classifies_error_status(status, code, retryable):
    client = make_client(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(IPFSError) as exc_info:
        await client.upload(PDF_BYTES, "report.pdf")

    assert exc_info.value.code == code
    assert exc_info.value.retryable is retryable
    assert exc_info.value.context["status_code"] == status


@pytest.mark.asyncio
async def test_upload_network_errors():
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(IPFSError) as exc_info:
        await make_client(timeout).upload(PDF_BYTES, "report.pdf")
    assert exc_info.value.code == "IPFS_NETWORK_ERROR"
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_upload_without_hash_in_response():
    client = make_client(lambda request: httpx.Response(200, json={"unexpected": True}))

    with pytest.raises(IPFSError) as exc_info:
        await client.upload(PDF_BYTES, "report.pdf")
    assert exc_info.value.code == "IPFS_UPLOAD_FAILED"


@pytest.mark.asyncio
async def test_upload_rejects_invalid_content_before_request():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("validation should fail before any request")

    client = make_client(handler)

    with pytest.raises(IPFSError) as exc_info:
        await client.upload(b"MZ binary", "tool.exe")

    assert exc_info.value.code == "CONTENT_VALIDATION_FAILED"
    assert "File extension .exe is not allowed" in exc_info.value.context["errors"]


def test_validate_content_rules():
    client = PinataClient(jwt_token="jwt", max_file_size=10)

    too_big = client.validate_content(b"x" * 11, "notes.txt")
    assert not too_big.is_valid
    assert too_big.errors == ["File size 11 exceeds maximum 10"]

    # .mov passes the extension allowlist but its MIME type does not
    movie = client.validate_content(b"moov", "clip.mov")
    assert not movie.is_valid
    assert movie.errors == ["Content type video/quicktime is not allowed"]

    relaxed = PinataClient(jwt_token="jwt", enforce_mime_allowlist=False)
    assert relaxed.validate_content(b"moov", "clip.mov").is_valid

    # No extension: only size and content checks apply
    assert client.validate_content(b"plain", "content_1700000000000").is_valid


def test_suspicious_patterns_warn_or_block():
    html = b"<html><script>alert(1)</script></html>"

    warning = PinataClient(jwt_token="jwt").validate_content(html, "page.html")
    assert warning.is_valid
    assert warning.warnings == ["Suspicious content pattern detected: <script"]

    blocked = PinataClient(jwt_token="jwt", block_suspicious_content=True).validate_content(
        html, "page.html"
    )
    assert not blocked.is_valid
    assert blocked.errors == ["Suspicious content pattern detected: <script"]

    unscanned = PinataClient(jwt_token="jwt", scan_for_malware=False).validate_content(
        html, "page.html"
    )
    assert unscanned.warnings == []


@pytest.mark.asyncio
async def test_upload_batch_partial_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        if b"broken.pdf" in request.content:
            return httpx.Response(500)
        return httpx.Response(200, json={"IpfsHash": CID})

    client = make_client(handler, max_concurrent_uploads=2)
    batch = await client.upload_batch(
        [
            UploadItem(PDF_BYTES, "a.pdf"),
            UploadItem(PDF_BYTES, "broken.pdf"),
            UploadItem(PDF_BYTES, "c.pdf"),
        ]
    )

    assert len(batch.results) == 2
    assert [e.code for e in batch.errors] == ["IPFS_UNAVAILABLE"]


@pytest.mark.asyncio
async def test_upload_batch_all_failed():
    client = make_client(lambda request: httpx.Response(401))

    with pytest.raises(IPFSError) as exc_info:
        await client.upload_batch([UploadItem(PDF_BYTES, "a.pdf"), UploadItem(PDF_BYTES, "b.pdf")])

    assert exc_info.value.code == "BATCH_UPLOAD_FAILED"
    assert exc_info.value.context["error_codes"] == ["IPFS_AUTH_FAILED", "IPFS_AUTH_FAILED"]


@pytest.mark.asyncio
async def test_health_check():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/data/testAuthentication"
        return httpx.Response(200, json={"message": "Congratulations!"})

    assert await make_client(handler).health_check() is True
    assert await make_client(lambda request: httpx.Response(401)).health_check() is False

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    assert await make_client(unreachable).health_check() is False


@pytest.mark.asyncio
async def test_pin_status_and_info():
    pin_row = {"ipfs_pin_hash": CID, "size": 2048, "date_pinned": "2024-06-01T12:00:00.000Z"}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/data/pinList"
        if request.url.params.get("hashContains") == CID:
            return httpx.Response(200, json={"count": 1, "rows": [pin_row]})
        return httpx.Response(200, json={"count": 0, "rows": []})

    client = make_client(handler)

    status = await client.check_pin_status(CID)
    assert status.is_pinned is True
    assert status.pin_date is not None and status.pin_date.year == 2024
    assert status.pin_date.tzinfo is None

    assert (await client.check_pin_status("bafyunknown")).is_pinned is False
    assert await client.get_pin_info(CID) == pin_row

    with pytest.raises(IPFSError) as exc_info:
        await client.get_pin_info("bafyunknown")
    assert exc_info.value.code == "CONTENT_NOT_FOUND"


@pytest.mark.asyncio
async def test_pin_status_never_raises():
    client = make_client(lambda request: httpx.Response(500))
    status = await client.check_pin_status(CID)
    assert status.is_pinned is False


@pytest.mark.asyncio
async def test_pin_management_operations():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.url.path == "/data/pinList":
            return httpx.Response(
                200, json={"count": 2, "rows": [{"size": 100}, {"size": 250}]}
            )
        if request.url.path == "/pinning/pinByHash":
            assert json.loads(request.content)["hashToPin"] == CID
        return httpx.Response(200, json={})

    client = make_client(handler)
    await client.pin_by_hash(CID)
    await client.unpin(CID)
    stats = await client.get_usage_stats()

    assert calls == [
        ("POST", "/pinning/pinByHash"),
        ("DELETE", f"/pinning/unpin/{CID}"),
        ("GET", "/data/pinList"),
    ]
    assert stats.total_pins == 2
    assert stats.total_size == 350


@pytest.mark.asyncio
async def test_pin_management_errors_use_operation_codes():
    client = make_client(lambda request: httpx.Response(500))

    with pytest.raises(IPFSError) as exc_info:
        await client.pin_by_hash(CID)
    assert exc_info.value.code == "IPFS_PIN_FAILED"

    with pytest.raises(IPFSError) as exc_info:
        await client.unpin(CID)
    assert exc_info.value.code == "IPFS_UNPIN_FAILED"

    with pytest.raises(IPFSError) as exc_info:
        await client.get_usage_stats()
    assert exc_info.value.code == "USAGE_STATS_FAILED"
