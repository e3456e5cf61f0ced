"""Test suite for attachment encoding."""

import base64

import httpx
import pytest

from plasmamind_chat.domain.errors import FetchFailed
from plasmamind_chat.services.attachments import AttachmentEncoder, parse_data_url, to_data_url

from .conftest import PNG_BYTES


def test_parse_base64_data_url():
    """Test that inline references are decoded without touching the network."""
    inline = parse_data_url("data:image/png;base64,aGVsbG8=")
    assert inline.mime_type == "image/png"
    assert inline.data == "aGVsbG8="


def test_parse_data_url_without_media_type():
    inline = parse_data_url("data:;base64,aGVsbG8=")
    assert inline.mime_type == "application/octet-stream"


def test_parse_percent_encoded_data_url():
    inline = parse_data_url("data:text/plain,hello%20world")
    assert inline.mime_type == "text/plain"
    assert base64.b64decode(inline.data) == b"hello world"


def test_parse_malformed_data_url():
    assert parse_data_url("data:image/png;base64") is None
    assert parse_data_url("data:image/png;base64,@@@") is None
    assert parse_data_url("https://example.com/a.png") is None


def test_to_data_url_round_trips_bytes():
    reference = to_data_url("image/png", PNG_BYTES)
    assert reference.startswith("data:image/png;base64,")
    assert base64.b64decode(parse_data_url(reference).data) == PNG_BYTES


@pytest.mark.asyncio
async def test_encode_inline_does_not_fetch():
    """Test that the HTTP client is never used for inline references."""
    def handler(request):
        raise AssertionError("inline references must not be fetched")

    encoder = AttachmentEncoder(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    inline = await encoder.encode("data:image/jpeg;base64,/9j/")
    assert inline.mime_type == "image/jpeg"


@pytest.mark.asyncio
async def test_encode_remote_url(encoder):
    inline = await encoder.encode("https://files.test/cat.png")
    assert inline.mime_type == "image/png"
    assert base64.b64decode(inline.data) == PNG_BYTES


@pytest.mark.asyncio
async def test_encode_remote_url_guesses_mime_type():
    def handler(request):
        return httpx.Response(200, content=b"%PDF-1.4")

    encoder = AttachmentEncoder(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    inline = await encoder.encode("https://files.test/report.pdf?token=1")
    assert inline.mime_type == "application/pdf"


@pytest.mark.asyncio
async def test_encode_404_raises_fetch_failed(encoder):
    """Test that a missing remote file is reported, not substituted."""
    with pytest.raises(FetchFailed) as exc_info:
        await encoder.encode("https://files.test/missing.png")
    assert exc_info.value.url == "https://files.test/missing.png"
    assert "404" in exc_info.value.reason


@pytest.mark.asyncio
async def test_encode_transport_error_raises_fetch_failed():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    encoder = AttachmentEncoder(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(FetchFailed):
        await encoder.encode("http://unreachable.test/a.png")


@pytest.mark.asyncio
async def test_encode_unsupported_reference_is_absent(encoder):
    assert await encoder.encode("") is None
    assert await encoder.encode(None) is None
    assert await encoder.encode("/local/path/cat.png") is None
    assert await encoder.encode("ftp://files.test/cat.png") is None
