"""Test suite for the Gemini provider's Imagen requests."""

import asyncio
import base64
import json

import httpx
import pytest

from plasmamind_chat.domain.errors import TransportError
from plasmamind_chat.services import gemini
from plasmamind_chat.services.gemini import GeminiProvider

from .conftest import PNG_BYTES


def _imagen_transport(seen):
    async def handler(request):
        seen.append(request)
        # Let concurrent requests interleave before answering.
        await asyncio.sleep(0)
        key = request.headers.get("x-goog-api-key", "")
        body = json.loads(request.content)
        images = [
            {"bytesBase64Encoded": base64.b64encode(PNG_BYTES + key.encode()).decode("ascii")}
            for _ in range(body["parameters"]["sampleCount"])
        ]
        return httpx.Response(200, json={"predictions": images})

    return httpx.MockTransport(handler)


@pytest.fixture
def no_sdk_configure(monkeypatch):
    def configure(**kwargs):
        raise AssertionError("Imagen requests must not touch SDK configuration")

    monkeypatch.setattr(gemini.genai, "configure", configure)


@pytest.mark.asyncio
async def test_imagen_request_shape(no_sdk_configure):
    seen = []
    client = httpx.AsyncClient(transport=_imagen_transport(seen))
    provider = GeminiProvider(api_key="key-a", client=client)

    images = await provider.generate_images("imagen-3.0-generate-002", "a red fox", number_of_images=2)

    assert images == [PNG_BYTES + b"key-a", PNG_BYTES + b"key-a"]
    [request] = seen
    assert str(request.url) == (
        "https://generativelanguage.googleapis.com/v1beta/models/imagen-3.0-generate-002:predict"
    )
    assert json.loads(request.content) == {
        "instances": [{"prompt": "a red fox"}],
        "parameters": {"sampleCount": 2},
    }


@pytest.mark.asyncio
async def test_interleaved_imagen_calls_keep_their_credentials(no_sdk_configure):
    """Test that concurrent providers never pick up each other's key or endpoint."""
    seen = []
    client = httpx.AsyncClient(transport=_imagen_transport(seen))
    first = GeminiProvider(api_key="key-a", client=client)
    second = GeminiProvider(api_key="key-b", endpoint="https://proxy.test/gemini", client=client)

    images_a, images_b = await asyncio.gather(
        first.generate_images("imagen-3.0-generate-002", "a red fox"),
        second.generate_images("models/imagen-3.0-generate-002", "a blue fox"),
    )

    assert images_a == [PNG_BYTES + b"key-a"]
    assert images_b == [PNG_BYTES + b"key-b"]
    hosts = {request.headers["x-goog-api-key"]: request.url.host for request in seen}
    assert hosts == {"key-a": "generativelanguage.googleapis.com", "key-b": "proxy.test"}


@pytest.mark.asyncio
async def test_imagen_error_status_raises_transport_error():
    def handler(request):
        return httpx.Response(403, json={"error": {"message": "API key not valid"}})

    provider = GeminiProvider(
        api_key="bad", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )

    with pytest.raises(TransportError) as exc_info:
        await provider.generate_images("imagen-3.0-generate-002", "a red fox")
    assert "403" in str(exc_info.value)
    assert "API key not valid" in str(exc_info.value)


@pytest.mark.asyncio
async def test_imagen_without_predictions_returns_nothing():
    def handler(request):
        return httpx.Response(200, json={})

    provider = GeminiProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    assert await provider.generate_images("imagen-3.0-generate-002", "a red fox") == []
