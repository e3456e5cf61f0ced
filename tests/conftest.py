"""Shared fixtures: in-memory collaborators and a scripted generative provider."""

import asyncio
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx
import pytest

from plasmamind_chat.domain.content import Candidate
from plasmamind_chat.domain.errors import TransportError
from plasmamind_chat.repositories.memory import InMemoryBlobStore, InMemoryRepository
from plasmamind_chat.services.attachments import AttachmentEncoder
from plasmamind_chat.services.composer import TurnComposer
from plasmamind_chat.services.gemini import GenerativeProvider
from plasmamind_chat.services.llm import AdapterRegistry, GeminiAdapter

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


class FakeProvider(GenerativeProvider):
    """Replays scripted fragments, candidates and images; records every request."""

    def __init__(
        self,
        fragments: Optional[List[str]] = None,
        fail_after: Optional[int] = None,
        candidates: Optional[List[Candidate]] = None,
        images: Optional[List[bytes]] = None,
        error: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.fragments = fragments or []
        self.fail_after = fail_after
        self.candidates = candidates or []
        self.images = images or []
        self.error = error
        self.gate = gate
        self.stream_requests: List[Dict[str, Any]] = []
        self.content_requests: List[Dict[str, Any]] = []
        self.image_requests: List[Dict[str, Any]] = []

    async def stream_content(self, model, contents):
        self.stream_requests.append({"model": model, "contents": contents})
        if self.error is not None and self.fail_after is None:
            raise self.error
        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index == self.fail_after:
                raise self.error or TransportError("stream interrupted")
            if self.gate is not None and index > 0:
                await self.gate.wait()
            yield fragment

    async def generate_content(self, model, contents):
        self.content_requests.append({"model": model, "contents": contents})
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.candidates

    async def generate_images(self, model, prompt, number_of_images=1):
        self.image_requests.append({"model": model, "prompt": prompt, "n": number_of_images})
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.images


def not_found_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/missing.png"):
            return httpx.Response(404)
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

    return httpx.MockTransport(handler)


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore("https://blobs.test/chat-attachments")


@pytest.fixture
def encoder():
    return AttachmentEncoder(client=httpx.AsyncClient(transport=not_found_transport()))


@pytest.fixture
def composer(encoder):
    return TurnComposer(encoder)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def adapter(provider, composer):
    return GeminiAdapter(provider, composer)


@pytest.fixture
def registry(provider, composer):
    return AdapterRegistry(composer, provider_factory=lambda api_key, endpoint: provider)
