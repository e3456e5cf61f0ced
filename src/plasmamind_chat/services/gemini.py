"""Gemini provider boundary.

This is the only module that talks to the Gemini API. Everything it returns is
normalized to the project's content types so the adapter above it can be exercised
against a fake provider.
"""

import base64
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import urlsplit

import google.generativeai as genai
import httpx
import structlog

from ..domain.content import Candidate, InlineData, Part
from ..domain.errors import TransportError
from .attachments import DEFAULT_MIME_TYPE

logger = structlog.get_logger()

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com"
API_VERSION = "v1beta"
IMAGE_TIMEOUT = 120.0


class GenerativeProvider(ABC):
    """Request/response and request/stream access to a generative model."""

    @abstractmethod
    def stream_content(self, model: str, contents: List[Dict[str, Any]]) -> AsyncIterator[str]:
        """Yield the text of each streamed fragment, in the order received.

        Fragments without text yield an empty string.
        """

    @abstractmethod
    async def generate_content(self, model: str, contents: List[Dict[str, Any]]) -> List[Candidate]:
        """Run one non-streaming generation and return its candidates."""

    @abstractmethod
    async def generate_images(self, model: str, prompt: str, number_of_images: int = 1) -> List[bytes]:
        """Call a dedicated image-generation model and return raw image bytes."""


def _sdk_contents(contents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Decode base64 inline payloads into the bytes the SDK expects."""
    converted = []
    for turn in contents:
        parts = []
        for part in turn["parts"]:
            inline = part.get("inline_data")
            if inline is not None:
                parts.append(
                    {
                        "inline_data": {
                            "mime_type": inline["mime_type"],
                            "data": base64.b64decode(inline["data"]),
                        }
                    }
                )
            else:
                parts.append({"text": part.get("text", "")})
        converted.append({"role": turn["role"], "parts": parts})
    return converted


def _chunk_text(chunk: Any) -> str:
    candidates = getattr(chunk, "candidates", None) or []
    if not candidates:
        return ""
    content = getattr(candidates[0], "content", None)
    return "".join(getattr(part, "text", "") or "" for part in getattr(content, "parts", None) or [])


def _to_candidate(candidate: Any) -> Candidate:
    parts = []
    content = getattr(candidate, "content", None)
    for part in getattr(content, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        if inline is not None and getattr(inline, "data", None):
            parts.append(
                Part(
                    inline_data=InlineData(
                        mime_type=inline.mime_type or DEFAULT_MIME_TYPE,
                        data=base64.b64encode(inline.data).decode("ascii"),
                    )
                )
            )
        elif getattr(part, "text", None):
            parts.append(Part(text=part.text))
    return Candidate(parts=parts)


def _api_base(endpoint: Optional[str]) -> str:
    if not endpoint:
        return DEFAULT_API_BASE
    if "://" not in endpoint:
        endpoint = f"https://{endpoint}"
    parts = urlsplit(endpoint)
    return f"{parts.scheme}://{parts.netloc}"


class GeminiProvider(GenerativeProvider):
    """Gemini-backed provider.

    The SDK keeps its credentials in module-level state, so every chat call re-applies
    this provider's key and endpoint right before the request is issued. The SDK picks
    up its client synchronously when the call starts, so interleaved calls on the
    event loop each run with their own configuration.

    Imagen models are called on the REST ``:predict`` method with ``httpx``. The key
    travels in the request header and no SDK state is involved.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = IMAGE_TIMEOUT,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self._client = client
        self.timeout = timeout

    def _configure(self) -> None:
        client_options = None
        if self.endpoint:
            client_options = {"api_endpoint": urlsplit(self.endpoint).netloc or self.endpoint}
        genai.configure(api_key=self.api_key, client_options=client_options)

    def _model(self, model: str) -> "genai.GenerativeModel":
        self._configure()
        return genai.GenerativeModel(model)

    async def stream_content(self, model: str, contents: List[Dict[str, Any]]) -> AsyncIterator[str]:
        response = await self._model(model).generate_content_async(_sdk_contents(contents), stream=True)
        async for chunk in response:
            yield _chunk_text(chunk)

    async def generate_content(self, model: str, contents: List[Dict[str, Any]]) -> List[Candidate]:
        response = await self._model(model).generate_content_async(_sdk_contents(contents))
        return [_to_candidate(c) for c in response.candidates]

    async def generate_images(self, model: str, prompt: str, number_of_images: int = 1) -> List[bytes]:
        name = model if model.startswith("models/") else f"models/{model}"
        url = f"{_api_base(self.endpoint)}/{API_VERSION}/{name}:predict"
        payload = {
            "instances": [{"prompt": prompt}],
            "parameters": {"sampleCount": number_of_images},
        }
        headers = {"x-goog-api-key": self.api_key} if self.api_key else {}

        if self._client is not None:
            response = await self._client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)

        if not response.is_success:
            logger.error("imagen_request_failed", model=model, status_code=response.status_code)
            raise TransportError(
                f"Imagen request failed with status {response.status_code}: {response.text[:200]}"
            )

        predictions = response.json().get("predictions") or []
        images = [
            base64.b64decode(p["bytesBase64Encoded"])
            for p in predictions
            if p.get("bytesBase64Encoded")
        ]
        logger.info("imagen_response", model=model, images=len(images))
        return images
