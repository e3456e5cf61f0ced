"""Attachment encoding: inline data URLs and remote URLs to ``InlineData``."""

import base64
import binascii
import mimetypes
from typing import Optional
from urllib.parse import unquote_to_bytes, urlsplit

import httpx
import structlog

from ..domain.content import InlineData
from ..domain.errors import FetchFailed

logger = structlog.get_logger()

DEFAULT_MIME_TYPE = "application/octet-stream"


def is_data_url(reference: str) -> bool:
    return reference.startswith("data:")


def is_remote_url(reference: str) -> bool:
    return reference.startswith(("http://", "https://"))


def parse_data_url(reference: str) -> Optional[InlineData]:
    """Decode ``data:<mime>[;base64],<payload>`` without any I/O.

    Returns ``None`` when the reference is not a well-formed data URL.
    """
    if not is_data_url(reference) or "," not in reference:
        return None
    header, payload = reference[len("data:"):].split(",", 1)
    params = [p.strip() for p in header.split(";")]
    mime_type = params[0] or DEFAULT_MIME_TYPE
    if "base64" in params[1:]:
        try:
            base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            return None
        return InlineData(mime_type=mime_type, data=payload)
    raw = unquote_to_bytes(payload)
    return InlineData(mime_type=mime_type, data=base64.b64encode(raw).decode("ascii"))


def to_data_url(mime_type: str, raw: bytes) -> str:
    """Encode raw bytes as a self-describing inline reference."""
    encoded = base64.b64encode(raw).decode("ascii")
    return f"data:{mime_type or DEFAULT_MIME_TYPE};base64,{encoded}"


def _response_mime_type(response: httpx.Response, url: str) -> str:
    content_type = response.headers.get("content-type", "")
    mime_type = content_type.split(";", 1)[0].strip()
    if mime_type:
        return mime_type
    guessed, _ = mimetypes.guess_type(urlsplit(url).path)
    return guessed or DEFAULT_MIME_TYPE


class AttachmentEncoder:
    """Turns attachment references into ``InlineData`` for the model.

    Remote URLs are downloaded with ``httpx``; a client can be injected, otherwise
    one is created on first use and closed by :meth:`aclose`.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def encode(self, reference: Optional[str]) -> Optional[InlineData]:
        """Resolve a reference; ``None`` for shapes that are neither inline nor URL.

        Raises :class:`FetchFailed` when a remote URL cannot be downloaded.
        """
        if not reference:
            return None
        if is_data_url(reference):
            inline = parse_data_url(reference)
            if inline is None:
                logger.warning("attachment_malformed_data_url")
            return inline
        if is_remote_url(reference):
            return await self.fetch(reference)
        logger.debug("attachment_reference_unsupported", reference=reference[:64])
        return None

    async def fetch(self, url: str) -> InlineData:
        try:
            response = await self._get_client().get(url)
        except httpx.HTTPError as e:
            logger.warning("attachment_fetch_error", url=url, error=str(e))
            raise FetchFailed(url, str(e) or e.__class__.__name__) from e
        if not response.is_success:
            logger.warning("attachment_fetch_status", url=url, status_code=response.status_code)
            raise FetchFailed(url, f"HTTP {response.status_code} {response.reason_phrase}".strip())
        return InlineData(
            mime_type=_response_mime_type(response, url),
            data=base64.b64encode(response.content).decode("ascii"),
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
