"""Model adapters: streamed chat and image generation over a generative provider."""

import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple, TypeVar

import structlog
from google.api_core import exceptions

from ..domain.content import USER_ROLE, Candidate
from ..domain.errors import (
    ChatError,
    GenerationCancelled,
    GenerationDeclined,
    NoImageData,
    TransportError,
    UnexpectedTextResponse,
)
from ..domain.models import ImageBackend, Message, ProviderConfig, infer_image_backend
from .attachments import to_data_url
from .composer import TurnComposer
from .gemini import GeminiProvider, GenerativeProvider
from .send_gate import CancelToken

logger = structlog.get_logger()

SUGGESTED_IMAGE_MODEL = "gemini-2.5-flash-image"
DECLINE_MARKERS = (
    "cannot generate images",
    "can't generate images",
    "unable to generate images",
    "not able to generate images",
)

ChunkCallback = Callable[[str], Any]
CompleteCallback = Callable[[], Any]
ErrorCallback = Callable[[ChatError], Any]
ProviderFactory = Callable[[Optional[str], Optional[str]], GenerativeProvider]

T = TypeVar("T")


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def as_chat_error(error: BaseException) -> ChatError:
    """Map provider and transport exceptions onto the project's taxonomy."""
    if isinstance(error, ChatError):
        return error
    if isinstance(error, exceptions.GoogleAPIError):
        wrapped = TransportError(f"Gemini request failed: {error}")
    else:
        wrapped = TransportError(str(error) or error.__class__.__name__)
    wrapped.__cause__ = error
    return wrapped


def sniff_image_mime(raw: bytes) -> str:
    if raw.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if raw.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if raw.startswith(b"GIF8"):
        return "image/gif"
    if raw[:4] == b"RIFF" and raw[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def resolve_image_reference(candidates: Sequence[Candidate], model: str) -> str:
    """Pick the image out of a content-generation response.

    The endpoint answers with text or image parts and no discriminant, so the shape
    decides: the first inline part wins, then a text part is reported as a refusal
    or an unexpected answer, and an empty response means no image data.
    """
    parts = [part for candidate in candidates for part in candidate.parts]
    for part in parts:
        if part.inline_data is not None and part.inline_data.data:
            return f"data:{part.inline_data.mime_type};base64,{part.inline_data.data}"

    text = next((part.text for part in parts if part.text), None)
    if text:
        logger.warning("image_model_returned_text", model=model, text=text[:100])
        if any(marker in text.lower() for marker in DECLINE_MARKERS):
            raise GenerationDeclined(
                f"This model ({model}) does not support image generation. Please select "
                f"'{SUGGESTED_IMAGE_MODEL}' or an Imagen model in the provider settings.",
                model=model,
            )
        raise UnexpectedTextResponse(
            f"Model {model} returned text instead of an image: {text[:100]}", model=model
        )
    raise NoImageData(f"No image data found in the response from {model}.", model=model)


async def _run_cancellable(operation: Awaitable[T], token: CancelToken) -> T:
    """Run ``operation`` until it finishes or ``token`` is cancelled, whichever is first."""
    if token.cancelled:
        if inspect.iscoroutine(operation):
            operation.close()
        raise GenerationCancelled("Generation stopped by user")

    task = asyncio.ensure_future(operation)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    raise GenerationCancelled("Generation stopped by user")


class ModelAdapter(ABC):
    """Chat streaming and image generation for one provider configuration."""

    @abstractmethod
    async def chat_stream(
        self,
        history: Sequence[Message],
        model: str,
        on_chunk: ChunkCallback,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
        new_attachment: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> None:
        """Stream a reply to the last message of ``history``.

        ``on_chunk`` fires once per text fragment in arrival order, followed by exactly
        one of ``on_complete()`` or ``on_error(err)``.
        """

    @abstractmethod
    async def generate_image(
        self,
        prompt: str,
        model: str,
        image_backend: Optional[ImageBackend] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        """Generate one image and return it as an inline data URL.

        Raises :class:`GenerationCancelled` when ``cancel_token`` fires first.
        """


class GeminiAdapter(ModelAdapter):
    """Adapter for Gemini models."""

    def __init__(self, provider: GenerativeProvider, composer: TurnComposer):
        self.provider = provider
        self.composer = composer

    async def chat_stream(
        self,
        history: Sequence[Message],
        model: str,
        on_chunk: ChunkCallback,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
        new_attachment: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> None:
        async def pump() -> int:
            request = await self.composer.compose(history, new_attachment)
            stream = self.provider.stream_content(model, request.contents())
            fragments = 0
            try:
                async for fragment in stream:
                    if fragment:
                        fragments += 1
                        await _invoke(on_chunk, fragment)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
            return fragments

        try:
            if cancel_token is None:
                fragments = await pump()
            else:
                fragments = await _run_cancellable(pump(), cancel_token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = as_chat_error(e)
            logger.error("chat_stream_error", model=model, error=str(error))
            await _invoke(on_error, error)
            return

        logger.info("chat_stream_complete", model=model, fragments=fragments)
        await _invoke(on_complete)

    async def generate_image(
        self,
        prompt: str,
        model: str,
        image_backend: Optional[ImageBackend] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        backend = image_backend or infer_image_backend(model)
        logger.info("image_generation_started", model=model, backend=backend.value)
        operation = self._generate_image(prompt, model, backend)
        try:
            if cancel_token is None:
                return await operation
            return await _run_cancellable(operation, cancel_token)
        except ChatError as e:
            logger.error("image_generation_error", model=model, error=str(e))
            raise
        except Exception as e:
            logger.error("image_generation_error", model=model, error=str(e))
            raise as_chat_error(e) from e

    async def _generate_image(self, prompt: str, model: str, backend: ImageBackend) -> str:
        if backend == ImageBackend.IMAGEN:
            images = await self.provider.generate_images(model, prompt, number_of_images=1)
            if not images or not images[0]:
                raise NoImageData(f"Image model {model} returned no image data.", model=model)
            raw = images[0]
            return to_data_url(sniff_image_mime(raw), raw)

        contents = [{"role": USER_ROLE, "parts": [{"text": prompt}]}]
        candidates = await self.provider.generate_content(model, contents)
        return resolve_image_reference(candidates, model)


class AdapterRegistry:
    """Adapters keyed by credential and endpoint, created once per combination.

    Built at startup and handed to the orchestrator; a configuration without its
    own key uses ``default_api_key``. A missing key is passed through unchanged so
    the provider reports it.
    """

    def __init__(
        self,
        composer: TurnComposer,
        provider_factory: ProviderFactory = GeminiProvider,
        default_api_key: Optional[str] = None,
    ):
        self.composer = composer
        self.provider_factory = provider_factory
        self.default_api_key = default_api_key
        self._adapters: Dict[Tuple[Optional[str], Optional[str]], ModelAdapter] = {}

    def for_config(self, config: ProviderConfig) -> ModelAdapter:
        api_key = config.api_key or self.default_api_key
        key = (api_key, config.endpoint)
        adapter = self._adapters.get(key)
        if adapter is None:
            adapter = GeminiAdapter(self.provider_factory(api_key, config.endpoint), self.composer)
            self._adapters[key] = adapter
            logger.info(
                "adapter_created",
                endpoint=config.endpoint,
                has_api_key=api_key is not None,
            )
        return adapter
