"""Error taxonomy for the chat orchestration engine."""

from typing import Optional


class ChatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class FetchFailed(ChatError):
    """Raised when a remote attachment cannot be retrieved."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to fetch attachment {url}: {reason}")


class UploadFailed(ChatError):
    """Raised when an attachment cannot be written to blob storage."""


class StoreError(ChatError):
    """Raised when the persisted store rejects an operation."""


class ConversationNotFound(StoreError):
    """Raised when an operation targets a conversation that does not exist."""


class TransportError(ChatError):
    """Raised for network or provider-side failures during generation."""


class GenerationCancelled(ChatError):
    """Raised when the user stops an in-flight generation."""


class ProviderNotConfigured(ChatError):
    """Raised when no usable provider configuration can be resolved."""


class SendInProgress(ChatError):
    """Raised when a conversation already has a send in flight."""

    def __init__(self, conversation_id):
        self.conversation_id = conversation_id
        super().__init__(f"A message is already being generated for conversation {conversation_id}")


class ImageGenerationError(ChatError):
    """Base class for image generation outcomes that produced no image."""

    def __init__(self, message: str, model: Optional[str] = None):
        self.model = model
        super().__init__(message)


class GenerationDeclined(ImageGenerationError):
    """The model explicitly refused to generate an image."""


class UnexpectedTextResponse(ImageGenerationError):
    """The model answered with text where an image was expected."""


class NoImageData(ImageGenerationError):
    """The response carried neither an image nor interpretable text."""
