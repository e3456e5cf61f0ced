"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

IMAGE_MODEL_MARKER = "imagen"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ProviderCategory(str, Enum):
    """Which adapter capability a provider configuration drives."""

    CHAT = "CHAT"
    IMAGE = "IMAGE"


class ImageBackend(str, Enum):
    """Provider code path used for image generation."""

    CONTENT = "CONTENT"  # general content generation, image returned as an inline part
    IMAGEN = "IMAGEN"  # dedicated image-generation endpoint


def infer_image_backend(model_name: str) -> ImageBackend:
    """Pick the image path from the model name; used only when none is configured."""
    if IMAGE_MODEL_MARKER in (model_name or "").lower():
        return ImageBackend.IMAGEN
    return ImageBackend.CONTENT


class Message(BaseModel):
    """Persisted message."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    role: Role = Role.USER
    content: str = ""
    image_url: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class DraftMessage(BaseModel):
    """Assistant message materialized locally while a reply is generated.

    Drafts carry a local ``handle`` only. Once the reply is persisted the draft is
    replaced by the stored :class:`Message` and its canonical ``id``; the handle is
    never written to the store.
    """

    model_config = ConfigDict(frozen=True)

    handle: str = Field(default_factory=lambda: f"draft-{uuid4().hex}")
    conversation_id: UUID
    role: Role = Role.ASSISTANT
    content: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None


class Conversation(BaseModel):
    """Conversation model."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    title: str = "New Chat"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ProviderConfig(BaseModel):
    """Model provider configuration, edited by administrators."""

    id: UUID = Field(default_factory=uuid4)
    user_id: Optional[UUID] = None
    name: str
    category: ProviderCategory = ProviderCategory.CHAT
    model_name: str
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    is_active: bool = True
    image_backend: ImageBackend = ImageBackend.CONTENT
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("api_key", "endpoint", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="before")
    @classmethod
    def _default_image_backend(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("image_backend"):
            data = dict(data)
            data["image_backend"] = infer_image_backend(data.get("model_name", ""))
        return data
