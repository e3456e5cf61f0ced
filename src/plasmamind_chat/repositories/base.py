"""Base repository interfaces."""

from abc import ABC, abstractmethod
from typing import List, Optional
from uuid import UUID

from ..domain.models import Conversation, Message, ProviderConfig


class ConversationRepository(ABC):
    """Persisted store for conversations, messages and provider configurations.

    Implementations raise :class:`~plasmamind_chat.domain.errors.StoreError` (or a
    subclass) on failure.
    """

    @abstractmethod
    async def list_conversations(self, user_id: UUID) -> List[Conversation]:
        """List a user's conversations, most recently active first."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def create_conversation(self, user_id: UUID, title: str = "New Chat") -> Conversation:
        """Create a new conversation."""
        pass

    @abstractmethod
    async def rename_conversation(self, conversation_id: UUID, title: str) -> None:
        """Change a conversation's title."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: UUID) -> None:
        """Delete a conversation and all of its messages."""
        pass

    @abstractmethod
    async def list_messages(self, conversation_id: UUID) -> List[Message]:
        """Get messages for a conversation, oldest first."""
        pass

    @abstractmethod
    async def append_message(self, message: Message) -> Message:
        """Store a message and bump the conversation's update timestamp."""
        pass

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Optional[Message]:
        """Retrieve a message by ID."""
        pass

    @abstractmethod
    async def update_message(
        self, message_id: UUID, content: str, image_url: Optional[str] = None
    ) -> Message:
        """Replace the content (and image reference) of a stored message."""
        pass

    @abstractmethod
    async def delete_message(self, message_id: UUID) -> None:
        """Delete a single message."""
        pass

    @abstractmethod
    async def list_provider_configs(self, user_id: UUID) -> List[ProviderConfig]:
        """List a user's provider configurations, oldest first."""
        pass

    @abstractmethod
    async def upsert_provider_config(
        self, config: ProviderConfig, user_id: UUID, config_id: Optional[UUID] = None
    ) -> ProviderConfig:
        """Update the configuration with ``config_id`` if it exists, insert otherwise."""
        pass

    @abstractmethod
    async def delete_provider_config(self, config_id: UUID) -> None:
        """Delete a provider configuration; unknown IDs are ignored."""
        pass


class BlobStore(ABC):
    """File storage for user attachments."""

    @abstractmethod
    async def upload(self, path: str, data: bytes) -> str:
        """Store ``data`` under ``path`` and return its public URL.

        Raises :class:`~plasmamind_chat.domain.errors.UploadFailed`.
        """
        pass
