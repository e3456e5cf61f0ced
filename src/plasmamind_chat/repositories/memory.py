"""In-memory repository implementations."""

import asyncio
from typing import Dict, List, Optional
from uuid import UUID

import structlog

from ..domain.errors import ConversationNotFound, StoreError, UploadFailed
from ..domain.models import Conversation, Message, ProviderConfig, utcnow
from .base import BlobStore, ConversationRepository

logger = structlog.get_logger()


class InMemoryRepository(ConversationRepository):
    """Dict-backed store guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._conversations: Dict[UUID, Conversation] = {}
        self._messages: Dict[UUID, List[Message]] = {}
        self._providers: Dict[UUID, ProviderConfig] = {}
        self._lock = asyncio.Lock()
        logger.info("repository_initialized")

    async def list_conversations(self, user_id: UUID) -> List[Conversation]:
        async with self._lock:
            conversations = [c for c in self._conversations.values() if c.user_id == user_id]
            return sorted(conversations, key=lambda c: c.updated_at, reverse=True)

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning("conversation_not_found", conversation_id=str(conversation_id))
            return conversation

    async def create_conversation(self, user_id: UUID, title: str = "New Chat") -> Conversation:
        conversation = Conversation(user_id=user_id, title=title)
        async with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
        logger.info("conversation_created", conversation_id=str(conversation.id))
        return conversation

    async def rename_conversation(self, conversation_id: UUID, title: str) -> None:
        async with self._lock:
            conversation = self._require_conversation(conversation_id)
            conversation.title = title
        logger.info("conversation_renamed", conversation_id=str(conversation_id))

    async def delete_conversation(self, conversation_id: UUID) -> None:
        async with self._lock:
            self._require_conversation(conversation_id)
            removed = self._messages.pop(conversation_id, [])
            del self._conversations[conversation_id]
        logger.info(
            "conversation_deleted",
            conversation_id=str(conversation_id),
            messages_deleted=len(removed),
        )

    async def list_messages(self, conversation_id: UUID) -> List[Message]:
        async with self._lock:
            self._require_conversation(conversation_id)
            return sorted(self._messages[conversation_id], key=lambda m: m.created_at)

    async def append_message(self, message: Message) -> Message:
        async with self._lock:
            conversation = self._require_conversation(message.conversation_id)
            self._messages[message.conversation_id].append(message)
            conversation.updated_at = max(conversation.updated_at, utcnow())
        logger.info(
            "message_appended",
            conversation_id=str(message.conversation_id),
            message_role=message.role.value,
        )
        return message

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        async with self._lock:
            for messages in self._messages.values():
                for stored in messages:
                    if stored.id == message_id:
                        return stored
        return None

    async def update_message(
        self, message_id: UUID, content: str, image_url: Optional[str] = None
    ) -> Message:
        async with self._lock:
            for messages in self._messages.values():
                for index, stored in enumerate(messages):
                    if stored.id == message_id:
                        updated = stored.model_copy(
                            update={"content": content, "image_url": image_url}
                        )
                        messages[index] = updated
                        return updated
        logger.error("message_not_found", message_id=str(message_id))
        raise StoreError(f"Message {message_id} not found")

    async def delete_message(self, message_id: UUID) -> None:
        async with self._lock:
            for conversation_id, messages in self._messages.items():
                remaining = [m for m in messages if m.id != message_id]
                if len(remaining) != len(messages):
                    self._messages[conversation_id] = remaining
                    logger.info("message_deleted", message_id=str(message_id))
                    return
        raise StoreError(f"Message {message_id} not found")

    async def list_provider_configs(self, user_id: UUID) -> List[ProviderConfig]:
        async with self._lock:
            configs = [p for p in self._providers.values() if p.user_id == user_id]
            return sorted(configs, key=lambda p: p.created_at)

    async def upsert_provider_config(
        self, config: ProviderConfig, user_id: UUID, config_id: Optional[UUID] = None
    ) -> ProviderConfig:
        async with self._lock:
            existing = self._providers.get(config_id) if config_id is not None else None
            if existing is not None:
                stored = config.model_copy(
                    update={
                        "id": existing.id,
                        "user_id": existing.user_id,
                        "created_at": existing.created_at,
                    }
                )
                logger.info("provider_config_updated", provider_id=str(existing.id))
            else:
                stored = config.model_copy(update={"user_id": user_id})
                logger.info("provider_config_created", provider_id=str(stored.id))
            self._providers[stored.id] = stored
            return stored

    async def delete_provider_config(self, config_id: UUID) -> None:
        async with self._lock:
            if self._providers.pop(config_id, None) is not None:
                logger.info("provider_config_deleted", provider_id=str(config_id))

    def _require_conversation(self, conversation_id: UUID) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            logger.error("conversation_not_found", conversation_id=str(conversation_id))
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conversation


class InMemoryBlobStore(BlobStore):
    """Keeps uploaded files in a dict and hands out ``<base_url>/<path>`` URLs."""

    def __init__(self, base_url: str = "memory://chat-attachments") -> None:
        self.base_url = base_url.rstrip("/")
        self.blobs: Dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def upload(self, path: str, data: bytes) -> str:
        path = path.lstrip("/")
        if not path:
            raise UploadFailed("Upload path must not be empty")
        async with self._lock:
            if path in self.blobs:
                raise UploadFailed(f"The resource already exists: {path}")
            self.blobs[path] = bytes(data)
        logger.info("attachment_uploaded", path=path, size=len(data))
        return f"{self.base_url}/{path}"
