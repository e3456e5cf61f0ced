"""Turn composition: message history to Gemini request contents."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..domain.content import MODEL_ROLE, USER_ROLE, InlineData, Part, Turn
from ..domain.errors import FetchFailed
from ..domain.models import Message, Role
from .attachments import AttachmentEncoder

logger = structlog.get_logger()


def provider_role(role: Role) -> str:
    """Assistant turns are the model's; user and system turns are sent as user."""
    return MODEL_ROLE if role == Role.ASSISTANT else USER_ROLE


class ComposedRequest(BaseModel):
    """Prior turns plus the parts of the newest user turn."""

    model_config = ConfigDict(frozen=True)

    history: List[Turn] = Field(default_factory=list)
    current: List[Part] = Field(default_factory=list)

    def contents(self) -> List[Dict[str, Any]]:
        """Full request contents, history followed by the current user turn."""
        turns = [turn.to_dict() for turn in self.history]
        turns.append(Turn(role=USER_ROLE, parts=self.current).to_dict())
        return turns

    def roles(self) -> List[Tuple[str, str]]:
        """``(role, text)`` pairs in request order."""
        return [
            (turn["role"], "".join(p.get("text", "") for p in turn["parts"]))
            for turn in self.contents()
        ]


class TurnComposer:
    """Builds the provider request for a conversation."""

    def __init__(self, encoder: AttachmentEncoder):
        self.encoder = encoder

    async def compose(
        self, messages: Sequence[Message], new_attachment: Optional[str] = None
    ) -> ComposedRequest:
        if not messages:
            raise ValueError("Cannot compose a request without a user message")

        *prior, latest = messages
        history = await asyncio.gather(*(self._historical_turn(m) for m in prior))
        current = [Part(text=latest.content)]
        current.extend(await self._current_attachments(latest, new_attachment))
        return ComposedRequest(history=list(history), current=current)

    async def _historical_turn(self, message: Message) -> Turn:
        parts = [Part(text=message.content)]
        for reference in message.attachments:
            inline = await self._resolve(reference, message)
            if inline is not None:
                parts.append(Part(inline_data=inline))
        return Turn(role=provider_role(message.role), parts=parts)

    async def _current_attachments(
        self, message: Message, new_attachment: Optional[str]
    ) -> List[Part]:
        # A freshly added attachment replaces the recorded ones, which point at the same file.
        references = [new_attachment] if new_attachment else list(message.attachments)
        parts = []
        for reference in references:
            inline = await self._resolve(reference, message)
            if inline is not None:
                parts.append(Part(inline_data=inline))
        return parts

    async def _resolve(self, reference: str, message: Message) -> Optional[InlineData]:
        try:
            return await self.encoder.encode(reference)
        except FetchFailed as e:
            logger.warning(
                "attachment_skipped",
                message_id=str(message.id),
                url=e.url,
                reason=e.reason,
            )
            return None
