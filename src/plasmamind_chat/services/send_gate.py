"""Per-conversation single-flight gate for orchestrated sends."""

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional
from uuid import UUID

import structlog

from ..domain.errors import SendInProgress

logger = structlog.get_logger()


class SendPhase(str, Enum):
    """Lifecycle of one orchestrated send."""

    IDLE = "idle"
    ATTACHMENT_UPLOADING = "attachment_uploading"
    USER_MESSAGE_PERSISTED = "user_message_persisted"
    DISPATCHED_CHAT = "dispatched_chat"
    DISPATCHED_IMAGE = "dispatched_image"
    RECONCILING = "reconciling"


class CancelToken:
    """User-initiated stop signal for an in-flight generation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class InflightSend:
    """Book-keeping for the send currently running in a conversation."""

    conversation_id: UUID
    token: CancelToken
    phase: SendPhase = SendPhase.IDLE
    phases: List[SendPhase] = field(default_factory=list)

    def advance(self, phase: SendPhase) -> None:
        self.phase = phase
        self.phases.append(phase)
        logger.info("send_phase", conversation_id=str(self.conversation_id), phase=phase.value)


class SendGate:
    """Allows at most one send in flight per conversation.

    A second send for a busy conversation is rejected with :class:`SendInProgress`
    instead of being queued.
    """

    def __init__(self) -> None:
        self._inflight: Dict[UUID, InflightSend] = {}

    @contextlib.asynccontextmanager
    async def acquire(
        self, conversation_id: UUID, token: Optional[CancelToken] = None
    ) -> AsyncIterator[InflightSend]:
        if conversation_id in self._inflight:
            logger.warning("send_rejected_in_flight", conversation_id=str(conversation_id))
            raise SendInProgress(conversation_id)
        entry = InflightSend(conversation_id=conversation_id, token=token or CancelToken())
        self._inflight[conversation_id] = entry
        try:
            yield entry
        finally:
            self._inflight.pop(conversation_id, None)
            entry.advance(SendPhase.IDLE)

    def is_busy(self, conversation_id: UUID) -> bool:
        return conversation_id in self._inflight

    def phase(self, conversation_id: UUID) -> SendPhase:
        entry = self._inflight.get(conversation_id)
        return entry.phase if entry else SendPhase.IDLE

    def cancel(self, conversation_id: UUID) -> bool:
        """Stop the in-flight send, if any. Returns whether one was running."""
        entry = self._inflight.get(conversation_id)
        if entry is None:
            return False
        entry.token.cancel()
        logger.info("send_cancel_requested", conversation_id=str(conversation_id))
        return True
