"""Optimistic transcript state and its reconciliation with the persisted store."""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union
from uuid import UUID

import structlog

from ..domain.errors import ChatError, StoreError
from ..domain.models import DraftMessage, Message, Role
from ..repositories.base import ConversationRepository

logger = structlog.get_logger()

IMAGE_PLACEHOLDER_TEXT = "Generating image..."

TranscriptEntry = Union[Message, DraftMessage]
Snapshot = Tuple[TranscriptEntry, ...]
TranscriptListener = Callable[[Snapshot], Any]


class Transcript:
    """The visible message list of one conversation.

    Readers only ever see immutable snapshots. Writers hand in a whole new list,
    and every distinct snapshot is pushed to the registered listeners.
    """

    def __init__(self, conversation_id: Optional[UUID] = None, entries: Iterable[TranscriptEntry] = ()):
        self.conversation_id = conversation_id
        self._entries: Snapshot = tuple(entries)
        self._listeners: List[TranscriptListener] = []
        self._pending: List[Any] = []

    @property
    def entries(self) -> Snapshot:
        return self._entries

    def subscribe(self, listener: TranscriptListener) -> None:
        self._listeners.append(listener)

    def replace(self, entries: Iterable[TranscriptEntry]) -> Snapshot:
        snapshot = tuple(entries)
        if snapshot == self._entries:
            return self._entries
        self._entries = snapshot
        for listener in self._listeners:
            result = listener(snapshot)
            if inspect.isawaitable(result):
                self._pending.append(result)
        return snapshot

    def transform(self, fn: Callable[[Snapshot], Iterable[TranscriptEntry]]) -> Snapshot:
        return self.replace(fn(self._entries))

    def append(self, entry: TranscriptEntry) -> Snapshot:
        return self.transform(lambda entries: entries + (entry,))

    async def flush(self) -> None:
        """Await listener coroutines queued by synchronous updates."""
        while self._pending:
            pending, self._pending = self._pending, []
            for awaitable in pending:
                await awaitable


class SessionState(str, Enum):
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StreamingSession:
    """An in-progress assistant reply, identified by its draft handle."""

    handle: str
    conversation_id: UUID
    buffer: str = ""
    state: SessionState = SessionState.STREAMING
    error: Optional[str] = None
    message: Optional[Message] = field(default=None)


def _error_text(error: BaseException) -> str:
    return str(error) or "Check configuration"


class TranscriptReconciler:
    """Owns draft replies during generation and folds results back into the store."""

    def __init__(self, repository: ConversationRepository, transcript: Transcript):
        self.repository = repository
        self.transcript = transcript

    def begin(self, conversation_id: UUID) -> StreamingSession:
        draft = DraftMessage(conversation_id=conversation_id)
        self.transcript.append(draft)
        logger.debug("draft_started", conversation_id=str(conversation_id), handle=draft.handle)
        return StreamingSession(handle=draft.handle, conversation_id=conversation_id)

    def apply_chunk(self, session: StreamingSession, fragment: str) -> None:
        self.apply_buffer(session, session.buffer + fragment)

    def apply_buffer(self, session: StreamingSession, text: str) -> None:
        """Show the full accumulated text on the draft."""
        session.buffer = text
        self._update_draft(session.handle, content=text)

    async def complete(self, session: StreamingSession) -> Message:
        """Persist the final reply once, then reload the canonical transcript."""
        try:
            message = await self.repository.append_message(
                Message(
                    conversation_id=session.conversation_id,
                    role=Role.ASSISTANT,
                    content=session.buffer,
                )
            )
        except StoreError as e:
            self.fail(session, e)
            raise

        session.state = SessionState.COMPLETED
        session.message = message
        try:
            self.transcript.replace(await self.repository.list_messages(session.conversation_id))
        except StoreError:
            self.transcript.transform(
                lambda entries: [message if _is_draft(e, session.handle) else e for e in entries]
            )
            raise
        logger.info(
            "reply_reconciled",
            conversation_id=str(session.conversation_id),
            message_id=str(message.id),
            length=len(session.buffer),
        )
        return message

    def fail(self, session: StreamingSession, error: BaseException) -> None:
        """Annotate the draft with the error; nothing is persisted."""
        session.state = SessionState.FAILED
        session.error = _error_text(error)
        annotated = f"{session.buffer}\n\n[Error: {session.error}]"
        self._update_draft(session.handle, content=annotated, error=session.error)
        logger.warning(
            "reply_failed",
            conversation_id=str(session.conversation_id),
            error=session.error,
        )

    async def begin_image(self, conversation_id: UUID) -> Message:
        """Persist the image placeholder up front so a reload keeps the turn.

        If the store rejects it, a local draft carrying the failure takes its place.
        """
        try:
            placeholder = await self.repository.append_message(
                Message(
                    conversation_id=conversation_id,
                    role=Role.ASSISTANT,
                    content=IMAGE_PLACEHOLDER_TEXT,
                )
            )
        except StoreError as e:
            self.transcript.append(
                DraftMessage(
                    conversation_id=conversation_id,
                    content=f"Failed to generate image. Error: {_error_text(e)}",
                    error=_error_text(e),
                )
            )
            raise
        self.transcript.append(placeholder)
        return placeholder

    async def resolve_image(self, placeholder: Message, prompt: str, image_url: str) -> Message:
        return await self._update_placeholder(
            placeholder, f'Here is your image for: "{prompt}"', image_url=image_url
        )

    async def fail_image(self, placeholder: Message, error: ChatError) -> Message:
        return await self._update_placeholder(
            placeholder, f"Failed to generate image. Error: {_error_text(error)}"
        )

    async def _update_placeholder(
        self, placeholder: Message, content: str, image_url: Optional[str] = None
    ) -> Message:
        try:
            updated = await self.repository.update_message(placeholder.id, content, image_url=image_url)
        except StoreError as e:
            # The stored row keeps the placeholder; only the visible entry explains the outcome.
            local = placeholder.model_copy(
                update={"content": f"{content}\n\n[Error: {_error_text(e)}]", "image_url": image_url}
            )
            self._replace_placeholder(placeholder, local)
            logger.warning(
                "placeholder_update_failed",
                conversation_id=str(placeholder.conversation_id),
                message_id=str(placeholder.id),
                error=_error_text(e),
            )
            raise
        self._replace_placeholder(placeholder, updated)
        return updated

    def _replace_placeholder(self, placeholder: Message, entry: Message) -> None:
        self.transcript.transform(
            lambda entries: [
                entry if isinstance(e, Message) and e.id == placeholder.id else e
                for e in entries
            ]
        )

    def _update_draft(self, handle: str, **changes: Any) -> None:
        self.transcript.transform(
            lambda entries: [
                e.model_copy(update=changes) if _is_draft(e, handle) else e for e in entries
            ]
        )


def _is_draft(entry: TranscriptEntry, handle: str) -> bool:
    return isinstance(entry, DraftMessage) and entry.handle == handle
