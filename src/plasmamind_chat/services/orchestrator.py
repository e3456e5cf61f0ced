"""Send orchestration: one user action from upload to reconciled reply.

Phases of a send::

    IDLE -> ATTACHMENT_UPLOADING? -> USER_MESSAGE_PERSISTED
         -> DISPATCHED_CHAT | DISPATCHED_IMAGE -> RECONCILING -> IDLE

Upload failures degrade to the local preview of the file. Generation failures end
in RECONCILING with a visible error, so every user turn gets a terminal message.
Store failures during dispatch leave an inline explanation in place of the reply and
are reported on the outcome.
"""

from pathlib import PurePosixPath
from typing import List, Optional, Sequence
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field

from ..config import Settings
from ..domain.errors import ChatError, ConversationNotFound, ProviderNotConfigured
from ..domain.models import Message, ProviderCategory, ProviderConfig, Role
from ..repositories.base import BlobStore, ConversationRepository
from .llm import AdapterRegistry, ModelAdapter
from .reconciler import Transcript, TranscriptReconciler
from .send_gate import CancelToken, InflightSend, SendGate, SendPhase

logger = structlog.get_logger()


class AttachmentUpload(BaseModel):
    """A file picked by the user, with its inline preview when one exists."""

    filename: str
    data: bytes
    preview: Optional[str] = None


class SendRequest(BaseModel):
    user_id: UUID
    text: str
    provider_id: Optional[UUID] = None
    conversation_id: Optional[UUID] = None
    attachment: Optional[AttachmentUpload] = None


class SendOutcome(BaseModel):
    conversation_id: UUID
    user_message: Message
    assistant_message: Optional[Message] = None
    error: Optional[str] = None
    phases: List[SendPhase] = Field(default_factory=list)


def select_provider(
    configs: Sequence[ProviderConfig], provider_id: Optional[UUID] = None
) -> ProviderConfig:
    """Explicit choice first; otherwise the first active config, then the first config."""
    if provider_id is not None:
        for config in configs:
            if config.id == provider_id:
                return config
        raise ProviderNotConfigured(
            "Please select a valid AI model, or configure one in the provider settings."
        )
    for config in configs:
        if config.is_active:
            return config
    if configs:
        return configs[0]
    raise ProviderNotConfigured("No AI models are configured. Add one in the provider settings.")


class SendOrchestrator:
    """Coordinates the components involved in answering one user message."""

    def __init__(
        self,
        repository: ConversationRepository,
        blob_store: BlobStore,
        registry: AdapterRegistry,
        gate: Optional[SendGate] = None,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.blob_store = blob_store
        self.registry = registry
        self.gate = gate or SendGate()
        self.settings = settings or Settings()

    async def load_transcript(self, conversation_id: UUID) -> Transcript:
        return Transcript(conversation_id, await self.repository.list_messages(conversation_id))

    def phase(self, conversation_id: UUID) -> SendPhase:
        return self.gate.phase(conversation_id)

    def stop(self, conversation_id: UUID) -> bool:
        return self.gate.cancel(conversation_id)

    async def send(
        self,
        request: SendRequest,
        transcript: Optional[Transcript] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> SendOutcome:
        configs = await self.repository.list_provider_configs(request.user_id)
        provider = select_provider(configs, request.provider_id)

        conversation_id = request.conversation_id
        if conversation_id is None:
            title = request.text[: self.settings.title_length] or "New Chat"
            conversation = await self.repository.create_conversation(request.user_id, title)
            conversation_id = conversation.id
        elif await self.repository.get_conversation(conversation_id) is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")

        if transcript is None:
            transcript = await self.load_transcript(conversation_id)
        transcript.conversation_id = conversation_id

        async with self.gate.acquire(conversation_id, cancel_token) as inflight:
            outcome = await self._run(request, provider, conversation_id, transcript, inflight)
        await transcript.flush()
        outcome.phases = list(inflight.phases)
        return outcome

    async def _run(
        self,
        request: SendRequest,
        provider: ProviderConfig,
        conversation_id: UUID,
        transcript: Transcript,
        inflight: InflightSend,
    ) -> SendOutcome:
        log = logger.bind(conversation_id=str(conversation_id), provider=provider.name)

        attachment_ref = None
        if request.attachment is not None:
            inflight.advance(SendPhase.ATTACHMENT_UPLOADING)
            attachment_ref = await self._upload(request.user_id, request.attachment, log)

        user_message = await self.repository.append_message(
            Message(
                conversation_id=conversation_id,
                role=Role.USER,
                content=request.text,
                attachments=[attachment_ref] if attachment_ref else [],
            )
        )
        transcript.append(user_message)
        inflight.advance(SendPhase.USER_MESSAGE_PERSISTED)
        outcome = SendOutcome(conversation_id=conversation_id, user_message=user_message)

        reconciler = TranscriptReconciler(self.repository, transcript)
        adapter = self.registry.for_config(provider)
        model = provider.model_name or self.settings.default_chat_model

        try:
            if provider.category == ProviderCategory.IMAGE:
                await self._dispatch_image(request, provider, model, adapter, reconciler, inflight, outcome)
            else:
                await self._dispatch_chat(request, model, adapter, reconciler, inflight, outcome, transcript)
        except ChatError as e:
            if inflight.phase != SendPhase.RECONCILING:
                inflight.advance(SendPhase.RECONCILING)
            outcome.error = outcome.error or str(e)
            log.error("send_reconciliation_failed", error=str(e))

        log.info(
            "send_finished",
            mode=provider.category.value,
            succeeded=outcome.error is None,
        )
        return outcome

    async def _upload(
        self, user_id: UUID, attachment: AttachmentUpload, log: structlog.BoundLogger
    ) -> Optional[str]:
        extension = PurePosixPath(attachment.filename).suffix
        path = f"{user_id}/{uuid4().hex}{extension}"
        try:
            return await self.blob_store.upload(path, attachment.data)
        except Exception as e:
            log.warning("attachment_upload_failed", path=path, error=str(e))
            return attachment.preview

    async def _dispatch_chat(
        self,
        request: SendRequest,
        model: str,
        adapter: ModelAdapter,
        reconciler: TranscriptReconciler,
        inflight: InflightSend,
        outcome: SendOutcome,
        transcript: Transcript,
    ) -> None:
        inflight.advance(SendPhase.DISPATCHED_CHAT)
        session = reconciler.begin(outcome.conversation_id)
        try:
            history = await self.repository.list_messages(outcome.conversation_id)
        except ChatError as e:
            inflight.advance(SendPhase.RECONCILING)
            outcome.error = str(e)
            reconciler.fail(session, e)
            raise

        async def on_chunk(fragment: str) -> None:
            reconciler.apply_chunk(session, fragment)
            await transcript.flush()

        async def on_complete() -> None:
            inflight.advance(SendPhase.RECONCILING)
            try:
                await reconciler.complete(session)
            finally:
                outcome.assistant_message = session.message

        def on_error(error: ChatError) -> None:
            inflight.advance(SendPhase.RECONCILING)
            outcome.error = str(error)
            reconciler.fail(session, error)

        preview = request.attachment.preview if request.attachment else None
        await adapter.chat_stream(
            history,
            model,
            on_chunk,
            on_complete,
            on_error,
            new_attachment=preview,
            cancel_token=inflight.token,
        )

    async def _dispatch_image(
        self,
        request: SendRequest,
        provider: ProviderConfig,
        model: str,
        adapter: ModelAdapter,
        reconciler: TranscriptReconciler,
        inflight: InflightSend,
        outcome: SendOutcome,
    ) -> None:
        inflight.advance(SendPhase.DISPATCHED_IMAGE)
        placeholder = await reconciler.begin_image(outcome.conversation_id)
        try:
            image_url = await adapter.generate_image(
                request.text, model, provider.image_backend, cancel_token=inflight.token
            )
        except ChatError as e:
            inflight.advance(SendPhase.RECONCILING)
            outcome.error = str(e)
            outcome.assistant_message = await reconciler.fail_image(placeholder, e)
            return
        inflight.advance(SendPhase.RECONCILING)
        outcome.assistant_message = await reconciler.resolve_image(placeholder, request.text, image_url)
