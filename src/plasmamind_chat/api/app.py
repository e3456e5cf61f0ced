"""
FastAPI Application Module

HTTP surface for the PlasmaMind chat engine: conversation and provider management,
plus message sending with replies streamed as server-sent events.

Key Features:
- Transcript snapshots pushed to the client while Gemini streams a reply
- Per-conversation single-flight sends with a stop endpoint
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support

Authentication is handled upstream; callers identify themselves with the
``X-User-Id`` header.
"""

import asyncio
import base64
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import Settings
from ..domain.errors import (
    ConversationNotFound,
    ProviderNotConfigured,
    SendInProgress,
    StoreError,
)
from ..domain.models import (
    Conversation,
    ImageBackend,
    Message,
    ProviderCategory,
    ProviderConfig,
)
from ..logging_config import configure_logging
from ..repositories.base import BlobStore, ConversationRepository
from ..repositories.memory import InMemoryBlobStore, InMemoryRepository
from ..services.attachments import AttachmentEncoder, parse_data_url
from ..services.composer import TurnComposer
from ..services.llm import AdapterRegistry
from ..services.orchestrator import AttachmentUpload, SendOrchestrator, SendRequest, select_provider
from ..services.reconciler import Snapshot, Transcript

logger = get_logger()


class ConversationCreate(BaseModel):
    title: str = "New Chat"


class ConversationRename(BaseModel):
    title: str


class ProviderPayload(BaseModel):
    """Provider configuration as submitted from the admin panel."""

    name: str
    model_name: str
    category: ProviderCategory = ProviderCategory.CHAT
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    is_active: bool = True
    image_backend: Optional[ImageBackend] = None


class ProviderView(BaseModel):
    """Provider configuration as returned to clients; the key is never echoed."""

    id: UUID
    name: str
    model_name: str
    category: ProviderCategory
    endpoint: Optional[str] = None
    is_active: bool
    image_backend: ImageBackend
    has_api_key: bool

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "ProviderView":
        return cls(
            id=config.id,
            name=config.name,
            model_name=config.model_name,
            category=config.category,
            endpoint=config.endpoint,
            is_active=config.is_active,
            image_backend=config.image_backend,
            has_api_key=config.api_key is not None,
        )


class AttachmentPayload(BaseModel):
    filename: str
    data_url: str


class MessageCreate(BaseModel):
    """Defines the structure for message send requests"""

    content: str
    provider_id: Optional[UUID] = None
    conversation_id: Optional[UUID] = None
    attachment: Optional[AttachmentPayload] = None


def _sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _snapshot_payload(snapshot: Snapshot) -> List[Dict[str, Any]]:
    return [entry.model_dump(mode="json") for entry in snapshot]


def _attachment_upload(payload: AttachmentPayload) -> AttachmentUpload:
    inline = parse_data_url(payload.data_url)
    if inline is None:
        raise HTTPException(status_code=422, detail="Attachment must be a base64 data URL")
    return AttachmentUpload(
        filename=payload.filename,
        data=base64.b64decode(inline.data),
        preview=payload.data_url,
    )


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[ConversationRepository] = None,
    blob_store: Optional[BlobStore] = None,
    registry: Optional[AdapterRegistry] = None,
) -> FastAPI:
    """Build the application and all of its collaborators."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)

    repository = repository or InMemoryRepository()
    blob_store = blob_store or InMemoryBlobStore(settings.blob_base_url)
    encoder = AttachmentEncoder(timeout=settings.attachment_timeout)
    if registry is None:
        registry = AdapterRegistry(TurnComposer(encoder), default_api_key=settings.gemini_api_key)
    orchestrator = SendOrchestrator(repository, blob_store, registry, settings=settings)

    # Registry for isolated metric collection
    metrics_registry = CollectorRegistry()
    sends = Counter("sends_total", "Messages sent", registry=metrics_registry)
    send_failures = Counter("send_failures_total", "Sends that ended with an error", registry=metrics_registry)
    stream_updates = Counter("stream_updates_total", "Transcript updates pushed to clients", registry=metrics_registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        logger.info("application_startup_complete")
        yield
        await encoder.aclose()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="PlasmaMind Chat API",
        description="Gemini-backed chat with streamed, reconciled replies",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.orchestrator = orchestrator

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests"""
        logger.info("request_started", path=request.url.path, method=request.method)
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise

    def get_repository() -> ConversationRepository:
        return repository

    def get_orchestrator() -> SendOrchestrator:
        return orchestrator

    def current_user(x_user_id: UUID = Header(...)) -> UUID:
        return x_user_id

    async def owned_conversation(conversation_id: UUID, user_id: UUID) -> Conversation:
        conversation = await repository.get_conversation(conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return conversation

    @app.get("/conversations", response_model=List[Conversation])
    async def list_conversations(
        user_id: UUID = Depends(current_user),
        repository: ConversationRepository = Depends(get_repository),
    ) -> List[Conversation]:
        """Lists the caller's conversations, most recent first"""
        try:
            return await repository.list_conversations(user_id)
        except StoreError as e:
            logger.error("list_conversations_error", error=str(e))
            raise HTTPException(status_code=500, detail="Failed to list conversations")

    @app.post("/conversations", response_model=Conversation)
    async def create_conversation(
        payload: Optional[ConversationCreate] = None,
        user_id: UUID = Depends(current_user),
        repository: ConversationRepository = Depends(get_repository),
    ) -> Conversation:
        """Starts a new conversation thread"""
        title = payload.title if payload else "New Chat"
        try:
            return await repository.create_conversation(user_id, title)
        except StoreError as e:
            logger.error("create_conversation_error", error=str(e))
            raise HTTPException(status_code=500, detail="Failed to create conversation")

    @app.patch("/conversations/{conversation_id}", status_code=204)
    async def rename_conversation(
        conversation_id: UUID,
        payload: ConversationRename,
        user_id: UUID = Depends(current_user),
        repository: ConversationRepository = Depends(get_repository),
    ) -> Response:
        await owned_conversation(conversation_id, user_id)
        await repository.rename_conversation(conversation_id, payload.title)
        return Response(status_code=204)

    @app.delete("/conversations/{conversation_id}", status_code=204)
    async def delete_conversation(
        conversation_id: UUID,
        user_id: UUID = Depends(current_user),
        repository: ConversationRepository = Depends(get_repository),
    ) -> Response:
        """Deletes a conversation together with its messages"""
        await owned_conversation(conversation_id, user_id)
        await repository.delete_conversation(conversation_id)
        return Response(status_code=204)

    @app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
    async def list_messages(
        conversation_id: UUID,
        user_id: UUID = Depends(current_user),
        repository: ConversationRepository = Depends(get_repository),
    ) -> List[Message]:
        await owned_conversation(conversation_id, user_id)
        return await repository.list_messages(conversation_id)

    async def owned_provider(provider_id: UUID, user_id: UUID) -> ProviderConfig:
        configs = await repository.list_provider_configs(user_id)
        for config in configs:
            if config.id == provider_id:
                return config
        raise HTTPException(status_code=404, detail="Provider not found")

    @app.delete("/messages/{message_id}", status_code=204)
    async def delete_message(
        message_id: UUID,
        user_id: UUID = Depends(current_user),
        repository: ConversationRepository = Depends(get_repository),
    ) -> Response:
        message = await repository.get_message(message_id)
        if message is None:
            raise HTTPException(status_code=404, detail="Message not found")
        await owned_conversation(message.conversation_id, user_id)
        try:
            await repository.delete_message(message_id)
        except StoreError:
            raise HTTPException(status_code=404, detail="Message not found")
        return Response(status_code=204)

    @app.get("/providers", response_model=List[ProviderView])
    async def list_providers(
        user_id: UUID = Depends(current_user),
        repository: ConversationRepository = Depends(get_repository),
    ) -> List[ProviderView]:
        configs = await repository.list_provider_configs(user_id)
        return [ProviderView.from_config(c) for c in configs]

    async def save_provider(
        payload: ProviderPayload, user_id: UUID, config_id: Optional[UUID] = None
    ) -> ProviderView:
        config = ProviderConfig(**payload.model_dump(exclude_none=True))
        stored = await repository.upsert_provider_config(config, user_id, config_id)
        return ProviderView.from_config(stored)

    @app.post("/providers", response_model=ProviderView)
    async def create_provider(
        payload: ProviderPayload, user_id: UUID = Depends(current_user)
    ) -> ProviderView:
        return await save_provider(payload, user_id)

    @app.put("/providers/{provider_id}", response_model=ProviderView)
    async def update_provider(
        provider_id: UUID, payload: ProviderPayload, user_id: UUID = Depends(current_user)
    ) -> ProviderView:
        await owned_provider(provider_id, user_id)
        return await save_provider(payload, user_id, provider_id)

    @app.delete("/providers/{provider_id}", status_code=204)
    async def delete_provider(
        provider_id: UUID,
        user_id: UUID = Depends(current_user),
        repository: ConversationRepository = Depends(get_repository),
    ) -> Response:
        await owned_provider(provider_id, user_id)
        await repository.delete_provider_config(provider_id)
        return Response(status_code=204)

    @app.post("/messages")
    async def send_message(
        message: MessageCreate,
        user_id: UUID = Depends(current_user),
        orchestrator: SendOrchestrator = Depends(get_orchestrator),
    ) -> StreamingResponse:
        """
        Persists the user message and streams the reply.
        Emits `transcript` events with full snapshots and a final `outcome` event.
        """
        if message.conversation_id is not None:
            await owned_conversation(message.conversation_id, user_id)
            if orchestrator.gate.is_busy(message.conversation_id):
                raise HTTPException(status_code=409, detail="A reply is already being generated")

        try:
            select_provider(await repository.list_provider_configs(user_id), message.provider_id)
        except ProviderNotConfigured as e:
            raise HTTPException(status_code=400, detail=str(e))

        request = SendRequest(
            user_id=user_id,
            text=message.content,
            provider_id=message.provider_id,
            conversation_id=message.conversation_id,
            attachment=_attachment_upload(message.attachment) if message.attachment else None,
        )

        events: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        transcript = (
            await orchestrator.load_transcript(message.conversation_id)
            if message.conversation_id is not None
            else Transcript()
        )

        def publish(snapshot: Snapshot) -> None:
            stream_updates.inc()
            events.put_nowait(_sse("transcript", _snapshot_payload(snapshot)))

        transcript.subscribe(publish)

        async def run() -> None:
            sends.inc()
            try:
                outcome = await orchestrator.send(request, transcript)
                if outcome.error:
                    send_failures.inc()
                events.put_nowait(_sse("outcome", outcome.model_dump(mode="json")))
            except (ProviderNotConfigured, SendInProgress, StoreError) as e:
                send_failures.inc()
                logger.error("send_failed", error=str(e))
                events.put_nowait(_sse("error", {"detail": str(e)}))
            finally:
                events.put_nowait(None)

        task = asyncio.create_task(run())

        async def stream() -> AsyncIterator[str]:
            while True:
                item = await events.get()
                if item is None:
                    break
                yield item
            await task

        return StreamingResponse(stream(), media_type="text/event-stream")

    @app.post("/conversations/{conversation_id}/stop")
    async def stop_generation(
        conversation_id: UUID,
        user_id: UUID = Depends(current_user),
        orchestrator: SendOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, bool]:
        """Aborts the reply currently being generated, if any"""
        await owned_conversation(conversation_id, user_id)
        return {"stopped": orchestrator.stop(conversation_id)}

    @app.exception_handler(ConversationNotFound)
    async def conversation_not_found_handler(request: Request, exc: ConversationNotFound) -> JSONResponse:
        logger.warning("conversation_not_found", path=request.url.path)
        return JSONResponse(status_code=404, content={"detail": "Conversation not found"})

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(metrics_registry), media_type="text/plain")

    return app


app = create_app()
