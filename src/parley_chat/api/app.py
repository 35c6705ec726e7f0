"""
FastAPI Application Module

HTTP intent surface over the chat core: conversations can be listed,
searched, created, seeded, activated, renamed and deleted, messages sent
through the dispatcher, and the service credential validated and stored.

Key Features:
- One ChatRuntime per app, started in the lifespan handler
- Structured request logging and Prometheus counters
- CORS and OpenTelemetry support
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel, Field
from structlog import get_logger

from ..domain.errors import StorageError
from ..domain.models import Conversation
from ..repositories.encrypted import IndexEntry
from ..services.routing import RoutingRequest, apply_decision, decide
from ..services.runtime import ChatRuntime

logger = get_logger()


class ConversationSummary(BaseModel):
    id: int
    title: str
    message_count: int
    last_activity_at: datetime
    is_active: bool


class ConversationDetail(ConversationSummary):
    messages: List[Dict[str, Any]]
    source_url: Optional[str] = None
    last_source_url: Optional[str] = None


class ConversationCreate(BaseModel):
    force_new: bool = False
    title: Optional[str] = None
    source_url: Optional[str] = None


class SeedRequest(BaseModel):
    text: str
    source_url: Optional[str] = None


class RenameRequest(BaseModel):
    title: str = Field(min_length=1)


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""

    content: str = ""
    attachments: List[Dict[str, Any]] = []


class SendResult(BaseModel):
    message: Dict[str, Any]
    reply: Optional[Dict[str, Any]] = None


class RouteRequest(BaseModel):
    action: Optional[str] = None
    text: Optional[str] = None
    source: Optional[str] = None
    chat_id: Optional[Any] = None


class RouteResult(BaseModel):
    action: str
    conversation_id: Optional[int] = None


class CredentialUpdate(BaseModel):
    api_key: str = Field(min_length=1)


def summarize(conversation: Conversation, active_id: Optional[int]) -> ConversationSummary:
    return ConversationSummary(
        id=conversation.id,
        title=conversation.title,
        message_count=conversation.message_count,
        last_activity_at=conversation.last_activity_at,
        is_active=conversation.id == active_id,
    )


def detail(conversation: Conversation, active_id: Optional[int]) -> ConversationDetail:
    return ConversationDetail(
        **summarize(conversation, active_id).model_dump(),
        messages=[m.to_dict() for m in conversation.messages],
        source_url=conversation.source_url,
        last_source_url=conversation.last_source_url,
    )


def create_app(runtime: Optional[ChatRuntime] = None) -> FastAPI:
    """Build the app around ``runtime`` (a default one is created from the environment)."""
    runtime = runtime or ChatRuntime()

    # Per-app registry so several apps can coexist in one process
    registry = CollectorRegistry()
    requests_total = Counter("requests_total", "Total requests by method", ["method"], registry=registry)
    errors_total = Counter("errors_total", "Total failed requests", registry=registry)
    processing_time = Counter("processing_time_seconds", "Total request processing time", registry=registry)
    completions_total = Counter(
        "completions_total", "Send attempts by outcome", ["outcome"], registry=registry
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Loads persisted state on startup and flushes it on shutdown"""
        await runtime.start()
        logger.info("application_startup_complete")

        yield

        await runtime.shutdown()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Parley Chat API",
        description="Local-first conversation manager with encrypted persistence",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    FastAPIInstrumentor.instrument_app(app)

    async def get_runtime() -> ChatRuntime:
        # transports without lifespan support still get a loaded directory
        await runtime.start()
        return runtime

    def get_conversation(conversation_id: int, rt: ChatRuntime) -> Conversation:
        conversation = rt.directory.get(conversation_id)
        if conversation is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id)
            raise HTTPException(status_code=404, detail="Conversation not found")
        return conversation

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and their processing time"""
        logger.info("request_started", method=request.method, path=request.url.path)
        requests_total.labels(method=request.method).inc()
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as e:
            errors_total.inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise
        finally:
            processing_time.inc(time.monotonic() - start)
        if response.status_code >= 500:
            errors_total.inc()
        return response

    @app.get("/conversations", response_model=List[ConversationSummary])
    async def list_conversations(
        q: Optional[str] = None, rt: ChatRuntime = Depends(get_runtime)
    ) -> List[ConversationSummary]:
        """Lists conversations, most recent first, or the matches of ``q``"""
        conversations = rt.directory.search(q) if q else rt.directory.sorted_by_activity()
        return [summarize(c, rt.directory.active_id) for c in conversations]

    @app.post("/conversations", response_model=ConversationDetail)
    async def create_conversation(
        payload: Optional[ConversationCreate] = None, rt: ChatRuntime = Depends(get_runtime)
    ) -> ConversationDetail:
        """Opens the empty draft or starts a new conversation"""
        payload = payload or ConversationCreate()
        conversation = await rt.directory.create_new(
            force_new=payload.force_new, title=payload.title, source_url=payload.source_url
        )
        return detail(conversation, rt.directory.active_id)

    @app.post("/conversations/seed", response_model=ConversationDetail)
    async def seed_conversation(
        payload: SeedRequest, rt: ChatRuntime = Depends(get_runtime)
    ) -> ConversationDetail:
        conversation = await rt.directory.create_new_with_seed_text(payload.text, payload.source_url)
        return detail(conversation, rt.directory.active_id)

    @app.get("/conversations/{conversation_id}", response_model=ConversationDetail)
    async def read_conversation(
        conversation_id: int, rt: ChatRuntime = Depends(get_runtime)
    ) -> ConversationDetail:
        return detail(get_conversation(conversation_id, rt), rt.directory.active_id)

    @app.patch("/conversations/{conversation_id}", response_model=ConversationDetail)
    async def rename_conversation(
        conversation_id: int, payload: RenameRequest, rt: ChatRuntime = Depends(get_runtime)
    ) -> ConversationDetail:
        """Renames a conversation; blank or unchanged titles leave it as is"""
        conversation = get_conversation(conversation_id, rt)
        await rt.directory.rename(conversation_id, payload.title)
        return detail(conversation, rt.directory.active_id)

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(
        conversation_id: int, rt: ChatRuntime = Depends(get_runtime)
    ) -> Dict[str, Any]:
        get_conversation(conversation_id, rt)
        deleted = await rt.directory.delete(conversation_id)
        return {"deleted": deleted, "active_id": rt.directory.active_id}

    @app.post("/conversations/{conversation_id}/activate", response_model=ConversationDetail)
    async def activate_conversation(
        conversation_id: int, rt: ChatRuntime = Depends(get_runtime)
    ) -> ConversationDetail:
        get_conversation(conversation_id, rt)
        conversation = await rt.directory.activate(conversation_id)
        return detail(conversation, rt.directory.active_id)

    @app.post("/conversations/{conversation_id}/messages", response_model=SendResult)
    async def send_message(
        conversation_id: int, message: MessageCreate, rt: ChatRuntime = Depends(get_runtime)
    ) -> SendResult:
        """
        Appends the user message and waits for the assistant reply.
        Failures are recorded in the conversation as an error message.
        """
        conversation = get_conversation(conversation_id, rt)
        if rt.dispatcher.in_flight:
            completions_total.labels(outcome="rejected").inc()
            raise HTTPException(status_code=409, detail="A request is already in flight")

        sent = await rt.dispatcher.send(conversation_id, message.content, message.attachments)
        if sent is None:
            completions_total.labels(outcome="invalid").inc()
            raise HTTPException(status_code=422, detail="Message must have content or a valid attachment")

        reply = conversation.last_message()
        outcome = "error" if reply is not None and reply.is_error else "ok"
        completions_total.labels(outcome=outcome).inc()
        logger.info(
            "message_processed",
            conversation_id=conversation_id,
            user_message_length=len(sent.content),
            outcome=outcome,
        )
        return SendResult(
            message=sent.to_dict(),
            reply=reply.to_dict() if reply is not None and reply.id != sent.id else None,
        )

    @app.post("/route", response_model=RouteResult)
    async def route_intent(payload: RouteRequest, rt: ChatRuntime = Depends(get_runtime)) -> RouteResult:
        """Routes an external intent (new, select or continue) onto the directory"""
        request = RoutingRequest.parse(payload.action, payload.text, payload.source, payload.chat_id)
        decision = decide(request, rt.directory)
        conversation = await apply_decision(decision, rt.directory, rt.bus)
        return RouteResult(
            action=decision.action.value,
            conversation_id=conversation.id if conversation is not None else None,
        )

    @app.put("/settings/credential")
    async def update_credential(
        payload: CredentialUpdate, rt: ChatRuntime = Depends(get_runtime)
    ) -> Dict[str, bool]:
        """Validates the API key against the service before storing it"""
        try:
            accepted = await rt.save_credential(payload.api_key)
        except StorageError as e:
            logger.error("credential_save_error", error=str(e))
            raise HTTPException(status_code=500, detail="Failed to store credential")
        if not accepted:
            raise HTTPException(status_code=400, detail="API key was rejected by the service")
        return {"saved": True}

    @app.get("/recent", response_model=List[IndexEntry])
    async def recent_conversations(limit: int = 5, rt: ChatRuntime = Depends(get_runtime)) -> List[IndexEntry]:
        """Reads the unencrypted index only"""
        try:
            return await rt.store.recent_conversations(limit=max(1, limit))
        except StorageError as e:
            logger.error("recent_conversations_error", error=str(e))
            raise HTTPException(status_code=500, detail="Failed to read conversation index")

    @app.get("/diagnostics")
    async def diagnostics(rt: ChatRuntime = Depends(get_runtime)) -> Dict[str, Any]:
        return {"directory": rt.directory.diagnostics(), "events": rt.bus.diagnostics()}

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(registry), media_type="text/plain")

    return app
