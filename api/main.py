"""
FastAPI Application — REST API for the flow execution engine.

Provides:
- Flow publishing and listing
- Inbound message endpoint (one call = one conversation turn)
- Session inspection, hand-off release and removal
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import get_settings, load_settings
from models.schemas import ContactInfo, SessionStatus
from core.engine import CompletionEngine
from core.orchestrator import FlowNotFoundError, FlowOrchestrator, SessionNotFoundError
from backend.connector import create_backend_connector
from backend.media import create_media_processor
from backend.webhook import WebhookInvoker
from database.store_file import FileSessionStore
from database.store_factory import create_store
from flows.registry import FlowRegistry, FlowValidationError

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = load_settings()

flow_registry = FlowRegistry()
session_store = create_store({
    "store_backend": _settings_boot.database.store_backend,
    "store_file_dir": _settings_boot.database.store_file_dir,
    "store_flush_interval_s": _settings_boot.database.store_flush_interval_s,
})
backend_connector = create_backend_connector(_settings_boot.backend)
media_processor = create_media_processor(_settings_boot.media)
webhook_invoker = WebhookInvoker(_settings_boot.webhook)
completion_engine = CompletionEngine(_settings_boot.llm)

orchestrator = FlowOrchestrator(
    registry=flow_registry,
    store=session_store,
    completion=completion_engine,
    media=media_processor,
    webhooks=webhook_invoker,
    backend=backend_connector,
    settings=_settings_boot,
)


def load_configured_flows(registry: FlowRegistry) -> int:
    """Register flows declared inline in settings plus those in flows_dir."""
    settings = get_settings()
    count = 0
    if settings.flows:
        count += registry.register_from_config(settings.flows)
    if settings.flows_dir:
        count += registry.load_directory(settings.flows_dir)
    return count


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        loaded = load_configured_flows(flow_registry)
    except (FlowValidationError, OSError, ValueError) as e:
        loaded = 0
        logger.warning("config_load_failed", error=str(e))

    logger.info("flow_engine_started",
                flows=loaded,
                registered=len(flow_registry.list_all()),
                store_backend=type(session_store).__name__)
    yield

    if isinstance(session_store, FileSessionStore):
        session_store.flush_all()
    await webhook_invoker.close()
    await media_processor.close()
    await backend_connector.close()
    logger.info("flow_engine_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="FlowEngine API",
    description="Conversation flow execution engine",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class InboundMessageRequest(BaseModel):
    contact_id: str
    text: str = ""
    flow_id: Optional[str] = None
    session_id: Optional[str] = None
    contact_name: str = ""
    contact_phone: str = ""


def _flow_summary(flow) -> dict[str, Any]:
    return {
        "id": flow.id,
        "name": flow.name,
        "version": flow.version,
        "is_active": flow.is_active,
        "is_default": flow.is_default,
        "nodes": len(flow.nodes),
        "edges": len(flow.edges),
    }


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "flows": len(orchestrator.registry.list_all()),
        "sessions": await orchestrator.store.count(),
    }


# ══════════════════════════════════════════════════════════════
#  FLOWS
# ══════════════════════════════════════════════════════════════

@app.get("/flows")
async def list_flows():
    return [_flow_summary(f) for f in orchestrator.registry.list_all()]


@app.post("/flows", status_code=201)
async def publish_flow(payload: dict[str, Any]):
    try:
        flow = orchestrator.registry.register(payload)
    except FlowValidationError as e:
        raise HTTPException(422, {"flow_id": e.flow_id, "errors": e.errors})
    return _flow_summary(flow)


@app.get("/flows/{flow_id}")
async def get_flow(flow_id: str):
    flow = orchestrator.registry.get(flow_id)
    if not flow:
        raise HTTPException(404, "Flow not found")
    return flow.model_dump(mode="json", by_alias=True)


@app.delete("/flows/{flow_id}")
async def delete_flow(flow_id: str):
    if not orchestrator.registry.unregister(flow_id):
        raise HTTPException(404, "Flow not found")
    return {"status": "deleted", "flow_id": flow_id}


# ══════════════════════════════════════════════════════════════
#  INBOUND MESSAGES
# ══════════════════════════════════════════════════════════════

@app.post("/messages")
async def receive_message(req: InboundMessageRequest):
    contact = ContactInfo(id=req.contact_id, name=req.contact_name, phone=req.contact_phone)
    try:
        result = await orchestrator.handle_inbound_message(
            contact, req.text, flow_id=req.flow_id, session_id=req.session_id,
        )
    except (FlowNotFoundError, SessionNotFoundError) as e:
        raise HTTPException(404, str(e))
    return result.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  SESSIONS
# ══════════════════════════════════════════════════════════════

@app.get("/sessions")
async def list_sessions(
    status: Optional[SessionStatus] = None,
    limit: int = Query(default=100, le=1000),
):
    sessions = await orchestrator.store.list_sessions(status=status, limit=limit)
    return [s.model_dump(mode="json", exclude={"history"}) for s in sessions]


@app.get("/sessions/{session_id}")
async def get_session(session_id: str):
    context = await orchestrator.get_session(session_id)
    if not context:
        raise HTTPException(404, "Session not found")
    return context.model_dump(mode="json")


@app.post("/sessions/{session_id}/release")
async def release_session(session_id: str):
    try:
        context = await orchestrator.release_session(session_id)
    except SessionNotFoundError:
        raise HTTPException(404, "Session not found")
    return {"session_id": context.session_id, "status": context.status.value}


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    if not await orchestrator.end_session(session_id):
        raise HTTPException(404, "Session not found")
    return {"status": "deleted", "session_id": session_id}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
