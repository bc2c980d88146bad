from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException

from .config import Settings, load_settings
from .documents import DocumentKind, detect_document_label
from .gemini_client import GeminiClient
from .models import (
    DocumentInfo,
    DocumentStatus,
    InboundMessage,
    PendingDocumentRequest,
    ReceivedDocumentRequest,
    ReplyResponse,
)
from .orchestrator import IntakeOrchestrator, UnknownSession
from .session_store import IdleSweeper

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("intake").setLevel(log_level)
logger = logging.getLogger("intake.http")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)

DOCUMENT_KINDS = {kind.value for kind in DocumentKind}


def create_app(orchestrator: Optional[IntakeOrchestrator] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Purpose: Build the HTTP surface around one orchestrator instance.
    Inputs/Outputs: Inputs are an optional prebuilt orchestrator and Settings; output is
        a FastAPI application.
    Side Effects / State: Creates the Gemini client and session store when no
        orchestrator is given; starts the idle sweeper for the app's lifetime.
    Dependencies: load_settings, GeminiClient, IntakeOrchestrator, IdleSweeper.
    Failure Modes: A missing GEMINI_API_KEY raises ValueError when building the client.
    If Removed: The transport and document generator cannot reach the orchestrator.
    Testing Notes: Pass a fake-backed orchestrator and use TestClient.
    """
    # Serve with: uvicorn intake.app:create_app --factory
    settings = settings or load_settings()
    if orchestrator is None:
        orchestrator = IntakeOrchestrator(settings, completion=GeminiClient(settings))
    sweeper = IdleSweeper(
        orchestrator.store,
        max_age_sec=settings.session_max_age_hours * 3600,
        interval_sec=settings.sweep_interval_sec,
        clock=time.time,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        sweeper.start()
        try:
            yield
        finally:
            sweeper.stop()

    app = FastAPI(title="Legal Intake Orchestrator", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    @app.post("/api/messages", response_model=ReplyResponse)
    def post_message(request: InboundMessage) -> ReplyResponse:
        """Purpose: Run one inbound message through the orchestrator.
        Inputs/Outputs: Input is InboundMessage; output is ReplyResponse (reply may be None).
        Side Effects / State: Updates the user's session.
        Dependencies: IntakeOrchestrator.handle_inbound_message.
        Failure Modes: Service failures already surface as the apology reply.
        If Removed: No messages reach the intake dialog.
        Testing Notes: Post a message and verify the reply text is echoed back.
        """
        # The reply is None when the message was held or empty.
        reply = orchestrator.handle_inbound_message(request.user_id, request.text, request.display_name)
        return ReplyResponse(user_id=request.user_id, reply=reply)

    @app.post("/api/sessions/{user_id}/reset")
    def reset_session(user_id: str, x_admin_key: str = Header(default="")) -> dict:
        # Disabled entirely when no admin key is configured.
        if not settings.admin_key or x_admin_key != settings.admin_key:
            raise HTTPException(status_code=403, detail="invalid admin key")
        return {"user_id": user_id, "reset": orchestrator.reset_session(user_id)}

    @app.get("/api/sessions/{user_id}/document", response_model=DocumentInfo)
    def get_document(user_id: str) -> DocumentInfo:
        try:
            return DocumentInfo(
                kind=orchestrator.get_document_kind(user_id),
                data=orchestrator.get_document_data(user_id),
                should_generate=orchestrator.should_generate_document(user_id),
            )
        except UnknownSession:
            raise HTTPException(status_code=404, detail="unknown session")

    @app.post("/api/sessions/{user_id}/document/generated")
    def document_generated(user_id: str) -> dict:
        try:
            orchestrator.mark_document_generated(user_id)
        except UnknownSession:
            raise HTTPException(status_code=404, detail="unknown session")
        return {"user_id": user_id, "document_generated": True}

    @app.post("/api/sessions/{user_id}/document/pending")
    def document_pending(user_id: str, request: PendingDocumentRequest) -> dict:
        """Purpose: Register a generated document that awaits the user's approval.
        Inputs/Outputs: Inputs are user_id and PendingDocumentRequest; output is an ack dict.
        Side Effects / State: Moves the session into awaiting-document-confirmation.
        Dependencies: IntakeOrchestrator.await_document_confirmation.
        Failure Modes: 400 for an unknown document kind; 404 for an unknown session.
        If Removed: Documents cannot be confirmed by the user before signature.
        Testing Notes: Post a valid kind and verify the session phase changes.
        """
        # Only kinds the generator knows are accepted.
        if request.document_kind not in DOCUMENT_KINDS:
            raise HTTPException(status_code=400, detail=f"unknown document kind: {request.document_kind}")
        try:
            orchestrator.await_document_confirmation(
                user_id, request.document_path, request.subject_name, request.document_kind
            )
        except UnknownSession:
            raise HTTPException(status_code=404, detail="unknown session")
        return {"user_id": user_id, "awaiting_confirmation": True}

    @app.post("/api/sessions/{user_id}/documents", response_model=DocumentStatus)
    def document_received(user_id: str, request: ReceivedDocumentRequest) -> DocumentStatus:
        # An explicit label wins over file-name and caption hints.
        label = request.label or detect_document_label(request.file_name, request.caption)
        if not label:
            raise HTTPException(status_code=422, detail="document type not recognised")
        try:
            return orchestrator.record_document_received(user_id, label)
        except UnknownSession:
            raise HTTPException(status_code=404, detail="unknown session")

    @app.get("/api/sessions/{user_id}/documents", response_model=DocumentStatus)
    def document_status(user_id: str) -> DocumentStatus:
        try:
            return orchestrator.document_status(user_id)
        except UnknownSession:
            raise HTTPException(status_code=404, detail="unknown session")

    logger.info("app ready lawyer=%s model=%s", settings.lawyer_name, settings.gemini_model)
    return app
