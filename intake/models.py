from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .phases import Phase, Topic


class Turn(BaseModel):
    """Single (role, text) entry of the conversation history."""
    role: str
    text: str


class LastExchange(BaseModel):
    """Most recent answered question, kept for duplicate suppression."""
    question: str
    answer: str
    timestamp: float


class PendingConfirmation(BaseModel):
    """Generated document waiting for the user's explicit approval."""
    document_path: str
    subject_name: str
    document_kind: str
    created_at: float
    confirmed: bool = False


class CollectedFields(BaseModel):
    """Data gathered from the user over the dialog."""
    subject_name: Optional[str] = None
    subject_id: Optional[str] = None
    counterpart_name: Optional[str] = None
    counterpart_id: Optional[str] = None
    address: Optional[str] = None
    requested_service: Optional[str] = None
    documents_forwarded: bool = False
    document_generated: bool = False
    handoff_requested: bool = False

    def has_identity(self) -> bool:
        return bool(self.subject_name or self.subject_id)

    def is_qualified(self) -> bool:
        return bool(self.subject_name and self.subject_id)

    def has_mandatory(self) -> bool:
        return bool(self.subject_name and self.subject_id and self.counterpart_name and self.counterpart_id)


class EscalationState(BaseModel):
    """Counters and locks owned by the escalation guard."""
    technical_streak: float = 0.0
    soft_lock: bool = False
    soft_lock_level: int = 0
    hard_lock: bool = False
    hard_lock_insistence: int = 0
    last_technical_topic: Optional[str] = None


class Session(BaseModel):
    """Per-user dialog record; mutated only by the orchestrator."""
    user_id: str
    display_name: str = ""
    phase: Phase = Phase.INITIAL
    topic: Topic = Topic.GENERAL
    fields: CollectedFields = Field(default_factory=CollectedFields)
    history: List[Turn] = Field(default_factory=list)
    created_at: float
    last_activity_at: float
    last_qa: Optional[LastExchange] = None
    pending_confirmation: Optional[PendingConfirmation] = None
    documents_received: List[str] = Field(default_factory=list)
    escalation: EscalationState = Field(default_factory=EscalationState)
    awaiting_correction: bool = False
    held_fragment: Optional[str] = None


class InboundMessage(BaseModel):
    """Request payload for the message endpoint."""
    user_id: str
    text: str
    display_name: str = ""


class ReplyResponse(BaseModel):
    """Response payload for the message endpoint; reply is None when the turn is held."""
    user_id: str
    reply: Optional[str] = None


class PendingDocumentRequest(BaseModel):
    """Callback payload announcing a generated document awaiting approval."""
    document_path: str
    subject_name: str
    document_kind: str


class ReceivedDocumentRequest(BaseModel):
    """Callback payload for an uploaded document; label wins over file hints."""
    label: Optional[str] = None
    file_name: Optional[str] = None
    caption: Optional[str] = None


class DocumentInfo(BaseModel):
    """Snapshot served to the document generator."""
    kind: str
    data: Dict[str, Optional[str]]
    should_generate: bool


class DocumentStatus(BaseModel):
    """Received and missing supporting documents for the active service."""
    required: List[str]
    received: List[str]
    missing: List[str]
    complete: bool
    notice: Optional[str] = None
