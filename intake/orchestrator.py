"""Per-user intake orchestrator.

One inbound message runs through an ordered list of steps on a working copy
of the user's session:

    dedup -> fragments -> activity -> signals -> escalation_guard
          -> phase_rules -> generation -> finalize

The first step that decides the reply short-circuits the rest (``finalize``
always runs). The working copy is committed only when the turn succeeds, so
a completion failure leaves the stored session exactly as it was.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import Settings
from .context_window import build_prompt, completion_options, missing_counterpart_fields, phase_directives, trim_history
from .dedup_cache import DedupCache
from .documents import (
    TRANSFER_TOPICS,
    checklist_message,
    document_data,
    document_kind,
    missing_documents,
    required_documents,
    should_generate_document,
)
from .entity_extractor import extract_entities, extract_id_number, extract_person_name
from .escalation_guard import EscalationGuard, GuardSignals, describes_situation, signals_service_change
from .field_extraction import FieldExtractor, merge_into_empty
from .gemini_client import ServiceError
from .models import DocumentStatus, PendingConfirmation, Session, Turn
from .phases import COUNTERPART_PHASES, IDENTITY_PHASES, SETTLED_PHASES, TOPIC_OPEN_PHASES, Phase, Topic, transition
from .prompt_loader import load_prompt
from .session_store import SessionStore
from .step_runner import StepRunner, TurnStep
from .technical_detector import TechnicalQuestionDetector
from .topic_classifier import TopicClassifier, default_service_for_topic
from .utils import first_name, format_cpf, mask_id_value, message_has_any_term, normalize_text

logger = logging.getLogger("intake.orchestrator")

APOLOGY_REPLY = "Desculpe, tive um problema técnico. Pode tentar novamente?"
IDENTIFIED_WITH_OBJECTIVE_REPLY = (
    "Obrigada, {name}. Já anotei seus dados. Para prosseguir com a procuração para {service}, preciso agora "
    "do nome completo e do CPF da pessoa que você vai autorizar a te representar."
)
IDENTIFIED_REPLY = (
    "Obrigada, {name}! Já anotei seus dados. Agora me conta: como posso te ajudar? Qual serviço você está buscando?"
)
ASK_NAME_REPLY = "Obrigada pelo CPF! Agora, por favor, me informe seu nome completo."
COUNTERPART_REQUEST_REPLY = (
    "Perfeito! Para prosseguir com a procuração para {service}, preciso do nome completo e do CPF da pessoa "
    "que você vai autorizar a te representar."
)
POA_FIELDS_REPLY = "Perfeito! Para preparar a procuração de {service}, preciso de: {missing}."
POA_FIELDS_FOLLOWUP_REPLY = "Anotado! Para concluir, ainda preciso de: {missing}."
ASK_COUNTERPART_ID_REPLY = "Obrigada! Agora preciso do CPF de {name}."
ASK_COUNTERPART_NAME_REPLY = "Obrigada! Qual é o nome completo da pessoa que você vai autorizar?"
CONFIRM_DATA_REPLY = (
    "Recebi as informações. Apenas para confirmar: o nome da pessoa que você está autorizando é {name}, "
    "CPF {cpf}, correto?"
)
OFFERING_REPLY = (
    "Perfeito{name}! Já tenho todas as informações:\n\n"
    "- Seu nome: {subject_name}\n"
    "- Seu CPF: {subject_id}\n"
    "- Representante: {counterpart_name}\n"
    "- CPF do representante: {counterpart_id}\n\n"
    "Vou preparar sua procuração para {service} agora mesmo. Em instantes te envio o documento para conferência."
)
CONFIRMED_REPLY = "Ótimo! Vou preparar sua procuração agora mesmo. Em instantes te envio o documento para conferência."
REASK_COUNTERPART_REPLY = (
    "Entendi. Por favor, me informe novamente os dados corretos da pessoa que você vai autorizar: "
    "nome completo e CPF."
)
DOCUMENT_CONFIRMED_REPLY = "Ótimo! Vou prosseguir com o processo de assinatura e te envio o link em seguida."
DOCUMENT_REJECTED_REPLY = (
    "Entendi. Me diga quais dados precisam ser corrigidos no documento, por favor: nome completo e CPF "
    "da pessoa que você vai autorizar."
)
DOCUMENTS_COMPLETE_REPLY = (
    "Prontinho, recebi todos os documentos! Já encaminhei tudo para o {lawyer}, que vai acompanhar o seu caso. "
    "Qualquer novidade te aviso por aqui."
)
DEFAULT_SERVICE = "representação legal"

AFFIRM_TERMS = [
    "sim", "correto", "correta", "isso", "isso mesmo", "confirmo", "exatamente", "certo", "ta certo",
    "esta certo", "pode ser", "perfeito", "ok", "isso ai", "ta", "positivo",
]
NEGATE_TERMS = [
    "nao", "incorreto", "incorreta", "errado", "errada", "corrigir", "alterar", "mudar", "refazer",
    "modificar", "tem erro", "negativo",
]
DOCUMENT_CONFIRM_TERMS = [
    "ok", "sim", "confirmo", "quero", "pode", "continuar", "prosseguir", "prossiga", "concordo", "assinar",
    "assinatura", "entendi", "certo", "correto", "aprovado", "aprovo", "esta bom", "ta bom", "perfeito",
    "autorizo", "vamos la", "tudo certo",
]
OBJECTIVE_RE = re.compile(r"\b(procurac\w*|represent\w*|outorg\w*|auxilio|inss|beneficio)\b")
DELIVERABLE_RE = re.compile(r"\b(procuracao|documento)\b")
CONTINUATION_RE = re.compile(r"(\.\.\.|…|,)\s*$")

AUTO_CLOSE_HISTORY = 12
SERVICE_EXTRACTION_HISTORY = 10
RECENT_USER_TURNS = 4
OPPORTUNISTIC_PHASES = COUNTERPART_PHASES | {Phase.UNDERSTANDING_NEED, Phase.OFFERING_SOLUTION}
IDENTITY_CAPTURE_PHASES = IDENTITY_PHASES | {Phase.UNDERSTANDING_NEED}


class UnknownSession(KeyError):
    """Raised by collaborator entry points for users without a session."""


@dataclass
class TurnContext:
    """Mutable context passed through each turn step."""
    user_id: str
    raw_text: str
    text: str
    now: float
    session: Session
    start_phase: Phase
    idle_gap: float = 0.0
    reply: Optional[str] = None
    route: str = ""
    held: bool = False
    commit: bool = True
    user_recorded: bool = False
    corrected: bool = False
    signals: GuardSignals = field(default_factory=GuardSignals)
    captured: List[str] = field(default_factory=list)


def _turn_decided(ctx: TurnContext) -> bool:
    return ctx.reply is not None or ctx.held


def is_affirmative(text: str) -> bool:
    normalized = normalize_text(text)
    if message_has_any_term(normalized, NEGATE_TERMS):
        return False
    return message_has_any_term(normalized, AFFIRM_TERMS)


def is_negative(text: str) -> bool:
    return message_has_any_term(normalize_text(text), NEGATE_TERMS)


def session_for_log(session: Session) -> Dict[str, object]:
    # ID numbers never reach the logs unmasked.
    fields = session.fields
    return {
        "phase": session.phase.value,
        "topic": session.topic.value,
        "subject_name": fields.subject_name,
        "subject_id": mask_id_value(fields.subject_id),
        "counterpart_name": fields.counterpart_name,
        "counterpart_id": mask_id_value(fields.counterpart_id),
        "requested_service": fields.requested_service,
        "guard": EscalationGuard.state_of(session.escalation).value,
        "escalation": session.escalation.model_dump(),
    }


class IntakeOrchestrator:
    """Owns the phase state machine and the per-message pipeline for every user."""

    def __init__(
        self,
        settings: Settings,
        completion: object,
        classifier: Optional[object] = None,
        store: Optional[SessionStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Purpose: Wire collaborators, load prompts, and build the turn pipeline.
        Inputs/Outputs: Inputs are Settings, a completion client, an optional
            classification client (defaults to the completion client), an optional
            SessionStore, and a clock; no return value.
        Side Effects / State: Reads prompt files from settings.prompts_dir.
        Dependencies: load_prompt, EscalationGuard, TopicClassifier,
            TechnicalQuestionDetector, FieldExtractor, DedupCache, StepRunner.
        Failure Modes: Missing prompt files raise FileNotFoundError.
        If Removed: Nothing can process inbound messages.
        Testing Notes: Inject scripted fakes for both clients and a fixed clock.
        """
        # Both service roles may be served by a single client.
        self._settings = settings
        self._completion = completion
        self._classifier = classifier if classifier is not None else completion
        self._store = store if store is not None else SessionStore(settings.sessions_path)
        self._clock = clock
        prompts_dir = settings.prompts_dir
        self._preamble = load_prompt(prompts_dir / "system_preamble.txt").format(
            assistant=settings.assistant_name, lawyer=settings.lawyer_name
        )
        self._guard = EscalationGuard(settings.lawyer_name)
        self._detector = TechnicalQuestionDetector(
            self._classifier,
            load_prompt(prompts_dir / "technical_question.txt"),
            load_prompt(prompts_dir / "technical_topic.txt"),
        )
        self._topics = TopicClassifier(
            self._classifier,
            load_prompt(prompts_dir / "topic_fallback.txt"),
            use_fallback=settings.topic_llm_fallback,
        )
        self._field_extractor = FieldExtractor(self._completion, load_prompt(prompts_dir / "field_extraction.txt"))
        self._dedup = DedupCache(settings.dedup_window_sec)
        self._runner = StepRunner(
            steps=[
                TurnStep("dedup", self._step_dedup),
                TurnStep("fragments", self._step_fragments),
                TurnStep("activity", self._step_activity),
                TurnStep("signals", self._step_signals),
                TurnStep("escalation_guard", self._step_escalation_guard),
                TurnStep("phase_rules", self._step_phase_rules),
                TurnStep("generation", self._step_generation),
                TurnStep("finalize", self._step_finalize, always_run=True),
            ],
            is_done=_turn_decided,
        )

    @property
    def store(self) -> SessionStore:
        return self._store

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    def handle_inbound_message(self, user_id: str, text: str, display_name: str = "") -> Optional[str]:
        """Purpose: Process one inbound message and return the reply to send.
        Inputs/Outputs: Inputs are the user id, message text, and optional display name;
            output is the reply text, or None when the message was held as a fragment
            or was empty.
        Side Effects / State: Commits the updated session on success; may call the
            classification and completion services.
        Dependencies: SessionStore.hold/checkout/commit and the step pipeline.
        Failure Modes: Service failures become APOLOGY_REPLY with no state change;
            InvalidTransition propagates.
        If Removed: The intake dialog does not exist.
        Testing Notes: Two identical messages within the dedup window return the same
            reply and make no classification calls the second time.
        """
        # Turns for one user are strictly serialised.
        text = (text or "").strip()
        if not text:
            return None
        with self._store.hold(user_id):
            now = self._clock()
            session = self._store.checkout(user_id, display_name, now)
            ctx = TurnContext(
                user_id=user_id,
                raw_text=text,
                text=text,
                now=now,
                session=session,
                start_phase=session.phase,
            )
            logger.info("user=%s phase=%s inbound_chars=%d", user_id, session.phase.value, len(text))
            self._runner.run(ctx)
            return ctx.reply

    def _step_dedup(self, ctx: TurnContext) -> None:
        # A hit answers from cache and leaves the session untouched.
        cached = self._dedup.lookup(ctx.session, ctx.raw_text, ctx.now)
        if cached is None:
            return
        ctx.reply = cached
        ctx.route = "dedup"
        ctx.commit = False

    def _step_fragments(self, ctx: TurnContext) -> None:
        """Purpose: Join a held fragment with this message, or hold an unfinished one.
        Inputs/Outputs: Input is TurnContext; may rewrite ctx.text or mark it held.
        Side Effects / State: Sets or clears session.held_fragment.
        Dependencies: settings.hold_fragments and CONTINUATION_RE.
        Failure Modes: None.
        If Removed: Messages split across sends are answered piecemeal.
        Testing Notes: With holding enabled "Meu nome é João," returns None and the next
            message is processed as one text.
        """
        # Disabled unless configured; a held message gets no reply.
        session = ctx.session
        if not self._settings.hold_fragments:
            return
        if session.held_fragment:
            ctx.text = f"{session.held_fragment} {ctx.text}"
            session.held_fragment = None
        if CONTINUATION_RE.search(ctx.text):
            session.held_fragment = ctx.text
            session.last_activity_at = ctx.now
            ctx.held = True
            ctx.route = "held"

    def _step_activity(self, ctx: TurnContext) -> None:
        # The gap is measured from the previous inbound message.
        session = ctx.session
        ctx.idle_gap = max(0.0, ctx.now - session.last_activity_at)
        session.last_activity_at = ctx.now

    def _step_signals(self, ctx: TurnContext) -> None:
        """Purpose: Compute the per-message facts consumed by the guard and phase rules.
        Inputs/Outputs: Input is TurnContext; fills ctx.signals.
        Side Effects / State: Up to two classification calls when not hard-locked.
        Dependencies: Entity extractors, EscalationGuard.requests_handoff,
            describes_situation, signals_service_change, TechnicalQuestionDetector.
        Failure Modes: Classification failures degrade to "not technical".
        If Removed: The guard has nothing to decide on.
        Testing Notes: A hard-locked session triggers no classification call.
        """
        # Hard-locked sessions only look for the two ways out of the lock.
        session = ctx.session
        fields = session.fields
        signals = ctx.signals
        signals.supplied_name = extract_person_name(
            ctx.text,
            other_names=[fields.counterpart_name],
            expecting_name=session.phase == Phase.COLLECTING_NAME,
        )
        signals.supplied_id = extract_id_number(ctx.text, other_ids=[fields.counterpart_id])
        signals.handoff_request = self._guard.requests_handoff(ctx.text)
        signals.describes_situation = describes_situation(ctx.text)
        if session.escalation.hard_lock:
            return
        signals.service_change = signals_service_change(ctx.text)
        signals.is_technical = self._detector.is_technical(ctx.text)
        if signals.is_technical:
            signals.technical_topic = self._detector.technical_topic(ctx.text)

    def _step_escalation_guard(self, ctx: TurnContext) -> None:
        session = ctx.session
        decision = self._guard.evaluate(session.escalation, session.fields, ctx.signals, session.display_name)
        if decision.handoff:
            session.fields.handoff_requested = True
        if decision.transition not in {"none", "decay", "count_technical"}:
            logger.info("user=%s guard=%s", ctx.user_id, decision.transition)
        if decision.reply is not None:
            ctx.reply = decision.reply
            ctx.route = f"guard:{decision.transition}"

    # ------------------------------------------------------------------
    # Phase rules
    # ------------------------------------------------------------------

    def _step_phase_rules(self, ctx: TurnContext) -> None:
        """Purpose: Apply deterministic phase routing before any model call.
        Inputs/Outputs: Input is TurnContext; may move the phase and set a fixed reply.
        Side Effects / State: Mutates session.phase, session.topic and collected fields.
        Dependencies: Topic classifier, entity extractors, field extraction, transition().
        Failure Modes: InvalidTransition on an orchestrator bug.
        If Removed: Every reply comes from the model and the phase never advances.
        Testing Notes: An ID arriving after the name with a known objective moves to
            collecting-counterpart-data with a fixed reply.
        """
        # Side branches and confirmation answer first; the rest flows to the gate.
        phase = ctx.session.phase
        if phase == Phase.AWAITING_DOCUMENT_CONFIRMATION:
            self._handle_document_confirmation(ctx)
            return
        if phase == Phase.CONFIRMING_DATA:
            self._handle_data_confirmation(ctx)
            return
        if phase in TOPIC_OPEN_PHASES:
            self._update_topic(ctx)
        self._capture_identity(ctx)
        self._capture_counterpart(ctx)
        if ctx.session.phase == Phase.UNDERSTANDING_NEED and ctx.reply is None:
            self._route_need(ctx)
        if self._check_completeness(ctx):
            return
        if ctx.reply is None and ctx.session.phase == Phase.COLLECTING_COUNTERPART_DATA:
            self._prompt_counterpart(ctx)
        if ctx.reply is None and ctx.session.phase == Phase.COLLECTING_POA_SPECIFIC_DATA:
            self._prompt_poa_fields(ctx)

    def _move(self, ctx: TurnContext, target: Phase) -> None:
        session = ctx.session
        previous = session.phase
        session.phase = transition(previous, target)
        if previous != target:
            logger.info("user=%s phase=%s->%s", ctx.user_id, previous.value, target.value)

    def _recent_user_text(self, ctx: TurnContext) -> str:
        recent = [turn.text for turn in ctx.session.history if turn.role == "user"][-RECENT_USER_TURNS:]
        return " ".join(recent + [ctx.text])

    def _fill_service(self, ctx: TurnContext) -> None:
        fields = ctx.session.fields
        if fields.requested_service:
            return
        service = default_service_for_topic(ctx.session.topic, self._recent_user_text(ctx))
        if service:
            fields.requested_service = service
            ctx.captured.append("requested_service")

    def _service_label(self, ctx: TurnContext) -> str:
        return ctx.session.fields.requested_service or DEFAULT_SERVICE

    def _update_topic(self, ctx: TurnContext) -> None:
        session = ctx.session
        topic = self._topics.classify(ctx.text, session.topic)
        if topic == session.topic:
            return
        logger.info("user=%s topic=%s->%s", ctx.user_id, session.topic.value, topic.value)
        previous = session.topic
        session.topic = topic
        if topic == Topic.GENERAL:
            return
        # A switch between two specific topics is an explicit change of service.
        if previous != Topic.GENERAL:
            service = default_service_for_topic(topic, self._recent_user_text(ctx))
            if service:
                session.fields.requested_service = service
                return
        self._fill_service(ctx)

    def _objective_known(self, ctx: TurnContext) -> bool:
        session = ctx.session
        if session.topic != Topic.GENERAL or session.fields.requested_service:
            return True
        return bool(OBJECTIVE_RE.search(normalize_text(self._recent_user_text(ctx))))

    def _capture_identity(self, ctx: TurnContext) -> None:
        """Purpose: Store the subject's name and ID and route the identification phases.
        Inputs/Outputs: Input is TurnContext; may set a fixed reply.
        Side Effects / State: Fills empty subject fields; moves the phase.
        Dependencies: ctx.signals extraction results and _objective_known.
        Failure Modes: None.
        If Removed: Identification never completes.
        Testing Notes: ID without a name -> collecting-name with ASK_NAME_REPLY.
        """
        # Only empty fields are filled; counterpart phases never capture the subject.
        session = ctx.session
        fields = session.fields
        if ctx.start_phase not in IDENTITY_CAPTURE_PHASES:
            return
        new_id = new_name = False
        if not fields.subject_id and ctx.signals.supplied_id:
            fields.subject_id = ctx.signals.supplied_id
            new_id = True
            ctx.captured.append("subject_id")
        if not fields.subject_name and ctx.signals.supplied_name:
            fields.subject_name = ctx.signals.supplied_name
            new_name = True
            ctx.captured.append("subject_name")
        if not (new_id or new_name) or session.phase not in IDENTITY_PHASES:
            return
        name = first_name(fields.subject_name)
        if fields.subject_name and fields.subject_id:
            if self._objective_known(ctx):
                self._fill_service(ctx)
                self._move(ctx, Phase.COLLECTING_COUNTERPART_DATA)
                ctx.reply = IDENTIFIED_WITH_OBJECTIVE_REPLY.format(name=name, service=self._service_label(ctx))
                ctx.route = "identified_with_objective"
            else:
                self._move(ctx, Phase.UNDERSTANDING_NEED)
                ctx.reply = IDENTIFIED_REPLY.format(name=name)
                ctx.route = "identified"
        elif new_id:
            self._move(ctx, Phase.COLLECTING_NAME)
            ctx.reply = ASK_NAME_REPLY
            ctx.route = "ask_name"
        else:
            self._move(ctx, Phase.COLLECTING_ID_NUMBER)

    def _capture_counterpart(self, ctx: TurnContext) -> None:
        """Purpose: Opportunistically capture counterpart name, ID and address.
        Inputs/Outputs: Input is TurnContext; records captured field names on ctx.
        Side Effects / State: Fills empty counterpart fields, or overwrites them while a
            correction is pending; clears the correction flag once something arrives.
        Dependencies: Entity extractors with the subject's values excluded.
        Failure Modes: None.
        If Removed: Counterpart data is only captured from the model's summary.
        Testing Notes: "O nome dele é Pedro Henrique Souza, CPF 987.654.321-00" fills both.
        """
        # Offering-solution only still accepts the address.
        session = ctx.session
        fields = session.fields
        if ctx.start_phase not in OPPORTUNISTIC_PHASES:
            return
        correcting = session.awaiting_correction
        captured_any = False
        found = extract_entities(
            ctx.text,
            other_names=[fields.subject_name],
            other_ids=[fields.subject_id],
            expecting_name=ctx.start_phase in COUNTERPART_PHASES and (correcting or not fields.counterpart_name),
        )
        if ctx.start_phase != Phase.OFFERING_SOLUTION:
            if found.name and (correcting or not fields.counterpart_name):
                fields.counterpart_name = found.name
                ctx.captured.append("counterpart_name")
                captured_any = True
            if found.id_number and (correcting or not fields.counterpart_id):
                fields.counterpart_id = found.id_number
                ctx.captured.append("counterpart_id")
                captured_any = True
        if found.address and not fields.address:
            fields.address = found.address
            ctx.captured.append("address")
        if correcting and captured_any:
            session.awaiting_correction = False
            ctx.corrected = True

    def _merge_remote_fields(self, ctx: TurnContext) -> None:
        fields = ctx.session.fields
        extracted = self._field_extractor.extract(ctx.session.history, ctx.text)
        if normalize_text(extracted.get("counterpart_name", "")) == normalize_text(fields.subject_name or ""):
            extracted.pop("counterpart_name", None)
        if extracted.get("counterpart_id") == fields.subject_id:
            extracted.pop("counterpart_id", None)
        ctx.captured.extend(merge_into_empty(fields, extracted))

    def _route_need(self, ctx: TurnContext) -> None:
        # Long conversations without a named service get one extraction attempt per turn.
        session = ctx.session
        fields = session.fields
        if not fields.requested_service and len(session.history) > SERVICE_EXTRACTION_HISTORY:
            self._merge_remote_fields(ctx)
        if session.topic in TRANSFER_TOPICS:
            self._fill_service(ctx)
            self._move(ctx, Phase.COLLECTING_POA_SPECIFIC_DATA)
            missing = missing_counterpart_fields(session)
            if missing:
                ctx.reply = POA_FIELDS_REPLY.format(service=self._service_label(ctx), missing=", ".join(missing))
                ctx.route = "poa_fields"
            return
        if not self._objective_known(ctx):
            return
        self._fill_service(ctx)
        self._move(ctx, Phase.COLLECTING_COUNTERPART_DATA)
        if not (fields.counterpart_name and fields.counterpart_id):
            ctx.reply = COUNTERPART_REQUEST_REPLY.format(service=self._service_label(ctx))
            ctx.route = "counterpart_request"

    def _check_completeness(self, ctx: TurnContext) -> bool:
        """Purpose: Route to confirmation or the solution once the four fields are known.
        Inputs/Outputs: Input is TurnContext; returns True when the gate fired.
        Side Effects / State: Moves the phase and sets the fixed reply.
        Dependencies: CollectedFields.has_mandatory, ctx.idle_gap, confirm_stale_sec.
        Failure Modes: None.
        If Removed: Complete data never reaches the solution phase.
        Testing Notes: Counterpart data 180s after the previous message -> confirming-data.
        """
        # A stale or corrected answer is confirmed before acting on it.
        session = ctx.session
        fields = session.fields
        if session.phase in SETTLED_PHASES or session.awaiting_correction or not fields.has_mandatory():
            return False
        if not fields.requested_service:
            self._fill_service(ctx)
        if ctx.corrected or ctx.idle_gap > self._settings.confirm_stale_sec:
            self._move(ctx, Phase.CONFIRMING_DATA)
            ctx.reply = CONFIRM_DATA_REPLY.format(name=fields.counterpart_name, cpf=format_cpf(fields.counterpart_id))
            ctx.route = "confirm_data"
            return True
        self._move(ctx, Phase.OFFERING_SOLUTION)
        name = first_name(fields.subject_name)
        ctx.reply = OFFERING_REPLY.format(
            name=f", {name}" if name else "",
            subject_name=fields.subject_name,
            subject_id=format_cpf(fields.subject_id),
            counterpart_name=fields.counterpart_name,
            counterpart_id=format_cpf(fields.counterpart_id),
            service=self._service_label(ctx),
        )
        ctx.route = "offering"
        return True

    def _prompt_counterpart(self, ctx: TurnContext) -> None:
        fields = ctx.session.fields
        if "counterpart_name" in ctx.captured and not fields.counterpart_id:
            ctx.reply = ASK_COUNTERPART_ID_REPLY.format(name=first_name(fields.counterpart_name))
            ctx.route = "ask_counterpart_id"
        elif "counterpart_id" in ctx.captured and not fields.counterpart_name:
            ctx.reply = ASK_COUNTERPART_NAME_REPLY
            ctx.route = "ask_counterpart_name"

    def _prompt_poa_fields(self, ctx: TurnContext) -> None:
        missing = missing_counterpart_fields(ctx.session)
        if ctx.captured and missing:
            ctx.reply = POA_FIELDS_FOLLOWUP_REPLY.format(missing=", ".join(missing))
            ctx.route = "poa_fields_followup"

    def _handle_data_confirmation(self, ctx: TurnContext) -> None:
        # Anything short of a clean "yes" reopens the counterpart data.
        session = ctx.session
        if is_affirmative(ctx.text):
            self._move(ctx, Phase.OFFERING_SOLUTION)
            ctx.reply = CONFIRMED_REPLY
            ctx.route = "data_confirmed"
            return
        self._move(ctx, Phase.COLLECTING_COUNTERPART_DATA)
        session.awaiting_correction = True
        ctx.start_phase = Phase.COLLECTING_COUNTERPART_DATA
        self._capture_counterpart(ctx)
        if self._check_completeness(ctx):
            return
        ctx.reply = REASK_COUNTERPART_REPLY
        ctx.route = "data_rejected"

    def _handle_document_confirmation(self, ctx: TurnContext) -> None:
        """Purpose: Resolve a pending generated document from the user's answer.
        Inputs/Outputs: Input is TurnContext; may set a fixed reply.
        Side Effects / State: Marks the pending record confirmed and closes, or clears it
            and reopens the counterpart data for correction.
        Dependencies: NEGATE_TERMS, DOCUMENT_CONFIRM_TERMS, checklist_message.
        Failure Modes: None; unclear answers fall through to the model.
        If Removed: Generated documents can never be approved or rejected.
        Testing Notes: "ok" -> closing with the checklist; "não, o CPF está errado" ->
            collecting-counterpart-data with the correction flag.
        """
        # Negation wins over confirmation words in the same message.
        session = ctx.session
        pending = session.pending_confirmation
        if pending is None:
            return
        if is_negative(ctx.text):
            session.pending_confirmation = None
            session.fields.document_generated = False
            session.awaiting_correction = True
            self._move(ctx, Phase.COLLECTING_COUNTERPART_DATA)
            ctx.reply = DOCUMENT_REJECTED_REPLY
            ctx.route = "document_rejected"
            return
        if message_has_any_term(normalize_text(ctx.text), DOCUMENT_CONFIRM_TERMS):
            pending.confirmed = True
            self._move(ctx, Phase.CLOSING)
            kind = document_kind(session.topic, session.fields.requested_service)
            ctx.reply = f"{DOCUMENT_CONFIRMED_REPLY}\n\n{checklist_message(kind)}"
            ctx.route = "document_confirmed"

    # ------------------------------------------------------------------
    # Generation and commit
    # ------------------------------------------------------------------

    def _step_generation(self, ctx: TurnContext) -> None:
        """Purpose: Produce the reply with the completion model when no rule answered.
        Inputs/Outputs: Input is TurnContext; sets ctx.reply.
        Side Effects / State: Appends the user and assistant turns to the working history;
            may advance initial -> identification and offering -> closing.
        Dependencies: context_window helpers and the completion client.
        Failure Modes: ServiceError -> APOLOGY_REPLY and the turn is not committed.
        If Removed: Open-ended messages go unanswered.
        Testing Notes: A raising completion client leaves the stored session unchanged.
        """
        # Directives are rebuilt every call and never stored.
        session = ctx.session
        session.history.append(Turn(role="user", text=ctx.text))
        session.history = trim_history(session.history, session.phase)
        directives = phase_directives(session, self._settings.assistant_name, self._settings.lawyer_name)
        turns = build_prompt(session, self._preamble, directives)
        temperature, max_tokens = completion_options(
            session.phase,
            self._settings.temperature,
            self._settings.initial_max_tokens,
            self._settings.default_max_tokens,
        )
        try:
            reply = self._completion.complete(turns, temperature=temperature, max_tokens=max_tokens)
        except ServiceError:
            logger.warning("user=%s step=generation route=apology", ctx.user_id)
            ctx.reply = APOLOGY_REPLY
            ctx.route = "apology"
            ctx.commit = False
            return
        ctx.reply = reply
        ctx.route = "model"
        ctx.user_recorded = True
        if session.phase == Phase.INITIAL:
            self._move(ctx, Phase.IDENTIFICATION)
        elif (
            session.phase == Phase.OFFERING_SOLUTION
            and DELIVERABLE_RE.search(normalize_text(reply))
            and len(session.history) + 1 > AUTO_CLOSE_HISTORY
        ):
            self._move(ctx, Phase.CLOSING)

    def _step_finalize(self, ctx: TurnContext) -> None:
        session = ctx.session
        if not ctx.commit:
            logger.info("user=%s route=%s committed=false", ctx.user_id, ctx.route)
            return
        if ctx.reply is not None:
            if not ctx.user_recorded:
                session.history.append(Turn(role="user", text=ctx.text))
            session.history.append(Turn(role="assistant", text=ctx.reply))
            session.history = trim_history(session.history, session.phase)
            self._dedup.remember(session, ctx.raw_text, ctx.reply, ctx.now)
        self._store.commit(session)
        logger.info(
            "user=%s route=%s phase=%s captured=%s",
            ctx.user_id,
            ctx.route,
            session.phase.value,
            ",".join(ctx.captured) or "-",
        )
        logger.debug("user=%s session=%s", ctx.user_id, json.dumps(session_for_log(session), ensure_ascii=True))

    # ------------------------------------------------------------------
    # Collaborator entry points
    # ------------------------------------------------------------------

    def _snapshot(self, user_id: str) -> Session:
        session = self._store.get(user_id)
        if session is None:
            raise UnknownSession(user_id)
        return session

    def reset_session(self, user_id: str) -> bool:
        with self._store.hold(user_id):
            removed = self._store.remove(user_id)
        logger.info("user=%s reset=%s", user_id, removed)
        return removed

    def get_document_kind(self, user_id: str) -> str:
        session = self._snapshot(user_id)
        return document_kind(session.topic, session.fields.requested_service).value

    def get_document_data(self, user_id: str) -> Dict[str, Optional[str]]:
        return document_data(self._snapshot(user_id))

    def should_generate_document(self, user_id: str) -> bool:
        return should_generate_document(self._snapshot(user_id))

    def mark_document_generated(self, user_id: str) -> None:
        with self._store.hold(user_id):
            session = self._snapshot(user_id)
            session.fields.document_generated = True
            self._store.commit(session)
        logger.info("user=%s document_generated=true", user_id)

    def await_document_confirmation(self, user_id: str, document_path: str, subject_name: str, kind: str) -> None:
        """Purpose: Register a generated document and wait for the user's approval.
        Inputs/Outputs: Inputs are the user id, document path, subject name, and kind;
            no return value.
        Side Effects / State: Sets pending_confirmation and enters the
            awaiting-document-confirmation side branch.
        Dependencies: transition() side-branch entry.
        Failure Modes: UnknownSession when the user has no session.
        If Removed: Generated documents are sent without the user's confirmation.
        Testing Notes: The next "ok" from the user closes the dialog.
        """
        # A new pending record replaces any earlier one.
        with self._store.hold(user_id):
            session = self._snapshot(user_id)
            session.pending_confirmation = PendingConfirmation(
                document_path=document_path,
                subject_name=subject_name,
                document_kind=kind,
                created_at=self._clock(),
            )
            session.fields.document_generated = True
            session.phase = transition(session.phase, Phase.AWAITING_DOCUMENT_CONFIRMATION)
            self._store.commit(session)
        logger.info("user=%s phase=%s kind=%s", user_id, Phase.AWAITING_DOCUMENT_CONFIRMATION.value, kind)

    def record_document_received(self, user_id: str, label: str) -> DocumentStatus:
        """Purpose: Acknowledge an uploaded supporting document.
        Inputs/Outputs: Inputs are the user id and document label; output is the
            resulting DocumentStatus.
        Side Effects / State: Appends the label once. With the subject identified it
            enters documents-received, and closes with documents_forwarded once every
            required document is in; before that the phase is left alone.
        Dependencies: required_documents/missing_documents.
        Failure Modes: UnknownSession when the user has no session.
        If Removed: Uploads are never matched against the required list.
        Testing Notes: The last missing sickness-benefit document closes the dialog; an
            upload before identification keeps the dialog collecting.
        """
        # A pending document approval keeps its phase until the user answers.
        with self._store.hold(user_id):
            session = self._snapshot(user_id)
            if label not in session.documents_received:
                session.documents_received.append(label)
            status = self._status_of(session)
            if session.phase != Phase.AWAITING_DOCUMENT_CONFIRMATION and session.fields.is_qualified():
                session.phase = transition(session.phase, Phase.DOCUMENTS_RECEIVED)
                if status.complete:
                    session.phase = transition(session.phase, Phase.CLOSING)
                    session.fields.documents_forwarded = True
                    status.notice = DOCUMENTS_COMPLETE_REPLY.format(lawyer=self._settings.lawyer_name)
            self._store.commit(session)
        logger.info("user=%s document=%s missing=%d", user_id, label, len(status.missing))
        return status

    def all_required_documents_received(self, user_id: str) -> bool:
        return self._status_of(self._snapshot(user_id)).complete

    def document_status(self, user_id: str) -> DocumentStatus:
        return self._status_of(self._snapshot(user_id))

    @staticmethod
    def _status_of(session: Session) -> DocumentStatus:
        service = session.fields.requested_service
        missing = missing_documents(service, session.documents_received)
        return DocumentStatus(
            required=required_documents(service),
            received=list(session.documents_received),
            missing=missing,
            complete=not missing,
        )

    def sweep_idle_sessions(self) -> List[str]:
        max_age_sec = self._settings.session_max_age_hours * 3600
        return self._store.sweep_idle(max_age_sec, self._clock())
