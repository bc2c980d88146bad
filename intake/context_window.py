"""Bounded conversation context and prompt assembly.

History is stored without the system preamble; the preamble and the
phase directives are rebuilt on every call by ``build_prompt`` so nothing
ephemeral ever reaches the stored turns.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from .documents import TRANSFER_TOPICS, missing_documents
from .models import Session, Turn
from .phases import Phase, Topic
from .utils import format_cpf

DEFAULT_HISTORY_LIMIT = 15
HISTORY_LIMITS = {
    Phase.INITIAL: 10,
    Phase.CLOSING: 8,
}

TOPIC_LABELS = {
    Topic.GENERAL: "geral",
    Topic.VEHICLE_TRANSFER: "transferência de veículo",
    Topic.PROPERTY_TRANSFER: "transferência de imóvel",
    Topic.PENSION_BENEFIT: "benefício previdenciário (INSS)",
}

PHASE_DIRECTIVES = {
    Phase.INITIAL: (
        "Fase atual: primeiro contato. Cumprimente de forma calorosa, apresente-se como {assistant} "
        "e pergunte o nome completo da pessoa. Seja breve."
    ),
    Phase.IDENTIFICATION: (
        "Fase atual: identificação. Peça, de forma natural, o nome completo e o CPF da pessoa atendida."
    ),
    Phase.COLLECTING_ID_NUMBER: (
        "Fase atual: coleta do CPF. Agradeça pelo nome e peça o CPF (11 dígitos) para seguir com o atendimento."
    ),
    Phase.COLLECTING_NAME: "Fase atual: coleta do nome. Peça o nome completo da pessoa atendida.",
    Phase.UNDERSTANDING_NEED: (
        "Fase atual: entender a necessidade. Pergunte com empatia qual serviço a pessoa precisa e entenda "
        "a situação concreta. Não dê orientações jurídicas detalhadas."
    ),
    Phase.COLLECTING_COUNTERPART_DATA: (
        "Fase atual: dados do representante. Peça o nome completo e o CPF da pessoa que será autorizada "
        "na procuração."
    ),
    Phase.COLLECTING_POA_SPECIFIC_DATA: (
        "Fase atual: dados da procuração. Peça somente os dados que ainda faltam: {missing_fields}."
    ),
    Phase.CONFIRMING_DATA: (
        "Fase atual: confirmação. Peça que a pessoa confirme se os dados do representante estão corretos."
    ),
    Phase.OFFERING_SOLUTION: (
        "Fase atual: solução. Explique de forma simples que vamos preparar a procuração para {service} "
        "e quais são os próximos passos. Não prometa resultados."
    ),
    Phase.CLOSING: (
        "Fase atual: encerramento. Agradeça, reforce que o {lawyer} vai acompanhar o caso e encerre "
        "cordialmente."
    ),
    Phase.AWAITING_DOCUMENT_CONFIRMATION: (
        "Fase atual: aguardando confirmação do documento. Peça que a pessoa confira o documento enviado "
        "e responda se está tudo certo para seguirmos com a assinatura."
    ),
    Phase.DOCUMENTS_RECEIVED: (
        "Fase atual: recebimento de documentos. Ainda faltam: {missing_documents}. Peça os documentos "
        "pendentes com gentileza."
    ),
}

ADDRESS_DIRECTIVE = "Antes de preparar a procuração, peça o endereço completo da pessoa atendida."

HANDOFF_DIRECTIVE = (
    "A pessoa pediu para falar diretamente com o {lawyer}. Confirme que ele entrará em contato e, "
    "enquanto isso, peça os dados básicos que ainda faltam."
)


def history_limit(phase: Phase) -> int:
    return HISTORY_LIMITS.get(phase, DEFAULT_HISTORY_LIMIT)


def trim_history(history: Sequence[Turn], phase: Phase) -> List[Turn]:
    """Purpose: Enforce the per-phase cap on stored turns.
    Inputs/Outputs: Inputs are the stored turns and the active Phase; output is a new
        list holding the most recent turns within the cap.
    Side Effects / State: None; the caller assigns the result back to the session.
    Dependencies: history_limit.
    Failure Modes: None.
    If Removed: Prompts grow without bound across long sessions.
    Testing Notes: 20 turns in closing trim to the last 8 in order.
    """
    # Oldest entries go first; the preamble is never stored, so it cannot be trimmed.
    limit = history_limit(phase)
    if len(history) <= limit:
        return list(history)
    return list(history[-limit:])


def missing_counterpart_fields(session: Session) -> List[str]:
    fields = session.fields
    missing = []
    if not fields.counterpart_name:
        missing.append("nome completo do representante")
    if not fields.counterpart_id:
        missing.append("CPF do representante")
    if session.topic in TRANSFER_TOPICS and not fields.address:
        missing.append("endereço completo")
    return missing


def known_data_directive(session: Session) -> str:
    fields = session.fields
    parts = []
    if fields.subject_name:
        parts.append(f"nome: {fields.subject_name}")
    if fields.subject_id:
        parts.append(f"CPF: {format_cpf(fields.subject_id)}")
    if fields.counterpart_name:
        parts.append(f"representante: {fields.counterpart_name}")
    if fields.counterpart_id:
        parts.append(f"CPF do representante: {format_cpf(fields.counterpart_id)}")
    if fields.address:
        parts.append(f"endereço: {fields.address}")
    if fields.requested_service:
        parts.append(f"serviço: {fields.requested_service}")
    if not parts:
        return ""
    return "Dados já coletados (não peça de novo): " + "; ".join(parts) + "."


def phase_directives(session: Session, assistant_name: str, lawyer_name: str) -> List[str]:
    """Purpose: Compose the ephemeral instructions for the session's current phase.
    Inputs/Outputs: Inputs are the Session and display names; output is a list of
        directive strings; empty entries are dropped.
    Side Effects / State: None.
    Dependencies: PHASE_DIRECTIVES, TOPIC_LABELS, missing_documents.
    Failure Modes: None.
    If Removed: The model answers without knowing where the intake stands.
    Testing Notes: Offering-solution mentions the requested service; a handoff flag adds
        HANDOFF_DIRECTIVE.
    """
    # Phase guidance first, then topic focus, known data and the handoff note.
    fields = session.fields
    missing_docs = missing_documents(fields.requested_service, session.documents_received)
    template = PHASE_DIRECTIVES[session.phase]
    directives = [
        template.format(
            assistant=assistant_name,
            lawyer=lawyer_name,
            service=fields.requested_service or TOPIC_LABELS[session.topic],
            missing_fields=", ".join(missing_counterpart_fields(session)) or "nenhum",
            missing_documents=", ".join(missing_docs) or "nenhum",
        )
    ]
    if session.topic != Topic.GENERAL:
        directives.append(f"Assunto do atendimento: {TOPIC_LABELS[session.topic]}. Mantenha o foco nele.")
    directives.append(known_data_directive(session))
    if session.phase == Phase.OFFERING_SOLUTION and session.topic in TRANSFER_TOPICS and not fields.address:
        directives.append(ADDRESS_DIRECTIVE)
    if fields.handoff_requested:
        directives.append(HANDOFF_DIRECTIVE.format(lawyer=lawyer_name))
    return [directive for directive in directives if directive]


def build_prompt(session: Session, preamble: str, directives: Sequence[str]) -> List[Turn]:
    """Purpose: Assemble the turn list for one completion call.
    Inputs/Outputs: Inputs are the Session, the system preamble, and ephemeral
        directives; output is [preamble] + history + directives as new Turn objects.
    Side Effects / State: None; the session history is read, never mutated.
    Dependencies: Turn model.
    Failure Modes: None.
    If Removed: Completion calls have no context.
    Testing Notes: Calling twice yields equal lists and leaves session.history unchanged.
    """
    # Preamble always first; directives always after the latest user turn.
    turns = [Turn(role="system", text=preamble)]
    turns.extend(Turn(role=turn.role, text=turn.text) for turn in session.history)
    turns.extend(Turn(role="system", text=directive) for directive in directives)
    return turns


def completion_options(phase: Phase, temperature: float, initial_max_tokens: int, default_max_tokens: int) -> Tuple[float, int]:
    # The greeting turn is kept short.
    max_tokens = initial_max_tokens if phase == Phase.INITIAL else default_max_tokens
    return temperature, max_tokens
