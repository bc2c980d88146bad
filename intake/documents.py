"""Document-workflow vocabulary shared by the orchestrator and its collaborators.

Maps a session's topic and requested service to the power-of-attorney kind the
generator renders, the data it needs, and the supporting documents the user
still has to send.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Dict, List, Optional

from .models import Session
from .phases import Phase, Topic
from .utils import format_cpf, normalize_text


class DocumentKind(str, Enum):
    """Template selector for the document generator."""
    VEHICLE_POA = "vehicle-poa"
    PROPERTY_POA = "property-poa"
    RETIREMENT = "retirement"
    SICKNESS_BENEFIT = "sickness-benefit"
    BPC = "bpc"
    SURVIVOR_PENSION = "survivor-pension"
    BENEFIT_REVIEW = "benefit-review"
    SOCIAL_SECURITY = "social-security"
    GENERAL = "general"


MEDICAL_CERTIFICATE = "Atestado médico"
MEDICAL_REPORT = "Laudo médico com CID"
PROOF_OF_ADDRESS = "Comprovante de residência"
IDENTITY_DOCUMENT = "Documento de identidade"
VEHICLE_DOCUMENT = "Documento do veículo"

BASE_REQUIRED = [PROOF_OF_ADDRESS, IDENTITY_DOCUMENT]
REQUIRED_BY_SERVICE = [
    (re.compile(r"auxilio.?doenca"), [MEDICAL_CERTIFICATE, MEDICAL_REPORT, PROOF_OF_ADDRESS, IDENTITY_DOCUMENT]),
    (re.compile(r"veiculo"), [VEHICLE_DOCUMENT, PROOF_OF_ADDRESS, IDENTITY_DOCUMENT]),
]

# Upload hints in file name or caption; order matters ("laudo" before "comprovante").
UPLOAD_HINTS = [
    (re.compile(r"atestado"), MEDICAL_CERTIFICATE),
    (re.compile(r"laudo"), MEDICAL_REPORT),
    (re.compile(r"comprovante|residencia"), PROOF_OF_ADDRESS),
    (re.compile(r"\b(rg|cnh)\b|identidade"), IDENTITY_DOCUMENT),
    (re.compile(r"crlv|veiculo"), VEHICLE_DOCUMENT),
]

BENEFIT_KINDS = [
    (re.compile(r"aposentadoria"), DocumentKind.RETIREMENT),
    (re.compile(r"auxilio"), DocumentKind.SICKNESS_BENEFIT),
    (re.compile(r"\b(bpc|loas)\b"), DocumentKind.BPC),
    (re.compile(r"pensao"), DocumentKind.SURVIVOR_PENSION),
    (re.compile(r"revisao"), DocumentKind.BENEFIT_REVIEW),
]

PURPOSE_BY_TOPIC = {
    Topic.VEHICLE_TRANSFER: "transferência de veículo junto ao DETRAN",
    Topic.PROPERTY_TRANSFER: "transferência de imóvel junto ao cartório de registro",
    Topic.PENSION_BENEFIT: "representação perante o INSS",
    Topic.GENERAL: "representação legal",
}

CHECKLISTS: Dict[DocumentKind, List[str]] = {
    DocumentKind.RETIREMENT: [
        "RG e CPF",
        "Carteira de trabalho ou carnês de contribuição",
        "Comprovante de residência dos últimos 5 anos",
        "Se rural: notas fiscais, bloco de produtor ou declaração do sindicato",
    ],
    DocumentKind.BPC: [
        "RG e CPF da pessoa com deficiência ou idosa",
        "Laudo médico atualizado (modelo INSS)",
        "Comprovante de renda familiar",
        "Declaração de pobreza, se não tiver comprovantes formais",
    ],
    DocumentKind.BENEFIT_REVIEW: [
        "Documento de identificação",
        "Cópia do benefício atual",
        "Laudos, extratos e comprovantes de tempo de contribuição",
    ],
    DocumentKind.SICKNESS_BENEFIT: [
        "Atestado médico com CID e período de afastamento",
        "Exames e laudos",
        "Comprovante de afastamento do trabalho",
    ],
    DocumentKind.SURVIVOR_PENSION: [
        "Certidão de óbito",
        "Documentos dos dependentes (RG, certidão de nascimento)",
        "Comprovante de união estável ou casamento",
        "Comprovante de dependência financeira (extrato, IR)",
    ],
    DocumentKind.SOCIAL_SECURITY: [
        "RG e CPF",
        "Carteira de trabalho ou carnês de contribuição",
        "Extrato do CNIS",
        "Comprovante de residência recente",
    ],
    DocumentKind.VEHICLE_POA: [
        "RG e CPF (frente e verso)",
        "Documento do veículo (CRV/CRLV)",
        "Comprovante de residência (últimos 3 meses)",
    ],
    DocumentKind.PROPERTY_POA: [
        "RG e CPF (frente e verso)",
        "Matrícula atualizada do imóvel",
        "Comprovante de residência (últimos 3 meses)",
    ],
}
DEFAULT_CHECKLIST = [
    "RG e CPF (frente e verso)",
    "Comprovante de residência",
    "Quaisquer outros documentos relacionados ao seu caso",
]

GENERATION_PHASES = {Phase.OFFERING_SOLUTION, Phase.CLOSING}
TRANSFER_TOPICS = {Topic.VEHICLE_TRANSFER, Topic.PROPERTY_TRANSFER}


def document_kind(topic: Topic, requested_service: Optional[str]) -> DocumentKind:
    """Purpose: Choose the document template for a topic and requested service.
    Inputs/Outputs: Inputs are the session Topic and service label; output is a DocumentKind.
    Side Effects / State: None.
    Dependencies: BENEFIT_KINDS for social-security services.
    Failure Modes: None; unknown combinations map to GENERAL or SOCIAL_SECURITY.
    If Removed: The generator cannot pick a template.
    Testing Notes: pension + "Auxílio-doença" -> SICKNESS_BENEFIT; vehicle -> VEHICLE_POA.
    """
    # Transfers are fixed per topic; benefits depend on the service wording.
    if topic == Topic.VEHICLE_TRANSFER:
        return DocumentKind.VEHICLE_POA
    if topic == Topic.PROPERTY_TRANSFER:
        return DocumentKind.PROPERTY_POA
    if topic == Topic.PENSION_BENEFIT:
        service = normalize_text(requested_service or "")
        for pattern, kind in BENEFIT_KINDS:
            if pattern.search(service):
                return kind
        return DocumentKind.SOCIAL_SECURITY
    return DocumentKind.GENERAL


def document_data(session: Session) -> Dict[str, Optional[str]]:
    # Base identity plus whatever the topic-specific template consumes.
    fields = session.fields
    data: Dict[str, Optional[str]] = {
        "kind": document_kind(session.topic, fields.requested_service).value,
        "subject_name": fields.subject_name,
        "subject_id": format_cpf(fields.subject_id) if fields.subject_id else None,
        "counterpart_name": fields.counterpart_name,
        "counterpart_id": format_cpf(fields.counterpart_id) if fields.counterpart_id else None,
        "purpose": PURPOSE_BY_TOPIC[session.topic],
    }
    if session.topic in TRANSFER_TOPICS:
        data["address"] = fields.address
    if session.topic == Topic.PENSION_BENEFIT:
        data["requested_service"] = fields.requested_service
    return data


def should_generate_document(session: Session) -> bool:
    """Purpose: Tell the generator whether a document can be rendered now.
    Inputs/Outputs: Input is the Session; output is True when rendering should start.
    Side Effects / State: None; read-only query polled after every reply.
    Dependencies: GENERATION_PHASES and CollectedFields.has_mandatory.
    Failure Modes: None.
    If Removed: Documents are never generated or are generated with missing data.
    Testing Notes: Offering-solution with four fields -> True; again after
        document_generated -> False; transfers also need an address.
    """
    # One document per session, only once the data is complete.
    fields = session.fields
    if session.phase not in GENERATION_PHASES:
        return False
    if fields.document_generated or session.pending_confirmation is not None:
        return False
    if not fields.has_mandatory():
        return False
    if session.topic in TRANSFER_TOPICS and not fields.address:
        return False
    return True


def required_documents(requested_service: Optional[str]) -> List[str]:
    service = normalize_text(requested_service or "")
    for pattern, documents in REQUIRED_BY_SERVICE:
        if pattern.search(service):
            return list(documents)
    return list(BASE_REQUIRED)


def missing_documents(requested_service: Optional[str], received: List[str]) -> List[str]:
    have = {normalize_text(label) for label in received}
    return [label for label in required_documents(requested_service) if normalize_text(label) not in have]


def checklist_message(kind: DocumentKind) -> str:
    """Render the user-facing checklist of supporting documents for a document kind."""
    items = CHECKLISTS.get(kind, DEFAULT_CHECKLIST)
    lines = "\n".join(f"- {item}" for item in items)
    return (
        "DOCUMENTOS NECESSÁRIOS\n\n"
        "Para darmos seguimento ao seu processo, precisamos dos seguintes documentos:\n"
        f"{lines}\n\n"
        "Pode enviar por aqui mesmo, em foto ou PDF."
    )


def detect_document_label(file_name: Optional[str], caption: Optional[str]) -> Optional[str]:
    """Purpose: Guess which required document an upload is from its file name or caption.
    Inputs/Outputs: Inputs are the optional file name and caption; output is a label or None.
    Side Effects / State: None.
    Dependencies: UPLOAD_HINTS in priority order.
    Failure Modes: None; unrecognised uploads return None.
    If Removed: Collaborators must always send explicit labels.
    Testing Notes: ("laudo_cid.pdf", None) -> "Laudo médico com CID".
    """
    # File name and caption are searched together.
    haystack = normalize_text(f"{file_name or ''} {caption or ''}".replace("_", " "))
    if not haystack:
        return None
    for pattern, label in UPLOAD_HINTS:
        if pattern.search(haystack):
            return label
    return None
