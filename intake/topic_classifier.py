from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple

from .gemini_client import ServiceError
from .phases import Topic
from .utils import normalize_text

logger = logging.getLogger("intake.topic")


def _terms_re(terms: List[str]) -> re.Pattern:
    return re.compile(r"\b(" + "|".join(re.escape(term) for term in terms) + r")\b")


# Ordered keyword families; the first family that matches wins.
VEHICLE_RE = _terms_re(
    [
        "transferir carro", "transferir o carro", "transferir meu carro", "transferencia de carro",
        "transferencia do carro", "transferencia de veiculo", "transferencia do veiculo",
        "transferir veiculo", "transferir o veiculo", "transferir moto", "transferir a moto",
        "transferencia de moto", "vender carro", "vender o carro", "vender meu carro", "vender moto",
        "vender veiculo", "detran", "crv", "dut", "crlv", "renavam", "documento do carro",
        "documento do veiculo", "recibo do carro",
    ]
)
PROPERTY_RE = _terms_re(
    [
        "transferir imovel", "transferir o imovel", "transferencia de imovel", "transferencia do imovel",
        "escritura", "matricula do imovel", "vender casa", "vender a casa", "vender minha casa",
        "vender apartamento", "vender o apartamento", "vender terreno", "compra e venda de imovel",
        "registro de imoveis", "cartorio de imoveis", "itbi", "usucapiao",
    ]
)
PENSION_RE = _terms_re(
    [
        "aposentadoria", "aposentar", "aposentado", "beneficio", "inss", "pensao", "auxilio",
        "bpc", "loas", "pericia", "afastado", "afastada", "afastamento", "doenca", "doente",
        "atestado", "incapacidade", "invalidez",
    ]
)
TOPIC_FAMILIES: List[Tuple[Topic, re.Pattern]] = [
    (Topic.VEHICLE_TRANSFER, VEHICLE_RE),
    (Topic.PROPERTY_TRANSFER, PROPERTY_RE),
    (Topic.PENSION_BENEFIT, PENSION_RE),
]

SERVICE_NAME_RE = re.compile(r"\bprocurac(ao|oes)\b")
COOCCURRENCE_NOUNS: List[Tuple[Topic, re.Pattern]] = [
    (Topic.VEHICLE_TRANSFER, re.compile(r"\b(veiculo|carro|moto|caminhao)\b")),
    (Topic.PROPERTY_TRANSFER, re.compile(r"\b(imovel|casa|apartamento|terreno|lote)\b")),
    (Topic.PENSION_BENEFIT, re.compile(r"\b(inss|beneficio|aposentadoria)\b")),
]

ABANDON_RE = _terms_re(
    [
        "mudar de assunto", "outro tema", "outra questao", "outro assunto", "esquece isso",
        "esquece isto", "deixa pra la", "deixa para la", "outro problema", "outra coisa",
        "algo diferente",
    ]
)

ILLNESS_RE = re.compile(
    r"\b(doenca|doente|afastad[oa]|afastamento|atestado|acidente|auxilio doenca|auxilio-doenca|incapacidade|pericia|cirurgia)\b"
)
RETIREMENT_RE = re.compile(r"\b(aposentadoria|aposentar)\b")
BPC_RE = re.compile(r"\b(bpc|loas)\b")
SURVIVOR_RE = re.compile(r"\bpensao\b")
REVIEW_RE = re.compile(r"\b(revisao|revisar)\b")

FALLBACK_LABELS = {
    "veiculo": Topic.VEHICLE_TRANSFER,
    "imovel": Topic.PROPERTY_TRANSFER,
    "previdenciario": Topic.PENSION_BENEFIT,
}


def detect_topic_by_keywords(text: str) -> Optional[Topic]:
    """Purpose: Map text to a specific topic using ordered keyword families.
    Inputs/Outputs: Input is raw text; output is a Topic or None when nothing matches.
    Side Effects / State: None; pure function.
    Dependencies: TOPIC_FAMILIES (vehicle, property, pension) then the "procuração"
        co-occurrence rule.
    Failure Modes: None; returns None for empty text.
    If Removed: Topic detection always needs the external classification fallback.
    Testing Notes: "transferência de veículo" -> vehicle; "procuração para o meu
        apartamento" -> property.
    """
    # Check families in priority order, then infer from "procuração" + subject noun.
    normalized = normalize_text(text)
    if not normalized:
        return None
    for topic, pattern in TOPIC_FAMILIES:
        if pattern.search(normalized):
            return topic
    if SERVICE_NAME_RE.search(normalized):
        for topic, pattern in COOCCURRENCE_NOUNS:
            if pattern.search(normalized):
                return topic
    return None


def is_topic_abandonment(text: str) -> bool:
    return bool(ABANDON_RE.search(normalize_text(text)))


def default_service_for_topic(topic: Topic, recent_text: str) -> Optional[str]:
    """Purpose: Infer the requested-service label implied by a topic and recent turns.
    Inputs/Outputs: Inputs are the active Topic and concatenated recent user text;
        output is a service label or None when the context is not specific enough.
    Side Effects / State: None.
    Dependencies: ILLNESS_RE and the benefit-specific patterns.
    Failure Modes: None.
    If Removed: Users who already explained their case are asked again what they need.
    Testing Notes: pension + "estou afastado por doença" -> "Auxílio-doença".
    """
    # Transfers map one-to-one; benefits need a more specific cue.
    if topic == Topic.VEHICLE_TRANSFER:
        return "Transferência de veículo"
    if topic == Topic.PROPERTY_TRANSFER:
        return "Transferência de imóvel"
    if topic != Topic.PENSION_BENEFIT:
        return None
    normalized = normalize_text(recent_text)
    if ILLNESS_RE.search(normalized):
        return "Auxílio-doença"
    if BPC_RE.search(normalized):
        return "BPC/LOAS"
    if RETIREMENT_RE.search(normalized):
        return "Aposentadoria"
    if SURVIVOR_RE.search(normalized):
        return "Pensão por morte"
    if REVIEW_RE.search(normalized):
        return "Revisão de benefício"
    return None


class TopicClassifier:
    """Sticky keyword-first topic classifier with an optional model fallback."""

    def __init__(self, classifier: object = None, task_prompt: str = "", use_fallback: bool = True) -> None:
        self._classifier = classifier
        self._task_prompt = task_prompt
        self._use_fallback = use_fallback and classifier is not None and bool(task_prompt)

    def classify(self, text: str, current: Topic = Topic.GENERAL) -> Topic:
        """Purpose: Decide the session topic after one inbound message.
        Inputs/Outputs: Inputs are the message and the session's current Topic; output is
            the Topic to keep.
        Side Effects / State: May perform one classification call when keywords fail.
        Dependencies: is_topic_abandonment, detect_topic_by_keywords, classifier.classify.
        Failure Modes: ServiceError or an unknown label yields Topic.GENERAL.
        If Removed: The dialog cannot recognise what the user needs.
        Testing Notes: A specific topic survives unrelated messages and is dropped on
            "vamos mudar de assunto".
        """
        # An established topic only yields to an explicit abandonment phrase.
        if current != Topic.GENERAL:
            if not is_topic_abandonment(text):
                return current
            return detect_topic_by_keywords(text) or Topic.GENERAL
        detected = detect_topic_by_keywords(text)
        if detected:
            return detected
        if self._use_fallback and len(normalize_text(text).split()) >= 4:
            return self._classify_remote(text)
        return Topic.GENERAL

    def _classify_remote(self, text: str) -> Topic:
        try:
            raw = self._classifier.classify(text, self._task_prompt)
        except ServiceError:
            logger.warning("topic fallback failed; keeping general")
            return Topic.GENERAL
        label = normalize_text(raw)
        for key, topic in FALLBACK_LABELS.items():
            if key in label:
                return topic
        return Topic.GENERAL
