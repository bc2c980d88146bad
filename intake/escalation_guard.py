"""Escalation guard: contains users who fish for free legal advice.

States
    idle         no lock; technical questions accumulate a weighted streak.
    soft-locked  topic-scoped containment; cleared by any change of subject.
    hard-locked  cross-topic containment; cleared only by a human-handoff
                 request or by a name plus a real situation description.

Every state change goes through one of the named transition methods on
``EscalationGuard`` (``_engage_soft_lock``, ``_clear_soft_lock``,
``_engage_hard_lock``, ``_release_hard_lock``). Nothing outside
``_release_hard_lock`` sets ``hard_lock`` back to False.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .models import CollectedFields, EscalationState
from .utils import first_name, normalize_text

logger = logging.getLogger("intake.guard")

STREAK_STEP = 1.0
SAME_TOPIC_STEP = 1.5
THRESHOLD_ANONYMOUS = 2.0
THRESHOLD_IDENTIFIED = 3.0
HARD_LOCK_STREAK = 3.0
MIN_HANDOFF_TEXT = 10
MIN_HANDOFF_MATCH = 5
MIN_SITUATION_TEXT = 50
MIN_SITUATION_FAMILIES = 2

HARD_LOCK_REPLIES = [
    "{name}, conforme te falei antes, não posso continuar com respostas técnicas sem entender o seu caso de verdade. "
    "Me diga seu nome completo e o que você está enfrentando, que eu te ajudo.",
    "Preciso do seu nome e da sua situação real para poder ajudar. Sem isso, não posso continuar com respostas técnicas.",
    "Se preferir um atendimento técnico direto, posso pedir para o {lawyer}, nosso advogado sênior, "
    "entrar em contato com você. Quer isso?",
    "Ainda não recebi suas informações pessoais. Para respeitar nossos protocolos de segurança, não posso fornecer "
    "mais orientações técnicas sem conhecer seu caso real.",
    "Como você ainda não me contou sua situação real, essa conversa será encerrada por segurança, tudo bem? "
    "Quando quiser retomar com seus dados, estarei aqui.",
]

SOFT_LOCK_REPLIES = [
    "{name}, preciso entender melhor seu caso específico antes de prosseguir. Me conta seu nome completo e a "
    "situação concreta que você está enfrentando?",
    "Para te ajudar de verdade, preciso saber mais sobre você e seu caso. O {lawyer}, nosso advogado responsável, "
    "vai poder esclarecer todos esses detalhes assim que tivermos seus dados básicos.",
    "Entendo sua dúvida, mas pra te dar uma resposta precisa, preciso conhecer seu caso específico. Pode me contar "
    "qual é a situação concreta que você está enfrentando?",
    "Esses detalhes técnicos são melhor discutidos pelo {lawyer} após entendermos seu caso. Vamos começar pelo básico?",
    "Como advogada, preciso conhecer seu caso antes de dar qualquer orientação técnica. Me conte sua situação, ok?",
]

REDIRECT_REPLY = (
    "{name}, por questões de segurança e precisão, não posso seguir com mais detalhes técnicos sem entender "
    "melhor sua situação.\n\nQuer que eu te ajude com um atendimento completo? O {lawyer}, nosso advogado "
    "responsável, vai poder esclarecer todas essas dúvidas depois.\n\nMe conta um pouco sobre seu caso real?"
)

SITUATION_FAMILIES = {
    "first_person": re.compile(
        r"\b(eu|meu|minha|me|comigo)\b.*\b(estou|estive|fui|sou|tenho|tive|preciso|quero|sofri|fiquei|perdi|"
        r"trabalh\w*|empreg\w*|contrat\w*|problem\w*)\b"
    ),
    "incident": re.compile(
        r"\b(acidente|doenca|doente|problema|situacao|caso|cirurgia|afastad\w*|empres\w*|contrat\w*|demit\w*|aposent\w*)\b"
    ),
    "relative_time": re.compile(
        r"\b(semana|mes|ano|dia)s?\b.*\b(passad[oa]s?|atras|anterior)\b|\b(ontem|anteontem)\b|\bha \d+ (dias|meses|anos)\b"
    ),
    "causal": re.compile(r"\b(depois|entao|quando|aconteceu|ocorreu|porque|por causa)\b"),
    "place": re.compile(r"\b(no|na|em)\b.{0,20}\b(trabalho|empresa|hospital|acidente|casa|rua|obra|fabrica)\b"),
}

SERVICE_CHANGE_PATTERNS = [
    re.compile(r"\b(preciso|quero|gostaria)\b.*\bajuda\b.*\bcom\b"),
    re.compile(r"\b(mudar|trocar|alterar)\b.*\b(assunto|topico|tema|servico)\b"),
    re.compile(r"\b(outro|outra|nova|novo|diferente)\b.*\b(questao|situacao|caso|problema|servico|assunto)\b"),
    re.compile(
        r"\b(preciso|quero|como faco)\b.*\b(procuracao|documento|contrato|divorcio|pensao|aposentadoria|"
        r"transferir|transferencia|vender|comprar)\b"
    ),
    re.compile(r"\bdeixa\b.*\bdisso\b"),
    re.compile(r"\b(vamos|podemos)\b.*\bmudar\b"),
    re.compile(r"\besquece\b.*\bisso\b"),
    re.compile(r"\boutra\b.*\bpergunta\b"),
    re.compile(r"\bnao\b.*\b(isso|esse assunto)\b"),
    re.compile(r"\bna verdade\b.*\b(quero|preciso|gostaria|vim por)\b"),
]

HUMAN_TERMS = ["advogado", "advogada", "doutor", "doutora", "humano", "atendente"]


class GuardState(str, Enum):
    """Observable containment level of a session."""
    IDLE = "idle"
    SOFT_LOCKED = "soft-locked"
    HARD_LOCKED = "hard-locked"


@dataclass
class GuardSignals:
    """Per-message facts the guard decides on; computed by the orchestrator."""
    is_technical: bool = False
    technical_topic: Optional[str] = None
    service_change: bool = False
    supplied_name: Optional[str] = None
    supplied_id: Optional[str] = None
    handoff_request: bool = False
    describes_situation: bool = False


@dataclass
class GuardDecision:
    """Outcome of one evaluation: an optional containment reply and the transition taken."""
    reply: Optional[str] = None
    transition: str = "none"
    released: bool = False
    handoff: bool = False


def describes_situation(text: str) -> bool:
    """Purpose: Heuristically detect a genuine first-hand case description.
    Inputs/Outputs: Input is raw text; output is True when at least two distinct
        SITUATION_FAMILIES match in a message of at least MIN_SITUATION_TEXT characters.
    Side Effects / State: None; pure function.
    Dependencies: normalize_text and SITUATION_FAMILIES.
    Failure Modes: None; short texts are never situations.
    If Removed: Hard-locked users can only leave the lock by asking for the lawyer.
    Testing Notes: "sofri um acidente no trabalho mês passado" hits three families.
    """
    # Count distinct families, not total matches.
    if len((text or "").strip()) < MIN_SITUATION_TEXT:
        return False
    normalized = normalize_text(text)
    hits = [name for name, pattern in SITUATION_FAMILIES.items() if pattern.search(normalized)]
    return len(hits) >= MIN_SITUATION_FAMILIES


def signals_service_change(text: str) -> bool:
    normalized = normalize_text(text)
    return any(pattern.search(normalized) for pattern in SERVICE_CHANGE_PATTERNS)


def same_topic(current: Optional[str], previous: Optional[str]) -> bool:
    # Topics are free labels; a substring relation in either direction counts as the same.
    if not current or not previous:
        return False
    a, b = normalize_text(current), normalize_text(previous)
    return bool(a and b) and (a in b or b in a)


def build_handoff_patterns(lawyer_name: str) -> List[re.Pattern]:
    """Purpose: Compile request-for-human-handoff patterns around the lawyer's name.
    Inputs/Outputs: Input is the configured lawyer name; output is a list of patterns
        over normalized text.
    Side Effects / State: None.
    Dependencies: HUMAN_TERMS plus the name tokens (titles like "dr" kept as terms).
    Failure Modes: None; an empty name falls back to the generic terms.
    If Removed: Users cannot ask their way out of the hard lock.
    Testing Notes: "quero falar com o Dr. Gabriel" and "prefiro o advogado" both match.
    """
    # Build a single alternation of every way users refer to the lawyer.
    tokens = [tok for tok in normalize_text(lawyer_name).replace(".", " ").split() if tok]
    terms = sorted(set(HUMAN_TERMS + tokens), key=len, reverse=True)
    who = "(" + "|".join(re.escape(term) for term in terms) + r")\b"
    gap = r"(?:\S+\s+){0,4}?"
    return [
        re.compile(rf"\b(falar|conversar|atendimento|contato)\s+{gap}(com|pelo|pela)\s+{gap}{who}"),
        re.compile(rf"\b(quero|gostaria|prefiro)\s+{gap}{who}"),
        re.compile(rf"\b(passa|passar|transfere|transferir|encaminhar|encaminha)\s+{gap}{who}"),
        re.compile(rf"\b{who}\s*{gap}(diretamente|direto|melhor|prefiro)\b"),
        re.compile(rf"\b(sim|ok|pode|manda)\s+(?:o\s+|a\s+)?{who}"),
    ]


class EscalationGuard:
    """Two-level containment state machine evaluated before any phase logic."""

    def __init__(self, lawyer_name: str = "Dr. Gabriel") -> None:
        self._lawyer = lawyer_name
        self._handoff_patterns = build_handoff_patterns(lawyer_name)

    @staticmethod
    def state_of(state: EscalationState) -> GuardState:
        if state.hard_lock:
            return GuardState.HARD_LOCKED
        if state.soft_lock:
            return GuardState.SOFT_LOCKED
        return GuardState.IDLE

    def requests_handoff(self, text: str) -> bool:
        """Return True when the user explicitly asks to talk to the lawyer."""
        if len((text or "").strip()) < MIN_HANDOFF_TEXT:
            return False
        normalized = normalize_text(text)
        for pattern in self._handoff_patterns:
            match = pattern.search(normalized)
            if match and len(match.group(0)) > MIN_HANDOFF_MATCH:
                return True
        return False

    def evaluate(
        self,
        state: EscalationState,
        fields: CollectedFields,
        signals: GuardSignals,
        display_name: str = "",
    ) -> GuardDecision:
        """Purpose: Apply the ordered containment rules to one inbound message.
        Inputs/Outputs: Inputs are the session's EscalationState (mutated in place), the
            collected fields before this message, the message signals, and the display
            name; output is a GuardDecision with an optional reply.
        Side Effects / State: Mutates streak, locks, rotation level and insistence count.
        Dependencies: Named transitions on this class and the reply lists.
        Failure Modes: None; pure state arithmetic.
        If Removed: The dialog answers unlimited technical questions for anonymous users.
        Testing Notes: Three same-topic technical questions from an anonymous user end in
            the hard lock with HARD_LOCK_REPLIES[0].
        """
        # Identity is judged against stored fields plus what this message supplies.
        name = first_name(fields.subject_name) or first_name(display_name)
        has_name = bool(fields.subject_name or signals.supplied_name)
        has_id = bool(fields.subject_id or signals.supplied_id)
        has_identity = fields.has_identity() or bool(signals.supplied_name or signals.supplied_id)

        if state.hard_lock:
            if signals.handoff_request or (signals.supplied_name and signals.describes_situation):
                self._release_hard_lock(state)
                return GuardDecision(transition="release_hard_lock", released=True, handoff=signals.handoff_request)
            reply = self._format(HARD_LOCK_REPLIES[min(state.hard_lock_insistence, len(HARD_LOCK_REPLIES) - 1)], name)
            state.hard_lock_insistence += 1
            return GuardDecision(reply=reply, transition="hard_lock_hold")

        cleared = False
        if state.soft_lock:
            topic_changed = (
                signals.technical_topic is not None
                and state.last_technical_topic is not None
                and not same_topic(signals.technical_topic, state.last_technical_topic)
            )
            if signals.service_change or topic_changed or not signals.is_technical:
                self._clear_soft_lock(state)
                cleared = True

        if state.soft_lock and signals.is_technical:
            self._register_technical(state, signals.technical_topic)
            if state.technical_streak >= HARD_LOCK_STREAK and not has_identity:
                self._engage_hard_lock(state)
                reply = self._format(HARD_LOCK_REPLIES[0], name)
                state.hard_lock_insistence = 1
                return GuardDecision(reply=reply, transition="engage_hard_lock")
            reply = self._format(SOFT_LOCK_REPLIES[state.soft_lock_level % len(SOFT_LOCK_REPLIES)], name)
            state.soft_lock_level += 1
            return GuardDecision(reply=reply, transition="soft_lock_hold")

        if signals.is_technical:
            self._register_technical(state, signals.technical_topic)
            threshold = THRESHOLD_IDENTIFIED if has_identity else THRESHOLD_ANONYMOUS
            transition = "clear_soft_lock" if cleared else "count_technical"
            if state.technical_streak >= HARD_LOCK_STREAK and not has_identity:
                self._engage_hard_lock(state)
                transition = "engage_hard_lock"
            if state.technical_streak >= threshold:
                self._engage_soft_lock(state)
                if transition != "engage_hard_lock":
                    transition = "engage_soft_lock"
                return GuardDecision(reply=self._format(REDIRECT_REPLY, name), transition=transition)
            return GuardDecision(transition=transition)

        state.technical_streak = max(0.0, state.technical_streak - STREAK_STEP)
        if signals.supplied_name or signals.supplied_id:
            state.technical_streak = 0.0
            if has_name and has_id and state.soft_lock:
                self._clear_soft_lock(state)
                cleared = True
        return GuardDecision(transition="clear_soft_lock" if cleared else "decay")

    def _register_technical(self, state: EscalationState, topic: Optional[str]) -> None:
        # Insisting on one theme weighs more than a spread of questions.
        weight = SAME_TOPIC_STEP if same_topic(topic, state.last_technical_topic) else STREAK_STEP
        state.technical_streak += weight
        if topic:
            state.last_technical_topic = topic

    def _engage_soft_lock(self, state: EscalationState) -> None:
        state.soft_lock = True
        logger.info("guard transition=engage_soft_lock streak=%.1f", state.technical_streak)

    def _clear_soft_lock(self, state: EscalationState) -> None:
        # Never touches the hard lock.
        state.soft_lock = False
        state.technical_streak = 0.0
        state.soft_lock_level = 0
        state.last_technical_topic = None
        logger.info("guard transition=clear_soft_lock")

    def _engage_hard_lock(self, state: EscalationState) -> None:
        state.hard_lock = True
        state.soft_lock = True
        logger.info("guard transition=engage_hard_lock streak=%.1f", state.technical_streak)

    def _release_hard_lock(self, state: EscalationState) -> None:
        state.hard_lock = False
        state.hard_lock_insistence = 0
        self._clear_soft_lock(state)
        logger.info("guard transition=release_hard_lock")

    def _format(self, template: str, name: str) -> str:
        # Drop the "{name}, " lead-in when the user is still anonymous.
        if not name and template.startswith("{name}, "):
            rest = template[len("{name}, "):]
            template = rest[:1].upper() + rest[1:]
        return template.format(name=name, lawyer=self._lawyer)
