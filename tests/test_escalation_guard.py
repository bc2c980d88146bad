"""Tests for the soft/hard containment state machine."""

import random

from intake.escalation_guard import (
    HARD_LOCK_REPLIES,
    EscalationGuard,
    GuardSignals,
    GuardState,
    describes_situation,
    same_topic,
    signals_service_change,
)
from intake.models import CollectedFields, EscalationState

SITUATION = "Meu nome é Carlos Silva, sofri um acidente no trabalho mês passado e estou afastado."


def technical(topic):
    return GuardSignals(is_technical=True, technical_topic=topic)


class TestHeuristics:
    """Situation, service-change, topic and handoff detection."""

    def test_situation_description(self):
        assert describes_situation(SITUATION)

    def test_short_text_is_never_a_situation(self):
        assert not describes_situation("sofri um acidente ontem")

    def test_abstract_question_is_not_a_situation(self):
        assert not describes_situation("Gostaria de saber qual é o prazo legal para entrar com um recurso administrativo")

    def test_service_change(self):
        assert signals_service_change("Na verdade quero fazer uma procuração")
        assert not signals_service_change("qual o prazo?")

    def test_same_topic_is_substring_either_way(self):
        assert same_topic("prazo recurso inss", "prazo recurso")
        assert same_topic("prazo", "prazo recurso")
        assert not same_topic("aposentadoria", "prazo")
        assert not same_topic(None, "prazo")

    def test_handoff_requests(self):
        guard = EscalationGuard("Dr. Gabriel")
        assert guard.requests_handoff("Quero falar com o Dr. Gabriel")
        assert guard.requests_handoff("prefiro falar com um advogado")
        assert not guard.requests_handoff("oi")
        assert not guard.requests_handoff("Quero transferir meu carro")


class TestSoftLock:
    """Streak accounting and topic-scoped containment."""

    def test_anonymous_user_locks_after_two_same_topic_questions(self):
        guard = EscalationGuard()
        state = EscalationState()
        fields = CollectedFields()
        first = guard.evaluate(state, fields, technical("prazo recurso"))
        assert first.reply is None
        assert state.technical_streak == 1.0
        second = guard.evaluate(state, fields, technical("prazo recurso"))
        assert state.soft_lock
        assert not state.hard_lock
        assert state.technical_streak == 2.5
        assert second.transition == "engage_soft_lock"
        assert second.reply.startswith("Por questões de segurança")

    def test_identified_user_gets_a_higher_threshold(self):
        guard = EscalationGuard()
        state = EscalationState()
        fields = CollectedFields(subject_name="Maria Souza")
        assert guard.evaluate(state, fields, technical("prazo recurso")).reply is None
        assert guard.evaluate(state, fields, technical("valor beneficio")).reply is None
        decision = guard.evaluate(state, fields, technical("documentos imovel"))
        assert state.soft_lock
        assert not state.hard_lock
        assert decision.reply.startswith("Maria, por questões de segurança")
        assert "Dr. Gabriel" in decision.reply

    def test_rotation_while_soft_locked(self):
        guard = EscalationGuard()
        state = EscalationState(soft_lock=True, technical_streak=3.0, last_technical_topic="prazo recurso")
        fields = CollectedFields(subject_name="Maria Souza")
        first = guard.evaluate(state, fields, technical("prazo recurso"))
        second = guard.evaluate(state, fields, technical("prazo recurso"))
        assert first.reply.startswith("Maria, preciso entender melhor")
        assert "Dr. Gabriel" in second.reply
        assert state.soft_lock_level == 2

    def test_non_technical_message_clears_soft_lock(self):
        guard = EscalationGuard()
        state = EscalationState(soft_lock=True, technical_streak=2.5, soft_lock_level=3, last_technical_topic="prazo")
        decision = guard.evaluate(state, CollectedFields(), GuardSignals())
        assert decision.reply is None
        assert decision.transition == "clear_soft_lock"
        assert not state.soft_lock
        assert state.technical_streak == 0.0
        assert state.soft_lock_level == 0

    def test_topic_change_clears_soft_lock(self):
        guard = EscalationGuard()
        state = EscalationState(soft_lock=True, technical_streak=2.5, last_technical_topic="prazo recurso")
        decision = guard.evaluate(state, CollectedFields(), technical("valor beneficio"))
        assert decision.reply is None
        assert not state.soft_lock
        assert state.technical_streak == 1.0

    def test_decay_and_reset_on_identity(self):
        guard = EscalationGuard()
        state = EscalationState(technical_streak=1.5)
        guard.evaluate(state, CollectedFields(), GuardSignals())
        assert state.technical_streak == 0.5
        state.technical_streak = 1.5
        guard.evaluate(state, CollectedFields(), GuardSignals(supplied_name="Ana Souza"))
        assert state.technical_streak == 0.0


class TestHardLock:
    """Cross-topic containment and its two exits."""

    def test_three_same_topic_questions_engage_hard_lock(self):
        guard = EscalationGuard()
        state = EscalationState()
        fields = CollectedFields()
        for _ in range(2):
            guard.evaluate(state, fields, technical("prazo recurso inss"))
        decision = guard.evaluate(state, fields, technical("prazo recurso inss"))
        assert state.hard_lock
        assert guard.state_of(state) == GuardState.HARD_LOCKED
        assert decision.transition == "engage_hard_lock"
        assert decision.reply.startswith("Conforme te falei antes")
        assert state.hard_lock_insistence == 1

    def test_hard_lock_rotates_and_then_repeats_last_message(self):
        guard = EscalationGuard()
        state = EscalationState(hard_lock=True, soft_lock=True, hard_lock_insistence=1)
        replies = [guard.evaluate(state, CollectedFields(), GuardSignals()).reply for _ in range(5)]
        assert replies[0] == HARD_LOCK_REPLIES[1]
        assert replies[-1] == replies[-2] == HARD_LOCK_REPLIES[4]

    def test_service_change_does_not_release_hard_lock(self):
        guard = EscalationGuard()
        state = EscalationState(hard_lock=True, soft_lock=True)
        decision = guard.evaluate(state, CollectedFields(), GuardSignals(service_change=True))
        assert state.hard_lock
        assert decision.reply is not None

    def test_name_without_situation_keeps_lock(self):
        guard = EscalationGuard()
        state = EscalationState(hard_lock=True, soft_lock=True)
        guard.evaluate(state, CollectedFields(), GuardSignals(supplied_name="Carlos Silva"))
        assert state.hard_lock

    def test_release_by_name_and_situation(self):
        guard = EscalationGuard()
        state = EscalationState(hard_lock=True, soft_lock=True, technical_streak=4.0, hard_lock_insistence=3)
        decision = guard.evaluate(
            state, CollectedFields(), GuardSignals(supplied_name="Carlos Silva", describes_situation=True)
        )
        assert decision.released
        assert not decision.handoff
        assert decision.reply is None
        assert not state.hard_lock
        assert not state.soft_lock
        assert state.technical_streak == 0.0
        assert state.hard_lock_insistence == 0

    def test_release_by_handoff(self):
        guard = EscalationGuard()
        state = EscalationState(hard_lock=True, soft_lock=True)
        decision = guard.evaluate(state, CollectedFields(), GuardSignals(handoff_request=True))
        assert decision.released
        assert decision.handoff
        assert guard.state_of(state) == GuardState.IDLE

    def test_hard_lock_only_released_by_its_exits(self):
        guard = EscalationGuard()
        state = EscalationState()
        rng = random.Random(7)
        topics = ["prazo recurso", "valor beneficio", None]
        for _ in range(500):
            signals = GuardSignals(
                is_technical=rng.random() < 0.6,
                technical_topic=rng.choice(topics),
                service_change=rng.random() < 0.2,
                supplied_name=rng.choice([None, None, "Ana Souza"]),
                supplied_id=rng.choice([None, None, None, "12345678901"]),
                handoff_request=rng.random() < 0.05,
                describes_situation=rng.random() < 0.2,
            )
            was_locked = state.hard_lock
            guard.evaluate(state, CollectedFields(), signals)
            if was_locked and not state.hard_lock:
                assert signals.handoff_request or (signals.supplied_name and signals.describes_situation)
            if state.hard_lock:
                assert state.soft_lock
