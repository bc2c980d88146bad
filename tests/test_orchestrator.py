"""End-to-end dialog tests for the intake orchestrator with scripted services."""

import random

import pytest

from intake.entity_extractor import extract_person_name
from intake.escalation_guard import HARD_LOCK_REPLIES, EscalationGuard, describes_situation
from intake.models import CollectedFields, Session, Turn
from intake.orchestrator import (
    APOLOGY_REPLY,
    CONFIRMED_REPLY,
    DOCUMENT_REJECTED_REPLY,
    IDENTIFIED_REPLY,
    IDENTIFIED_WITH_OBJECTIVE_REPLY,
    REASK_COUNTERPART_REPLY,
    UnknownSession,
    is_affirmative,
    is_negative,
    session_for_log,
)
from intake.phases import Phase, Topic

from conftest import DEFAULT_REPLY, ScriptedClassifier

USER = "5511988887777"
SUBJECT = dict(subject_name="João Carlos Pereira", subject_id="12345678901")
COUNTERPART = dict(counterpart_name="Pedro Henrique Souza", counterpart_id="98765432100")


def send(orchestrator, clock, text, seconds=10):
    clock.advance(seconds)
    return orchestrator.handle_inbound_message(USER, text)


def phase_of(store):
    return store.get(USER).phase


def identify(orchestrator, clock):
    send(orchestrator, clock, "Olá, preciso de uma procuração para transferência de veículo")
    send(orchestrator, clock, "Meu nome é João Carlos Pereira")
    return send(orchestrator, clock, "12345678901")


def seed_session(store, clock, **kwargs):
    session = Session(user_id=USER, created_at=clock.now, last_activity_at=clock.now, **kwargs)
    store.commit(session)
    return session


class TestAnswerConfirmation:
    """Yes/no detection for confirmation prompts."""

    def test_affirmative(self):
        assert is_affirmative("Sim, está correto")
        assert is_affirmative("ok")
        assert not is_affirmative("não, está errado")

    def test_negative(self):
        assert is_negative("Não, o CPF está errado")
        assert not is_negative("perfeito")


class TestEscalationFlow:
    """Technical questions are contained before identification."""

    @pytest.fixture
    def classifier(self):
        return ScriptedClassifier(technical=lambda text: "prazo" in text.lower(), topic_label="prazo recurso inss")

    def lock(self, orchestrator, clock):
        first = send(orchestrator, clock, "Qual o prazo para recorrer de um benefício negado pelo INSS?")
        second = send(orchestrator, clock, "E qual o prazo para recorrer dessa decisão do INSS?")
        third = send(orchestrator, clock, "Mas qual é o prazo exato do recurso no INSS?")
        return first, second, third

    def test_soft_then_hard_lock(self, orchestrator, clock, store, completion):
        first, second, third = self.lock(orchestrator, clock)
        assert first == DEFAULT_REPLY
        session = store.get(USER)
        assert session.topic == Topic.PENSION_BENEFIT
        assert session.phase == Phase.IDENTIFICATION
        assert second.startswith("Por questões de segurança")
        assert third.startswith("Conforme te falei antes")
        assert store.get(USER).escalation.hard_lock
        assert len(completion.calls) == 1

    def test_hard_lock_skips_classification(self, orchestrator, clock, classifier):
        self.lock(orchestrator, clock)
        calls = len(classifier.calls)
        reply = send(orchestrator, clock, "Me responde só isso, qual o prazo?")
        assert reply == HARD_LOCK_REPLIES[1]
        assert len(classifier.calls) == calls

    def test_release_by_situation(self, orchestrator, clock, store):
        self.lock(orchestrator, clock)
        reply = send(
            orchestrator, clock, "Meu nome é Carlos Silva, sofri um acidente no trabalho mês passado e estou afastado."
        )
        assert reply == DEFAULT_REPLY
        session = store.get(USER)
        assert not session.escalation.hard_lock
        assert session.fields.subject_name == "Carlos Silva"
        assert session.phase == Phase.COLLECTING_ID_NUMBER

    def test_release_by_handoff(self, orchestrator, clock, store, completion):
        self.lock(orchestrator, clock)
        send(orchestrator, clock, "Quero falar com o Dr. Gabriel, por favor")
        session = store.get(USER)
        assert not session.escalation.hard_lock
        assert session.fields.handoff_requested
        system_text = " ".join(turn.text for turn in completion.calls[-1]["turns"] if turn.role == "system")
        assert "falar diretamente com o Dr. Gabriel" in system_text


class TestIdentification:
    """Name and CPF capture in either order."""

    def test_identified_with_objective(self, orchestrator, clock, store):
        reply = identify(orchestrator, clock)
        assert reply == IDENTIFIED_WITH_OBJECTIVE_REPLY.format(name="João", service="Transferência de veículo")
        session = store.get(USER)
        assert session.phase == Phase.COLLECTING_COUNTERPART_DATA
        assert session.topic == Topic.VEHICLE_TRANSFER
        assert session.fields.subject_id == "12345678901"
        assert session.fields.requested_service == "Transferência de veículo"

    def test_first_message_moves_to_identification(self, orchestrator, clock, store, completion):
        reply = send(orchestrator, clock, "Oi, boa tarde")
        assert reply == DEFAULT_REPLY
        assert phase_of(store) == Phase.IDENTIFICATION
        assert completion.calls[0]["max_tokens"] == 150
        assert completion.calls[0]["turns"][0].role == "system"

    def test_id_before_name(self, orchestrator, clock, store):
        send(orchestrator, clock, "Oi, boa tarde")
        reply = send(orchestrator, clock, "123.456.789-01")
        assert reply.startswith("Obrigada pelo CPF")
        assert phase_of(store) == Phase.COLLECTING_NAME
        reply = send(orchestrator, clock, "joão carlos pereira")
        assert reply == IDENTIFIED_REPLY.format(name="João")
        assert phase_of(store) == Phase.UNDERSTANDING_NEED

    def test_fragments_are_joined(self, build_orchestrator, clock, store):
        orchestrator = build_orchestrator(hold_fragments=True)
        assert send(orchestrator, clock, "Meu nome é João Carlos Pereira,") is None
        assert store.get(USER).held_fragment == "Meu nome é João Carlos Pereira,"
        reply = send(orchestrator, clock, "e meu CPF é 123.456.789-01")
        assert reply == IDENTIFIED_REPLY.format(name="João")
        session = store.get(USER)
        assert session.held_fragment is None
        assert session.phase == Phase.UNDERSTANDING_NEED

    def test_question_is_not_taken_as_a_name(self, orchestrator, clock, store):
        send(orchestrator, clock, "Oi, boa tarde")
        send(orchestrator, clock, "123.456.789-01")
        assert send(orchestrator, clock, "qual o motivo") == DEFAULT_REPLY
        session = store.get(USER)
        assert session.phase == Phase.COLLECTING_NAME
        assert session.fields.subject_name is None

    def test_empty_message(self, orchestrator, store):
        assert orchestrator.handle_inbound_message(USER, "   ") is None
        assert store.get(USER) is None


class TestCounterpartCollection:
    """Counterpart data, confirmation and correction."""

    def test_stale_answer_is_confirmed(self, orchestrator, clock, store):
        identify(orchestrator, clock)
        reply = send(orchestrator, clock, "O nome dele é Pedro Henrique Souza, CPF 987.654.321-00", seconds=180)
        assert reply == (
            "Recebi as informações. Apenas para confirmar: o nome da pessoa que você está autorizando é "
            "Pedro Henrique Souza, CPF 987.654.321-00, correto?"
        )
        assert phase_of(store) == Phase.CONFIRMING_DATA

    def test_prompt_answer_goes_to_offering(self, orchestrator, clock, store):
        identify(orchestrator, clock)
        reply = send(orchestrator, clock, "O nome dele é Pedro Henrique Souza, CPF 987.654.321-00", seconds=30)
        assert reply.startswith("Perfeito, João! Já tenho todas as informações")
        assert "987.654.321-00" in reply
        assert phase_of(store) == Phase.OFFERING_SOLUTION

    def test_confirmation_yes(self, orchestrator, clock, store):
        identify(orchestrator, clock)
        send(orchestrator, clock, "O nome dele é Pedro Henrique Souza, CPF 987.654.321-00", seconds=180)
        assert send(orchestrator, clock, "Sim, está correto") == CONFIRMED_REPLY
        assert phase_of(store) == Phase.OFFERING_SOLUTION

    def test_confirmation_no_then_correction(self, orchestrator, clock, store):
        identify(orchestrator, clock)
        send(orchestrator, clock, "O nome dele é Pedro Henrique Souza, CPF 987.654.321-00", seconds=180)
        assert send(orchestrator, clock, "Não, o CPF está errado") == REASK_COUNTERPART_REPLY
        session = store.get(USER)
        assert session.phase == Phase.COLLECTING_COUNTERPART_DATA
        assert session.awaiting_correction
        reply = send(orchestrator, clock, "O CPF correto é 111.222.333-44")
        assert "111.222.333-44" in reply
        session = store.get(USER)
        assert session.phase == Phase.CONFIRMING_DATA
        assert session.fields.counterpart_id == "11122233344"
        assert session.fields.counterpart_name == "Pedro Henrique Souza"
        assert not session.awaiting_correction


    def test_remark_during_confirmation_keeps_counterpart(self, orchestrator, clock, store):
        identify(orchestrator, clock)
        send(orchestrator, clock, "O nome dele é Pedro Henrique Souza, CPF 987.654.321-00", seconds=180)
        assert send(orchestrator, clock, "o nome está errado") == REASK_COUNTERPART_REPLY
        session = store.get(USER)
        assert session.phase == Phase.COLLECTING_COUNTERPART_DATA
        assert session.fields.counterpart_name == "Pedro Henrique Souza"
        assert session.awaiting_correction


class TestDocumentFlow:
    """From complete data to the signature step."""

    def reach_offering(self, orchestrator, clock):
        identify(orchestrator, clock)
        send(orchestrator, clock, "O nome dele é Pedro Henrique Souza, CPF 987.654.321-00", seconds=180)
        send(orchestrator, clock, "Sim, está correto")
        send(orchestrator, clock, "Moro na Rua das Flores, 120")

    def test_address_enables_generation(self, orchestrator, clock, store):
        self.reach_offering(orchestrator, clock)
        assert store.get(USER).fields.address == "Rua das Flores, 120"
        assert orchestrator.should_generate_document(USER)
        assert orchestrator.get_document_kind(USER) == "vehicle-poa"
        data = orchestrator.get_document_data(USER)
        assert data["counterpart_id"] == "987.654.321-00"
        orchestrator.mark_document_generated(USER)
        assert not orchestrator.should_generate_document(USER)

    def test_document_confirmed(self, orchestrator, clock, store):
        self.reach_offering(orchestrator, clock)
        orchestrator.await_document_confirmation(USER, "/tmp/procuracao.pdf", "João Carlos Pereira", "vehicle-poa")
        assert phase_of(store) == Phase.AWAITING_DOCUMENT_CONFIRMATION
        reply = send(orchestrator, clock, "ok, pode seguir")
        assert "DOCUMENTOS NECESSÁRIOS" in reply
        assert "Documento do veículo (CRV/CRLV)" in reply
        session = store.get(USER)
        assert session.phase == Phase.CLOSING
        assert session.pending_confirmation.confirmed

    def test_document_rejected(self, orchestrator, clock, store):
        self.reach_offering(orchestrator, clock)
        orchestrator.await_document_confirmation(USER, "/tmp/procuracao.pdf", "João Carlos Pereira", "vehicle-poa")
        assert send(orchestrator, clock, "não, o nome está errado") == DOCUMENT_REJECTED_REPLY
        session = store.get(USER)
        assert session.phase == Phase.COLLECTING_COUNTERPART_DATA
        assert session.pending_confirmation is None
        assert session.awaiting_correction
        assert not session.fields.document_generated

    def test_auto_close_after_long_offering(self, orchestrator, clock, store, completion):
        history = [Turn(role="user" if i % 2 == 0 else "assistant", text=f"mensagem {i}") for i in range(12)]
        seed_session(
            store,
            clock,
            phase=Phase.OFFERING_SOLUTION,
            topic=Topic.VEHICLE_TRANSFER,
            fields=CollectedFields(address="Rua das Flores, 120", **SUBJECT, **COUNTERPART),
            history=history,
        )
        completion.replies.append("Sua procuração está pronta, vou te enviar o documento.")
        send(orchestrator, clock, "Quando fica pronto?")
        assert phase_of(store) == Phase.CLOSING

    def test_supporting_documents(self, orchestrator, clock, store):
        seed_session(
            store,
            clock,
            phase=Phase.CLOSING,
            topic=Topic.PENSION_BENEFIT,
            fields=CollectedFields(requested_service="Auxílio-doença", **SUBJECT, **COUNTERPART),
        )
        status = orchestrator.record_document_received(USER, "Atestado médico")
        assert phase_of(store) == Phase.DOCUMENTS_RECEIVED
        assert len(status.missing) == 3
        assert status.notice is None
        orchestrator.record_document_received(USER, "Atestado médico")
        assert store.get(USER).documents_received == ["Atestado médico"]
        orchestrator.record_document_received(USER, "Laudo médico com CID")
        orchestrator.record_document_received(USER, "Comprovante de residência")
        status = orchestrator.record_document_received(USER, "Documento de identidade")
        assert status.complete
        assert "Dr. Gabriel" in status.notice
        session = store.get(USER)
        assert session.phase == Phase.CLOSING
        assert session.fields.documents_forwarded
        assert orchestrator.all_required_documents_received(USER)

    def test_upload_before_identification(self, orchestrator, clock, store):
        send(orchestrator, clock, "Oi, boa tarde")
        status = orchestrator.record_document_received(USER, "Comprovante de residência")
        assert status.notice is None
        assert phase_of(store) == Phase.IDENTIFICATION
        send(orchestrator, clock, "Meu nome é João Carlos Pereira")
        assert send(orchestrator, clock, "12345678901") == IDENTIFIED_REPLY.format(name="João")
        session = store.get(USER)
        assert session.fields.subject_name == "João Carlos Pereira"
        assert session.documents_received == ["Comprovante de residência"]
        orchestrator.record_document_received(USER, "Atestado médico")
        assert phase_of(store) == Phase.DOCUMENTS_RECEIVED

    def test_unknown_session(self, orchestrator):
        with pytest.raises(UnknownSession):
            orchestrator.get_document_kind("nobody")
        with pytest.raises(UnknownSession):
            orchestrator.record_document_received("nobody", "Atestado médico")


class TestTurnIntegrity:
    """Duplicates, failures and resets."""

    def test_duplicate_within_window(self, orchestrator, clock, store, completion, classifier):
        first = send(orchestrator, clock, "Oi, boa tarde")
        snapshot = store.get(USER)
        calls = (len(completion.calls), len(classifier.calls))
        second = send(orchestrator, clock, "Oi, boa tarde", seconds=5)
        assert second == first
        assert (len(completion.calls), len(classifier.calls)) == calls
        assert store.get(USER) == snapshot

    def test_duplicate_after_window(self, orchestrator, clock, completion):
        send(orchestrator, clock, "Oi, boa tarde")
        send(orchestrator, clock, "Oi, boa tarde", seconds=60)
        assert len(completion.calls) == 2

    def test_failure_on_new_user(self, orchestrator, clock, store, completion):
        completion.fail = True
        assert send(orchestrator, clock, "Oi, boa tarde") == APOLOGY_REPLY
        assert store.get(USER) is None

    def test_failure_leaves_session_unchanged(self, orchestrator, clock, store, completion):
        send(orchestrator, clock, "Oi, boa tarde")
        snapshot = store.get(USER)
        completion.fail = True
        assert send(orchestrator, clock, "Quero saber como funciona o atendimento") == APOLOGY_REPLY
        assert store.get(USER) == snapshot
        completion.fail = False
        assert send(orchestrator, clock, "Quero saber como funciona o atendimento", seconds=1) == DEFAULT_REPLY

    def test_history_never_holds_system_turns(self, orchestrator, clock, store):
        identify(orchestrator, clock)
        assert all(turn.role in {"user", "assistant"} for turn in store.get(USER).history)

    def test_log_snapshot_masks_ids(self, orchestrator, clock, store):
        identify(orchestrator, clock)
        snapshot = session_for_log(store.get(USER))
        assert snapshot["subject_id"] == "***901"
        assert snapshot["guard"] == "idle"

    def test_reset(self, orchestrator, clock, store):
        send(orchestrator, clock, "Oi, boa tarde")
        assert orchestrator.reset_session(USER)
        assert store.get(USER) is None
        assert not orchestrator.reset_session(USER)

    def test_no_locks_left_for_removed_or_unknown_users(self, orchestrator, clock, store):
        send(orchestrator, clock, "Oi, boa tarde")
        orchestrator.reset_session(USER)
        with pytest.raises(UnknownSession):
            orchestrator.mark_document_generated("nobody")
        assert store.lock_count() == 0

    def test_sweep_idle_sessions(self, orchestrator, clock, store):
        send(orchestrator, clock, "Oi, boa tarde")
        clock.advance(25 * 3600)
        assert orchestrator.sweep_idle_sessions() == [USER]
        assert store.get(USER) is None


MESSAGES = [
    "Oi, boa tarde",
    "Meu nome é João Carlos Pereira",
    "12345678901",
    "joão carlos pereira",
    "O nome dele é Pedro Henrique Souza, CPF 987.654.321-00",
    "O CPF correto é 111.222.333-44",
    "Sim, está correto",
    "Não, o CPF está errado",
    "o nome está errado",
    "qual o motivo",
    "Na verdade quero me aposentar",
    "Preciso de uma procuração para transferência de veículo",
    "Quero transferir um imóvel",
    "Qual o prazo para recorrer no INSS?",
    "E qual o prazo exato do recurso?",
    "Quero falar com o Dr. Gabriel, por favor",
    "Meu nome é Carlos Silva, sofri um acidente no trabalho mês passado e estou afastado.",
    "Moro na Rua das Flores, 120",
    "ok, pode seguir",
]
TEXT_FIELDS = ("subject_name", "subject_id", "counterpart_name", "counterpart_id", "address", "requested_service")


class TestRandomDialogs:
    """Collected data and the hard lock hold under arbitrary message orders."""

    @pytest.fixture
    def classifier(self):
        return ScriptedClassifier(technical=lambda text: "prazo" in text.lower(), topic_label="prazo recurso inss")

    @pytest.mark.parametrize("seed", range(6))
    def test_fields_never_cleared_and_hard_lock_kept(self, orchestrator, clock, store, classifier, seed):
        rng = random.Random(seed)
        guard = EscalationGuard("Dr. Gabriel")
        previous = None
        for _ in range(60):
            text = rng.choice(MESSAGES)
            was_locked = previous is not None and previous.escalation.hard_lock
            calls = len(classifier.calls)
            send(orchestrator, clock, text, seconds=rng.choice([5, 40, 200]))
            if rng.random() < 0.1:
                orchestrator.record_document_received(USER, "Comprovante de residência")
            session = store.get(USER)
            if previous is not None:
                for attr in TEXT_FIELDS:
                    if getattr(previous.fields, attr):
                        assert getattr(session.fields, attr), (seed, text, attr)
            if session.escalation.hard_lock:
                assert session.escalation.soft_lock
            if was_locked:
                if session.escalation.hard_lock:
                    assert len(classifier.calls) == calls
                else:
                    released_by_situation = extract_person_name(text, expecting_name=True) and describes_situation(text)
                    assert guard.requests_handoff(text) or released_by_situation
            previous = session
