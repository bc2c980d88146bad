"""Shared fakes and fixtures for the intake test suite."""

from pathlib import Path

import pytest

from intake.config import Settings
from intake.gemini_client import ServiceError
from intake.orchestrator import IntakeOrchestrator
from intake.session_store import SessionStore

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "intake" / "prompts"
DEFAULT_REPLY = "Claro! Pode me contar um pouco mais?"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ScriptedCompletion:
    """Completion client returning queued replies, then a default one."""

    def __init__(self, replies=None, default=DEFAULT_REPLY):
        self.replies = list(replies or [])
        self.default = default
        self.calls = []
        self.fail = False

    def complete(self, turns, temperature=0.8, max_tokens=350):
        self.calls.append({"turns": list(turns), "temperature": temperature, "max_tokens": max_tokens})
        if self.fail:
            raise ServiceError("service unavailable")
        if self.replies:
            return self.replies.pop(0)
        return self.default


class ScriptedClassifier:
    """Classification client answering by prompt type.

    ``technical`` decides the SIM/NÃO answer per message text.
    """

    def __init__(self, technical=None, topic_label="nenhum", fallback_label="geral"):
        self.technical = technical or (lambda text: False)
        self.topic_label = topic_label
        self.fallback_label = fallback_label
        self.calls = []
        self.fail = False

    def classify(self, text, task_prompt, max_tokens=20):
        self.calls.append((text, task_prompt))
        if self.fail:
            raise ServiceError("service unavailable")
        if "SIM ou NÃO" in task_prompt:
            return "SIM" if self.technical(text) else "NÃO"
        if "assunto jurídico" in task_prompt:
            return self.topic_label
        return self.fallback_label


def make_settings(**overrides):
    values = dict(
        gemini_api_key="test-key",
        gemini_model="gemini-test",
        prompts_dir=PROMPTS_DIR,
        sessions_path=None,
        llm_timeout_sec=5.0,
        llm_workers=2,
        dedup_window_sec=30.0,
        confirm_stale_sec=120.0,
        session_max_age_hours=24.0,
        sweep_interval_sec=3600.0,
        admin_key="secret",
        lawyer_name="Dr. Gabriel",
        assistant_name="Sophia",
        topic_llm_fallback=False,
        hold_fragments=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def completion():
    return ScriptedCompletion()


@pytest.fixture
def classifier():
    return ScriptedClassifier()


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def build_orchestrator(completion, classifier, store, clock):
    def build(**setting_overrides):
        return IntakeOrchestrator(
            make_settings(**setting_overrides),
            completion=completion,
            classifier=classifier,
            store=store,
            clock=clock,
        )

    return build


@pytest.fixture
def orchestrator(build_orchestrator):
    return build_orchestrator()


@pytest.fixture
def settings():
    return make_settings()
