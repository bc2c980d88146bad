from pathlib import Path

from intake.config import load_settings


class TestLoadSettings:
    """Environment-driven configuration."""

    def test_defaults(self, monkeypatch):
        for name in ("SESSIONS_PATH", "DEDUP_WINDOW_SEC", "CONFIRM_STALE_SEC", "TOPIC_LLM_FALLBACK", "HOLD_FRAGMENTS"):
            monkeypatch.delenv(name, raising=False)
        settings = load_settings()
        assert settings.sessions_path is None
        assert settings.dedup_window_sec == 30.0
        assert settings.confirm_stale_sec == 120.0
        assert settings.topic_llm_fallback is True
        assert settings.hold_fragments is False
        assert (settings.prompts_dir / "system_preamble.txt").exists()

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("SESSIONS_PATH", "/tmp/sessions.json")
        monkeypatch.setenv("DEDUP_WINDOW_SEC", "10")
        monkeypatch.setenv("HOLD_FRAGMENTS", "yes")
        monkeypatch.setenv("LAWYER_NAME", "Dra. Helena")
        settings = load_settings()
        assert settings.sessions_path == Path("/tmp/sessions.json")
        assert settings.dedup_window_sec == 10.0
        assert settings.hold_fragments is True
        assert settings.lawyer_name == "Dra. Helena"
