"""Tests for the Gemini client wrapper with the SDK patched out."""

import time
from unittest.mock import MagicMock, patch

import pytest

from intake.gemini_client import GeminiClient, ServiceError, _normalize_model_name, _to_contents
from intake.models import Turn

from conftest import make_settings


def make_client(genai_mock, reply="Olá!", **overrides):
    model = MagicMock()
    model.generate_content.return_value = MagicMock(text=reply)
    genai_mock.GenerativeModel.return_value = model
    return GeminiClient(make_settings(**overrides)), model


class TestGeminiClient:
    """Completion and classification calls."""

    def test_missing_key_raises(self):
        with pytest.raises(ValueError):
            GeminiClient(make_settings(gemini_api_key=""))

    @patch("intake.gemini_client.genai")
    def test_complete_uses_system_instruction(self, genai_mock):
        client, model = make_client(genai_mock, reply="  Olá, tudo bem?  ")
        turns = [
            Turn(role="system", text="preamble"),
            Turn(role="user", text="oi"),
            Turn(role="system", text="diretiva"),
        ]
        assert client.complete(turns, temperature=0.8, max_tokens=150) == "Olá, tudo bem?"
        genai_mock.configure.assert_called_once_with(api_key="test-key")
        genai_mock.GenerativeModel.assert_called_with("gemini-test", system_instruction="preamble\n\ndiretiva")
        contents = model.generate_content.call_args.args[0]
        assert contents == [{"role": "user", "parts": [{"text": "oi"}]}]
        config = model.generate_content.call_args.kwargs["generation_config"]
        assert config == {"temperature": 0.8, "max_output_tokens": 150}

    @patch("intake.gemini_client.genai")
    def test_empty_reply_is_a_service_error(self, genai_mock):
        client, _ = make_client(genai_mock, reply="")
        with pytest.raises(ServiceError):
            client.complete([Turn(role="user", text="oi")])

    @patch("intake.gemini_client.genai")
    def test_sdk_error_is_wrapped(self, genai_mock):
        client, model = make_client(genai_mock)
        model.generate_content.side_effect = RuntimeError("quota exceeded")
        with pytest.raises(ServiceError):
            client.classify("oi", "tarefa")

    @patch("intake.gemini_client.genai")
    def test_classify_embeds_message(self, genai_mock):
        client, model = make_client(genai_mock, reply="SIM")
        assert client.classify("Qual o prazo?", "Responda SIM ou NÃO.") == "SIM"
        prompt = model.generate_content.call_args.args[0][0]["parts"][0]["text"]
        assert prompt.startswith("Responda SIM ou NÃO.")
        assert 'Mensagem: "Qual o prazo?"' in prompt
        assert model.generate_content.call_args.kwargs["generation_config"]["temperature"] == 0.0

    @patch("intake.gemini_client.genai")
    def test_timeout(self, genai_mock):
        client, _ = make_client(genai_mock, llm_timeout_sec=0.05)

        def slow(*args):
            time.sleep(0.5)
            return "tarde demais"

        with patch.object(client, "_generate", side_effect=slow):
            with pytest.raises(ServiceError):
                client.classify("oi", "tarefa")


class TestHelpers:
    """Model name and content conversion."""

    def test_normalize_model_name(self):
        assert _normalize_model_name(" models/gemini-2.5-flash ") == "gemini-2.5-flash"
        assert _normalize_model_name(None) == ""

    def test_to_contents_maps_roles(self):
        system, contents = _to_contents(
            [Turn(role="user", text="oi"), Turn(role="assistant", text="olá")]
        )
        assert system is None
        assert [item["role"] for item in contents] == ["user", "model"]
