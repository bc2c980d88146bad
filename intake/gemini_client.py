from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional, Sequence, Tuple

import google.generativeai as genai
from google.generativeai import types as genai_types

from .config import Settings
from .models import Turn

logger = logging.getLogger("intake.llm")

_UNFILTERED_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

DEFAULT_SAFETY_SETTINGS = [
    {
        "category": getattr(genai_types.HarmCategory, name),
        "threshold": genai_types.HarmBlockThreshold.BLOCK_NONE,
    }
    for name in _UNFILTERED_CATEGORIES
]

ROLE_MAP = {"user": "user", "assistant": "model"}


class ServiceError(RuntimeError):
    """Transport, quota, timeout or SDK failure of the completion service."""


class GeminiClient:
    """Gemini-backed completion and classification service with per-call timeouts."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Set up the SDK key, a per-instruction model cache and the worker pool.
        Inputs/Outputs: Takes Settings; returns nothing.
        Side Effects / State: Calls genai.configure (process-wide); every later call runs
            in the pool so it can be abandoned after settings.llm_timeout_sec.
        Dependencies: google.generativeai, config.Settings.
        Failure Modes: ValueError when GEMINI_API_KEY or GEMINI_MODEL is empty.
        If Removed: Orchestrator replies and technical-question detection cannot run.
        Testing Notes: An empty key must fail before any SDK call.
        """
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is not set")
        model_name = _normalize_model_name(settings.gemini_model)
        if not model_name:
            raise ValueError("GEMINI_MODEL is empty")
        genai.configure(api_key=settings.gemini_api_key)
        self._settings = settings
        self._model_name = model_name
        self._models: Dict[str, genai.GenerativeModel] = {}
        self._executor = ThreadPoolExecutor(max_workers=settings.llm_workers, thread_name_prefix="llm")

    def complete(self, turns: Sequence[Turn], temperature: float = 0.8, max_tokens: int = 350) -> str:
        """Purpose: Generate the next assistant reply from an ordered turn list.
        Inputs/Outputs: Inputs are turns (system/user/assistant) and sampling options;
            returns stripped reply text.
        Side Effects / State: Network call bounded by the configured timeout.
        Dependencies: _to_contents for role mapping; _call for timeout and error wrapping.
        Failure Modes: Raises ServiceError on SDK errors, timeouts, or empty replies.
        If Removed: Every non-scripted reply in the dialog fails.
        Testing Notes: Mock GenerativeModel and assert system turns become system_instruction.
        """
        # System turns travel as system_instruction; the rest become chat contents.
        system_instruction, contents = _to_contents(turns)
        text = self._call(contents, system_instruction, temperature, max_tokens)
        if not text:
            raise ServiceError("empty completion")
        return text

    def classify(self, text: str, task_prompt: str, max_tokens: int = 20) -> str:
        """Purpose: Run a short deterministic classification prompt over one message.
        Inputs/Outputs: Inputs are the message and the task prompt; returns the raw label.
        Side Effects / State: Network call bounded by the configured timeout.
        Dependencies: _call with temperature 0.
        Failure Modes: Raises ServiceError; callers choose their conservative default.
        If Removed: Technical-question detection and topic fallback stop working.
        Testing Notes: Verify the message is embedded after the task prompt.
        """
        # Keep the task prompt and the message in one user turn.
        prompt = f"{task_prompt}\n\nMensagem: \"{text}\"\nResposta:"
        contents = [{"role": "user", "parts": [{"text": prompt}]}]
        return self._call(contents, None, 0.0, max_tokens)

    def _model(self, system_instruction: Optional[str]) -> genai.GenerativeModel:
        # Models carrying a system instruction are built per call; plain ones are cached.
        if system_instruction:
            return genai.GenerativeModel(self._model_name, system_instruction=system_instruction)
        if self._model_name not in self._models:
            self._models[self._model_name] = genai.GenerativeModel(self._model_name)
        return self._models[self._model_name]

    def _generate(
        self, contents: List[dict], system_instruction: Optional[str], temperature: float, max_tokens: int
    ) -> str:
        response = self._model(system_instruction).generate_content(
            contents,
            generation_config={
                "temperature": temperature,
                "max_output_tokens": max_tokens,
            },
            safety_settings=DEFAULT_SAFETY_SETTINGS,
        )
        text: Optional[str] = getattr(response, "text", None)
        return (text or "").strip()

    def _call(
        self, contents: List[dict], system_instruction: Optional[str], temperature: float, max_tokens: int
    ) -> str:
        """Purpose: Execute one SDK call on the pool and convert every failure to ServiceError.
        Inputs/Outputs: Inputs are contents, optional system instruction, and options;
            returns the reply text.
        Side Effects / State: Occupies one pool worker until the SDK returns.
        Dependencies: ThreadPoolExecutor future with settings.llm_timeout_sec.
        Failure Modes: Timeout or any SDK exception raises ServiceError.
        If Removed: A stuck call would block the user's session lock indefinitely.
        Testing Notes: Patch _generate to sleep past the timeout and expect ServiceError.
        """
        # Bound the call; the worker may finish later but its result is discarded.
        future = self._executor.submit(self._generate, contents, system_instruction, temperature, max_tokens)
        try:
            return future.result(timeout=self._settings.llm_timeout_sec)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning("model=%s call timed out after %.1fs", self._model_name, self._settings.llm_timeout_sec)
            raise ServiceError("completion timed out") from exc
        except Exception as exc:
            logger.warning("model=%s call failed: %s", self._model_name, exc)
            raise ServiceError(str(exc)) from exc


def _normalize_model_name(name: Optional[str]) -> str:
    """Accept both "gemini-x" and the console form "models/gemini-x"."""
    cleaned = (name or "").strip()
    prefix, _, rest = cleaned.partition("models/")
    return rest if not prefix and rest else cleaned


def _to_contents(turns: Sequence[Turn]) -> Tuple[Optional[str], List[dict]]:
    """Purpose: Split ordered turns into a system instruction and Gemini chat contents.
    Inputs/Outputs: Input is a sequence of Turn; output is (system_instruction, contents).
    Side Effects / State: None.
    Dependencies: ROLE_MAP for user/assistant roles.
    Failure Modes: Unknown roles are sent as user turns.
    If Removed: The completion call cannot be expressed in SDK terms.
    Testing Notes: Preamble and directives join into one instruction in order.
    """
    # Collect system text in order and keep chat turns as role-tagged parts.
    system_parts: List[str] = []
    contents: List[dict] = []
    for turn in turns:
        if turn.role == "system":
            system_parts.append(turn.text)
            continue
        contents.append({"role": ROLE_MAP.get(turn.role, "user"), "parts": [{"text": turn.text}]})
    system_instruction = "\n\n".join(part for part in system_parts if part) or None
    return system_instruction, contents
