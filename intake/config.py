from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for the model, dialog timings, and runtime limits."""
    gemini_api_key: str
    gemini_model: str
    prompts_dir: Path
    sessions_path: Optional[Path]
    llm_timeout_sec: float
    llm_workers: int
    dedup_window_sec: float
    confirm_stale_sec: float
    session_max_age_hours: float
    sweep_interval_sec: float
    admin_key: str
    lawyer_name: str
    assistant_name: str
    topic_llm_fallback: bool
    hold_fragments: bool
    temperature: float = 0.8
    initial_max_tokens: int = 150
    default_max_tokens: int = 350


def _env_flag(name: str, default: str) -> bool:
    # Accept the usual truthy spellings.
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid numeric env values raise ValueError.
    If Removed: The orchestrator and HTTP app cannot be configured at startup.
    Testing Notes: Verify defaults and overrides via monkeypatched environment.
    """
    # Resolve the optional session file, then build Settings.
    sessions_path = os.getenv("SESSIONS_PATH")
    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        sessions_path=Path(sessions_path) if sessions_path else None,
        llm_timeout_sec=float(os.getenv("LLM_TIMEOUT_SEC", "30")),
        llm_workers=int(os.getenv("LLM_WORKERS", "8")),
        dedup_window_sec=float(os.getenv("DEDUP_WINDOW_SEC", "30")),
        confirm_stale_sec=float(os.getenv("CONFIRM_STALE_SEC", "120")),
        session_max_age_hours=float(os.getenv("SESSION_MAX_AGE_HOURS", "24")),
        sweep_interval_sec=float(os.getenv("SWEEP_INTERVAL_SEC", "3600")),
        admin_key=os.getenv("ADMIN_KEY", ""),
        lawyer_name=os.getenv("LAWYER_NAME", "Dr. Gabriel"),
        assistant_name=os.getenv("ASSISTANT_NAME", "Sophia"),
        topic_llm_fallback=_env_flag("TOPIC_LLM_FALLBACK", "true"),
        hold_fragments=_env_flag("HOLD_FRAGMENTS", "false"),
    )
