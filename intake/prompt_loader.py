from __future__ import annotations

from pathlib import Path


def load_prompt(prompt_path: Path) -> str:
    """Return the prompt file's text without a leading BOM or surrounding blank lines.

    Files saved by Windows editors sometimes carry stray cp1252 bytes; those are
    dropped rather than failing startup. A missing file raises FileNotFoundError.
    """
    raw = prompt_path.read_bytes()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("utf-8", errors="ignore")
    return text.lstrip("\ufeff").strip()
