import json
import re
import unicodedata
from typing import Any, Dict, Iterable, Optional


def normalize_text(text: str) -> str:
    """Purpose: Fold a chat message into the form every keyword table is written in.
    Inputs/Outputs: Raw message in; lowercase text without accents or punctuation
        (hyphen, slash, dot and underscore kept) and single-spaced, out.
    Side Effects / State: None.
    Dependencies: Uses unicodedata and regex; called by guards, classifiers, and documents.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Keyword rules miss accented spellings ("transferência" vs "transferencia").
    Testing Notes: "Transferência de Veículo!" -> "transferencia de veiculo".
    """
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9\s\-_/.]+", " ", stripped)
    return re.sub(r"\s+", " ", cleaned).strip()


def message_has_any_term(normalized: str, terms: Iterable[str]) -> bool:
    """Purpose: Tell whether any term occurs as whole words in already-normalized text.
    Inputs/Outputs: Inputs are the normalized message and a term list; output is a bool.
    Side Effects / State: None.
    Dependencies: None.
    Failure Modes: Empty text or an empty term list gives False.
    If Removed: Confirmation/negation detection falls back to noisy substrings.
    Testing Notes: "ta certo" matches "certo"; "acertou" does not.
    """
    # Pad with spaces so "certo" never matches inside "acertou".
    if not normalized or not terms:
        return False
    padded = f" {normalized} "
    for term in terms:
        if term and f" {term} " in padded:
            return True
    return False


def digits_only(text: str) -> str:
    return re.sub(r"\D", "", text or "")


def format_cpf(value: Optional[str]) -> str:
    """Format an 11-digit CPF as XXX.XXX.XXX-XX; other inputs are returned as given."""
    digits = digits_only(value or "")
    if len(digits) != 11:
        return value or ""
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def mask_id_value(value: object) -> str:
    """Purpose: Hide a CPF or phone number in log lines.
    Inputs/Outputs: Any value in; "***" plus its last three digits out.
    Side Effects / State: None.
    Dependencies: Uses digits_only.
    Failure Modes: Short or non-numeric inputs yield a generic mask.
    If Removed: Logs may expose national ID numbers.
    Testing Notes: "123.456.789-01" -> "***901".
    """
    if value is None:
        return ""
    digits = digits_only(str(value))
    if len(digits) < 4:
        return "***"
    return "***" + digits[-3:]


def first_name(full_name: Optional[str], default: str = "") -> str:
    if not full_name or not full_name.strip():
        return default
    return full_name.strip().split()[0]


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Cut the outermost {...} span out of a model reply.
    Inputs/Outputs: Input is the raw reply; output is the brace-delimited substring or None.
    Side Effects / State: None.
    Dependencies: Used by safe_json_loads.
    Failure Modes: None when there is no opening or closing brace in the right order.
    If Removed: Model outputs wrapped in prose or code fences cannot be parsed.
    Testing Notes: A reply wrapped in a ```json fence still yields the object text.
    """
    # First "{" to last "}".
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def safe_json_loads(text: str) -> Optional[Dict[str, Any]]:
    """Purpose: Decode the JSON object embedded in a model reply.
    Inputs/Outputs: Input is the raw reply; output is a dict, or None when no object decodes.
    Side Effects / State: None.
    Dependencies: Uses extract_json_block and json.loads; called by field extraction.
    Failure Modes: Returns None on JSONDecodeError, missing block, or non-object JSON.
    If Removed: Field extraction crashes on malformed model output.
    Testing Notes: "{\"a\": 1}" -> {"a": 1}; "{a: 1}" and "[1]" -> None.
    """
    block = extract_json_block(text)
    if not block:
        return None
    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
