from __future__ import annotations

import json
import logging
from typing import Dict, List, Sequence

from .entity_extractor import extract_id_number
from .gemini_client import ServiceError
from .models import CollectedFields, Turn
from .utils import safe_json_loads

logger = logging.getLogger("intake.fields")

SPEAKER_LABELS = {"user": "cliente", "assistant": "assistente"}
# Model keys -> CollectedFields attributes.
FIELD_KEYS = {
    "servico_desejado": "requested_service",
    "outorgado_nome": "counterpart_name",
    "outorgado_cpf": "counterpart_id",
}
MAX_SERVICE_CHARS = 80


def render_transcript(history: Sequence[Turn], latest: str) -> str:
    # Plain "speaker: text" lines; system turns are never part of stored history.
    lines = [f"{SPEAKER_LABELS.get(turn.role, turn.role)}: {turn.text}" for turn in history]
    lines.append(f"cliente: {latest}")
    return "\n".join(lines)


def parse_extracted_fields(data: Dict[str, object]) -> Dict[str, str]:
    """Purpose: Validate a model-produced JSON object into CollectedFields values.
    Inputs/Outputs: Input is the decoded JSON dict; output maps field names to cleaned
        values, omitting anything empty or malformed.
    Side Effects / State: None.
    Dependencies: FIELD_KEYS and extract_id_number for the CPF value.
    Failure Modes: Non-string or implausible values are dropped, never raised.
    If Removed: Free-text model output would be copied into the session unchecked.
    Testing Notes: {"outorgado_cpf": "123.456.789-01"} -> {"counterpart_id": "12345678901"}.
    """
    # Keep only plausible values; the model is allowed to be wrong.
    cleaned: Dict[str, str] = {}
    for key, attr in FIELD_KEYS.items():
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        value = " ".join(value.split())
        if attr == "counterpart_id":
            digits = extract_id_number(value)
            if digits:
                cleaned[attr] = digits
        elif attr == "counterpart_name":
            if len(value.split()) >= 2:
                cleaned[attr] = value
        elif len(value) <= MAX_SERVICE_CHARS:
            cleaned[attr] = value
    return cleaned


def merge_into_empty(fields: CollectedFields, extracted: Dict[str, str]) -> List[str]:
    # Existing values always win.
    filled = []
    for attr, value in extracted.items():
        if not getattr(fields, attr):
            setattr(fields, attr, value)
            filled.append(attr)
    return filled


class FieldExtractor:
    """Asks the completion model for a JSON summary of the dialog's open fields."""

    def __init__(self, completion: object, task_prompt: str, max_tokens: int = 200) -> None:
        self._completion = completion
        self._task_prompt = task_prompt
        self._max_tokens = max_tokens

    def extract(self, history: Sequence[Turn], latest: str) -> Dict[str, str]:
        """Purpose: Extract requested service and counterpart data from the conversation.
        Inputs/Outputs: Inputs are the stored history and the current message; output is
            a dict of cleaned field values (possibly empty).
        Side Effects / State: One completion call.
        Dependencies: completion.complete, safe JSON parsing, parse_extracted_fields.
        Failure Modes: ServiceError or malformed JSON are logged and yield {}.
        If Removed: Users who described their need in prose are asked for it again.
        Testing Notes: A reply wrapped in prose or code fences still parses.
        """
        # Deterministic decoding; the reply must be a single JSON object.
        turns = [
            Turn(role="system", text=self._task_prompt),
            Turn(role="user", text=render_transcript(history, latest)),
        ]
        try:
            raw = self._completion.complete(turns, temperature=0.0, max_tokens=self._max_tokens)
        except ServiceError:
            logger.warning("field extraction call failed; ignoring")
            return {}
        data = safe_json_loads(raw)
        if data is None:
            logger.warning("field extraction returned no JSON object; ignoring")
            return {}
        extracted = parse_extracted_fields(data)
        if extracted:
            logger.debug("field extraction result=%s", json.dumps(sorted(extracted), ensure_ascii=True))
        return extracted
