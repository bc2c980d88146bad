from __future__ import annotations

import logging
import re
from typing import Optional

from .entity_extractor import looks_like_id_number
from .gemini_client import ServiceError
from .utils import normalize_text

logger = logging.getLogger("intake.technical")

MIN_WORDS = 3
MAX_TOPIC_CHARS = 60
YES_RE = re.compile(r"\bsim\b")


class TechnicalQuestionDetector:
    """Classifies requests for substantive legal guidance via the classification service."""

    def __init__(self, classifier: object, question_prompt: str, topic_prompt: str) -> None:
        self._classifier = classifier
        self._question_prompt = question_prompt
        self._topic_prompt = topic_prompt

    def is_technical(self, text: str) -> bool:
        """Purpose: Decide whether a message asks for professional (legal) guidance.
        Inputs/Outputs: Input is the raw message; output is True for technical questions.
        Side Effects / State: One classification call for messages worth classifying.
        Dependencies: classifier.classify with the technical-question prompt.
        Failure Modes: ServiceError returns False (not technical).
        If Removed: The escalation guard never engages.
        Testing Notes: A classifier answering "SIM" -> True; raising ServiceError -> False.
        """
        # Very short answers and bare ID numbers are data, not questions.
        normalized = normalize_text(text)
        words = len(normalized.split())
        if words < MIN_WORDS or (words <= 4 and looks_like_id_number(text)):
            return False
        try:
            raw = self._classifier.classify(text, self._question_prompt)
        except ServiceError:
            logger.warning("technical classification failed; treating as not technical")
            return False
        return bool(YES_RE.search(normalize_text(raw)))

    def technical_topic(self, text: str) -> Optional[str]:
        """Return a short lowercase label for the subject of a technical question, or None."""
        try:
            raw = self._classifier.classify(text, self._topic_prompt)
        except ServiceError:
            logger.warning("technical topic classification failed")
            return None
        label = normalize_text(raw.strip().splitlines()[0] if raw and raw.strip() else "")
        if not label or label in {"nenhum", "nenhuma", "none"}:
            return None
        return label[:MAX_TOPIC_CHARS]
