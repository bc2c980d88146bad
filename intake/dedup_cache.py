from __future__ import annotations

from typing import Optional

from .models import LastExchange, Session


class DedupCache:
    """Answers an exact repeat of the previous message with the previous reply."""

    def __init__(self, window_sec: float = 30.0) -> None:
        self._window_sec = window_sec

    def lookup(self, session: Session, text: str, now: float) -> Optional[str]:
        """Purpose: Return the stored answer when text repeats the last question in time.
        Inputs/Outputs: Inputs are the session, the inbound text, and the current time;
            output is the previous answer or None.
        Side Effects / State: None; a hit must not change the session at all.
        Dependencies: Session.last_qa.
        Failure Modes: None.
        If Removed: Transport re-deliveries produce double answers and double counting.
        Testing Notes: Same text 5s later -> hit; 60s later or different text -> None.
        """
        # Only the immediately preceding exchange is compared.
        last = session.last_qa
        if last is None or last.question != text:
            return None
        if now - last.timestamp >= self._window_sec:
            return None
        return last.answer

    def remember(self, session: Session, question: str, answer: str, now: float) -> None:
        session.last_qa = LastExchange(question=question, answer=answer, timestamp=now)
