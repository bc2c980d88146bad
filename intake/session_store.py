from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError

from .models import Session

logger = logging.getLogger("intake.sessions")


class SessionStore:
    """Per-user session registry with single-writer locks and optional JSON persistence."""

    def __init__(self, path: Optional[Path] = None) -> None:
        """Purpose: Initialize the store and hydrate persisted sessions if available.
        Inputs/Outputs: Input is an optional JSON file path; no return value.
        Side Effects / State: Loads sessions into memory; creates the registry lock.
        Dependencies: Calls _load; relies on the Session model for validation.
        Failure Modes: Corrupt JSON or invalid records are skipped with a warning.
        If Removed: The orchestrator has nowhere to keep per-user state.
        Testing Notes: A store pointed at a file written by another store sees its sessions.
        """
        # Keep configuration and preload persisted sessions if present.
        self._path = path
        self._sessions: Dict[str, Session] = {}
        self._user_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._load()

    def _load(self) -> None:
        # Read and validate persisted JSON if present.
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("sessions file %s is not valid JSON; starting empty", self._path)
            return
        for user_id, raw in (data.get("sessions") or {}).items():
            try:
                self._sessions[user_id] = Session.model_validate(raw)
            except ValidationError as exc:
                logger.warning("session=%s skipped on load: %s", user_id, exc.errors()[:1])

    def _persist(self) -> None:
        """Purpose: Write every in-memory session to the JSON file.
        Inputs/Outputs: Writes to self._path; no return value.
        Side Effects / State: Replaces the file contents; caller holds the registry lock.
        Dependencies: Session.model_dump in JSON mode.
        Failure Modes: IO errors raise (not caught here).
        If Removed: Sessions are lost across restarts when a path is configured.
        Testing Notes: Commit one session and read the file back.
        """
        # Serialize current sessions to disk for persistence.
        if not self._path:
            return
        payload = {
            "sessions": {user_id: session.model_dump(mode="json") for user_id, session in self._sessions.items()}
        }
        self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def lock(self, user_id: str) -> threading.Lock:
        """Return the lock that serialises all turns and callbacks for one user."""
        with self._guard:
            user_lock = self._user_locks.get(user_id)
            if user_lock is None:
                user_lock = threading.Lock()
                self._user_locks[user_id] = user_lock
            return user_lock

    def lock_count(self) -> int:
        with self._guard:
            return len(self._user_locks)

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        # Retry if eviction or removal replaced the lock while we were waiting on the old one.
        while True:
            user_lock = self.lock(user_id)
            user_lock.acquire()
            if self.lock(user_id) is user_lock:
                break
            user_lock.release()
        try:
            yield
        finally:
            # Users without a stored session keep no lock behind.
            with self._guard:
                if user_id not in self._sessions and self._user_locks.get(user_id) is user_lock:
                    del self._user_locks[user_id]
            user_lock.release()

    def checkout(self, user_id: str, display_name: str, now: float) -> Session:
        """Purpose: Return a working copy of the user's session, creating one if needed.
        Inputs/Outputs: Inputs are user_id, display name, and the current time; output is a
            deep copy that the caller mutates and later passes to commit.
        Side Effects / State: None until commit; a new session is not stored yet.
        Dependencies: Session.model_copy(deep=True).
        Failure Modes: None.
        If Removed: Failed turns would leave partial writes in the live record.
        Testing Notes: Mutating the returned copy must not change get() until commit.
        """
        # Work on a copy so an aborted turn leaves the stored record untouched.
        with self._guard:
            existing = self._sessions.get(user_id)
            if existing is not None:
                working = existing.model_copy(deep=True)
                if display_name and not working.display_name:
                    working.display_name = display_name
                return working
        return Session(user_id=user_id, display_name=display_name, created_at=now, last_activity_at=now)

    def commit(self, session: Session) -> None:
        with self._guard:
            self._sessions[session.user_id] = session
            self._persist()

    def get(self, user_id: str) -> Optional[Session]:
        # Read-only snapshot for queries.
        with self._guard:
            existing = self._sessions.get(user_id)
            return existing.model_copy(deep=True) if existing is not None else None

    def remove(self, user_id: str) -> bool:
        with self._guard:
            removed = self._sessions.pop(user_id, None) is not None
            self._user_locks.pop(user_id, None)
            if removed:
                self._persist()
            return removed

    def user_ids(self) -> List[str]:
        with self._guard:
            return list(self._sessions.keys())

    def sweep_idle(self, max_age_sec: float, now: float) -> List[str]:
        """Purpose: Evict sessions idle for longer than max_age_sec.
        Inputs/Outputs: Inputs are the age limit and current time; output is evicted ids.
        Side Effects / State: Removes whole session records and their locks; persists.
        Dependencies: Per-user locks, taken without blocking.
        Failure Modes: Sessions whose user is mid-turn are skipped until the next sweep.
        If Removed: Memory grows with every user ever seen.
        Testing Notes: A session older than the limit disappears; a fresh one stays.
        """
        # Each eviction drops the complete record at once, never individual fields.
        evicted: List[str] = []
        with self._guard:
            for user_id, session in list(self._sessions.items()):
                if now - session.last_activity_at <= max_age_sec:
                    continue
                user_lock = self._user_locks.get(user_id)
                if user_lock is not None and not user_lock.acquire(blocking=False):
                    continue
                try:
                    del self._sessions[user_id]
                    self._user_locks.pop(user_id, None)
                    evicted.append(user_id)
                finally:
                    if user_lock is not None:
                        user_lock.release()
            if evicted:
                self._persist()
        if evicted:
            logger.info("evicted %d idle sessions", len(evicted))
        return evicted


class IdleSweeper:
    """Background thread that periodically evicts idle sessions."""

    def __init__(self, store: SessionStore, max_age_sec: float, interval_sec: float, clock) -> None:
        self._store = store
        self._max_age_sec = max_age_sec
        self._interval_sec = interval_sec
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="session-sweeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval_sec):
            self._store.sweep_idle(self._max_age_sec, self._clock())
