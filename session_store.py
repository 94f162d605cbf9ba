"""Cross-tab holder of the single in-progress workout session."""
from __future__ import annotations
import datetime
import json
import logging
import math
from typing import Callable, List, Optional

from pydantic import ValidationError

from db import LocalStorageRepository
from models import (
    ActiveSession,
    SessionExercise,
    SessionProgress,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

SESSION_STORAGE_KEY = "fitflow-active-session"
TIMER_STORAGE_KEY = "workout-timer-state"

MAX_SESSION_AGE = datetime.timedelta(hours=24)

SessionListener = Callable[[Optional[ActiveSession]], None]


def validate_start_time(timestamp: str, now: datetime.datetime | None = None) -> str:
    """Return ``timestamp`` in ISO format, or now if it is unusable.

    Unparseable values, timestamps in the future and timestamps older than
    24 hours are all replaced by the current time.
    """
    now = now or utc_now()
    try:
        start = parse_timestamp(timestamp)
    except (TypeError, ValueError):
        logger.warning("Invalid session timestamp %r, using current time", timestamp)
        return now.isoformat()
    if start > now or now - start > MAX_SESSION_AGE:
        logger.warning("Out of range session timestamp %s, using current time", timestamp)
        return now.isoformat()
    return start.isoformat()


class ActiveSessionStore:
    """Hold at most one active session, persisted under a fixed key.

    Every store reads the persisted entry once when constructed and again on
    each storage notification from another handle, replacing its in-memory
    state wholesale. Concurrent writers race: the last write wins.
    """

    def __init__(self, storage: LocalStorageRepository) -> None:
        self.storage = storage
        self._session: Optional[ActiveSession] = None
        self._listeners: list[SessionListener] = []
        self._unsubscribe = storage.subscribe(self._on_storage)
        self._session = self._read()

    @property
    def active_session(self) -> Optional[ActiveSession]:
        return self._session

    def _read(self) -> Optional[ActiveSession]:
        raw = self.storage.get_item(SESSION_STORAGE_KEY)
        if raw is None:
            return None
        try:
            return ActiveSession.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            logger.warning("Discarding corrupt active session entry: %s", exc)
            self.storage.remove_item(SESSION_STORAGE_KEY)
            return None

    def _write(self, session: ActiveSession) -> None:
        self.storage.set_item(
            SESSION_STORAGE_KEY,
            json.dumps(session.model_dump(by_alias=True)),
        )

    def _on_storage(self, key: str) -> None:
        if key != SESSION_STORAGE_KEY:
            return
        self._session = self._read()
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._session)

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(
        self,
        user_id: str,
        workout_id: str,
        workout_name: str,
        started_at: str,
        exercises: Optional[List[SessionExercise]] = None,
    ) -> ActiveSession:
        """Replace any prior session with a new one and persist it."""
        session = ActiveSession(
            id=user_id,
            workout_id=workout_id,
            workout_name=workout_name,
            start_time=validate_start_time(started_at),
            progress=SessionProgress(
                exercises=[e.model_copy(deep=True) for e in exercises or []]
            ),
        )
        self._session = session
        self._write(session)
        self._notify()
        return session

    def update_progress(self, exercises: List[SessionExercise]) -> None:
        if self._session is None:
            return
        session = self._session.model_copy(
            update={
                "progress": SessionProgress(
                    exercises=[e.model_copy(deep=True) for e in exercises]
                )
            }
        )
        self._session = session
        self._write(session)
        self._notify()

    def end(self) -> None:
        self._session = None
        self.storage.remove_item(SESSION_STORAGE_KEY)
        self.storage.remove_item(TIMER_STORAGE_KEY)
        self._notify()

    def elapsed_minutes(self, now: datetime.datetime | None = None) -> float:
        if self._session is None:
            return 0
        try:
            start = parse_timestamp(self._session.start_time)
        except ValueError:
            logger.error("Cannot parse session start time %r", self._session.start_time)
            return 0
        now = now or utc_now()
        minutes = (now - start).total_seconds() / 60
        return math.floor(minutes * 10 + 0.5) / 10

    @staticmethod
    def format_session_date(value: str) -> str:
        try:
            dt = parse_timestamp(value).astimezone()
        except ValueError:
            return "Unknown time"
        hour = dt.hour % 12 or 12
        suffix = "AM" if dt.hour < 12 else "PM"
        return f"{dt:%b} {dt.day}, {dt.year} at {hour}:{dt:%M} {suffix}"

    def close(self) -> None:
        self._unsubscribe()
        self._listeners.clear()
