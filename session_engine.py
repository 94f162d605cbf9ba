"""State machine for recording a live workout session.

A recorder moves through Loading -> Active -> Submitting -> Completed, or to
Cancelled from any non-terminal state. Every edit is written through to the
:class:`ActiveSessionStore` so other handles see it immediately. Completion
writes to the remote store when the network monitor reports online, and to
the offline queue otherwise; it never falls back from one to the other.
"""
from __future__ import annotations
import asyncio
import enum
import logging
import math
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, List, Optional

from algorithms import WeightConverter
from db import OfflineSessionRepository
from errors import (
    InvalidInputError,
    LocalStorageError,
    RemoteStoreError,
    SessionConflictError,
    SessionStateError,
)
from models import (
    ActiveSession,
    CompletedSession,
    CompletionResult,
    Exercise,
    LiveSet,
    Notice,
    OfflineSession,
    PersistedSet,
    SessionExercise,
    User,
    UserPreferences,
    Workout,
    WorkoutExercise,
    utc_now_iso,
)
from network import NetworkMonitor
from preferences import fetch_preferences
from remote_store import (
    RemoteStore,
    fetch_workout,
    fetch_workout_exercises,
    parse_record,
    session_rows,
)
from session_store import ActiveSessionStore

logger = logging.getLogger(__name__)

REPS_PATTERN = re.compile(r"^\d+$")
WEIGHT_PATTERN = re.compile(r"^\d*\.?\d*$")
PICKER_PAGE_SIZE = 5


class SessionState(str, enum.Enum):
    LOADING = "loading"
    ACTIVE = "active"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {SessionState.COMPLETED, SessionState.CANCELLED}


@dataclass
class ExercisePage:
    exercises: List[Exercise] = field(default_factory=list)
    page: int = 1
    total_pages: int = 0


def new_sets(count: int) -> List[LiveSet]:
    return [
        LiveSet(set_number=i + 1, reps=0, weight=0.0, completed=False)
        for i in range(max(count, 1))
    ]


def materialize(targets: List[WorkoutExercise]) -> List[SessionExercise]:
    """Build fresh live progress from workout targets."""
    return [
        SessionExercise(
            id=we.exercise.id,
            name=we.exercise.name,
            target_sets=we.sets,
            target_reps=we.reps,
            target_weight=we.weight,
            actual_sets=new_sets(we.sets),
        )
        for we in targets
    ]


class SessionRecorder:
    """Record one workout session against ``workout_id``."""

    def __init__(
        self,
        workout_id: str,
        remote: RemoteStore,
        store: ActiveSessionStore,
        queue: OfflineSessionRepository,
        network: NetworkMonitor,
        notifier: Optional[Callable[[Notice], None]] = None,
    ) -> None:
        self.workout_id = str(workout_id)
        self.remote = remote
        self.store = store
        self.queue = queue
        self.network = network
        self.state = SessionState.LOADING
        self.user: Optional[User] = None
        self.workout: Optional[Workout] = None
        self.targets: List[WorkoutExercise] = []
        self.exercises: List[SessionExercise] = []
        self.preferences = UserPreferences()
        self.started_at: Optional[str] = None
        self.error: Optional[str] = None
        self.detached = False
        self.result: Optional[CompletionResult] = None
        self.notices: List[Notice] = []
        self._notifier = notifier
        # (exercise, set) -> (display value at focus, text being typed)
        self._editing_weights: dict[tuple[int, int], tuple[str, str]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._writing = False
        self._pending_session_id: Any = None
        self._unsubscribe = store.subscribe(self._on_store_change)

    # lifecycle -----------------------------------------------------------

    def open(self, *, discard_other: bool = False) -> asyncio.Task:
        """Start loading in the background and return the task."""
        return self._spawn(self.load(discard_other=discard_other))

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        """Detach from the store and cancel unfinished background work."""
        self._unsubscribe()
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            raise SessionStateError(f"Session is {self.state.value}")

    async def load(self, *, discard_other: bool = False) -> None:
        """Fetch targets and either resume stored progress or start fresh.

        A stored session for another workout raises SessionConflictError and
        is left untouched unless ``discard_other`` is set.
        """
        self._require(SessionState.LOADING)
        self.error = None
        try:
            self.user = await self.remote.get_user()
            self.workout, self.targets = await asyncio.gather(
                fetch_workout(self.remote, self.workout_id),
                fetch_workout_exercises(self.remote, self.workout_id),
            )
        except RemoteStoreError as exc:
            self.error = str(exc)
            self._notice("error", "Failed to fetch workout details")
            raise
        except Exception as exc:
            self.error = str(exc)
            raise
        try:
            self.preferences = await fetch_preferences(self.remote, self.user.id)
        except RemoteStoreError as exc:
            logger.warning("Using default preferences: %s", exc)

        active = self.store.active_session
        if active is not None and active.workout_id != self.workout_id:
            if not discard_other:
                self.error = f"Another workout session is in progress: {active.workout_name}"
                raise SessionConflictError(active.workout_id, active.workout_name)
            logger.warning(
                "Discarding active session for workout %s", active.workout_id
            )
            active = None

        self._writing = True
        try:
            if active is not None:
                self.started_at = active.start_time
                if active.exercises:
                    self.exercises = [e.model_copy(deep=True) for e in active.exercises]
                else:
                    self.exercises = materialize(self.targets)
                    self.store.update_progress(self.exercises)
            else:
                self.exercises = materialize(self.targets)
                session = self.store.start(
                    self.user.id,
                    self.workout_id,
                    self.workout.name,
                    utc_now_iso(),
                    self.exercises,
                )
                self.started_at = session.start_time
        finally:
            self._writing = False
        self.detached = False
        self.state = SessionState.ACTIVE

    def _on_store_change(self, session: Optional[ActiveSession]) -> None:
        if self._writing or self.state is not SessionState.ACTIVE:
            return
        if session is None or session.workout_id != self.workout_id:
            if not self.detached:
                self.detached = True
                self._notice("warning", "This workout session was ended in another tab")
            return
        self.detached = False
        self.started_at = session.start_time
        if session.exercises:
            self.exercises = [e.model_copy(deep=True) for e in session.exercises]
            self._editing_weights.clear()

    def _persist(self) -> None:
        if self.detached:
            return
        active = self.store.active_session
        if active is None or active.workout_id != self.workout_id:
            return
        self._writing = True
        try:
            self.store.update_progress(self.exercises)
        finally:
            self._writing = False

    def _notice(self, level: str, message: str) -> None:
        notice = Notice(level, message)
        self.notices.append(notice)
        if self._notifier is not None:
            self._notifier(notice)

    # lookups -------------------------------------------------------------

    def _exercise(self, exercise_index: int) -> SessionExercise:
        if not 0 <= exercise_index < len(self.exercises):
            raise InvalidInputError(f"No exercise at position {exercise_index}")
        return self.exercises[exercise_index]

    def _set(self, exercise_index: int, set_index: int) -> LiveSet:
        exercise = self._exercise(exercise_index)
        if not 0 <= set_index < len(exercise.actual_sets):
            raise InvalidInputError(f"No set at position {set_index}")
        return exercise.actual_sets[set_index]

    @property
    def use_metric(self) -> bool:
        return self.preferences.use_metric

    @property
    def completed_set_count(self) -> int:
        return sum(len(e.completed_sets()) for e in self.exercises)

    @property
    def total_set_count(self) -> int:
        return sum(len(e.actual_sets) for e in self.exercises)

    @property
    def progress_percent(self) -> int:
        total = self.total_set_count
        return round(self.completed_set_count / total * 100) if total else 0

    def incomplete_exercises(self) -> List[str]:
        return [e.name for e in self.exercises if not e.completed_sets()]

    # set edits -----------------------------------------------------------

    def edit_reps(self, exercise_index: int, set_index: int, value: str) -> bool:
        """Apply typed reps; blank clears, anything non-numeric is ignored."""
        self._require(SessionState.ACTIVE)
        entry = self._set(exercise_index, set_index)
        if value == "":
            entry.reps = None
        elif REPS_PATTERN.match(value):
            entry.reps = int(value)
        else:
            return False
        self._persist()
        return True

    def commit_reps(self, exercise_index: int, set_index: int) -> int:
        self._require(SessionState.ACTIVE)
        entry = self._set(exercise_index, set_index)
        if entry.reps is None:
            entry.reps = 0
            self._persist()
        return entry.reps

    def _display(self, weight: Optional[float]) -> str:
        if weight is None:
            return ""
        return f"{WeightConverter.from_storage_unit(weight, self.use_metric):.1f}"

    def weight_display(self, exercise_index: int, set_index: int) -> str:
        entry = self._set(exercise_index, set_index)
        editing = self._editing_weights.get((exercise_index, set_index))
        if editing is not None:
            return editing[1]
        return self._display(entry.weight)

    def focus_weight(self, exercise_index: int, set_index: int) -> str:
        self._require(SessionState.ACTIVE)
        shown = self._display(self._set(exercise_index, set_index).weight)
        self._editing_weights[(exercise_index, set_index)] = (shown, shown)
        return shown

    def edit_weight(self, exercise_index: int, set_index: int, value: str) -> bool:
        """Buffer typed weight in the user's unit until :meth:`commit_weight`."""
        self._require(SessionState.ACTIVE)
        entry = self._set(exercise_index, set_index)
        key = (exercise_index, set_index)
        shown = self._editing_weights.get(key, (self._display(entry.weight), ""))[0]
        if value == "":
            self._editing_weights[key] = (shown, "")
            entry.weight = None
            self._persist()
            return True
        if not WEIGHT_PATTERN.match(value):
            return False
        self._editing_weights[key] = (shown, value)
        return True

    def commit_weight(self, exercise_index: int, set_index: int) -> float:
        """Convert the buffered text to kilograms and store it."""
        self._require(SessionState.ACTIVE)
        entry = self._set(exercise_index, set_index)
        shown, text = self._editing_weights.pop(
            (exercise_index, set_index), (None, None)
        )
        if text is None or (text == shown and entry.weight is not None):
            if entry.weight is None:
                entry.weight = 0.0
                self._persist()
            return entry.weight
        if text in ("", "."):
            entry.weight = 0.0
        else:
            entry.weight = WeightConverter.to_storage_unit(float(text), self.use_metric)
        self._persist()
        return entry.weight

    def toggle_completed(self, exercise_index: int, set_index: int) -> bool:
        self._require(SessionState.ACTIVE)
        exercise = self._exercise(exercise_index)
        entry = self._set(exercise_index, set_index)
        if not entry.completed:
            earlier = [s for s in exercise.actual_sets[:set_index] if not s.completed]
            if earlier:
                self._notice(
                    "warning",
                    f"You have {len(earlier)} incomplete previous set(s). "
                    "Consider completing in order.",
                )
            if not entry.weight:
                self._notice("warning", "You're marking a set as complete with 0 weight")
        entry.completed = not entry.completed
        if entry.completed:
            self._notice("success", f"Set {entry.set_number} completed!")
        self._persist()
        return entry.completed

    def add_set(self, exercise_index: int) -> LiveSet:
        self._require(SessionState.ACTIVE)
        exercise = self._exercise(exercise_index)
        entry = LiveSet(
            set_number=len(exercise.actual_sets) + 1,
            reps=0,
            weight=0.0,
            completed=False,
        )
        exercise.actual_sets.append(entry)
        self._notice("info", f"Set {entry.set_number} added to {exercise.name}")
        self._persist()
        return entry

    def remove_set(self, exercise_index: int, set_index: int) -> None:
        """Remove a set and renumber the rest from 1; the last set stays."""
        self._require(SessionState.ACTIVE)
        exercise = self._exercise(exercise_index)
        self._set(exercise_index, set_index)
        if len(exercise.actual_sets) <= 1:
            raise InvalidInputError("Cannot remove the only set")
        del exercise.actual_sets[set_index]
        for number, entry in enumerate(exercise.actual_sets, start=1):
            entry.set_number = number
        self._editing_weights.clear()
        self._notice("success", f"Set removed from {exercise.name}")
        self._persist()

    # exercise edits ------------------------------------------------------

    def remove_exercise(self, exercise_index: int) -> SessionExercise:
        self._require(SessionState.ACTIVE)
        exercise = self._exercise(exercise_index)
        del self.exercises[exercise_index]
        self._editing_weights.clear()
        self._notice("success", f"{exercise.name} removed from workout")
        self._persist()
        return exercise

    def move_exercise(self, exercise_index: int, offset: int) -> int:
        """Move an exercise within this session only; returns its new index."""
        self._require(SessionState.ACTIVE)
        exercise = self._exercise(exercise_index)
        target = exercise_index + offset
        if offset == 0 or not 0 <= target < len(self.exercises):
            return exercise_index
        self.exercises.insert(target, self.exercises.pop(exercise_index))
        self._editing_weights.clear()
        self._notice("success", f"{exercise.name} moved {'up' if offset < 0 else 'down'}")
        self._persist()
        return target

    def add_exercise(
        self, exercise: Exercise, sets: int = 3, reps: int = 10, weight: float = 0.0
    ) -> SessionExercise:
        self._require(SessionState.ACTIVE)
        entry = SessionExercise(
            id=exercise.id,
            name=exercise.name,
            target_sets=sets,
            target_reps=reps,
            target_weight=weight,
            actual_sets=new_sets(sets),
        )
        self.exercises.append(entry)
        self._notice("success", f"{exercise.name} added to workout")
        self._persist()
        return entry

    async def add_custom_exercise(
        self,
        name: str,
        description: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> SessionExercise:
        """Create an exercise in the library and append it to the session."""
        self._require(SessionState.ACTIVE)
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("Exercise name is required")
        existing = await self.remote.select(
            "exercises", columns="id,name", filters={"name": ("ilike", name)}
        )
        if existing:
            raise InvalidInputError("An exercise with this name already exists")
        row = await self.remote.insert(
            "exercises",
            {
                "name": name,
                "category_id": category_id,
                "description": description or None,
                "user_id": self.user.id,
                "is_default": False,
            },
        )
        exercise = parse_record(Exercise, row, "exercises")
        self._notice("success", f"{exercise.name} added to your exercise library!")
        return self.add_exercise(exercise)

    async def browse_exercises(
        self, query: str = "", category_id: Optional[str] = None, page: int = 1
    ) -> ExercisePage:
        """Return one page of the exercise picker."""
        filters: dict = {}
        if query:
            filters["name"] = ("ilike", f"%{query}%")
        if category_id is not None:
            filters["category_id"] = category_id
        page = max(page, 1)
        rows, total = await asyncio.gather(
            self.remote.select(
                "exercises",
                columns="id,name,description,category_id",
                filters=filters,
                order="name.asc",
                limit=PICKER_PAGE_SIZE,
                offset=(page - 1) * PICKER_PAGE_SIZE,
            ),
            self.remote.count("exercises", filters),
        )
        return ExercisePage(
            exercises=[parse_record(Exercise, r, "exercises") for r in rows],
            page=page,
            total_pages=math.ceil(total / PICKER_PAGE_SIZE),
        )

    # completion ----------------------------------------------------------

    def completion_payload(self, ended_at: str) -> CompletedSession:
        """Keep completed sets only, with blank reps and weight stored as 0."""
        sets = [
            PersistedSet(
                exercise_id=exercise.id,
                set_number=entry.set_number,
                reps=entry.reps or 0,
                weight=entry.weight or 0.0,
            )
            for exercise in self.exercises
            for entry in exercise.completed_sets()
        ]
        return CompletedSession(
            user_id=self.user.id,
            workout_id=self.workout_id,
            started_at=self.started_at or ended_at,
            ended_at=ended_at,
            sets=sets,
        )

    async def _write_remote(self, payload: CompletedSession) -> str:
        # a session row left by a failed attempt is reused for the retry
        session_id = self._pending_session_id
        if session_id is None:
            record = await self.remote.insert(
                "sessions",
                {
                    "user_id": payload.user_id,
                    "workout_id": payload.workout_id,
                    "started_at": payload.started_at,
                    "ended_at": payload.ended_at,
                },
            )
            if record.get("id") is None:
                raise RemoteStoreError("Session insert returned no id")
            session_id = record["id"]
            self._pending_session_id = session_id
        await self.remote.batch_insert(
            "session_exercises",
            session_rows(
                session_id, payload.user_id, [s.model_dump() for s in payload.sets]
            ),
        )
        self._pending_session_id = None
        return str(session_id)

    def _fail(self, message: str) -> None:
        self.error = message
        self._notice("error", message)
        if self.state is SessionState.SUBMITTING:
            self.state = SessionState.ACTIVE

    def _finish(self, state: SessionState) -> None:
        active = self.store.active_session
        if active is None or active.workout_id == self.workout_id:
            self._writing = True
            try:
                self.store.end()
            finally:
                self._writing = False
        self._editing_weights.clear()
        self.state = state

    async def complete(self) -> CompletionResult:
        """Persist the completed sets and end the session.

        On failure the recorder returns to Active with its sets intact, and
        the active session entry is kept so the user can retry.
        """
        self._require(SessionState.ACTIVE)
        if not self.completed_set_count:
            raise InvalidInputError(
                "Please complete at least one set before finishing the workout"
            )
        payload = self.completion_payload(utc_now_iso())
        self.state = SessionState.SUBMITTING
        self.error = None
        if self.network.is_online:
            try:
                session_id = await self._write_remote(payload)
            except RemoteStoreError as exc:
                self._fail(f"Failed to save session: {exc}")
                raise
            result = CompletionResult(offline=False, session_id=session_id)
        else:
            try:
                local_id = await self.queue.save(OfflineSession.from_completed(payload))
            except sqlite3.Error as exc:
                self._fail(f"Failed to save session offline: {exc}")
                raise LocalStorageError(str(exc)) from exc
            result = CompletionResult(offline=True, local_id=local_id)
            self._notice(
                "info",
                "You're offline. The session was saved and will sync when you're back online.",
            )
        self.result = result
        if self.state is not SessionState.SUBMITTING:
            logger.warning("Session was %s while completing", self.state.value)
            return result
        self._finish(SessionState.COMPLETED)
        self._notice("success", "Session completed!")
        return result

    def cancel(self) -> None:
        """Discard the session without persisting anything."""
        if self.state in TERMINAL_STATES:
            raise SessionStateError(f"Session is {self.state.value}")
        self._finish(SessionState.CANCELLED)
        self._notice("info", "Workout session canceled")

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "workout_id": self.workout_id,
            "workout_name": self.workout.name if self.workout else None,
            "started_at": self.started_at,
            "use_metric": self.use_metric,
            "completed_sets": self.completed_set_count,
            "total_sets": self.total_set_count,
            "progress_percent": self.progress_percent,
            "detached": self.detached,
            "error": self.error,
            "exercises": [e.model_dump(by_alias=True) for e in self.exercises],
        }
