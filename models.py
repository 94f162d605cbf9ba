"""Typed records exchanged between the engine, local storage and the remote store.

Remote rows and persisted JSON are parsed into these models before they reach
the session state machine. Live-session records serialize to the camelCase
shape kept in local storage.
"""
from __future__ import annotations
import datetime
import re
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(ts: str) -> datetime.datetime:
    """Return ``ts`` as timezone-aware datetime in UTC.

    Fractional seconds of any length are padded or cut to microseconds,
    which ``fromisoformat`` requires before Python 3.11.
    """
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    ts = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), ts, count=1)
    dt = datetime.datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


class Record(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)


class LiveRecord(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


# live session ---------------------------------------------------------------


class LiveSet(LiveRecord):
    set_number: int = Field(ge=1)
    reps: Optional[int] = Field(default=0, ge=0)
    weight: Optional[float] = Field(default=0.0, ge=0)
    completed: bool = False


class SessionExercise(LiveRecord):
    id: str
    name: str
    target_sets: int = 0
    target_reps: int = 0
    target_weight: float = 0.0
    actual_sets: List[LiveSet] = Field(default_factory=list)

    def completed_sets(self) -> List[LiveSet]:
        return [s for s in self.actual_sets if s.completed]


class SessionProgress(LiveRecord):
    exercises: List[SessionExercise] = Field(default_factory=list)


class ActiveSession(LiveRecord):
    id: str
    workout_id: str = Field(min_length=1)
    workout_name: str = Field(min_length=1)
    start_time: str = Field(min_length=1)
    progress: Optional[SessionProgress] = None

    @property
    def exercises(self) -> List[SessionExercise]:
        return self.progress.exercises if self.progress else []


# remote records -------------------------------------------------------------


class User(Record):
    id: str
    email: Optional[str] = None


class Exercise(Record):
    id: str
    name: str
    category_id: Optional[str] = None
    description: Optional[str] = None
    user_id: Optional[str] = None
    is_default: bool = False


class WorkoutExercise(Record):
    exercise: Exercise
    sets: int = Field(default=0, ge=0)
    reps: int = Field(default=0, ge=0)
    weight: float = Field(default=0.0, ge=0)
    exercise_order: int = 0


class Workout(Record):
    id: str
    name: str
    user_id: Optional[str] = None
    description: Optional[str] = None


class UserPreferences(Record):
    use_metric: bool = True
    default_rest_timer: int = 60


class PersistedSet(Record):
    exercise_id: str
    set_number: int
    reps: int = 0
    weight: float = 0.0


class CompletedSession(Record):
    user_id: str
    workout_id: str
    started_at: str
    ended_at: str
    sets: List[PersistedSet] = Field(default_factory=list)


class OfflineSet(Record):
    reps: int = 0
    weight: float = 0.0
    completed: bool = True
    set_number: Optional[int] = None


class OfflineExercise(Record):
    exercise_id: str
    sets: List[OfflineSet] = Field(default_factory=list)


class OfflineSession(Record):
    id: Optional[int] = None
    user_id: Optional[str] = None
    workout_id: str
    started_at: str
    ended_at: str
    exercises: List[OfflineExercise] = Field(default_factory=list)
    synced: bool = False

    @classmethod
    def from_completed(cls, session: CompletedSession) -> "OfflineSession":
        grouped: dict[str, OfflineExercise] = {}
        for s in session.sets:
            entry = grouped.setdefault(
                s.exercise_id, OfflineExercise(exercise_id=s.exercise_id)
            )
            entry.sets.append(
                OfflineSet(reps=s.reps, weight=s.weight, set_number=s.set_number)
            )
        return cls(
            user_id=session.user_id,
            workout_id=session.workout_id,
            started_at=session.started_at,
            ended_at=session.ended_at,
            exercises=list(grouped.values()),
        )


# analytics ------------------------------------------------------------------


class HistoryRow(Record):
    exercise_id: str
    exercise_name: Optional[str] = None
    reps: int = 0
    weight: float = 0.0
    started_at: str


class PersonalRecord(Record):
    exercise_id: str
    name: Optional[str] = None
    max_weight: float = 0.0
    max_weight_date: Optional[str] = None
    max_reps: int = 0
    max_volume: float = 0.0


class VolumePoint(Record):
    date: str
    max_weight: float
    total_volume: float


class ExerciseVolume(Record):
    name: str
    volume: float


class WorkoutUpdate(Record):
    exercise_id: str
    sets: int
    reps: int
    weight: float
    selected: bool = False
    is_pr: bool = False


# engine results -------------------------------------------------------------


@dataclass
class Notice:
    level: str
    message: str


@dataclass
class CompletionResult:
    offline: bool
    session_id: Optional[str] = None
    local_id: Optional[int] = None


@dataclass
class SyncReport:
    synced: List[int]
    failed: List[int]
    skipped: bool = False
