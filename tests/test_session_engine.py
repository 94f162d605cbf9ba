import os
import sys
import json
import sqlite3
from types import SimpleNamespace

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import LocalStorageRepository, OfflineSessionRepository, StorageChannel
from errors import (
    InvalidInputError,
    LocalStorageError,
    NotAuthenticatedError,
    RemoteStoreError,
    SessionConflictError,
    SessionStateError,
)
from network import NetworkMonitor
from session_engine import SessionRecorder, SessionState
from session_store import ActiveSessionStore, SESSION_STORAGE_KEY, TIMER_STORAGE_KEY
from fakes import InMemoryRemoteStore, seed_workout


@pytest.fixture
def env(tmp_path):
    db_file = str(tmp_path / "fitflow.db")
    channel = StorageChannel()
    storage = LocalStorageRepository(db_file, channel)
    remote = InMemoryRemoteStore()
    seed_workout(remote)
    return SimpleNamespace(
        db_file=db_file,
        channel=channel,
        storage=storage,
        store=ActiveSessionStore(storage),
        queue=OfflineSessionRepository(db_file),
        remote=remote,
        network=NetworkMonitor(online=True),
    )


def make_recorder(env, workout_id="w-1", store=None):
    return SessionRecorder(
        workout_id, env.remote, store or env.store, env.queue, env.network
    )


async def loaded(env, workout_id="w-1"):
    recorder = make_recorder(env, workout_id)
    await recorder.load()
    return recorder


@pytest.mark.asyncio
async def test_load_materializes_targets(env):
    recorder = await loaded(env)
    assert recorder.state is SessionState.ACTIVE
    assert [e.name for e in recorder.exercises] == ["Bench Press", "Squat"]
    bench = recorder.exercises[0]
    assert [s.set_number for s in bench.actual_sets] == [1, 2, 3]
    assert all(s.reps == 0 and s.weight == 0 and not s.completed for s in bench.actual_sets)
    assert bench.target_reps == 10 and bench.target_weight == 60

    raw = json.loads(env.storage.get_item(SESSION_STORAGE_KEY))
    assert raw["workoutId"] == "w-1"
    assert raw["workoutName"] == "Push Day"
    assert raw["progress"]["exercises"][0]["actualSets"][0]["setNumber"] == 1


@pytest.mark.asyncio
async def test_open_runs_load_as_task(env):
    recorder = make_recorder(env)
    task = recorder.open()
    await task
    assert recorder.state is SessionState.ACTIVE
    await recorder.close()


@pytest.mark.asyncio
async def test_load_without_user_fails(env):
    env.remote.user = None
    recorder = make_recorder(env)
    with pytest.raises(NotAuthenticatedError):
        await recorder.load()
    assert recorder.state is SessionState.LOADING
    assert env.store.active_session is None


@pytest.mark.asyncio
async def test_remove_set_renumbers(env):
    recorder = await loaded(env)
    for index in range(3):
        assert recorder.edit_reps(0, index, str(index + 5))
    recorder.remove_set(0, 1)
    sets = recorder.exercises[0].actual_sets
    assert [s.set_number for s in sets] == [1, 2]
    assert [s.reps for s in sets] == [5, 7]
    stored = env.store.active_session.exercises[0].actual_sets
    assert [s.set_number for s in stored] == [1, 2]


@pytest.mark.asyncio
async def test_remove_only_set_rejected(env):
    recorder = await loaded(env)
    recorder.remove_set(1, 0)
    with pytest.raises(InvalidInputError):
        recorder.remove_set(1, 0)
    assert len(recorder.exercises[1].actual_sets) == 1
    assert recorder.exercises[1].actual_sets[0].set_number == 1


@pytest.mark.asyncio
async def test_reps_editing(env):
    recorder = await loaded(env)
    assert recorder.edit_reps(0, 0, "") is True
    assert recorder.exercises[0].actual_sets[0].reps is None
    assert recorder.edit_reps(0, 0, "1x") is False
    assert recorder.exercises[0].actual_sets[0].reps is None
    assert recorder.commit_reps(0, 0) == 0


@pytest.mark.asyncio
async def test_weight_entry_in_pounds(env):
    env.remote.seed(
        "user_preferences",
        {"user_id": "user-1", "use_metric": False, "default_rest_timer": None},
    )
    recorder = await loaded(env)
    assert recorder.preferences.default_rest_timer == 60
    assert recorder.focus_weight(0, 0) == "0.0"
    assert recorder.edit_weight(0, 0, "22a") is False
    assert recorder.edit_weight(0, 0, "225") is True
    assert recorder.weight_display(0, 0) == "225"
    assert recorder.exercises[0].actual_sets[0].weight == 0
    assert recorder.commit_weight(0, 0) == pytest.approx(102.06)
    assert recorder.weight_display(0, 0) == "225.0"

    recorder.focus_weight(0, 0)
    assert recorder.commit_weight(0, 0) == pytest.approx(102.06)


@pytest.mark.asyncio
async def test_blank_weight_writes_through(env):
    recorder = await loaded(env)
    recorder.focus_weight(0, 1)
    recorder.edit_weight(0, 1, "")
    assert env.store.active_session.exercises[0].actual_sets[1].weight is None
    assert recorder.commit_weight(0, 1) == 0
    recorder.focus_weight(0, 1)
    recorder.edit_weight(0, 1, ".")
    assert recorder.commit_weight(0, 1) == 0


@pytest.mark.asyncio
async def test_toggle_warnings(env):
    recorder = await loaded(env)
    assert recorder.toggle_completed(0, 1) is True
    levels = [n.level for n in recorder.notices]
    assert levels == ["warning", "warning", "success"]
    assert "1 incomplete previous set" in recorder.notices[0].message
    assert recorder.toggle_completed(0, 1) is False
    assert env.store.active_session.exercises[0].actual_sets[1].completed is False


@pytest.mark.asyncio
async def test_completion_payload_keeps_completed_sets(env):
    recorder = await loaded(env)
    recorder.edit_reps(0, 0, "")
    recorder.focus_weight(0, 0)
    recorder.edit_weight(0, 0, "")
    recorder.toggle_completed(0, 0)
    recorder.edit_reps(0, 2, "8")
    recorder.focus_weight(0, 2)
    recorder.edit_weight(0, 2, "62.5")
    recorder.commit_weight(0, 2)
    recorder.toggle_completed(0, 2)

    payload = recorder.completion_payload("2024-05-01T10:00:00+00:00")
    rows = [s.model_dump() for s in payload.sets]
    assert rows == [
        {"exercise_id": "ex-1", "set_number": 1, "reps": 0, "weight": 0.0},
        {"exercise_id": "ex-1", "set_number": 3, "reps": 8, "weight": 62.5},
    ]
    assert payload.user_id == "user-1"
    assert payload.started_at == recorder.started_at
    assert recorder.incomplete_exercises() == ["Squat"]


@pytest.mark.asyncio
async def test_complete_online_writes_remote_only(env):
    env.storage.set_item(TIMER_STORAGE_KEY, "{}")
    recorder = await loaded(env)
    recorder.edit_reps(0, 0, "10")
    recorder.toggle_completed(0, 0)

    result = await recorder.complete()

    assert result.offline is False
    assert recorder.state is SessionState.COMPLETED
    sessions = env.remote.tables["sessions"]
    assert len(sessions) == 1
    assert sessions[0]["workout_id"] == "w-1"
    sets = env.remote.tables["session_exercises"]
    assert len(sets) == 1
    assert sets[0]["session_id"] == sessions[0]["id"] == result.session_id
    assert sets[0]["user_id"] == "user-1"
    assert await env.queue.pending_count() == 0
    assert env.store.active_session is None
    assert env.storage.get_item(TIMER_STORAGE_KEY) is None


@pytest.mark.asyncio
async def test_complete_offline_queues_only(env):
    recorder = await loaded(env)
    recorder.toggle_completed(1, 1)
    env.network.set_online(False)
    env.remote.calls.clear()

    result = await recorder.complete()

    assert result.offline is True
    assert result.local_id == 1
    assert not any(method in ("insert", "batch_insert") for method, _ in env.remote.calls)
    queued = await env.queue.get_unsynced()
    assert len(queued) == 1
    assert queued[0].user_id == "user-1"
    assert queued[0].exercises[0].exercise_id == "ex-2"
    assert queued[0].exercises[0].sets[0].set_number == 2
    assert env.store.active_session is None
    assert recorder.notices[-1].message == "Session completed!"


@pytest.mark.asyncio
async def test_complete_requires_a_completed_set(env):
    recorder = await loaded(env)
    with pytest.raises(InvalidInputError):
        await recorder.complete()
    assert recorder.state is SessionState.ACTIVE
    assert env.remote.tables["sessions"] == []


@pytest.mark.asyncio
async def test_remote_failure_keeps_session_for_retry(env):
    recorder = await loaded(env)
    recorder.toggle_completed(0, 0)
    env.remote.fail("insert", "sessions", times=1)

    with pytest.raises(RemoteStoreError):
        await recorder.complete()

    assert recorder.state is SessionState.ACTIVE
    assert "injected" in recorder.error
    assert recorder.exercises[0].actual_sets[0].completed is True
    assert env.store.active_session is not None
    assert await env.queue.pending_count() == 0

    result = await recorder.complete()
    assert result.offline is False
    assert len(env.remote.tables["sessions"]) == 1
    assert env.store.active_session is None


@pytest.mark.asyncio
async def test_retry_after_set_failure_reuses_session_row(env):
    recorder = await loaded(env)
    recorder.toggle_completed(0, 0)
    recorder.toggle_completed(1, 0)
    env.remote.fail("batch_insert", "session_exercises", times=1)

    with pytest.raises(RemoteStoreError):
        await recorder.complete()
    assert recorder.state is SessionState.ACTIVE
    assert len(env.remote.tables["sessions"]) == 1
    assert env.remote.tables["session_exercises"] == []

    result = await recorder.complete()
    sessions = env.remote.tables["sessions"]
    assert len(sessions) == 1
    assert result.session_id == sessions[0]["id"]
    rows = env.remote.tables["session_exercises"]
    assert len(rows) == 2
    assert {r["session_id"] for r in rows} == {sessions[0]["id"]}


@pytest.mark.asyncio
async def test_offline_save_failure_keeps_active_session(env, monkeypatch):
    recorder = await loaded(env)
    recorder.toggle_completed(0, 0)
    env.network.set_online(False)

    async def broken_save(session):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(env.queue, "save", broken_save)

    with pytest.raises(LocalStorageError):
        await recorder.complete()

    assert recorder.state is SessionState.ACTIVE
    assert "disk I/O error" in recorder.error
    assert env.store.active_session is not None
    assert env.store.active_session.workout_id == "w-1"
    assert recorder.notices[-1].level == "error"


@pytest.mark.asyncio
async def test_toggle_allows_set_without_reps(env):
    recorder = await loaded(env)
    assert recorder.toggle_completed(0, 0) is True
    assert recorder.exercises[0].actual_sets[0].reps == 0
    messages = [n.message for n in recorder.notices]
    assert "You're marking a set as complete with 0 weight" in messages
    assert "Set 1 completed!" in messages


@pytest.mark.asyncio
async def test_second_completion_rejected(env):
    recorder = await loaded(env)
    recorder.toggle_completed(0, 0)
    await recorder.complete()
    with pytest.raises(SessionStateError):
        await recorder.complete()
    assert len(env.remote.tables["sessions"]) == 1


@pytest.mark.asyncio
async def test_resume_after_reload(env):
    recorder = await loaded(env)
    recorder.edit_reps(0, 0, "12")
    recorder.toggle_completed(0, 0)
    started = recorder.started_at

    reloaded_store = ActiveSessionStore(LocalStorageRepository(env.db_file))
    resumed = make_recorder(env, store=reloaded_store)
    await resumed.load()

    assert resumed.started_at == started
    first = resumed.exercises[0].actual_sets[0]
    assert first.reps == 12 and first.completed is True


@pytest.mark.asyncio
async def test_resume_for_other_workout_conflicts(env):
    other = await loaded(env, "w-2")
    other.edit_reps(0, 0, "3")

    recorder = make_recorder(env, "w-1")
    with pytest.raises(SessionConflictError) as info:
        await recorder.load()
    assert info.value.workout_name == "Leg Day"
    assert env.store.active_session.workout_id == "w-2"

    await recorder.load(discard_other=True)
    assert env.store.active_session.workout_id == "w-1"
    assert recorder.exercises[0].actual_sets[0].reps == 0


@pytest.mark.asyncio
async def test_adopts_progress_from_another_tab(env):
    recorder = await loaded(env)
    other_tab = ActiveSessionStore(LocalStorageRepository(env.db_file, env.channel))
    exercises = [e.model_copy(deep=True) for e in other_tab.active_session.exercises]
    exercises[0].actual_sets[0].reps = 15
    other_tab.update_progress(exercises)

    assert recorder.exercises[0].actual_sets[0].reps == 15

    other_tab.end()
    assert recorder.detached is True
    assert recorder.notices[-1].level == "warning"
    recorder.edit_reps(0, 0, "4")
    assert env.store.active_session is None


@pytest.mark.asyncio
async def test_cancel_clears_store(env):
    recorder = await loaded(env)
    recorder.cancel()
    assert recorder.state is SessionState.CANCELLED
    assert env.store.active_session is None
    with pytest.raises(SessionStateError):
        recorder.cancel()
    with pytest.raises(SessionStateError):
        recorder.add_set(0)


@pytest.mark.asyncio
async def test_exercise_list_edits(env):
    recorder = await loaded(env)
    assert recorder.move_exercise(1, -1) == 0
    assert [e.id for e in recorder.exercises] == ["ex-2", "ex-1"]
    assert recorder.move_exercise(0, -1) == 0

    added = recorder.add_set(0)
    assert added.set_number == 3

    removed = recorder.remove_exercise(1)
    assert removed.id == "ex-1"
    assert [e.id for e in env.store.active_session.exercises] == ["ex-2"]


@pytest.mark.asyncio
async def test_add_custom_exercise(env):
    recorder = await loaded(env)
    with pytest.raises(InvalidInputError):
        await recorder.add_custom_exercise("   ")
    with pytest.raises(InvalidInputError):
        await recorder.add_custom_exercise("bench press")

    entry = await recorder.add_custom_exercise("Cable Fly", description="chest")
    assert entry.name == "Cable Fly"
    assert [s.set_number for s in entry.actual_sets] == [1, 2, 3]
    created = env.remote.tables["exercises"][-1]
    assert created["user_id"] == "user-1"
    assert created["is_default"] is False
    assert recorder.exercises[-1].id == created["id"]


@pytest.mark.asyncio
async def test_browse_exercises_paginates(env):
    env.remote.seed(
        "exercises",
        *[{"id": f"extra-{i}", "name": f"Curl {i}"} for i in range(5)],
    )
    recorder = make_recorder(env)
    first = await recorder.browse_exercises()
    assert first.total_pages == 2
    assert len(first.exercises) == 5
    second = await recorder.browse_exercises(page=2)
    assert [e.name for e in second.exercises] == ["Curl 4", "Squat"]
    curls = await recorder.browse_exercises(query="curl")
    assert curls.total_pages == 1
    assert len(curls.exercises) == 5
