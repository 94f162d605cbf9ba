import os
import sys
import asyncio
import sqlite3

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import OfflineSessionRepository
from models import OfflineExercise, OfflineSession, OfflineSet
from network import NetworkMonitor
from sync_service import SyncReconciler
from fakes import InMemoryRemoteStore


def queued_session(workout_id="w-1", with_numbers=True):
    return OfflineSession(
        user_id="user-1",
        workout_id=workout_id,
        started_at="2024-05-01T09:00:00+00:00",
        ended_at="2024-05-01T10:00:00+00:00",
        exercises=[
            OfflineExercise(
                exercise_id="ex-1",
                sets=[
                    OfflineSet(reps=5, weight=100, set_number=2 if with_numbers else None),
                    OfflineSet(reps=3, weight=110, set_number=4 if with_numbers else None),
                ],
            )
        ],
    )


class FlakyMarkQueue(OfflineSessionRepository):
    """Queue whose first ``mark_synced`` call fails after the remote insert."""

    def __init__(self, db_path: str) -> None:
        super().__init__(db_path)
        self.mark_failures = 1

    async def mark_synced(self, session_id: int) -> None:
        if self.mark_failures:
            self.mark_failures -= 1
            raise sqlite3.OperationalError("database is locked")
        await super().mark_synced(session_id)


@pytest.mark.asyncio
async def test_sync_marks_sessions(tmp_path):
    queue = OfflineSessionRepository(str(tmp_path / "q.db"))
    remote = InMemoryRemoteStore()
    first = await queue.save(queued_session())
    second = await queue.save(queued_session("w-2", with_numbers=False))

    report = await SyncReconciler(remote, queue).sync_unsynced_sessions()

    assert sorted(report.synced) == [first, second]
    assert report.failed == []
    assert await queue.pending_count() == 0
    stored = await queue.fetch_detail(first)
    assert stored.synced is True
    sessions = remote.tables["sessions"]
    assert {s["workout_id"] for s in sessions} == {"w-1", "w-2"}
    assert all(s["user_id"] == "user-1" for s in sessions)
    by_session = {}
    for row in remote.tables["session_exercises"]:
        by_session.setdefault(row["session_id"], []).append(row["set_number"])
    numbers = sorted(by_session.values())
    assert numbers == [[1, 2], [2, 4]]


@pytest.mark.asyncio
async def test_failed_record_stays_unsynced(tmp_path):
    queue = OfflineSessionRepository(str(tmp_path / "q.db"))
    remote = InMemoryRemoteStore()
    first = await queue.save(queued_session())
    second = await queue.save(queued_session("w-2"))
    remote.fail("insert", "sessions", times=1)

    report = await SyncReconciler(remote, queue).sync_unsynced_sessions()

    assert len(report.failed) == 1
    assert len(report.synced) == 1
    assert await queue.pending_count() == 1

    retry = await SyncReconciler(remote, queue).sync_unsynced_sessions()
    assert retry.synced == report.failed
    assert sorted(report.synced + retry.synced) == [first, second]
    assert await queue.pending_count() == 0


@pytest.mark.asyncio
async def test_unmarked_session_is_inserted_again(tmp_path):
    # delivery is at-least-once: a lost mark_synced means a duplicate upload
    queue = FlakyMarkQueue(str(tmp_path / "q.db"))
    remote = InMemoryRemoteStore()
    local_id = await queue.save(queued_session())
    reconciler = SyncReconciler(remote, queue)

    first = await reconciler.sync_unsynced_sessions()
    assert first.failed == [local_id]
    assert len(remote.tables["sessions"]) == 1

    second = await reconciler.sync_unsynced_sessions()
    assert second.synced == [local_id]
    assert len(remote.tables["sessions"]) == 2
    assert len(remote.tables["session_exercises"]) == 4
    assert await queue.pending_count() == 0


@pytest.mark.asyncio
async def test_offline_pass_is_skipped(tmp_path):
    queue = OfflineSessionRepository(str(tmp_path / "q.db"))
    await queue.save(queued_session())
    remote = InMemoryRemoteStore()
    network = NetworkMonitor(online=False)

    report = await SyncReconciler(remote, queue, network).sync_unsynced_sessions()

    assert report.skipped is True
    assert remote.calls == []
    assert await queue.pending_count() == 1


@pytest.mark.asyncio
async def test_reconnect_triggers_sync(tmp_path):
    queue = OfflineSessionRepository(str(tmp_path / "q.db"))
    await queue.save(queued_session())
    remote = InMemoryRemoteStore()
    network = NetworkMonitor(online=False)
    reconciler = SyncReconciler(remote, queue)
    reconciler.attach(network)

    network.set_online(True)
    for _ in range(50):
        if not await queue.pending_count():
            break
        await asyncio.sleep(0.01)

    assert await queue.pending_count() == 0
    assert len(remote.tables["sessions"]) == 1
    await reconciler.close()
