"""Upload sessions queued while offline.

Delivery is at-least-once. Nothing identifies a session to the remote store
besides its contents, so a session whose remote insert succeeded but whose
local ``mark_synced`` did not is inserted again on the next pass.
"""
from __future__ import annotations
import asyncio
import logging
import sqlite3
from typing import Callable, Optional

from db import OfflineSessionRepository
from errors import RemoteStoreError
from models import OfflineSession, SyncReport
from network import NetworkMonitor
from remote_store import RemoteStore, session_rows

logger = logging.getLogger(__name__)


class SyncReconciler:
    """Replays unsynced local sessions into the remote store."""

    def __init__(
        self,
        remote: RemoteStore,
        queue: OfflineSessionRepository,
        network: Optional[NetworkMonitor] = None,
    ) -> None:
        self.remote = remote
        self.queue = queue
        self.network = network
        self._lock = asyncio.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tasks: set[asyncio.Task] = set()

    async def sync_session(self, session: OfflineSession) -> str:
        """Insert one queued session and its sets; return the remote id."""
        record = {
            "workout_id": session.workout_id,
            "started_at": session.started_at,
            "ended_at": session.ended_at,
        }
        if session.user_id is not None:
            record["user_id"] = session.user_id
        created = await self.remote.insert("sessions", record)
        session_id = created.get("id")
        if session_id is None:
            raise RemoteStoreError("Session insert returned no id")
        sets = [
            {
                "exercise_id": exercise.exercise_id,
                "set_number": entry.set_number or index,
                "reps": entry.reps,
                "weight": entry.weight,
            }
            for exercise in session.exercises
            for index, entry in enumerate(exercise.sets, start=1)
        ]
        await self.remote.batch_insert(
            "session_exercises", session_rows(session_id, session.user_id, sets)
        )
        return str(session_id)

    async def sync_unsynced_sessions(self) -> SyncReport:
        """Run one reconciliation pass.

        Records are processed one at a time and independently. A failed record
        is logged and left unsynced for the next pass.
        """
        async with self._lock:
            if self.network is not None and not self.network.is_online:
                logger.info("Offline, skipping sync pass")
                return SyncReport(synced=[], failed=[], skipped=True)
            pending = await self.queue.get_unsynced()
            report = SyncReport(synced=[], failed=[])
            for session in pending:
                try:
                    await self.sync_session(session)
                    await self.queue.mark_synced(session.id)
                except (RemoteStoreError, sqlite3.Error) as exc:
                    logger.error("Failed to sync offline session %s: %s", session.id, exc)
                    report.failed.append(session.id)
                    continue
                report.synced.append(session.id)
            if pending:
                logger.info(
                    "Sync pass finished: %d synced, %d failed",
                    len(report.synced),
                    len(report.failed),
                )
            return report

    def attach(self, monitor: NetworkMonitor) -> None:
        """Start a pass whenever ``monitor`` goes from offline to online."""
        self.detach()
        self.network = monitor
        self._unsubscribe = monitor.subscribe(self._on_reachability)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_reachability(self, online: bool) -> None:
        if not online:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, sync deferred to the next pass")
            return
        task = loop.create_task(self.sync_unsynced_sessions())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Sync pass failed: %s", task.exception())

    async def run_periodic(self, interval: float = 60.0) -> None:
        while True:
            try:
                await self.sync_unsynced_sessions()
            except sqlite3.Error as exc:
                logger.error("Cannot read offline queue: %s", exc)
            await asyncio.sleep(interval)

    async def close(self) -> None:
        self.detach()
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
