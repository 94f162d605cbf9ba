import asyncio
import dataclasses
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Body, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import APP_VERSION, load_settings
from db import LocalStorageRepository, OfflineSessionRepository, StorageChannel
from errors import FitFlowError, InvalidInputError, RemoteStoreError, SessionStateError
from models import WorkoutUpdate
from network import NetworkMonitor
from planner_service import WorkoutUpdatePlanner
from remote_store import RemoteStore, RestRemoteStore
from session_engine import SessionRecorder
from session_store import ActiveSessionStore
from stats_service import StatisticsService
from sync_service import SyncReconciler

logger = logging.getLogger(__name__)


class ValueEdit(BaseModel):
    value: str


class MoveRequest(BaseModel):
    offset: int


class CustomExerciseRequest(BaseModel):
    name: str
    description: Optional[str] = None
    category_id: Optional[str] = None


class CompleteRequest(BaseModel):
    updates: List[WorkoutUpdate] = []


class FitFlowAPI:
    """Local REST surface over the session engine for a single user."""

    def __init__(
        self,
        db_path: str | None = None,
        yaml_path: str = "settings.yaml",
        *,
        remote: RemoteStore | None = None,
        network: NetworkMonitor | None = None,
        start_background: bool = False,
    ) -> None:
        self.settings = load_settings(yaml_path)
        self.db_path = db_path or self.settings.db_path
        self.channel = StorageChannel()
        self.storage = LocalStorageRepository(self.db_path, self.channel)
        self.store = ActiveSessionStore(self.storage)
        self.queue = OfflineSessionRepository(self.db_path)
        self.network = network or NetworkMonitor(
            probe_url=self.settings.remote_url,
            timeout=self.settings.request_timeout,
        )
        self.remote = remote or RestRemoteStore(
            self.settings.remote_url,
            api_key=self.settings.remote_api_key,
            access_token=self.settings.access_token,
            timeout=self.settings.request_timeout,
        )
        self.reconciler = SyncReconciler(self.remote, self.queue)
        self.reconciler.attach(self.network)
        self.statistics = StatisticsService(self.remote)
        self.planner = WorkoutUpdatePlanner(self.remote)
        self.recorder: SessionRecorder | None = None
        self.start_background = start_background
        self.app = FastAPI(
            title="FitFlow API",
            description="Local API for recording workout sessions offline",
            version=APP_VERSION,
            lifespan=self._lifespan,
        )
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        tasks: list[asyncio.Task] = []
        if self.start_background:
            tasks = [
                asyncio.create_task(
                    self.reconciler.run_periodic(self.settings.sync_interval)
                ),
                asyncio.create_task(self.network.watch(self.settings.probe_interval)),
            ]
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if self.recorder is not None:
                await self.recorder.close()
            await self.reconciler.close()
            await self.remote.aclose()

    def _require_recorder(self) -> SessionRecorder:
        if self.recorder is None:
            raise SessionStateError("No workout session is open")
        return self.recorder

    def _set_payload(self, ei: int, si: int) -> dict:
        recorder = self._require_recorder()
        entry = recorder.exercises[ei].actual_sets[si]
        return {
            **entry.model_dump(by_alias=True),
            "display_weight": recorder.weight_display(ei, si),
        }

    def _setup_routes(self) -> None:
        session_router = APIRouter(prefix="/session", tags=["Session"])
        sync_router = APIRouter(prefix="/sync", tags=["Sync"])
        analytics_router = APIRouter(prefix="/analytics", tags=["Analytics"])

        @self.app.exception_handler(FitFlowError)
        async def fitflow_error(request: Request, exc: FitFlowError):
            return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

        @self.app.get("/health", summary="Health check")
        def health():
            return {
                "status": "ok",
                "online": self.network.is_online,
                "version": APP_VERSION,
            }

        @self.app.get("/session")
        def active_session():
            session = self.store.active_session
            if session is None:
                return {"active": False}
            return {
                "active": True,
                "session": session.model_dump(by_alias=True),
                "elapsed_minutes": self.store.elapsed_minutes(),
                "started": self.store.format_session_date(session.start_time),
            }

        @self.app.post("/workouts/{workout_id}/session")
        async def open_session(workout_id: str, discard_other: bool = False):
            if self.recorder is not None:
                await self.recorder.close()
                self.recorder = None
            recorder = SessionRecorder(
                workout_id, self.remote, self.store, self.queue, self.network
            )
            try:
                await recorder.load(discard_other=discard_other)
            except FitFlowError:
                await recorder.close()
                raise
            self.recorder = recorder
            return recorder.snapshot()

        @self.app.get("/exercises")
        async def browse_exercises(
            query: str = "", category_id: str = None, page: int = 1
        ):
            page_data = await self._require_recorder().browse_exercises(
                query, category_id, page
            )
            return {
                "exercises": [e.model_dump() for e in page_data.exercises],
                "page": page_data.page,
                "total_pages": page_data.total_pages,
            }

        @session_router.get("/recorder")
        def recorder_state():
            recorder = self._require_recorder()
            return {
                **recorder.snapshot(),
                "notices": [dataclasses.asdict(n) for n in recorder.notices],
                "incomplete_exercises": recorder.incomplete_exercises(),
            }

        @session_router.put("/exercises/{ei}/sets/{si}/reps")
        def edit_reps(ei: int, si: int, edit: ValueEdit):
            recorder = self._require_recorder()
            if not recorder.edit_reps(ei, si, edit.value):
                raise InvalidInputError("Reps must be a whole number")
            recorder.commit_reps(ei, si)
            return self._set_payload(ei, si)

        @session_router.put("/exercises/{ei}/sets/{si}/weight")
        def edit_weight(ei: int, si: int, edit: ValueEdit):
            recorder = self._require_recorder()
            recorder.focus_weight(ei, si)
            if not recorder.edit_weight(ei, si, edit.value):
                recorder.commit_weight(ei, si)
                raise InvalidInputError("Weight must be a number")
            recorder.commit_weight(ei, si)
            return self._set_payload(ei, si)

        @session_router.post("/exercises/{ei}/sets/{si}/toggle")
        def toggle_set(ei: int, si: int):
            self._require_recorder().toggle_completed(ei, si)
            return self._set_payload(ei, si)

        @session_router.post("/exercises/{ei}/sets")
        def add_set(ei: int):
            entry = self._require_recorder().add_set(ei)
            return entry.model_dump(by_alias=True)

        @session_router.delete("/exercises/{ei}/sets/{si}")
        def remove_set(ei: int, si: int):
            recorder = self._require_recorder()
            recorder.remove_set(ei, si)
            return recorder.exercises[ei].model_dump(by_alias=True)

        @session_router.delete("/exercises/{ei}")
        def remove_exercise(ei: int):
            removed = self._require_recorder().remove_exercise(ei)
            return {"removed": removed.id}

        @session_router.post("/exercises/{ei}/move")
        def move_exercise(ei: int, move: MoveRequest):
            return {"index": self._require_recorder().move_exercise(ei, move.offset)}

        @session_router.post("/custom_exercise")
        async def add_custom_exercise(request: CustomExerciseRequest):
            entry = await self._require_recorder().add_custom_exercise(
                request.name, request.description, request.category_id
            )
            return entry.model_dump(by_alias=True)

        @session_router.get("/suggestions")
        async def suggestions():
            recorder = self._require_recorder()
            max_weights = await self.planner.fetch_max_weights(recorder.user.id)
            updates = self.planner.suggest_updates(recorder.exercises, max_weights)
            return [u.model_dump() for u in updates]

        @session_router.post("/complete")
        async def complete(request: Optional[CompleteRequest] = None):
            recorder = self._require_recorder()
            result = await recorder.complete()
            body = {**dataclasses.asdict(result), "updates_applied": 0, "updates_error": None}
            if not result.offline and request is not None and request.updates:
                try:
                    body["updates_applied"] = await self.planner.apply_updates(
                        recorder.user.id, recorder.workout_id, request.updates
                    )
                except RemoteStoreError as exc:
                    logger.error("Failed to update workout targets: %s", exc)
                    body["updates_error"] = str(exc)
            return body

        @session_router.post("/cancel")
        def cancel():
            self._require_recorder().cancel()
            return {"status": "cancelled"}

        @self.app.put("/network")
        async def set_network(online: bool = Body(..., embed=True)):
            self.network.set_online(online)
            return {"online": self.network.is_online}

        @sync_router.post("")
        async def sync_now():
            report = await self.reconciler.sync_unsynced_sessions()
            return dataclasses.asdict(report)

        @sync_router.get("/pending")
        async def pending():
            sessions = await self.queue.get_unsynced()
            return {
                "count": len(sessions),
                "sessions": [s.model_dump() for s in sessions],
            }

        @analytics_router.get("/records")
        async def records(stored: bool = False):
            user = await self.remote.get_user()
            if stored:
                recs = await self.statistics.load_personal_records(user.id)
            else:
                history = await self.statistics.fetch_history(user.id)
                recs = self.statistics.personal_records(history)
            return [r.model_dump() for r in recs]

        @analytics_router.get("/volume")
        async def volume(exercise_id: str, timeframe: str = "month"):
            user = await self.remote.get_user()
            history = await self.statistics.fetch_history(user.id)
            points = self.statistics.exercise_progress(history, exercise_id, timeframe)
            return [p.model_dump() for p in points]

        @analytics_router.get("/top")
        async def top(limit: int = 10):
            user = await self.remote.get_user()
            history = await self.statistics.fetch_history(user.id)
            ranked = self.statistics.top_exercises_by_volume(history, limit)
            return [r.model_dump() for r in ranked]

        @analytics_router.post("/rebuild")
        async def rebuild():
            user = await self.remote.get_user()
            return {"processed": await self.statistics.rebuild_analytics(user.id)}

        self.app.include_router(session_router)
        self.app.include_router(sync_router)
        self.app.include_router(analytics_router)


api = FitFlowAPI()
app = api.app

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=api.settings.log_level)
    uvicorn.run(app)
