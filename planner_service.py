from __future__ import annotations
import logging
from typing import Dict, List

from errors import RemoteStoreError
from models import SessionExercise, WorkoutUpdate, utc_now_iso
from remote_store import RemoteStore

logger = logging.getLogger(__name__)


class WorkoutUpdatePlanner:
    """Suggests new workout targets from a finished session."""

    def __init__(self, remote: RemoteStore) -> None:
        self.remote = remote

    @staticmethod
    def suggest_updates(
        exercises: List[SessionExercise], max_weights: Dict[str, float]
    ) -> List[WorkoutUpdate]:
        """Return one suggestion per exercise that has completed sets.

        A suggestion is pre-selected when the session set a new max weight or
        when it differs from the targets. Weight only counts when it went up.
        """
        updates: List[WorkoutUpdate] = []
        for exercise in exercises:
            completed = exercise.completed_sets()
            if not completed:
                continue
            best_weight = max(s.weight or 0.0 for s in completed)
            best_reps = max(s.reps or 0 for s in completed)
            is_pr = best_weight > max_weights.get(exercise.id, 0.0)
            selected = (
                is_pr
                or len(completed) != exercise.target_sets
                or best_reps != exercise.target_reps
                or best_weight > exercise.target_weight
            )
            updates.append(
                WorkoutUpdate(
                    exercise_id=exercise.id,
                    sets=len(completed),
                    reps=best_reps,
                    weight=best_weight,
                    selected=selected,
                    is_pr=is_pr,
                )
            )
        return updates

    async def fetch_max_weights(self, user_id: str) -> Dict[str, float]:
        rows = await self.remote.select(
            "analytics",
            columns="exercise_id,max_weight",
            filters={"user_id": user_id},
        )
        return {str(r["exercise_id"]): float(r.get("max_weight") or 0) for r in rows}

    async def apply_updates(
        self, user_id: str, workout_id: str, updates: List[WorkoutUpdate]
    ) -> int:
        """Write selected targets back to the workout and record new maxima."""
        applied = 0
        for update in updates:
            if not update.selected:
                continue
            await self.remote.update(
                "workout_exercises",
                {"sets": update.sets, "reps": update.reps, "weight": update.weight},
                {"workout_id": workout_id, "exercise_id": update.exercise_id},
            )
            applied += 1
            if not update.is_pr:
                continue
            try:
                await self.remote.upsert(
                    "analytics",
                    [
                        {
                            "user_id": user_id,
                            "exercise_id": update.exercise_id,
                            "max_weight": update.weight,
                            "updated_at": utc_now_iso(),
                        }
                    ],
                    on_conflict="user_id,exercise_id",
                )
            except RemoteStoreError as exc:
                logger.error(
                    "Failed to record max weight for exercise %s: %s",
                    update.exercise_id,
                    exc,
                )
        return applied
