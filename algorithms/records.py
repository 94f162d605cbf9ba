from __future__ import annotations
from typing import Dict, Optional


class RecordTracker:
    """Track per-exercise maxima in a single left-to-right scan.

    Max weight, max reps and max volume are independent. Only max weight
    remembers the date that achieved it; on ties the first date seen wins,
    so that date depends on the order rows are fed in.
    """

    def __init__(self) -> None:
        self._records: Dict[str, dict] = {}

    def add(
        self,
        exercise_id: str,
        reps: Optional[int],
        weight: Optional[float],
        date: Optional[str] = None,
        name: Optional[str] = None,
    ) -> None:
        reps = int(reps or 0)
        weight = float(weight or 0)
        volume = reps * weight
        current = self._records.get(exercise_id)
        if current is None:
            self._records[exercise_id] = {
                "exercise_id": exercise_id,
                "name": name,
                "max_weight": weight,
                "max_weight_date": date,
                "max_reps": reps,
                "max_volume": volume,
            }
            return
        if current["name"] is None and name:
            current["name"] = name
        if weight > current["max_weight"]:
            current["max_weight"] = weight
            current["max_weight_date"] = date
        if reps > current["max_reps"]:
            current["max_reps"] = reps
        if volume > current["max_volume"]:
            current["max_volume"] = volume

    def records(self) -> list[dict]:
        return [dict(r) for r in self._records.values()]
