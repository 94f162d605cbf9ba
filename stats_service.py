from __future__ import annotations
import calendar
import datetime
import logging
from typing import Dict, List, Optional

from algorithms import RecordTracker
from errors import InvalidInputError, RemoteStoreError
from models import (
    ExerciseVolume,
    HistoryRow,
    PersonalRecord,
    VolumePoint,
    parse_timestamp,
    utc_now,
    utc_now_iso,
)
from remote_store import RemoteStore, fetch_history, parse_record

logger = logging.getLogger(__name__)

TIMEFRAMES = ("week", "month", "3months", "year", "all")
ANALYTICS_BATCH_SIZE = 50


def subtract_months(day: datetime.date, months: int) -> datetime.date:
    """Return ``day`` moved back by ``months``, clamped to the month's end."""
    index = day.year * 12 + day.month - 1 - months
    year, month = divmod(index, 12)
    month += 1
    last = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last))


def timeframe_cutoff(
    timeframe: str, now: datetime.datetime
) -> Optional[datetime.date]:
    """Return the first local date inside ``timeframe`` or None for all."""
    if timeframe not in TIMEFRAMES:
        raise InvalidInputError(f"Unknown timeframe: {timeframe}")
    today = now.astimezone().date()
    if timeframe == "week":
        return today - datetime.timedelta(days=7)
    if timeframe == "month":
        return subtract_months(today, 1)
    if timeframe == "3months":
        return subtract_months(today, 3)
    if timeframe == "year":
        return subtract_months(today, 12)
    return None


def local_date(ts: str) -> datetime.date:
    return parse_timestamp(ts).astimezone().date()


class StatisticsService:
    """Compute personal records and volume statistics from set history."""

    def __init__(self, remote: RemoteStore | None = None) -> None:
        self.remote = remote

    @staticmethod
    def personal_records(rows: List[HistoryRow]) -> List[PersonalRecord]:
        """Return max weight, reps and volume for every exercise.

        Each maximum is tracked independently. The max weight date is the
        first one seen at that weight, so it follows the order of ``rows``.
        """
        tracker = RecordTracker()
        for row in rows:
            tracker.add(
                row.exercise_id,
                row.reps,
                row.weight,
                date=row.started_at,
                name=row.exercise_name,
            )
        return [PersonalRecord(**r) for r in tracker.records()]

    @staticmethod
    def exercise_progress(
        rows: List[HistoryRow],
        exercise_id: str,
        timeframe: str = "all",
        now: datetime.datetime | None = None,
    ) -> List[VolumePoint]:
        """Per-day max weight and total volume of one exercise, oldest first."""
        cutoff = timeframe_cutoff(timeframe, now or utc_now())
        grouped: Dict[datetime.date, List[HistoryRow]] = {}
        for row in rows:
            if row.exercise_id != exercise_id:
                continue
            try:
                day = local_date(row.started_at)
            except ValueError:
                logger.warning("Skipping set with invalid date %r", row.started_at)
                continue
            if cutoff is not None and day < cutoff:
                continue
            grouped.setdefault(day, []).append(row)
        return [
            VolumePoint(
                date=day.isoformat(),
                max_weight=max(r.weight for r in sets),
                total_volume=sum(r.reps * r.weight for r in sets),
            )
            for day, sets in sorted(grouped.items())
        ]

    @staticmethod
    def top_exercises_by_volume(
        rows: List[HistoryRow], limit: int = 10
    ) -> List[ExerciseVolume]:
        """Total volume per exercise name, highest first, across all history."""
        totals: Dict[str, float] = {}
        for row in rows:
            if not row.exercise_name:
                continue
            totals[row.exercise_name] = (
                totals.get(row.exercise_name, 0.0) + row.reps * row.weight
            )
        ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
        return [ExerciseVolume(name=n, volume=v) for n, v in ranked[:limit]]

    def _require_remote(self) -> RemoteStore:
        if self.remote is None:
            raise RemoteStoreError("remote store not configured")
        return self.remote

    async def fetch_history(self, user_id: str) -> List[HistoryRow]:
        return await fetch_history(self._require_remote(), user_id)

    async def load_personal_records(self, user_id: str) -> List[PersonalRecord]:
        """Read the stored maxima of ``user_id`` from the analytics table."""
        rows = await self._require_remote().select(
            "analytics",
            columns="exercise_id,max_weight,max_reps,max_volume,exercise:exercises(name)",
            filters={"user_id": user_id},
        )
        records = []
        for row in rows:
            embedded = row.get("exercise")
            if isinstance(embedded, list):
                embedded = embedded[0] if embedded else None
            data = {k: v for k, v in row.items() if k != "exercise"}
            if isinstance(embedded, dict):
                data["name"] = embedded.get("name")
            records.append(parse_record(PersonalRecord, data, "analytics"))
        return records

    async def rebuild_analytics(
        self, user_id: str, batch_size: int = ANALYTICS_BATCH_SIZE
    ) -> int:
        """Recompute maxima from history and upsert them into analytics.

        Batches that fail are logged and skipped. Returns the number of
        exercises processed.
        """
        remote = self._require_remote()
        rows = await remote.select(
            "session_exercises",
            columns="reps,weight,exercise_id",
            filters={"user_id": user_id},
        )
        tracker = RecordTracker()
        for row in rows:
            tracker.add(str(row["exercise_id"]), row.get("reps"), row.get("weight"))
        updated_at = utc_now_iso()
        updates = [
            {
                "user_id": user_id,
                "exercise_id": r["exercise_id"],
                "max_weight": r["max_weight"],
                "max_reps": r["max_reps"],
                "max_volume": r["max_volume"],
                "updated_at": updated_at,
            }
            for r in tracker.records()
        ]
        for start in range(0, len(updates), batch_size):
            batch = updates[start : start + batch_size]
            try:
                await remote.upsert("analytics", batch, on_conflict="user_id,exercise_id")
            except RemoteStoreError as exc:
                logger.error("Analytics batch at %d failed: %s", start, exc)
        logger.info("Processed %d exercises for user %s", len(updates), user_id)
        return len(updates)
