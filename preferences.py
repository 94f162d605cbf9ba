from __future__ import annotations
from typing import Optional

from models import UserPreferences
from remote_store import RemoteStore, parse_record

DEFAULT_REST_TIMER = 60


async def fetch_preferences(remote: RemoteStore, user_id: str) -> UserPreferences:
    """Return the unit and rest timer preferences of ``user_id``."""
    rows = await remote.select(
        "user_preferences",
        columns="use_metric,default_rest_timer",
        filters={"user_id": user_id},
        limit=1,
    )
    if not rows:
        return UserPreferences()
    prefs = parse_record(UserPreferences, rows[0], "user_preferences")
    if not prefs.default_rest_timer:
        prefs.default_rest_timer = DEFAULT_REST_TIMER
    return prefs


async def save_preferences(
    remote: RemoteStore,
    user_id: str,
    use_metric: Optional[bool] = None,
    default_rest_timer: Optional[int] = None,
) -> UserPreferences:
    current = await fetch_preferences(remote, user_id)
    if use_metric is not None:
        current.use_metric = use_metric
    if default_rest_timer is not None:
        current.default_rest_timer = default_rest_timer
    await remote.upsert(
        "user_preferences",
        [{"user_id": user_id, **current.model_dump()}],
        on_conflict="user_id",
    )
    return current
