"""Remote persistence service contract and its PostgREST HTTP client."""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from errors import NotAuthenticatedError, RemoteStoreError
from models import HistoryRow, User, Workout, WorkoutExercise

logger = logging.getLogger(__name__)

Filters = Dict[str, Any]
M = TypeVar("M", bound=BaseModel)


class RemoteStore(ABC):
    """Generic queryable store the engine depends on.

    ``filters`` map a column to a value (equality) or to an
    ``(operator, value)`` pair where operator is one of ``eq``, ``ilike``,
    ``gte``, ``lte`` or ``in``. ``columns`` may embed related tables with the
    ``alias:table(cols)`` syntax.
    """

    @abstractmethod
    async def get_user(self) -> User: ...

    @abstractmethod
    async def insert(self, table: str, record: dict) -> dict: ...

    @abstractmethod
    async def batch_insert(self, table: str, records: List[dict]) -> None: ...

    @abstractmethod
    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[dict]: ...

    @abstractmethod
    async def count(self, table: str, filters: Optional[Filters] = None) -> int: ...

    @abstractmethod
    async def update(self, table: str, values: dict, filters: Filters) -> None: ...

    @abstractmethod
    async def upsert(
        self, table: str, records: List[dict], on_conflict: str
    ) -> None: ...

    async def aclose(self) -> None:
        return None


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def filter_params(filters: Optional[Filters]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for column, value in (filters or {}).items():
        if isinstance(value, tuple):
            op, operand = value
        else:
            op, operand = "eq", value
        if op == "in":
            operand = "(" + ",".join(_format_value(v) for v in operand) + ")"
            params[column] = f"in.{operand}"
        elif op == "eq" and operand is None:
            params[column] = "is.null"
        else:
            params[column] = f"{op}.{_format_value(operand)}"
    return params


class RestRemoteStore(RemoteStore):
    """Talk to a Supabase-style PostgREST endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        access_token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        headers = {"apikey": api_key}
        token = access_token or api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            for key in ("message", "error_description", "msg", "error"):
                if body.get(key):
                    return str(body[key])
        return f"HTTP {resp.status_code}"

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteStoreError(str(exc) or exc.__class__.__name__) from exc
        if resp.is_error:
            raise RemoteStoreError(self._error_message(resp))
        return resp

    async def get_user(self) -> User:
        if not self.access_token:
            raise NotAuthenticatedError()
        try:
            resp = await self._client.get("/auth/v1/user")
        except httpx.HTTPError as exc:
            raise RemoteStoreError(str(exc) or exc.__class__.__name__) from exc
        if resp.status_code in (401, 403):
            raise NotAuthenticatedError(self._error_message(resp))
        if resp.is_error:
            raise RemoteStoreError(self._error_message(resp))
        return parse_record(User, resp.json(), "user")

    async def insert(self, table: str, record: dict) -> dict:
        resp = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=record,
            headers={"Prefer": "return=representation"},
        )
        rows = resp.json()
        if isinstance(rows, list):
            if not rows:
                raise RemoteStoreError(f"Insert into {table} returned no rows")
            return rows[0]
        return rows

    async def batch_insert(self, table: str, records: List[dict]) -> None:
        if not records:
            return
        await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=records,
            headers={"Prefer": "return=minimal"},
        )

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[dict]:
        params = {"select": columns, **filter_params(filters)}
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        if offset is not None:
            params["offset"] = str(offset)
        resp = await self._request("GET", f"/rest/v1/{table}", params=params)
        return resp.json()

    async def count(self, table: str, filters: Optional[Filters] = None) -> int:
        resp = await self._request(
            "HEAD",
            f"/rest/v1/{table}",
            params={"select": "*", **filter_params(filters)},
            headers={"Prefer": "count=exact"},
        )
        content_range = resp.headers.get("content-range", "")
        total = content_range.rpartition("/")[2]
        if not total.isdigit():
            raise RemoteStoreError(f"Missing row count for {table}")
        return int(total)

    async def update(self, table: str, values: dict, filters: Filters) -> None:
        await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=filter_params(filters),
            json=values,
            headers={"Prefer": "return=minimal"},
        )

    async def upsert(self, table: str, records: List[dict], on_conflict: str) -> None:
        if not records:
            return
        await self._request(
            "POST",
            f"/rest/v1/{table}",
            params={"on_conflict": on_conflict},
            json=records,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )


def parse_record(model: Type[M], row: Any, source: str) -> M:
    """Validate a remote ``row`` into ``model`` or raise RemoteStoreError."""
    if not isinstance(row, dict):
        raise RemoteStoreError(f"Malformed {source} row: {row!r}")
    cleaned = {k: v for k, v in row.items() if v is not None}
    try:
        return model.model_validate(cleaned)
    except ValidationError as exc:
        raise RemoteStoreError(f"Malformed {source} row: {exc}") from exc


def _embedded(row: dict, key: str) -> dict:
    value = row.get(key)
    if isinstance(value, list):
        value = value[0] if value else None
    return value if isinstance(value, dict) else {}


async def fetch_workout(remote: RemoteStore, workout_id: str) -> Workout:
    rows = await remote.select("workouts", filters={"id": workout_id})
    if not rows:
        raise RemoteStoreError(f"Workout {workout_id} not found")
    return parse_record(Workout, rows[0], "workouts")


async def fetch_workout_exercises(
    remote: RemoteStore, workout_id: str
) -> List[WorkoutExercise]:
    rows = await remote.select(
        "workout_exercises",
        columns="*,exercise:exercises(*)",
        filters={"workout_id": workout_id},
        order="exercise_order.asc",
    )
    return [parse_record(WorkoutExercise, r, "workout_exercises") for r in rows]


async def fetch_history(remote: RemoteStore, user_id: str) -> List[HistoryRow]:
    """Return every persisted set of ``user_id`` with exercise and session data."""
    rows = await remote.select(
        "session_exercises",
        columns="id,reps,weight,exercise_id,exercise:exercises(name),session:sessions(started_at)",
        filters={"user_id": user_id},
    )
    history: List[HistoryRow] = []
    for row in rows:
        started_at = _embedded(row, "session").get("started_at")
        if not started_at:
            logger.warning("Skipping set %s without a session start", row.get("id"))
            continue
        history.append(
            parse_record(
                HistoryRow,
                {
                    "exercise_id": row.get("exercise_id"),
                    "exercise_name": _embedded(row, "exercise").get("name"),
                    "reps": row.get("reps"),
                    "weight": row.get("weight"),
                    "started_at": started_at,
                },
                "session_exercises",
            )
        )
    return history


def session_rows(
    session_id: Any, user_id: Optional[str], sets: Iterable[dict]
) -> List[dict]:
    """Build ``session_exercises`` rows for a stored session."""
    rows = []
    for s in sets:
        row = {"session_id": session_id, **s}
        if user_id is not None:
            row["user_id"] = user_id
        rows.append(row)
    return rows
