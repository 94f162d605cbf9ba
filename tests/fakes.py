import itertools
import os
import re
import sys
from collections import defaultdict
from typing import List, Optional


sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from errors import NotAuthenticatedError, RemoteStoreError
from models import User
from remote_store import RemoteStore

EMBED = re.compile(r"^(\w+):(\w+)\((.*)\)$")


def split_columns(columns: str) -> List[str]:
    parts, depth, current = [], 0, ""
    for ch in columns:
        if ch == "," and depth == 0:
            parts.append(current.strip())
            current = ""
            continue
        depth += ch == "("
        depth -= ch == ")"
        current += ch
    if current.strip():
        parts.append(current.strip())
    return parts


def like(pattern: str, value) -> bool:
    regex = "".join(
        ".*" if c == "%" else "." if c == "_" else re.escape(c) for c in pattern
    )
    return re.fullmatch(regex, str(value), re.IGNORECASE) is not None


class InMemoryRemoteStore(RemoteStore):
    """Table-backed stand-in for the remote store with failure injection."""

    def __init__(self, user: Optional[User] = User(id="user-1", email="a@b.c")) -> None:
        self.user = user
        self.tables: dict[str, list[dict]] = defaultdict(list)
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], Optional[int]] = {}
        self._ids = itertools.count(1)

    def seed(self, table: str, *rows: dict) -> None:
        for row in rows:
            self.tables[table].append(dict(row))

    def fail(self, method: str, table: str, times: Optional[int] = None) -> None:
        self.failures[(method, table)] = times

    def _check(self, method: str, table: str) -> None:
        self.calls.append((method, table))
        key = (method, table)
        if key not in self.failures:
            return
        remaining = self.failures[key]
        if remaining is not None:
            if remaining <= 1:
                del self.failures[key]
            else:
                self.failures[key] = remaining - 1
        raise RemoteStoreError(f"injected {method} failure on {table}")

    def _with_id(self, record: dict) -> dict:
        row = dict(record)
        row.setdefault("id", f"id-{next(self._ids)}")
        return row

    @staticmethod
    def _matches(row: dict, filters) -> bool:
        for column, value in (filters or {}).items():
            op, operand = value if isinstance(value, tuple) else ("eq", value)
            current = row.get(column)
            if op == "eq":
                if operand is None:
                    if current is not None:
                        return False
                elif str(current) != str(operand):
                    return False
            elif op == "ilike":
                if current is None or not like(operand, current):
                    return False
            elif op == "in":
                if str(current) not in {str(v) for v in operand}:
                    return False
            elif op == "gte":
                if current is None or current < operand:
                    return False
            elif op == "lte":
                if current is None or current > operand:
                    return False
        return True

    def _project(self, row: dict, columns: str) -> dict:
        out: dict = {}
        for column in split_columns(columns):
            embed = EMBED.match(column)
            if embed:
                alias, table, cols = embed.groups()
                fk = row.get(f"{alias}_id")
                target = next(
                    (r for r in self.tables[table] if str(r.get("id")) == str(fk)),
                    None,
                )
                out[alias] = None if target is None else self._project(target, cols)
            elif column == "*":
                out.update(row)
            else:
                out[column] = row.get(column)
        return out

    async def get_user(self) -> User:
        self._check("get_user", "auth")
        if self.user is None:
            raise NotAuthenticatedError()
        return self.user

    async def insert(self, table: str, record: dict) -> dict:
        self._check("insert", table)
        row = self._with_id(record)
        self.tables[table].append(row)
        return dict(row)

    async def batch_insert(self, table: str, records: List[dict]) -> None:
        self._check("batch_insert", table)
        for record in records:
            self.tables[table].append(self._with_id(record))

    async def select(
        self, table, columns="*", filters=None, order=None, limit=None, offset=None
    ) -> List[dict]:
        self._check("select", table)
        rows = [r for r in self.tables[table] if self._matches(r, filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: r.get(column), reverse=direction == "desc")
        start = offset or 0
        rows = rows[start : start + limit if limit is not None else None]
        return [self._project(r, columns) for r in rows]

    async def count(self, table, filters=None) -> int:
        self._check("count", table)
        return sum(1 for r in self.tables[table] if self._matches(r, filters))

    async def update(self, table, values, filters) -> None:
        self._check("update", table)
        for row in self.tables[table]:
            if self._matches(row, filters):
                row.update(values)

    async def upsert(self, table, records, on_conflict) -> None:
        self._check("upsert", table)
        keys = on_conflict.split(",")
        for record in records:
            existing = next(
                (
                    r
                    for r in self.tables[table]
                    if all(str(r.get(k)) == str(record.get(k)) for k in keys)
                ),
                None,
            )
            if existing is None:
                self.tables[table].append(self._with_id(record))
            else:
                existing.update(record)


def seed_workout(remote: InMemoryRemoteStore) -> None:
    """Two workouts: Push Day (bench 3x10, squat 2x5) and Leg Day (squat)."""
    remote.seed(
        "exercises",
        {"id": "ex-1", "name": "Bench Press", "is_default": True},
        {"id": "ex-2", "name": "Squat", "is_default": True},
    )
    remote.seed(
        "workouts",
        {"id": "w-1", "name": "Push Day", "user_id": "user-1"},
        {"id": "w-2", "name": "Leg Day", "user_id": "user-1"},
    )
    remote.seed(
        "workout_exercises",
        {
            "id": "we-1",
            "workout_id": "w-1",
            "exercise_id": "ex-1",
            "sets": 3,
            "reps": 10,
            "weight": 60,
            "exercise_order": 0,
        },
        {
            "id": "we-2",
            "workout_id": "w-1",
            "exercise_id": "ex-2",
            "sets": 2,
            "reps": 5,
            "weight": 100,
            "exercise_order": 1,
        },
        {
            "id": "we-3",
            "workout_id": "w-2",
            "exercise_id": "ex-2",
            "sets": 4,
            "reps": 8,
            "weight": 80,
            "exercise_order": 0,
        },
    )
