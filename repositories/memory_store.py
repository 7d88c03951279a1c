from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from repositories.store import UNIQUE_INDEXES, DuplicateRecordError

_MISSING = object()


def _get_path(document: dict[str, Any], path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set_path(document: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = value


def _unset_path(document: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    target: Any = document
    for part in parts[:-1]:
        target = target.get(part) if isinstance(target, dict) else None
    if isinstance(target, dict):
        target.pop(parts[-1], None)


def _sort_key(field: str):
    def key(row: dict[str, Any]) -> tuple[int, Any]:
        value = _get_path(row, field)
        if value is _MISSING or value is None:
            return (1, 0)
        return (0, value)

    return key


def _match_operator(value: Any, operator: str, operand: Any) -> bool:
    present = value is not _MISSING
    if operator == "$exists":
        return present == bool(operand)
    if operator == "$ne":
        return (value if present else None) != operand
    if operator == "$in":
        return (value if present else None) in operand
    if operator == "$nin":
        return (value if present else None) not in operand
    if not present or value is None:
        return False
    if operator == "$lt":
        return value < operand
    if operator == "$lte":
        return value <= operand
    if operator == "$gt":
        return value > operand
    if operator == "$gte":
        return value >= operand
    raise ValueError(f"Unsupported query operator {operator}")


def matches(document: dict[str, Any], filter: dict[str, Any]) -> bool:
    for path, condition in filter.items():
        value = _get_path(document, path)
        if isinstance(condition, dict) and condition and all(key.startswith("$") for key in condition):
            if not all(_match_operator(value, op, operand) for op, operand in condition.items()):
                return False
        elif condition is None:
            if value is not _MISSING and value is not None:
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


class _Undo:
    """Fields one write changed; None ``writes`` marks an insert."""

    def __init__(
        self,
        collection: str,
        row_id: str,
        writes: dict[str, tuple[Any, Any]] | None = None,
        increments: dict[str, int] | None = None,
    ) -> None:
        self.collection = collection
        self.row_id = row_id
        self.writes = writes
        self.increments = increments or {}


class _Transaction:
    def __init__(self) -> None:
        self.undo: list[_Undo] = []


class InMemoryDocumentStore:
    """Process-local ``DocumentStore`` for tests and local runs.

    Transactions are serialized by a lock and keep a field-level undo log.
    Rollback reverts only the fields the transaction wrote, so concurrent
    writes made without the session survive it.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._tx_lock = asyncio.Lock()

    def _rows(self, collection: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def _check_unique(self, collection: str, candidate: dict[str, Any]) -> None:
        for key in UNIQUE_INDEXES.get(collection, []):
            values = tuple(_get_path(candidate, field) for field in key)
            if any(value is _MISSING or value is None for value in values):
                continue
            for row in self._rows(collection).values():
                if row["_id"] == candidate["_id"]:
                    continue
                if tuple(_get_path(row, field) for field in key) == values:
                    raise DuplicateRecordError(collection, key)

    async def ensure_indexes(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    async def insert(self, collection: str, document: dict[str, Any], *, session: Any = None) -> dict[str, Any]:
        stored = copy.deepcopy(document)
        if "_id" not in stored:
            raise ValueError("documents must carry an _id")
        rows = self._rows(collection)
        if stored["_id"] in rows:
            raise DuplicateRecordError(collection, ("_id",))
        self._check_unique(collection, stored)
        rows[stored["_id"]] = stored
        if isinstance(session, _Transaction):
            session.undo.append(_Undo(collection, stored["_id"]))
        return copy.deepcopy(stored)

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any],
        *,
        session: Any = None,
    ) -> dict[str, Any] | None:
        for row in self._rows(collection).values():
            if matches(row, filter):
                return copy.deepcopy(row)
        return None

    async def find(
        self,
        collection: str,
        filter: dict[str, Any],
        *,
        sort: list[tuple[str, int]] | None = None,
        limit: int = 0,
        session: Any = None,
    ) -> list[dict[str, Any]]:
        rows = [copy.deepcopy(row) for row in self._rows(collection).values() if matches(row, filter)]
        for field, direction in reversed(sort or []):
            rows.sort(key=_sort_key(field), reverse=direction < 0)
        if limit:
            rows = rows[:limit]
        return rows

    async def compare_and_set(
        self,
        collection: str,
        filter: dict[str, Any],
        *,
        set_fields: dict[str, Any] | None = None,
        inc_fields: dict[str, int] | None = None,
        session: Any = None,
    ) -> dict[str, Any] | None:
        rows = self._rows(collection)
        for row_id, row in rows.items():
            if not matches(row, filter):
                continue
            updated = copy.deepcopy(row)
            writes: dict[str, tuple[Any, Any]] = {}
            for path, value in (set_fields or {}).items():
                writes[path] = (copy.deepcopy(_get_path(row, path)), copy.deepcopy(value))
                _set_path(updated, path, copy.deepcopy(value))
            for path, delta in (inc_fields or {}).items():
                current = _get_path(updated, path)
                _set_path(updated, path, (0 if current is _MISSING or current is None else current) + delta)
            self._check_unique(collection, updated)
            if isinstance(session, _Transaction):
                session.undo.append(_Undo(collection, row_id, writes, dict(inc_fields or {})))
            rows[row_id] = updated
            return copy.deepcopy(updated)
        return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_Transaction]:
        async with self._tx_lock:
            tx = _Transaction()
            try:
                yield tx
            except BaseException:
                for entry in reversed(tx.undo):
                    self._revert(entry)
                raise

    def _revert(self, entry: _Undo) -> None:
        rows = self._rows(entry.collection)
        if entry.writes is None:
            rows.pop(entry.row_id, None)
            return
        row = rows.get(entry.row_id)
        if row is None:
            return
        for path, (previous, written) in entry.writes.items():
            # A later write outside the transaction owns the field now.
            if _get_path(row, path) != written:
                continue
            if previous is _MISSING:
                _unset_path(row, path)
            else:
                _set_path(row, path, previous)
        for path, delta in entry.increments.items():
            current = _get_path(row, path)
            if isinstance(current, (int, float)) and not isinstance(current, bool):
                _set_path(row, path, current - delta)
