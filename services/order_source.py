"""Boundary to the order store plus the join-all helper for concurrent reads."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    TypeVar,
)

from .order_snapshots import OrderSnapshot, format_timestamp
from .time_windows import TimeField, TimeWindow

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class SourceFetchError(RuntimeError):
    """Raised when any constituent fetch of a report fails."""

    def __init__(self, label: str, cause: Optional[BaseException] = None) -> None:
        message = f"Fetch '{label}' failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.label = label
        self.cause = cause


class CourierMatch(str, Enum):
    ASSIGNED = "assigned"
    ORIGINAL = "original"
    EITHER = "either"


@dataclass(frozen=True)
class RangeFetch:
    """One time-field range query against the orders table."""

    field: TimeField
    window: TimeWindow
    courier_ids: Tuple[str, ...] = ()
    courier_match: CourierMatch = CourierMatch.ASSIGNED
    archived: Optional[bool] = None
    require_assigned_courier: bool = False
    legacy_created_fallback: bool = False

    @property
    def label(self) -> str:
        return f"{self.field.value}-range"


class OrderSource(Protocol):
    """Read-only access to order snapshots."""

    async def fetch_range(self, request: RangeFetch) -> List[OrderSnapshot]:
        ...

    async def fetch_history(
        self, courier_ids: Sequence[str], *, archived: Optional[bool] = None
    ) -> List[OrderSnapshot]:
        ...


# ---------------------------------------------------------------------------
# Join-all task group
# ---------------------------------------------------------------------------


async def join_all(
    fetches: Mapping[str, Awaitable[T]], *, timeout: Optional[float] = None
) -> Dict[str, T]:
    """Run labelled awaitables concurrently and return every result.

    The first failure cancels the remaining fetches and is re-raised as
    :class:`SourceFetchError`; no partial result is ever returned.
    """

    tasks = {label: asyncio.ensure_future(awaitable) for label, awaitable in fetches.items()}
    if not tasks:
        return {}
    try:
        done, pending = await asyncio.wait(
            tasks.values(), timeout=timeout, return_when=asyncio.FIRST_EXCEPTION
        )
    finally:
        unfinished = [task for task in tasks.values() if not task.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)

    for label, task in tasks.items():
        if task in done and not task.cancelled() and task.exception() is not None:
            error = task.exception()
            LOGGER.warning("Order fetch %s failed; discarding %d sibling fetches", label, len(pending))
            raise SourceFetchError(label, error) from error
    if pending:
        label = next(label for label, task in tasks.items() if task in pending)
        LOGGER.warning("Order fetch %s timed out after %ss", label, timeout)
        raise SourceFetchError(label, asyncio.TimeoutError(f"timed out after {timeout}s"))
    return {label: task.result() for label, task in tasks.items()}


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------


def _courier_clause(courier_ids: Sequence[str], match: CourierMatch) -> Tuple[str, List[Any]]:
    placeholders = ", ".join("?" for _ in courier_ids)
    if match is CourierMatch.ASSIGNED:
        return f"assigned_courier_id IN ({placeholders})", list(courier_ids)
    if match is CourierMatch.ORIGINAL:
        return f"original_courier_id IN ({placeholders})", list(courier_ids)
    return (
        f"(assigned_courier_id IN ({placeholders}) OR original_courier_id IN ({placeholders}))",
        list(courier_ids) * 2,
    )


def build_range_query(request: RangeFetch) -> Tuple[str, List[Any]]:
    window = request.window
    comparison = "<" if window.half_open else "<="
    upper = window.end_exclusive if window.half_open else window.end
    bounds = [format_timestamp(window.start), format_timestamp(upper)]

    column = request.field.value
    range_clause = f"({column} >= ? AND {column} {comparison} ?)"
    params: List[Any] = list(bounds)
    if request.legacy_created_fallback and request.field is TimeField.ASSIGNED_AT:
        range_clause = (
            f"({range_clause} OR (assigned_at IS NULL AND created_at >= ? "
            f"AND created_at {comparison} ?))"
        )
        params.extend(bounds)

    clauses = [range_clause]
    if request.courier_ids:
        clause, courier_params = _courier_clause(request.courier_ids, request.courier_match)
        clauses.append(clause)
        params.extend(courier_params)
    if request.archived is not None:
        clauses.append("archived = ?")
        params.append(1 if request.archived else 0)
    if request.require_assigned_courier:
        clauses.append("assigned_courier_id IS NOT NULL")

    sql = f"SELECT * FROM orders WHERE {' AND '.join(clauses)} ORDER BY created_at, record_id"
    return sql, params


def build_history_query(
    courier_ids: Sequence[str], archived: Optional[bool] = None
) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if courier_ids:
        clause, params = _courier_clause(courier_ids, CourierMatch.EITHER)
        clauses.append(clause)
    if archived is not None:
        clauses.append("archived = ?")
        params.append(1 if archived else 0)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return f"SELECT * FROM orders{where} ORDER BY created_at, record_id", params


class SQLiteOrderSource:
    """:class:`OrderSource` over the local ``orders`` table.

    Queries run in worker threads, each on its own connection from
    ``connection_factory``.
    """

    def __init__(self, connection_factory: Callable[[], sqlite3.Connection]) -> None:
        self._connection_factory = connection_factory

    def _query(self, sql: str, params: Sequence[Any]) -> List[OrderSnapshot]:
        conn = self._connection_factory()
        try:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(sql, list(params)).fetchall()
        finally:
            conn.close()
        return [OrderSnapshot.from_row(row) for row in rows]

    async def fetch_range(self, request: RangeFetch) -> List[OrderSnapshot]:
        sql, params = build_range_query(request)
        return await asyncio.to_thread(self._query, sql, params)

    async def fetch_history(
        self, courier_ids: Sequence[str], *, archived: Optional[bool] = None
    ) -> List[OrderSnapshot]:
        sql, params = build_history_query(courier_ids, archived)
        return await asyncio.to_thread(self._query, sql, params)


__all__ = [
    "CourierMatch",
    "OrderSource",
    "RangeFetch",
    "SQLiteOrderSource",
    "SourceFetchError",
    "build_history_query",
    "build_range_query",
    "join_all",
]
