# persistence.py
from __future__ import annotations
import asyncio
import copy
import itertools
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import ChangeEvent

logger = logging.getLogger(__name__)


class ChangeFeed:
    def __init__(self):
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    def publish(self, event: ChangeEvent) -> None:
        for q in list(self._subscribers):
            q.put_nowait(event)


class InMemoryRowStore:
    """Rows are plain dicts keyed by ``id``.

    Every write publishes a ChangeEvent carrying copies of the previous and
    new row, in commit order.
    """

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed or ChangeFeed()
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._commits = itertools.count(1)

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def _emit(self, table: str, event_type: str, previous: Optional[Dict], new: Optional[Dict]) -> None:
        ev = ChangeEvent(
            table=table,
            event_type=event_type,
            previous_row=copy.deepcopy(previous),
            new_row=copy.deepcopy(new),
            commit_ts=next(self._commits),
        )
        logger.debug("commit %d: %s %s", ev.commit_ts, event_type, table)
        self.feed.publish(ev)

    def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        row = self._table(table).get(row_id)
        return copy.deepcopy(row)

    def select(self, table: str, **equals: Any) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._table(table).values()
                if all(r.get(k) == v for k, v in equals.items())]

    def select_in(self, table: str, column: str, values: Iterable[Any]) -> List[Dict[str, Any]]:
        wanted = set(values)
        return [copy.deepcopy(r) for r in self._table(table).values() if r.get(column) in wanted]

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        row = copy.deepcopy(row)
        row.setdefault("id", str(uuid.uuid4()))
        rows = self._table(table)
        if row["id"] in rows:
            raise KeyError(f"duplicate id {row['id']} in {table}")
        rows[row["id"]] = row
        self._emit(table, "insert", None, row)
        return copy.deepcopy(row)

    def update(self, table: str, row_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._table(table)
        if row_id not in rows:
            raise KeyError(f"no row {row_id} in {table}")
        previous = rows[row_id]
        row = {**copy.deepcopy(previous), **copy.deepcopy(changes), "id": row_id}
        rows[row_id] = row
        self._emit(table, "update", previous, row)
        return copy.deepcopy(row)

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: Sequence[str]) -> Dict[str, Any]:
        """Insert ``row`` or replace the row sharing its ``on_conflict`` columns."""
        key = {c: row[c] for c in on_conflict}
        existing = self.select(table, **key)
        if not existing:
            return self.insert(table, row)
        current = existing[0]
        replacement = {k: v for k, v in row.items() if k != "id"}
        return self.update(table, current["id"], replacement)

    def delete(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        previous = self._table(table).pop(row_id, None)
        if previous is not None:
            self._emit(table, "delete", previous, None)
        return copy.deepcopy(previous)
