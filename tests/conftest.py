"""Shared fixtures: an in-memory stand-in for the Supabase backend."""

import copy
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from pingpong_matcher.storage.backend import RequestError

ALICE = "user-alice"
BOB = "user-bob"
CAROL = "user-carol"


def _matches_filter(row: Optional[Dict[str, Any]], expression: Optional[str]) -> bool:
    if expression is None:
        return True
    column, _, rest = expression.partition("=")
    op, _, value = rest.partition(".")
    assert op == "eq", f"fake backend only supports eq filters, got {expression}"
    if not row or column not in row:
        # Deletes usually carry only the primary key; deliver them anyway
        return True
    return str(row[column]) == value


class FakeSubscription:
    def __init__(self, backend: "FakeBackend", table: str, callback: Callable, filter: Optional[str]):
        self.backend = backend
        self.table = table
        self.callback = callback
        self.filter = filter
        self.active = True

    async def unsubscribe(self) -> None:
        self.active = False


class FakeBackend:
    """Implements the Backend methods the services use, against dicts."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.subscriptions: List[FakeSubscription] = []
        self.calls: List[Tuple[str, str]] = []
        self._next_id: Dict[str, int] = defaultdict(lambda: 100)
        self._failures: Dict[Tuple[str, str], str] = {}
        self._clock = 0

    # --- test helpers ---

    def seed(self, table: str, *rows: Dict[str, Any]) -> None:
        for row in rows:
            self.tables[table].append(dict(row))

    def fail_next(self, operation: str, table: str, message: str = "boom") -> None:
        self._failures[(operation, table)] = message

    def active_subscriptions(self, table: Optional[str] = None) -> List[FakeSubscription]:
        return [s for s in self.subscriptions if s.active and (table is None or s.table == table)]

    def push(
        self,
        table: str,
        change_type: str,
        new: Optional[Dict[str, Any]] = None,
        old: Optional[Dict[str, Any]] = None,
        include_inactive: bool = False,
    ) -> int:
        """Deliver a change to matching subscriptions; returns how many got it."""
        payload = {
            "data": {
                "schema": "public",
                "table": table,
                "type": change_type.upper(),
                "record": dict(new or {}),
                "old_record": dict(old or {}),
            },
            "ids": [],
        }
        row = new if change_type.lower() != "delete" else old
        delivered = 0
        for sub in list(self.subscriptions):
            if sub.table != table or not (sub.active or include_inactive):
                continue
            if _matches_filter(row, sub.filter):
                sub.callback(copy.deepcopy(payload))
                delivered += 1
        return delivered

    def _check(self, operation: str, table: str) -> None:
        self.calls.append((operation, table))
        message = self._failures.pop((operation, table), None)
        if message is not None:
            raise RequestError(operation, table, message)

    def _timestamp(self) -> str:
        self._clock += 1
        return f"2025-03-01T09:{self._clock // 60:02d}:{self._clock % 60:02d}+00:00"

    # --- Backend interface ---

    async def fetch_rows(self, table, eq=None, any_of=None, neq=None, order_by=None, limit=None):
        self._check("fetch", table)
        rows = [dict(r) for r in self.tables[table]]
        for column, value in (eq or {}).items():
            rows = [r for r in rows if r.get(column) == value]
        for column, value in (neq or {}).items():
            rows = [r for r in rows if r.get(column) != value]
        if any_of:
            rows = [r for r in rows if any(r.get(c) == v for c, v in any_of)]
        if order_by:
            rows.sort(key=lambda r: r.get(order_by) or "")
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def insert_row(self, table, payload):
        self._check("insert", table)
        row = dict(payload)
        if table != "profiles":
            row["id"] = self._next_id[table]
            self._next_id[table] += 1
        if table == "messages":
            row.setdefault("sent_at", self._timestamp())
        else:
            row.setdefault("created_at", self._timestamp())
        self.tables[table].append(row)
        return dict(row)

    async def update_rows(self, table, patch, eq):
        self._check("update", table)
        updated = []
        for row in self.tables[table]:
            if all(row.get(c) == v for c, v in eq.items()):
                row.update(patch)
                updated.append(dict(row))
        return updated

    async def delete_rows(self, table, eq):
        self._check("delete", table)
        kept, removed = [], []
        for row in self.tables[table]:
            (removed if all(row.get(c) == v for c, v in eq.items()) else kept).append(row)
        self.tables[table] = kept
        return removed

    async def subscribe(self, table, callback, filter=None, event="*"):
        self._check("subscribe", table)
        sub = FakeSubscription(self, table, callback, filter)
        self.subscriptions.append(sub)
        return sub


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


def match_row(id: int, start: str, user_a: str = ALICE, user_b: str = BOB, status: str = "pending", **extra):
    row = {
        "id": id,
        "user_a": user_a,
        "user_b": user_b,
        "start_at": start,
        "end_at": None,
        "venue_text": None,
        "status": status,
        "created_at": "2025-02-01T00:00:00+00:00",
    }
    row.update(extra)
    return row


def message_row(id: int, match_id: int, sent_at: str, sender: str = ALICE, body: str = "hi"):
    return {"id": id, "match_id": match_id, "sender_id": sender, "body": body, "sent_at": sent_at}
