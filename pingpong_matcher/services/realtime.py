"""Keeping a LocalMirror in sync with a backend table"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

from ..storage.backend import Backend, Subscription, eq_filter
from ..storage.mirror import LocalMirror
from ..storage.models import ChangeEvent, ChangeType
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")

_TYPE_ALIASES = {
    "insert": ChangeType.INSERT,
    "update": ChangeType.UPDATE,
    "delete": ChangeType.DELETE,
}


def parse_change(payload: Any) -> Optional[ChangeEvent]:
    """
    Normalize a realtime payload into a ChangeEvent

    Accepts the supabase-py shape ({"data": {"type", "record", "old_record"}}),
    the same data dict unwrapped, and the {"eventType", "new", "old"} shape.

    Returns:
        ChangeEvent, or None when the payload can't be used (unknown type,
        no row carrying an id)
    """
    if not isinstance(payload, dict):
        return None

    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    raw_type = data.get("type") or data.get("eventType")
    if "record" in data or "old_record" in data:
        new, old = data.get("record"), data.get("old_record")
    else:
        new, old = data.get("new"), data.get("old")

    change_type = _TYPE_ALIASES.get(str(raw_type).lower()) if raw_type else None
    if change_type is None:
        return None

    # Empty dicts stand for "no row" in both shapes
    event = ChangeEvent(change_type=change_type, new=new or None, old=old or None)
    row = event.row
    if not row or row.get("id") is None:
        return None
    return event


@dataclass(frozen=True)
class Scope:
    """Rows of one table where at least one (column, value) clause holds"""
    table: str
    order_by: str
    clauses: Tuple[Tuple[str, Any], ...]

    def contains(self, row: Dict[str, Any]) -> bool:
        return any(row.get(column) == value for column, value in self.clauses)

    def channel_filters(self) -> List[str]:
        return [eq_filter(column, value) for column, value in self.clauses]

    def describe(self) -> str:
        return f"{self.table}[{' | '.join(self.channel_filters())}]"


class LiveCollection(Generic[T]):
    """
    A LocalMirror bound to one scope of a backend table

    open() subscribes before fetching and holds back pushed events until the
    snapshot is loaded, then replays them. Reopening tears the previous
    subscriptions down first; their late callbacks are ignored.
    """

    def __init__(
        self,
        backend: Backend,
        mirror: LocalMirror[T],
        row_factory: Callable[[Dict[str, Any]], T],
        name: str,
    ):
        """
        Initialize live collection

        Args:
            backend: Backend used for fetches and subscriptions
            mirror: Mirror that holds the visible rows
            row_factory: Converts a row dict to the entity stored in the mirror
            name: Label used in log messages
        """
        self.backend = backend
        self.mirror = mirror
        self.row_factory = row_factory
        self.name = name
        self.scope: Optional[Scope] = None
        self._subscriptions: List[Subscription] = []
        self._generation = 0
        self._baseline = False
        self._pending: List[ChangeEvent] = []
        self._listeners: List[Callable[[str, T], None]] = []

    @property
    def is_open(self) -> bool:
        return self.scope is not None

    @property
    def has_baseline(self) -> bool:
        return self._baseline

    def add_listener(self, listener: Callable[[str, T], None]) -> Callable[[], None]:
        """
        Be told about every applied change as (change_type, entity)

        Returns:
            Function removing the listener
        """
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def open(self, scope: Scope):
        """
        Start mirroring a scope

        Raises:
            RequestError: subscribing or the initial fetch failed. When the
                fetch fails the subscriptions stay open and keep buffering;
                call refresh() to retry.
        """
        await self.close()

        self._generation += 1
        generation = self._generation
        self.scope = scope
        self._baseline = False
        self._pending = []

        try:
            for channel_filter in scope.channel_filters():
                subscription = await self.backend.subscribe(
                    scope.table,
                    self._make_handler(generation),
                    filter=channel_filter,
                )
                self._subscriptions.append(subscription)
        except Exception:
            await self.close()
            raise

        logger.info(f"Opened {self.name} on {scope.describe()}")
        await self.refresh()

    async def refresh(self):
        """
        Fetch the scope's snapshot and make it the baseline

        Pushed events are held back while the fetch is in flight and replayed
        on top of the snapshot. On failure the mirror is left as it was, the
        events stay buffered and the error propagates.
        """
        if self.scope is None:
            raise RuntimeError(f"{self.name} is not open")

        scope = self.scope
        generation = self._generation
        self._baseline = False
        rows = await self.backend.fetch_rows(
            scope.table,
            any_of=scope.clauses,
            order_by=scope.order_by,
        )
        if generation != self._generation:
            # Closed or reopened while the fetch was in flight
            logger.debug(f"Discarding stale snapshot for {scope.describe()}")
            return

        self.mirror.load_initial(self._convert_all(rows))
        self._baseline = True

        pending, self._pending = self._pending, []
        for event in pending:
            self._apply(event)
        logger.info(
            f"Loaded {len(self.mirror)} {self.name} rows"
            + (f" (+{len(pending)} buffered events)" if pending else "")
        )

    async def close(self):
        """Unsubscribe and clear the mirror"""
        self._generation += 1
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.unsubscribe()
        if self.scope is not None:
            logger.info(f"Closed {self.name} on {self.scope.describe()}")
        self.scope = None
        self._baseline = False
        self._pending = []
        self.mirror.reset()

    def apply_local_insert(self, entity: T, row: Optional[Dict[str, Any]] = None) -> bool:
        """Show the local client's own insert, if it belongs to the open scope"""
        if not self._accepts(row):
            return False
        added = self.mirror.apply_local_insert(entity)
        if added:
            self._notify(ChangeType.INSERT, entity)
        return added

    def apply_local_update(self, entity: T, row: Optional[Dict[str, Any]] = None) -> bool:
        if not self._accepts(row):
            return False
        changed = self.mirror.apply_local_update(entity)
        if changed:
            self._notify(ChangeType.UPDATE, entity)
        return changed

    def apply_local_delete(self, row_id: Hashable) -> bool:
        if self.scope is None:
            return False
        entity = self.mirror.get(row_id)
        removed = self.mirror.apply_local_delete(row_id)
        if removed:
            self._notify(ChangeType.DELETE, entity)
        return removed

    def handle_payload(self, payload: Any):
        """Entry point for raw change payloads of the current generation"""
        event = parse_change(payload)
        if event is None:
            logger.debug(f"Dropped malformed {self.name} event")
            return
        if not self._baseline:
            self._pending.append(event)
            return
        self._apply(event)

    def _make_handler(self, generation: int):
        def handler(payload):
            if generation != self._generation:
                logger.debug(f"Ignoring event from a closed {self.name} subscription")
                return
            self.handle_payload(payload)
        return handler

    def _apply(self, event: ChangeEvent):
        row = event.row
        if event.change_type != ChangeType.DELETE and not self.scope.contains(row):
            # Deletes usually carry only the primary key, so only inserts and
            # updates can be checked against the scope
            logger.debug(f"Dropped {self.name} {event.change_type} outside {self.scope.describe()}")
            return

        if event.change_type == ChangeType.DELETE:
            entity = self.mirror.get(row["id"])
            if self.mirror.apply_remote_change(ChangeType.DELETE, row):
                self._notify(ChangeType.DELETE, entity)
            return

        try:
            entity = self.row_factory(row)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Dropped unparseable {self.name} row {row.get('id')}: {e}")
            return
        if self.mirror.apply_remote_change(event.change_type, entity):
            self._notify(event.change_type, entity)

    def _convert_all(self, rows: List[Dict[str, Any]]) -> List[T]:
        entities = []
        for row in rows:
            try:
                entities.append(self.row_factory(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unparseable {self.name} row {row.get('id')}: {e}")
        return entities

    def _accepts(self, row: Optional[Dict[str, Any]]) -> bool:
        if self.scope is None:
            return False
        return row is None or self.scope.contains(row)

    def _notify(self, change_type: str, entity: Optional[T]):
        for listener in list(self._listeners):
            try:
                listener(change_type, entity)
            except Exception as e:
                logger.error(f"{self.name} listener failed: {e}", exc_info=True)
