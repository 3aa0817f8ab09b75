"""In-memory ordered mirror of backend rows"""
import bisect
from typing import Any, Callable, Dict, FrozenSet, Generic, Hashable, Iterable, Iterator, List, Optional, Set, TypeVar

from .models import ChangeType
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")


def default_id_of(row: Any) -> Optional[Hashable]:
    """Read the id of a model object or a raw row dict"""
    if isinstance(row, dict):
        return row.get("id")
    return getattr(row, "id", None)


class LocalMirror(Generic[T]):
    """
    Ordered local copy of a set of rows, fed by two independent sources

    The local client's own writes arrive through apply_local_insert as soon
    as the write returns; the backend's change feed delivers the same rows
    (and everyone else's) through apply_remote_change. Both paths consult the
    same seen-id set, so a row is shown exactly once whichever arrives first.

    The sequence is kept sorted ascending by (sort_key, id). Callers run on a
    single event loop; every method completes without yielding.
    """

    def __init__(
        self,
        sort_key: Callable[[T], Any],
        id_of: Callable[[T], Optional[Hashable]] = default_id_of,
        name: str = "mirror",
    ):
        """
        Args:
            sort_key: Natural ordering of the entity (start time, sent time)
            id_of: Extracts the entity id; None marks an unusable row
            name: Label used in log messages
        """
        self._sort_key = sort_key
        self._id_of = id_of
        self.name = name
        self._items: List[T] = []
        self._keys: List[Any] = []
        self._seen: Set[Hashable] = set()

    # ------------------------------------------------------------------
    # Operations

    def load_initial(self, rows: Iterable[T]):
        """
        Replace the contents with a freshly fetched snapshot

        Rows without an id are skipped; a duplicated id keeps its first row.
        """
        items: Dict[Hashable, T] = {}
        for row in rows:
            row_id = self._id_of(row)
            if row_id is None:
                logger.debug(f"[{self.name}] Snapshot row without id skipped")
                continue
            items.setdefault(row_id, row)

        ordered = sorted(items.values(), key=self._full_key)
        self._items = ordered
        self._keys = [self._full_key(row) for row in ordered]
        self._seen = set(items)
        logger.debug(f"[{self.name}] Loaded {len(self._items)} rows")

    def apply_local_insert(self, row: T) -> bool:
        """
        Show the result of the local client's own write

        Returns:
            True if the row was added, False if its id was already present
        """
        row_id = self._id_of(row)
        if row_id is None:
            logger.debug(f"[{self.name}] Local insert without id ignored")
            return False
        if row_id in self._seen:
            return False
        self._insert_sorted(row_id, row)
        return True

    def apply_local_update(self, row: T) -> bool:
        """Replace an entity after the local client's own update succeeded"""
        return self._replace(row)

    def apply_local_delete(self, row_id: Hashable) -> bool:
        """Drop an entity after the local client's own delete succeeded"""
        return self._remove(row_id)

    def apply_remote_change(self, change_type: str, row: T) -> bool:
        """
        Apply a pushed change notification

        Args:
            change_type: One of ChangeType.INSERT / UPDATE / DELETE
            row: The new row (insert, update) or the old row (delete)

        Returns:
            True if the visible sequence changed
        """
        row_id = self._id_of(row) if row is not None else None
        if row_id is None:
            logger.debug(f"[{self.name}] Dropped {change_type} event without id")
            return False

        if change_type == ChangeType.INSERT:
            if row_id in self._seen:
                logger.debug(f"[{self.name}] Insert echo for id {row_id} ignored")
                return False
            self._insert_sorted(row_id, row)
            return True
        if change_type == ChangeType.UPDATE:
            return self._replace(row)
        if change_type == ChangeType.DELETE:
            return self._remove(row_id)

        logger.debug(f"[{self.name}] Dropped event of unknown type {change_type!r}")
        return False

    def reset(self):
        """Forget everything (subscription teardown, sign-out)"""
        self._items = []
        self._keys = []
        self._seen = set()

    # ------------------------------------------------------------------
    # Read access

    @property
    def items(self) -> List[T]:
        return list(self._items)

    @property
    def ids(self) -> List[Hashable]:
        return [self._id_of(row) for row in self._items]

    @property
    def seen_ids(self) -> FrozenSet[Hashable]:
        return frozenset(self._seen)

    def get(self, row_id: Hashable) -> Optional[T]:
        index = self._index_of(row_id)
        return self._items[index] if index is not None else None

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __contains__(self, row_id: Hashable) -> bool:
        return row_id in self._seen

    # ------------------------------------------------------------------
    # Internals

    def _full_key(self, row: T):
        return (self._sort_key(row), self._id_of(row))

    def _insert_sorted(self, row_id: Hashable, row: T):
        key = self._full_key(row)
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._items.insert(index, row)
        self._seen.add(row_id)

    def _index_of(self, row_id: Hashable) -> Optional[int]:
        if row_id not in self._seen:
            return None
        for index, existing in enumerate(self._items):
            if self._id_of(existing) == row_id:
                return index
        return None

    def _replace(self, row: T) -> bool:
        row_id = self._id_of(row)
        if row_id is None:
            return False
        index = self._index_of(row_id)
        if index is None:
            return False

        key = self._full_key(row)
        if key == self._keys[index]:
            self._items[index] = row
            return True

        # Sort key moved: take it out and put it back in order
        del self._items[index]
        del self._keys[index]
        self._seen.discard(row_id)
        self._insert_sorted(row_id, row)
        return True

    def _remove(self, row_id: Hashable) -> bool:
        index = self._index_of(row_id)
        if index is None:
            return False
        del self._items[index]
        del self._keys[index]
        self._seen.discard(row_id)
        return True
