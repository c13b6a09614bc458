"""
Paginated collections: one page-able list view (videos, comments, search
hits, library entries) kept in sync with a listing endpoint.

A collection is created when a view mounts and closed when it unmounts.
Responses that arrive after ``close()`` or after a newer reset started are
dropped, so a slow page can never overwrite fresher state.
"""
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Hashable,
    List,
    Optional,
    Set,
    TypeVar,
)

from .data_models import ListFilters, Page

T = TypeVar("T")
R = TypeVar("R")

PageFetcher = Callable[[int, int, ListFilters], Awaitable[Page[T]]]

logger = logging.getLogger("vidtube.collection")


def _item_id(item: Any) -> Hashable:
    return item.id


class PendingMutation(Generic[T]):
    """An optimistic change waiting for the backend to settle it.

    ``confirm`` drops the snapshot; ``revert`` puts it back. Whichever comes
    first wins, later calls are no-ops.
    """

    def __init__(self, collection: "PaginatedCollection[T]", key: Hashable, before: T, index: int, removed: bool = False):
        self._collection = collection
        self.key = key
        self.before = before
        self.index = index
        self.removed = removed
        self.settled = False

    def confirm(self, replacement: Optional[T] = None) -> None:
        if self.settled:
            return
        self.settled = True
        if replacement is not None and not self.removed:
            self._collection.replace_item(replacement)

    def revert(self) -> None:
        if self.settled:
            return
        self.settled = True
        if self.removed:
            self._collection.insert_item(self.before, self.index)
        else:
            self._collection.replace_item(self.before)
        logger.debug("reverted optimistic change on %r", self.key)


class PaginatedCollection(Generic[T]):
    def __init__(
        self,
        fetch_page: PageFetcher,
        page_size: int = 12,
        filters: Optional[ListFilters] = None,
        key: Callable[[T], Hashable] = _item_id,
        name: str = "collection",
    ):
        self._fetch_page = fetch_page
        self.page_size = page_size
        self.filters = filters or ListFilters()
        self._key = key
        self.name = name

        self._items: List[T] = []
        self._index: Dict[Hashable, T] = {}
        self.cursor = 1
        self.has_more = True
        self.total: Optional[int] = None
        self._in_flight = 0
        self._generation = 0
        self._pending_removals: Set[Hashable] = set()
        self._closed = False

    # --- state ---
    @property
    def items(self) -> List[T]:
        return list(self._items)

    @property
    def loading(self) -> bool:
        return self._in_flight > 0

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._index

    def get(self, key: Hashable) -> Optional[T]:
        return self._index.get(key)

    def close(self) -> None:
        """Detach from the view; any response still in flight is ignored."""
        self._closed = True

    # --- loading ---
    async def load(self, filters: Optional[ListFilters] = None, reset: bool = False) -> List[T]:
        """Fetch one page and merge it. Returns the items that were added.

        On failure the current items are left untouched and the error is
        re-raised for the caller to report.
        """
        if reset:
            self._generation += 1
        generation = self._generation
        page_no = 1 if reset else self.cursor
        # new filters only take effect once their first page has arrived
        active_filters = filters if reset and filters is not None else self.filters

        self._in_flight += 1
        try:
            page = await self._fetch_page(page_no, self.page_size, active_filters)
        finally:
            self._in_flight -= 1

        if self._closed:
            logger.debug("%s: dropping page %s, collection closed", self.name, page_no)
            return []
        if generation != self._generation:
            logger.debug("%s: dropping stale page %s", self.name, page_no)
            return []

        if reset:
            self.filters = active_filters
            self._items = []
            self._index = {}
            self.cursor = 2
        else:
            self.cursor += 1
        added = self._append(page.items)
        self.has_more = bool(page.has_next_page)
        self.total = page.total
        logger.debug(
            "%s: page %s -> %d new item(s), has_more=%s", self.name, page_no, len(added), self.has_more
        )
        return added

    async def load_more(self) -> List[T]:
        if not self.has_more or self.loading or self._closed:
            return []
        return await self.load(reset=False)

    async def reset(self, filters: Optional[ListFilters] = None) -> List[T]:
        return await self.load(filters, reset=True)

    def _append(self, items: List[T]) -> List[T]:
        added = []
        for item in items:
            key = self._key(item)
            if key in self._index:
                continue
            self._index[key] = item
            self._items.append(item)
            added.append(item)
        return added

    # --- local edits ---
    def insert_item(self, item: T, index: int = 0) -> bool:
        """Insert an item unless one with the same identity is present."""
        key = self._key(item)
        if key in self._index:
            return False
        index = max(0, min(index, len(self._items)))
        self._items.insert(index, item)
        self._index[key] = item
        if self.total is not None:
            self.total += 1
        return True

    def replace_item(self, item: T) -> bool:
        key = self._key(item)
        if key not in self._index:
            return False
        self._items[self._position(key)] = item
        self._index[key] = item
        return True

    def _position(self, key: Hashable) -> int:
        for i, existing in enumerate(self._items):
            if self._key(existing) == key:
                return i
        raise KeyError(key)

    def _remove_local(self, key: Hashable) -> Optional[PendingMutation[T]]:
        if key not in self._index:
            return None
        i = self._position(key)
        existing = self._items.pop(i)
        del self._index[key]
        if self.total:
            self.total -= 1
        return PendingMutation(self, key, existing, i, removed=True)

    async def remove_item(self, key: Hashable, remove_call: Optional[Callable[[], Awaitable[Any]]] = None) -> bool:
        """Remove an item by identity, then tell the backend.

        Idempotent: removing an absent id, or one whose removal is still
        pending, does nothing. If the backend call fails the item is put back
        where it was and the error re-raised.
        """
        if key in self._pending_removals:
            return False
        pending = self._remove_local(key)
        if pending is None:
            return False
        if remove_call is None:
            pending.confirm()
            return True

        self._pending_removals.add(key)
        try:
            await remove_call()
        except Exception:
            if not self._closed:
                pending.revert()
            raise
        else:
            pending.confirm()
        finally:
            self._pending_removals.discard(key)
        return True

    def apply_optimistic_toggle(self, key: Hashable, patch: Callable[[T], T]) -> Optional[PendingMutation[T]]:
        """Replace the item with ``patch(item)`` right away.

        Returns the pending mutation, or None if the item isn't loaded.
        """
        before = self._index.get(key)
        if before is None:
            return None
        index = self._position(key)
        self.replace_item(patch(before))
        return PendingMutation(self, key, before, index)

    async def mutate(
        self,
        key: Hashable,
        patch: Callable[[T], T],
        call: Callable[[], Awaitable[R]],
        from_result: Optional[Callable[[R], Optional[T]]] = None,
    ) -> R:
        """Apply ``patch`` optimistically, run ``call`` and settle the change.

        ``from_result`` may turn the backend's answer into the authoritative
        item, which then replaces the optimistic one.
        """
        pending = self.apply_optimistic_toggle(key, patch)
        try:
            result = await call()
        except Exception:
            if pending is not None:
                pending.revert()
            raise
        if pending is not None:
            pending.confirm(from_result(result) if from_result else None)
        return result
