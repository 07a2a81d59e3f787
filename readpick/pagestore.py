from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable, Iterable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from operator import attrgetter
from typing import Any, Generic, TypeVar

from .exceptions import ErrorKind, classify, describe
from .structures import InsertAt, LoadState, Page, PageStoreState
from .ui import ErrorSurface

logger = logging.getLogger(__name__)

T = TypeVar("T")

Fetch = Callable[[dict[str, Any], int, int], Page[T]]
Listener = Callable[[PageStoreState[T]], None]

_FIRST = "first"
_MORE = "more"


def _done(value: Any) -> Future:
    f: Future = Future()
    f.set_result(value)
    return f


class PageStore(Generic[T]):
    """Ordered, de-duplicated list of server resources loaded one page at a time.

    At most one load is outstanding. ``load_more()`` during a load is a no-op that hands back
    the in-flight future; ``refresh()`` during ``load_more()`` waits for it instead of racing
    it. Every public load returns a ``Future`` resolving to the resulting ``PageStoreState``;
    failures land in that state (and in the ``ErrorSurface``), never in the future.
    """

    def __init__(
        self,
        fetch: Fetch[T],
        *,
        key: Callable[[T], Hashable] = attrgetter("id"),
        page_size: int = 20,
        insert_at: InsertAt = "start",
        executor: Executor | None = None,
        surface: ErrorSurface | None = None,
        name: str = "store",
    ):
        if page_size <= 0:
            raise ValueError("page_size must be > 0")
        if insert_at not in ("start", "end"):
            raise ValueError(f"insert_at must be 'start' or 'end', got {insert_at!r}")

        self.name = name
        self.page_size = page_size
        self.insert_at = insert_at
        self._fetch = fetch
        self._key = key
        self._surface = surface
        self._own_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"readpick-{name}")

        self._lock = threading.RLock()
        self._items: list[T] = []
        self._next_cursor = 0
        self._is_last = False
        self._total = 0
        self._load_state = LoadState.IDLE
        self._error = None
        self._loaded = False
        self._query: dict[str, Any] = {}
        self._failed_kind: str | None = None

        # ids with an optimistic edit in flight; server pages must not overwrite them
        self._held: dict[Hashable, int] = {}
        self._held_inserts: set[Hashable] = set()

        self._generation = 0
        self._inflight: Future | None = None
        self._deferred: tuple[dict[str, Any], Future] | None = None
        self._closed = False
        self._listeners: list[Listener] = []
        self._state: PageStoreState[T] = PageStoreState()

    # --- reads ---

    @property
    def state(self) -> PageStoreState[T]:
        return self._state

    @property
    def items(self) -> tuple[T, ...]:
        return self._state.items

    @property
    def query(self) -> dict[str, Any]:
        return dict(self._query)

    @property
    def closed(self) -> bool:
        return self._closed

    def key_of(self, item: T) -> Hashable:
        return self._key(item)

    def get(self, key: Hashable) -> T | None:
        with self._lock:
            pos = self._position(key)
            return None if pos is None else self._items[pos]

    def index_of(self, key: Hashable) -> int | None:
        with self._lock:
            return self._position(key)

    def is_held(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._held

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # --- loading ---

    def load_first_page(self, query: dict[str, Any] | None = None) -> Future[PageStoreState[T]]:
        with self._lock:
            if self._closed:
                return _done(self._state)
            q = dict(self._query if query is None else query)
            if self._load_state == LoadState.LOADING and self._inflight is not None:
                return self._inflight
            if self._load_state == LoadState.LOADING_MORE:
                fut = self._deferred[1] if self._deferred else Future()
                self._deferred = (q, fut)
                logger.debug("%s: refresh deferred behind load_more", self.name)
                return fut
            return self._start(_FIRST, q, 0, Future())

    def refresh(self) -> Future[PageStoreState[T]]:
        return self.load_first_page(None)

    def load_more(self) -> Future[PageStoreState[T]]:
        with self._lock:
            if self._load_state == LoadState.LOADING_MORE and self._inflight is not None:
                return self._inflight
            if (
                self._closed
                or not self._loaded
                or self._is_last
                or self._deferred is not None
                or self._load_state != LoadState.IDLE
            ):
                return _done(self._state)
            return self._start(_MORE, dict(self._query), self._next_cursor, Future())

    def retry(self) -> Future[PageStoreState[T]]:
        """Re-issue whichever load last failed; outside ERROR this is ``load_more()``."""
        with self._lock:
            if self._load_state != LoadState.ERROR:
                return self.load_more()
            if self._closed:
                return _done(self._state)
            if self._failed_kind == _MORE and self._loaded:
                return self._start(_MORE, dict(self._query), self._next_cursor, Future())
            return self._start(_FIRST, dict(self._query), 0, Future())

    def _start(self, kind: str, query: dict[str, Any], number: int, outer: Future) -> Future:
        if kind == _FIRST:
            self._query = query
            self._load_state = LoadState.LOADING
        else:
            self._load_state = LoadState.LOADING_MORE
        self._error = None
        self._inflight = outer
        gen = self._generation
        self._publish()
        logger.debug("%s: %s load page %d", self.name, kind, number)
        try:
            self._executor.submit(self._run, gen, kind, query, number, outer)
        except RuntimeError as e:
            # executor already shut down
            self._finish_failure(gen, kind, e, outer)
        return outer

    def _run(self, gen: int, kind: str, query: dict[str, Any], number: int, outer: Future) -> None:
        try:
            page = self._fetch(query, number, self.page_size)
        except Exception as e:
            self._finish_failure(gen, kind, e, outer)
        else:
            self._finish_success(gen, kind, page, outer)

    def _finish_success(self, gen: int, kind: str, page: Page[T], outer: Future) -> None:
        with self._lock:
            if not self._claim(gen, outer):
                return
            if kind == _FIRST:
                self._items = self._merge_replace(page.items)
            else:
                self._items = self._merge_append(page.items)
            self._next_cursor = page.next_cursor
            self._is_last = page.is_last
            self._total = max(page.total_count, len(self._items))
            self._loaded = True
            self._load_state = LoadState.IDLE
            self._error = None
            self._publish()
            logger.debug("%s: page %d applied, %d items, last=%s", self.name, page.number, len(self._items), page.is_last)
            outer.set_result(self._state)
            self._drain_deferred()

    def _finish_failure(self, gen: int, kind: str, exc: BaseException, outer: Future) -> None:
        with self._lock:
            if not self._claim(gen, outer):
                return
            if classify(exc) == ErrorKind.CANCELLED:
                self._load_state = LoadState.IDLE
                self._publish()
                outer.cancel()
                self._drain_deferred()
                return
            if kind == _FIRST:
                self._items = []
                self._drop_holds()
                self._loaded = False
                self._is_last = False
                self._next_cursor = 0
                self._total = 0
            self._load_state = LoadState.ERROR
            self._failed_kind = kind
            self._error = describe(exc, "could not load list")
            self._publish()
            if self._surface is not None:
                self._surface.report(exc, "could not load list")
            else:
                logger.warning("%s: %s load failed: %s", self.name, kind, exc)
            outer.set_result(self._state)
            self._drain_deferred()

    def _claim(self, gen: int, outer: Future) -> bool:
        """Whether a finished request may still touch the store."""
        if gen != self._generation:
            logger.debug("%s: dropping stale result", self.name)
            return False
        self._inflight = None
        if outer.cancelled():
            self._load_state = LoadState.IDLE
            self._publish()
            self._drain_deferred()
            return False
        return True

    def _drain_deferred(self) -> None:
        if self._deferred is None:
            return
        query, fut = self._deferred
        self._deferred = None
        if not fut.cancelled():
            self._start(_FIRST, query, 0, fut)

    # --- merging ---

    def _merge_replace(self, incoming: Iterable[T]) -> list[T]:
        current = {self._key(i): i for i in self._items}
        out: list[T] = []
        seen: set[Hashable] = set()
        for item in incoming:
            k = self._key(item)
            if k in seen:
                continue
            seen.add(k)
            if k in self._held:
                if k in current:
                    out.append(current[k])
                continue
            out.append(item)
        extra = [i for i in self._items if self._key(i) in self._held_inserts and self._key(i) not in seen]
        return extra + out if self.insert_at == "start" else out + extra

    def _merge_append(self, incoming: Iterable[T]) -> list[T]:
        items = list(self._items)
        positions = {self._key(i): n for n, i in enumerate(items)}
        for item in incoming:
            k = self._key(item)
            if k in positions:
                if k not in self._held:
                    items[positions[k]] = item
                continue
            if k in self._held:
                continue
            positions[k] = len(items)
            items.append(item)
        return items

    # --- direct edits (used by OptimisticMutator) ---

    def apply(
        self, key: Hashable, fn: Callable[[T | None], T | None]
    ) -> tuple[T | None, int | None, T | None]:
        """Snapshot ``key``, write ``fn(snapshot)`` in its place and hold the id.

        Returns ``(previous, previous_index, applied)``. If ``fn`` raises, nothing is written.
        """
        with self._lock:
            pos = self._position(key)
            previous = None if pos is None else self._items[pos]
            applied = fn(previous)
            self.hold(key, inserted=previous is None and applied is not None)
            if applied is None:
                if pos is not None:
                    self.remove(key)
            elif pos is None:
                self.upsert(applied)
            else:
                self.replace(key, applied)
            return previous, pos, applied

    def upsert(self, item: T) -> None:
        with self._lock:
            pos = self._position(self._key(item))
            if pos is not None:
                self._items[pos] = item
            else:
                self._insert(item)
            self._publish()

    def remove(self, key: Hashable) -> T | None:
        with self._lock:
            pos = self._position(key)
            if pos is None:
                return None
            item = self._items.pop(pos)
            self._total = max(0, self._total - 1)
            self._publish()
            return item

    def replace(self, old_key: Hashable, item: T) -> None:
        """Swap the entry at ``old_key`` for ``item`` in place, even when the key changes."""
        with self._lock:
            new_key = self._key(item)
            pos = self._position(old_key)
            if pos is None:
                self.upsert(item)
                return
            if new_key != old_key:
                dup = self._position(new_key)
                if dup is not None:
                    self._items.pop(dup)
                    self._total = max(0, self._total - 1)
                    if dup < pos:
                        pos -= 1
            self._items[pos] = item
            self._publish()

    def restore(self, item: T, index: int | None) -> None:
        with self._lock:
            pos = self._position(self._key(item))
            if pos is not None:
                self._items[pos] = item
            elif index is None:
                self._insert(item)
            else:
                self._items.insert(min(max(index, 0), len(self._items)), item)
                self._total += 1
            self._publish()

    def hold(self, key: Hashable, inserted: bool = False) -> None:
        with self._lock:
            self._held[key] = self._held.get(key, 0) + 1
            if inserted:
                self._held_inserts.add(key)

    def release(self, key: Hashable) -> None:
        with self._lock:
            n = self._held.get(key, 0) - 1
            if n > 0:
                self._held[key] = n
            else:
                self._held.pop(key, None)
                self._held_inserts.discard(key)

    def if_held(self, key: Hashable, fn: Callable[[], None]) -> bool:
        """Run ``fn`` under the store lock, but only while ``key`` is still held.

        A failed first page and ``clear()`` drop every hold, so an edit that settles
        afterwards does not write its value back into the emptied list.
        """
        with self._lock:
            if key not in self._held:
                return False
            fn()
            return True

    def _drop_holds(self) -> None:
        if self._held:
            logger.debug("%s: dropping %d pending edit holds", self.name, len(self._held))
        self._held.clear()
        self._held_inserts.clear()

    # --- lifecycle ---

    def clear(self) -> None:
        """Drop all items and cursor state; any in-flight load result is discarded."""
        with self._lock:
            pending = self._detach()
            self._items = []
            self._drop_holds()
            self._next_cursor = 0
            self._is_last = False
            self._total = 0
            self._loaded = False
            self._load_state = LoadState.IDLE
            self._error = None
            self._publish()
        for f in pending:
            f.cancel()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            pending = self._detach()
            if self._load_state in (LoadState.LOADING, LoadState.LOADING_MORE):
                self._load_state = LoadState.IDLE
                self._publish()
        for f in pending:
            f.cancel()
        if self._own_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("%s: closed", self.name)

    def _detach(self) -> list[Future]:
        self._generation += 1
        pending = [f for f in (self._inflight, self._deferred[1] if self._deferred else None) if f is not None]
        self._inflight = None
        self._deferred = None
        return pending

    # --- internals ---

    def _position(self, key: Hashable) -> int | None:
        for n, item in enumerate(self._items):
            if self._key(item) == key:
                return n
        return None

    def _insert(self, item: T) -> None:
        if self.insert_at == "start":
            self._items.insert(0, item)
        else:
            self._items.append(item)
        self._total += 1

    def _publish(self) -> None:
        self._state = PageStoreState(
            items=tuple(self._items),
            next_cursor=self._next_cursor,
            is_last=self._is_last,
            total_count=self._total,
            load_state=self._load_state,
            error=self._error,
            loaded=self._loaded,
        )
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.debug("%s: listener failed", self.name, exc_info=True)
