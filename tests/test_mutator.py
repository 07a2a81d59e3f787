"""Tests for OptimisticMutator commit, rollback and per-id ordering."""
from __future__ import annotations

import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, replace

from hypothesis import given, settings, strategies as st

from readpick.exceptions import Cancelled, ErrorKind, NetworkFailure, ServerRejected
from readpick.mutator import OptimisticMutator
from readpick.pagestore import PageStore
from readpick.structures import EditStatus, LoadState, Page
from readpick.ui import ErrorSurface, EventKind, UIEvent


class InlineExecutor(Executor):
    """Runs submitted work on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):
        f: Future = Future()
        try:
            f.set_result(fn(*args, **kwargs))
        except Exception as e:
            f.set_exception(e)
        return f


@dataclass(frozen=True)
class Post:
    id: int
    liked: bool = False
    like_count: int = 0
    title: str = ""


class RecordingSink:
    def __init__(self):
        self.events: list[UIEvent] = []

    def emit(self, event: UIEvent) -> None:
        self.events.append(event)

    def close(self) -> None:
        pass


def loaded_store(posts) -> PageStore[Post]:
    page = Page(items=tuple(posts), number=0, size=len(posts), total_count=len(posts), is_last=True)
    store = PageStore(lambda q, n, s: page, executor=InlineExecutor())
    store.load_first_page().result(timeout=5)
    return store


def fail_remote():
    raise ServerRejected("rejected", status=500)


def toggle(cur: Post | None) -> Post | None:
    assert cur is not None
    return replace(cur, liked=not cur.liked, like_count=cur.like_count + (-1 if cur.liked else 1))


class TestRollback:
    @settings(max_examples=50, deadline=None)
    @given(ids=st.lists(st.integers(0, 50), unique=True, min_size=1, max_size=15), data=st.data())
    def test_failed_edit_restores_list(self, ids, data):
        """PBT: a failed remote leaves the store as it was and no edit pending."""
        store = loaded_store([Post(i, title=f"p{i}") for i in ids])
        before = store.items
        target = data.draw(st.sampled_from(ids + [999]))
        op = data.draw(st.sampled_from(["update", "delete"]))
        apply = (lambda cur: None) if op == "delete" else (lambda cur: Post(target, title="edited"))

        mutator = OptimisticMutator(store, executor=InlineExecutor())
        edit = mutator.mutate(target, apply, fail_remote).result(timeout=5)

        assert edit.status == EditStatus.ROLLED_BACK
        assert store.items == before
        assert not mutator.pending(target)
        assert not store.is_held(target)

    def test_like_reverts_on_failure(self):
        """Scenario: a failed like restores liked and like_count."""
        sink = RecordingSink()
        store = loaded_store([Post(7, liked=False, like_count=3)])
        mutator = OptimisticMutator(store, executor=InlineExecutor(), surface=ErrorSurface(sink))
        edit = mutator.mutate(7, toggle, fail_remote, error_message="could not like").result(timeout=5)
        assert edit.status == EditStatus.ROLLED_BACK
        assert edit.applied_snapshot == Post(7, liked=True, like_count=4)
        assert store.get(7) == Post(7, liked=False, like_count=3)
        assert edit.error is not None and edit.error.kind == ErrorKind.SERVER
        assert [e.kind for e in sink.events] == [EventKind.ERROR]

    def test_delete_rollback_restores_position(self):
        store = loaded_store([Post(1), Post(2), Post(3)])
        mutator = OptimisticMutator(store, executor=InlineExecutor())
        mutator.mutate(2, lambda cur: None, fail_remote).result(timeout=5)
        assert [p.id for p in store.items] == [1, 2, 3]

    def test_apply_failure_changes_nothing(self):
        sink = RecordingSink()
        store = loaded_store([Post(1)])
        mutator = OptimisticMutator(store, executor=InlineExecutor(), surface=ErrorSurface(sink))
        calls = []

        def bad_apply(cur):
            raise ValueError("cannot apply")

        edit = mutator.mutate(1, bad_apply, lambda: calls.append(1)).result(timeout=5)
        assert edit.status == EditStatus.ROLLED_BACK
        assert calls == []
        assert store.items == (Post(1),)
        assert not store.is_held(1)

    def test_cancelled_remote_rolls_back_silently(self):
        sink = RecordingSink()
        store = loaded_store([Post(1)])
        mutator = OptimisticMutator(store, executor=InlineExecutor(), surface=ErrorSurface(sink))

        def cancelled():
            raise Cancelled()

        edit = mutator.mutate(1, toggle, cancelled).result(timeout=5)
        assert edit.status == EditStatus.ROLLED_BACK
        assert edit.error is None
        assert store.get(1) == Post(1)
        assert sink.events == []


class TestCommit:
    def test_confirmed_keeps_applied_value(self):
        store = loaded_store([Post(1)])
        mutator = OptimisticMutator(store, executor=InlineExecutor())
        edit = mutator.mutate(1, toggle, lambda: None).result(timeout=5)
        assert edit.status == EditStatus.CONFIRMED
        assert store.get(1) == Post(1, liked=True, like_count=1)
        assert not store.is_held(1)

    def test_server_body_replaces_temp_id(self):
        store = loaded_store([Post(1), Post(2)])
        mutator = OptimisticMutator(store, executor=InlineExecutor())
        edit = mutator.mutate(-1, lambda cur: Post(-1, title="draft"), lambda: Post(10, title="saved"))
        assert edit.result(timeout=5).status == EditStatus.CONFIRMED
        assert [p.id for p in store.items] == [10, 1, 2]
        assert store.get(-1) is None


class TestPerIdOrdering:
    def test_second_edit_sees_first_result(self):
        """PBT: edits on one id apply in call order, the second after the first settles."""
        store = loaded_store([Post(1)])
        executor = ThreadPoolExecutor(max_workers=4)
        mutator = OptimisticMutator(store, executor=executor)
        release = threading.Event()
        entered = threading.Event()
        observed = []

        def slow_remote():
            entered.set()
            assert release.wait(5)

        def second_apply(cur):
            observed.append(cur)
            return toggle(cur)

        try:
            first = mutator.mutate(1, toggle, slow_remote)
            assert entered.wait(5)
            second = mutator.mutate(1, second_apply, lambda: None)
            assert observed == []
            assert mutator.pending(1)
            release.set()
            assert first.result(timeout=5).status == EditStatus.CONFIRMED
            assert second.result(timeout=5).status == EditStatus.CONFIRMED
        finally:
            executor.shutdown(wait=True)

        assert observed == [Post(1, liked=True, like_count=1)]
        assert store.get(1) == Post(1, liked=False, like_count=0)

    def test_different_ids_are_independent(self):
        store = loaded_store([Post(1), Post(2)])
        executor = ThreadPoolExecutor(max_workers=4)
        mutator = OptimisticMutator(store, executor=executor)
        release = threading.Event()

        def slow_remote():
            assert release.wait(5)

        try:
            blocked = mutator.mutate(1, toggle, slow_remote)
            other = mutator.mutate(2, toggle, lambda: None)
            assert other.result(timeout=5).status == EditStatus.CONFIRMED
            assert not blocked.done()
            release.set()
            blocked.result(timeout=5)
        finally:
            executor.shutdown(wait=True)


class TestBatch:
    def test_k_of_n_reported_once(self):
        sink = RecordingSink()
        store = loaded_store([Post(i) for i in range(5)])
        mutator = OptimisticMutator(store, executor=InlineExecutor(), surface=ErrorSurface(sink))

        def remote(pid):
            if pid in (1, 3):
                raise ServerRejected("locked")

        result = mutator.mutate_many(range(5), lambda cur: None, remote, action="remove").result(timeout=5)
        assert result.total == 5
        assert result.succeeded == 3
        assert set(result.failed_ids) == {1, 3}
        assert [p.id for p in store.items] == [1, 3]
        assert [e.kind for e in sink.events] == [EventKind.BATCH_DONE]
        assert sink.events[0].message == "3 of 5 succeeded"

    def test_empty_batch(self):
        store = loaded_store([])
        mutator = OptimisticMutator(store, executor=InlineExecutor())
        result = mutator.mutate_many([], lambda cur: None, lambda pid: None).result(timeout=5)
        assert result.total == 0 and result.ok


class TestClose:
    def test_closed_mutator_refuses_edits(self):
        store = loaded_store([Post(1)])
        mutator = OptimisticMutator(store, executor=InlineExecutor())
        mutator.close()
        assert mutator.mutate(1, toggle, lambda: None).cancelled()
        assert store.get(1) == Post(1)


class PagedFetch:
    """Serves pages from a dict; an exception value is raised instead."""

    def __init__(self, pages):
        self.pages = pages

    def __call__(self, query, number, size):
        page = self.pages[number]
        if isinstance(page, Exception):
            raise page
        return page


def page_of(posts, number=0, last=False) -> Page[Post]:
    return Page(items=tuple(posts), number=number, size=2, total_count=4, is_last=last)


class BlockedRemote:
    def __init__(self, error: Exception | None = None):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.error = error

    def __call__(self):
        self.entered.set()
        assert self.release.wait(5)
        if self.error is not None:
            raise self.error


class TestServerPagesDuringEdit:
    def _setup(self, pages):
        store = PageStore(PagedFetch(pages), page_size=2, executor=InlineExecutor())
        store.load_first_page().result(timeout=5)
        executor = ThreadPoolExecutor(max_workers=2)
        return store, executor, OptimisticMutator(store, executor=executor)

    def test_stale_page_does_not_overwrite_pending_edit(self):
        pages = {
            0: page_of([Post(1), Post(2)]),
            1: page_of([Post(1, title="stale"), Post(3)], number=1, last=True),
        }
        store, executor, mutator = self._setup(pages)
        remote = BlockedRemote()
        try:
            fut = mutator.mutate(1, toggle, remote)
            assert remote.entered.wait(5)
            state = store.load_more().result(timeout=5)
            assert [p.id for p in state.items] == [1, 2, 3]
            assert store.get(1) == Post(1, liked=True, like_count=1)

            pages[0] = page_of([Post(1, title="stale"), Post(2)])
            store.refresh().result(timeout=5)
            assert store.get(1) == Post(1, liked=True, like_count=1)

            remote.release.set()
            assert fut.result(timeout=5).status == EditStatus.CONFIRMED
        finally:
            executor.shutdown(wait=True)

        assert store.get(1) == Post(1, liked=True, like_count=1)
        assert not store.is_held(1)
        store.refresh().result(timeout=5)
        assert store.get(1) == Post(1, title="stale")

    def test_rollback_after_stale_page_restores_snapshot(self):
        pages = {
            0: page_of([Post(1), Post(2)]),
            1: page_of([Post(1, title="stale"), Post(3)], number=1, last=True),
        }
        store, executor, mutator = self._setup(pages)
        remote = BlockedRemote(ServerRejected("rejected", status=500))
        try:
            fut = mutator.mutate(1, toggle, remote)
            assert remote.entered.wait(5)
            store.load_more().result(timeout=5)
            remote.release.set()
            assert fut.result(timeout=5).status == EditStatus.ROLLED_BACK
        finally:
            executor.shutdown(wait=True)

        assert [p.id for p in store.items] == [1, 2, 3]
        assert store.get(1) == Post(1)

    def test_failed_refresh_is_not_refilled_by_rollback(self):
        pages = {0: page_of([Post(1), Post(2)])}
        store, executor, mutator = self._setup(pages)
        remote = BlockedRemote(ServerRejected("rejected", status=500))
        try:
            fut = mutator.mutate(1, toggle, remote)
            assert remote.entered.wait(5)
            pages[0] = NetworkFailure("offline")
            state = store.refresh().result(timeout=5)
            assert state.items == ()
            remote.release.set()
            assert fut.result(timeout=5).status == EditStatus.ROLLED_BACK
        finally:
            executor.shutdown(wait=True)

        assert store.items == ()
        assert store.state.load_state == LoadState.ERROR
        assert not store.is_held(1)

    def test_failed_refresh_is_not_refilled_by_confirm(self):
        pages = {0: page_of([Post(1), Post(2)])}
        store, executor, mutator = self._setup(pages)
        remote = BlockedRemote()

        def create():
            remote()
            return Post(9)

        try:
            fut = mutator.mutate(-1, lambda cur: Post(-1, title="draft"), create)
            assert remote.entered.wait(5)
            pages[0] = NetworkFailure("offline")
            store.refresh().result(timeout=5)
            remote.release.set()
            edit = fut.result(timeout=5)
        finally:
            executor.shutdown(wait=True)

        assert edit.status == EditStatus.CONFIRMED
        assert edit.applied_snapshot == Post(9)
        assert store.items == ()
