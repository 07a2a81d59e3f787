from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Hashable, Iterable
from concurrent.futures import CancelledError, Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .exceptions import ErrorInfo, ErrorKind, describe
from .pagestore import PageStore
from .structures import BatchResult, EditStatus, OptimisticEdit
from .ui import ErrorSurface

logger = logging.getLogger(__name__)

T = TypeVar("T")

ApplyLocally = Callable[[T | None], T | None]
PerformRemote = Callable[[], T | None]


@dataclass
class _Job(Generic[T]):
    target_id: Hashable
    apply: ApplyLocally
    remote: PerformRemote
    message: str
    quiet: bool = False
    outer: Future = field(default_factory=Future)


class OptimisticMutator(Generic[T]):
    """Applies edits to a PageStore before the server answers, then commits or rolls back.

    Edits on the same id run strictly one after another; a later edit is queued and its
    ``apply_locally`` sees whatever the earlier one settled to. Edits on different ids are
    independent.
    """

    def __init__(
        self,
        store: PageStore[T],
        *,
        executor: Executor | None = None,
        surface: ErrorSurface | None = None,
        max_workers: int = 4,
    ):
        self.store = store
        self._surface = surface
        self._own_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix=f"readpick-{store.name}-edit"
        )
        self._lock = threading.Lock()
        self._queues: dict[Hashable, deque[_Job[T]]] = {}
        self._closed = False

    def pending(self, target_id: Hashable) -> bool:
        with self._lock:
            return bool(self._queues.get(target_id))

    def mutate(
        self,
        target_id: Hashable,
        apply_locally: ApplyLocally,
        perform_remote: PerformRemote,
        *,
        error_message: str = "could not save change",
        quiet: bool = False,
    ) -> Future[OptimisticEdit[T]]:
        job: _Job[T] = _Job(target_id, apply_locally, perform_remote, error_message, quiet)
        with self._lock:
            if self._closed:
                job.outer.cancel()
                return job.outer
            queue = self._queues.setdefault(target_id, deque())
            queue.append(job)
            first = len(queue) == 1
        if first:
            self._begin(job)
        else:
            logger.debug("%s: edit on %r queued behind pending edit", self.store.name, target_id)
        return job.outer

    def mutate_many(
        self,
        target_ids: Iterable[Hashable],
        apply_locally: ApplyLocally,
        perform_remote: Callable[[Hashable], T | None],
        *,
        action: str = "batch",
        error_message: str = "could not save change",
    ) -> Future[BatchResult]:
        """Run one independent edit per id, sequentially. Successes are never undone."""
        ids = list(dict.fromkeys(target_ids))
        outer: Future[BatchResult] = Future()
        failed: list[Hashable] = []

        def step(i: int) -> None:
            if i == len(ids):
                result = BatchResult(total=len(ids), succeeded=len(ids) - len(failed), failed_ids=tuple(failed))
                if self._surface is not None:
                    self._surface.report_batch(result, action)
                outer.set_result(result)
                return
            tid = ids[i]
            fut = self.mutate(
                tid, apply_locally, lambda: perform_remote(tid),
                error_message=error_message, quiet=True,
            )

            def on_done(done: Future) -> None:
                try:
                    ok = done.result().status == EditStatus.CONFIRMED
                except CancelledError:
                    ok = False
                if not ok:
                    failed.append(tid)
                step(i + 1)

            fut.add_done_callback(on_done)

        step(0)
        return outer

    def close(self) -> None:
        with self._lock:
            self._closed = True
            # heads may sit in an executor that is shutting down; their futures must not hang
            waiting = [job for q in self._queues.values() for job in q]
            for q in self._queues.values():
                while len(q) > 1:
                    q.pop()
        for job in waiting:
            job.outer.cancel()
        if self._own_executor:
            self._executor.shutdown(wait=False)

    def _begin(self, job: _Job[T]) -> None:
        tid = job.target_id
        try:
            previous, index, applied = self.store.apply(tid, job.apply)
        except Exception as e:
            edit: OptimisticEdit[T] = OptimisticEdit(tid, status=EditStatus.ROLLED_BACK)
            edit.error = self._report(job, e)
            self._finish(job, edit)
            return

        edit = OptimisticEdit(tid, previous_snapshot=previous, applied_snapshot=applied)
        logger.debug("%s: edit on %r applied locally", self.store.name, tid)
        try:
            self._executor.submit(self._remote, job, edit, index)
        except RuntimeError as e:
            self._settle(job, edit, index, None, e)

    def _remote(self, job: _Job[T], edit: OptimisticEdit[T], index: int | None) -> None:
        try:
            result = job.remote()
        except Exception as e:
            self._settle(job, edit, index, None, e)
        else:
            self._settle(job, edit, index, result, None)

    def _settle(
        self, job: _Job[T], edit: OptimisticEdit[T], index: int | None,
        result: T | None, exc: BaseException | None,
    ) -> None:
        tid = job.target_id
        if self._closed or self.store.closed:
            self.store.release(tid)
            edit.status = EditStatus.ROLLED_BACK
            job.outer.cancel()
            self._finish(job, edit)
            return

        if exc is None:
            if result is not None:
                # a reset store keeps its emptied list; the confirmed value stays on the edit
                self.store.if_held(tid, lambda: self.store.replace(tid, result))
                edit.applied_snapshot = result
            edit.status = EditStatus.CONFIRMED
            logger.debug("%s: edit on %r confirmed", self.store.name, tid)
        else:
            self.store.if_held(tid, lambda: self._rollback(tid, edit, index))
            edit.status = EditStatus.ROLLED_BACK
            edit.error = self._report(job, exc)
            logger.debug("%s: edit on %r rolled back", self.store.name, tid)
        self.store.release(tid)
        self._finish(job, edit)

    def _rollback(self, tid: Hashable, edit: OptimisticEdit[T], index: int | None) -> None:
        if edit.previous_snapshot is not None:
            self.store.restore(edit.previous_snapshot, index)
        elif edit.applied_snapshot is not None:
            self.store.remove(tid)

    def _report(self, job: _Job[T], exc: BaseException) -> ErrorInfo | None:
        if job.quiet or self._surface is None:
            info = describe(exc, job.message)
            return None if info.kind == ErrorKind.CANCELLED else info
        return self._surface.report(exc, job.message)

    def _finish(self, job: _Job[T], edit: OptimisticEdit[T]) -> None:
        with self._lock:
            queue = self._queues.get(job.target_id)
            if queue and queue[0] is job:
                queue.popleft()
            nxt = queue[0] if queue else None
            if not queue:
                self._queues.pop(job.target_id, None)
        if not job.outer.cancelled():
            job.outer.set_result(edit)
        if nxt is not None:
            self._begin(nxt)
