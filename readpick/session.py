from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor

from .structures import CreationState, SessionHandle

logger = logging.getLogger(__name__)

SessionId = int | str
CreateSession = Callable[[], SessionId]


def _done(value: SessionId) -> Future[SessionId]:
    f: Future[SessionId] = Future()
    f.set_result(value)
    return f


class SessionLifecycle:
    """Lazily creates the server-side chat session, once per logical chat.

    ``ensure_session()`` is single-flight: callers arriving while a create call is in flight
    get the same future. A failed create drops back to NOT_CREATED so the next call retries.
    """

    def __init__(self, create: CreateSession, *, executor: Executor | None = None):
        self._create = create
        self._own_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="readpick-session")
        self._lock = threading.Lock()
        self._handle = SessionHandle()
        self._inflight: Future[SessionId] | None = None
        self._generation = 0

    @property
    def handle(self) -> SessionHandle:
        return self._handle

    @property
    def session_id(self) -> SessionId | None:
        return self._handle.id

    def ensure_session(self) -> Future[SessionId]:
        with self._lock:
            state = self._handle.creation_state
            if state == CreationState.CREATED and self._handle.id is not None:
                return _done(self._handle.id)
            if state == CreationState.CREATING and self._inflight is not None:
                return self._inflight
            fut: Future[SessionId] = Future()
            self._inflight = fut
            self._handle = SessionHandle(creation_state=CreationState.CREATING)
            gen = self._generation
        logger.debug("creating chat session")
        try:
            self._executor.submit(self._run, gen, fut)
        except RuntimeError as e:
            self._fail(gen, fut, e)
        return fut

    def start_new_chat(self) -> None:
        """Forget the current session. Nothing is created until the next ``ensure_session()``."""
        with self._lock:
            self._generation += 1
            self._handle = SessionHandle()
            self._inflight = None

    def adopt(self, session_id: SessionId) -> None:
        """Switch to an existing server session (e.g. picked from the session list)."""
        with self._lock:
            self._generation += 1
            self._handle = SessionHandle(id=session_id, creation_state=CreationState.CREATED)
            self._inflight = None

    def close(self) -> None:
        with self._lock:
            self._generation += 1
            fut, self._inflight = self._inflight, None
            if self._handle.creation_state == CreationState.CREATING:
                self._handle = SessionHandle()
        if fut is not None:
            fut.cancel()
        if self._own_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _run(self, gen: int, fut: Future[SessionId]) -> None:
        try:
            session_id = self._create()
        except Exception as e:
            self._fail(gen, fut, e)
            return
        with self._lock:
            if gen == self._generation:
                self._handle = SessionHandle(id=session_id, creation_state=CreationState.CREATED)
                self._inflight = None
                logger.debug("chat session %s created", session_id)
            else:
                # chat was reset while creating; the id belongs to the abandoned chat
                logger.debug("chat session %s created for a discarded chat", session_id)
        if not fut.cancelled():
            fut.set_result(session_id)

    def _fail(self, gen: int, fut: Future[SessionId], exc: BaseException) -> None:
        with self._lock:
            if gen == self._generation:
                self._handle = SessionHandle()
                self._inflight = None
        logger.debug("chat session creation failed: %s", exc)
        if not fut.cancelled():
            fut.set_exception(exc)
