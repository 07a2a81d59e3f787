from __future__ import annotations

import itertools
import logging
import threading
import uuid
from collections.abc import Callable, Hashable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from .adapter import single_page
from .context import ReadPickContext
from .exceptions import AuthRequired, ValidationFailure
from .identity import is_mine
from .mutator import OptimisticMutator
from .pagestore import PageStore
from .session import SessionLifecycle
from .structures import (
    BatchResult,
    ChatMessage,
    ChatSession,
    CollectionBook,
    Comment,
    CommunityPost,
    CreationState,
    EditStatus,
    OptimisticEdit,
    Page,
    PageStoreState,
    ReportedReview,
    Review,
    UserCollection,
)
from .ui import ErrorSurface

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Placeholder ids for optimistic creates; the server's id replaces them on confirmation.
_temp_ids = itertools.count(-1, -1)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_text(value: str | None, what: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationFailure(f"{what} is empty")
    return text


class _Feature(Generic[T]):
    """A screen's state holder: one primary store, its mutator, and a shared worker pool."""

    def __init__(
        self,
        context: ReadPickContext,
        fetch: Callable[[dict[str, Any], int, int], Page[T]],
        *,
        name: str,
        key: Callable[[T], Hashable] | None = None,
        insert_at: str = "start",
        page_size: int = 20,
        surface: ErrorSurface | None = None,
        max_workers: int = 4,
    ):
        self.context = context
        self.gate = context.gate
        self.surface = surface or ErrorSurface()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"readpick-{name}")
        store_kwargs: dict[str, Any] = {"key": key} if key is not None else {}
        self.store: PageStore[T] = PageStore(
            fetch, page_size=page_size, insert_at=insert_at, executor=self._executor,
            surface=self.surface, name=name, **store_kwargs,
        )
        self.mutator: OptimisticMutator[T] = OptimisticMutator(
            self.store, executor=self._executor, surface=self.surface,
        )

    @property
    def state(self) -> PageStoreState[T]:
        return self.store.state

    def load(self, query: dict[str, Any] | None = None) -> Future[PageStoreState[T]]:
        return self.store.load_first_page(query)

    def load_more(self) -> Future[PageStoreState[T]]:
        return self.store.load_more()

    def refresh(self) -> Future[PageStoreState[T]]:
        return self.store.refresh()

    def retry(self) -> Future[PageStoreState[T]]:
        return self.store.retry()

    def close(self) -> None:
        self.mutator.close()
        self.store.close()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _reject(self, exc: Exception, target_id: Hashable = None) -> Future[OptimisticEdit[T]]:
        edit: OptimisticEdit[T] = OptimisticEdit(target_id, status=EditStatus.ROLLED_BACK)
        edit.error = self.surface.report(exc)
        f: Future[OptimisticEdit[T]] = Future()
        f.set_result(edit)
        return f

    def _author(self) -> tuple[Any, str]:
        ident = self.gate.identity()
        if ident is None:
            return None, ""
        try:
            author_id: Any = int(ident.user_id)
        except (TypeError, ValueError):
            author_id = ident.user_id
        return author_id, ident.name or ""

    def _require_auth(self) -> None:
        if not self.gate.is_authenticated():
            raise AuthRequired("sign in to continue")

    def _refuse(self, exc: Exception) -> Future[bool]:
        self.surface.report(exc)
        f: Future[bool] = Future()
        f.set_result(False)
        return f

    def _submit(self, fn: Callable[[], Any], message: str) -> Future[bool]:
        """Run a non-optimistic remote call; failures are surfaced and resolve to False."""
        def run() -> bool:
            try:
                fn()
            except Exception as e:
                self.surface.report(e, message)
                return False
            return True

        try:
            return self._executor.submit(run)
        except RuntimeError as e:
            return self._refuse(e)


class ReviewFeed(_Feature[Review]):
    def __init__(self, context: ReadPickContext, isbn13: str, **kwargs):
        self.isbn13 = isbn13
        super().__init__(
            context, lambda q, page, size: context.get_reviews(isbn13, page, size),
            name="reviews", insert_at="start", **kwargs,
        )

    @property
    def my_review(self) -> Review | None:
        return next((r for r in self.store.items if is_mine(r, self.gate)), None)

    def submit_review(self, content: str) -> Future[OptimisticEdit[Review]]:
        try:
            self._require_auth()
            text = _require_text(content, "review")
        except ValidationFailure as e:
            return self._reject(e)

        mine = self.my_review
        if mine is None:
            author_id, author_name = self._author()
            draft = Review(
                id=next(_temp_ids), content=text,
                author_name=author_name, author_id=author_id,
                created_at=_now(), isbn13=self.isbn13,
            )
            return self.mutator.mutate(
                draft.id, lambda _: draft, lambda: self.context.create_review(self.isbn13, text),
                error_message="could not post review",
            )
        return self.mutator.mutate(
            mine.id,
            lambda cur: replace(cur, content=text) if cur else None,
            lambda: self.context.update_review(self.isbn13, text),
            error_message="could not update review",
        )

    def delete_review(self) -> Future[OptimisticEdit[Review]]:
        mine = self.my_review
        if mine is None:
            return self._reject(ValidationFailure("no review to delete"))
        return self.mutator.mutate(
            mine.id, lambda _: None, lambda: self.context.delete_review(self.isbn13),
            error_message="could not delete review",
        )

    def report_review(self, review: Review, reason: str) -> Future[bool]:
        try:
            self._require_auth()
            text = _require_text(reason, "report reason")
            if is_mine(review, self.gate):
                raise ValidationFailure("cannot report your own review")
        except ValidationFailure as e:
            return self._refuse(e)
        return self._submit(lambda: self.context.report_review(review.id, text), "could not report review")


class CommunityFeed(_Feature[CommunityPost]):
    def __init__(
        self, context: ReadPickContext, *, category_id: int | None = None, sort: str = "latest", **kwargs
    ):
        self._initial: dict[str, Any] = {"category_id": category_id, "sort": sort}
        super().__init__(context, self._fetch, name="posts", insert_at="start", **kwargs)

    def _fetch(self, query: dict[str, Any], page: int, size: int) -> Page[CommunityPost]:
        return self.context.get_posts(
            page, size, category_id=query.get("category_id"), sort=query.get("sort") or "latest",
        )

    def load(self, query: dict[str, Any] | None = None) -> Future[PageStoreState[CommunityPost]]:
        return self.store.load_first_page(query if query is not None else self._initial)

    def set_filter(self, *, category_id: int | None = None, sort: str = "latest") -> Future[PageStoreState[CommunityPost]]:
        self._initial = {"category_id": category_id, "sort": sort}
        return self.store.load_first_page(self._initial)

    def toggle_like(self, post_id: int) -> Future[OptimisticEdit[CommunityPost]]:
        try:
            self._require_auth()
        except ValidationFailure as e:
            return self._reject(e, post_id)

        want: dict[str, bool] = {}

        def flip(cur: CommunityPost | None) -> CommunityPost | None:
            if cur is None:
                raise ValidationFailure(f"post {post_id} is not loaded")
            want["liked"] = not cur.liked
            delta = -1 if cur.liked else 1
            return replace(cur, liked=not cur.liked, like_count=max(0, cur.like_count + delta))

        def send() -> None:
            # direction is fixed when the edit is applied; the list may be reloaded meanwhile
            if want["liked"]:
                self.context.like_post(post_id)
            else:
                self.context.unlike_post(post_id)

        return self.mutator.mutate(post_id, flip, send, error_message="could not update like")

    def create_post(
        self, *, category_id: int, title: str, content: str,
        post_type: str = "DISCUSSION", book_isbn13: str | None = None,
    ) -> Future[OptimisticEdit[CommunityPost]]:
        try:
            self._require_auth()
            title = _require_text(title, "title")
            content = _require_text(content, "content")
        except ValidationFailure as e:
            return self._reject(e)

        author_id, author_name = self._author()
        draft = CommunityPost(
            id=next(_temp_ids), title=title, content=content,
            author_id=author_id, author_name=author_name,
            category_id=category_id, post_type=post_type, created_at=_now(), book_isbn13=book_isbn13,
        )
        return self.mutator.mutate(
            draft.id, lambda _: draft,
            lambda: self.context.create_post(
                category_id=category_id, post_type=post_type, title=title,
                content=content, book_isbn13=book_isbn13,
            ),
            error_message="could not publish post",
        )

    def delete_post(self, post_id: int) -> Future[OptimisticEdit[CommunityPost]]:
        return self.mutator.mutate(
            post_id, lambda _: None, lambda: self.context.delete_post(post_id),
            error_message="could not delete post",
        )

    def is_mine(self, post: CommunityPost) -> bool:
        return is_mine(post, self.gate)


class PostComments(_Feature[Comment]):
    def __init__(self, context: ReadPickContext, post_id: int, *, page_size: int = 50, **kwargs):
        self.post_id = post_id
        self.post: CommunityPost | None = None
        super().__init__(
            context, lambda q, page, size: context.get_comments(post_id, page, size),
            name="comments", insert_at="end", page_size=page_size, **kwargs,
        )

    def load_post(self) -> Future[bool]:
        """Fetch the post the comments belong to into ``self.post``."""
        def fetch() -> None:
            self.post = self.context.get_post(self.post_id)

        return self._submit(fetch, "could not load post")

    def add_comment(self, content: str) -> Future[OptimisticEdit[Comment]]:
        try:
            self._require_auth()
            text = _require_text(content, "comment")
        except ValidationFailure as e:
            return self._reject(e)

        author_id, author_name = self._author()
        draft = Comment(
            id=next(_temp_ids), content=text,
            author_id=author_id, author_name=author_name,
            created_at=_now(),
        )
        return self.mutator.mutate(
            draft.id, lambda _: draft, lambda: self.context.create_comment(self.post_id, text),
            error_message="could not post comment",
        )

    def delete_comment(self, comment_id: int) -> Future[OptimisticEdit[Comment]]:
        return self.mutator.mutate(
            comment_id, lambda _: None, lambda: self.context.delete_comment(comment_id),
            error_message="could not delete comment",
        )


class CollectionShelf(_Feature[UserCollection]):
    def __init__(self, context: ReadPickContext, **kwargs):
        super().__init__(
            context, lambda q, page, size: context.get_collections(),
            name="collections", insert_at="start", **kwargs,
        )

    def create(self, name: str) -> Future[OptimisticEdit[UserCollection]]:
        try:
            name = _require_text(name, "collection name")
        except ValidationFailure as e:
            return self._reject(e)
        draft = UserCollection(id=next(_temp_ids), name=name, created_at=_now())
        return self.mutator.mutate(
            draft.id, lambda _: draft, lambda: self.context.create_collection(name),
            error_message="could not create collection",
        )

    def rename(self, collection_id: int, name: str) -> Future[OptimisticEdit[UserCollection]]:
        try:
            name = _require_text(name, "collection name")
        except ValidationFailure as e:
            return self._reject(e, collection_id)
        return self.mutator.mutate(
            collection_id,
            lambda cur: replace(cur, name=name) if cur else None,
            lambda: self.context.rename_collection(collection_id, name),
            error_message="could not rename collection",
        )

    def delete(self, collection_id: int) -> Future[OptimisticEdit[UserCollection]]:
        return self.mutator.mutate(
            collection_id, lambda _: None, lambda: self.context.delete_collection(collection_id),
            error_message="could not delete collection",
        )


class CollectionBooks(_Feature[CollectionBook]):
    def __init__(self, context: ReadPickContext, collection_id: int, **kwargs):
        self.collection_id = collection_id
        super().__init__(
            context, lambda q, page, size: context.get_collection_books(collection_id, page, size),
            name="collection-books", key=lambda b: b.isbn13, insert_at="end", **kwargs,
        )

    def add_book(self, isbn13: str) -> Future[bool]:
        fut = self._submit(
            lambda: self.context.add_book_to_collection(self.collection_id, isbn13),
            "could not add book",
        )

        def after(done: Future[bool]) -> None:
            if not done.cancelled() and done.result():
                self.store.refresh()

        fut.add_done_callback(after)
        return fut

    def remove_books(self, isbns: Iterable[str]) -> Future[BatchResult]:
        return self.mutator.mutate_many(
            isbns, lambda _: None,
            lambda isbn: self.context.remove_book_from_collection(self.collection_id, str(isbn)),
            action="remove books", error_message="could not remove book",
        )


class AdminReviewQueue(_Feature[ReportedReview]):
    def __init__(self, context: ReadPickContext, **kwargs):
        super().__init__(
            context, lambda q, page, size: context.get_reported_reviews(page, size),
            name="reported-reviews", insert_at="end", **kwargs,
        )

    def _require_admin(self) -> None:
        if not self.gate.is_admin():
            raise ValidationFailure("admin role required")

    def hide_review(self, review_id: int, reason: str) -> Future[OptimisticEdit[ReportedReview]]:
        try:
            self._require_admin()
            text = _require_text(reason, "reason")
        except ValidationFailure as e:
            return self._reject(e, review_id)
        return self.mutator.mutate(
            review_id, lambda _: None, lambda: self.context.hide_review(review_id, text),
            error_message="could not hide review",
        )

    def suspend_user(self, user_id: int, reason: str) -> Future[bool]:
        try:
            self._require_admin()
            text = _require_text(reason, "reason")
        except ValidationFailure as e:
            return self._refuse(e)
        return self._submit(lambda: self.context.suspend_user(user_id, text), "could not suspend user")

    def unsuspend_user(self, user_id: int) -> Future[bool]:
        try:
            self._require_admin()
        except ValidationFailure as e:
            return self._refuse(e)
        return self._submit(lambda: self.context.unsuspend_user(user_id), "could not unsuspend user")


class ChatConversation(_Feature[ChatMessage]):
    """Chat screen: lazily created session, optimistic user messages, session sidebar."""

    def __init__(self, context: ReadPickContext, **kwargs):
        super().__init__(context, self._fetch_messages, name="chat", insert_at="end", **kwargs)
        self.session = SessionLifecycle(lambda: self.context.create_session().id)
        self.sessions: PageStore[ChatSession] = PageStore(
            lambda q, page, size: self.context.get_sessions(),
            executor=self._executor, surface=self.surface, name="chat-sessions",
        )
        self._lock = threading.Lock()
        self._chat_generation = 0

    def _fetch_messages(self, query: dict[str, Any], page: int, size: int) -> Page[ChatMessage]:
        sid = query.get("session_id")
        if sid is None:
            return single_page([])
        return self.context.get_session_messages(sid)

    def load_sessions(self) -> Future[PageStoreState[ChatSession]]:
        return self.sessions.load_first_page()

    def refresh(self) -> Future[PageStoreState[ChatMessage]]:
        return self.store.load_first_page({"session_id": self.session.session_id})

    def start_new_chat(self) -> None:
        with self._lock:
            self._chat_generation += 1
        self.session.start_new_chat()
        self.store.clear()

    def select_session(self, session_id: int) -> Future[PageStoreState[ChatMessage]]:
        with self._lock:
            self._chat_generation += 1
        self.session.adopt(session_id)
        self.store.clear()
        return self.store.load_first_page({"session_id": session_id})

    def send_message(self, text: str) -> Future[OptimisticEdit[ChatMessage]]:
        try:
            self._require_auth()
            text = _require_text(text, "message")
        except ValidationFailure as e:
            return self._reject(e)

        with self._lock:
            gen = self._chat_generation
        is_new_chat = self.session.handle.creation_state != CreationState.CREATED
        message = ChatMessage(id=f"local-{uuid.uuid4().hex}", role="USER", content=text, created_at=_now())

        def remote() -> None:
            session_id = self.session.ensure_session().result()
            reply = self.context.send_message(session_id, text)
            with self._lock:
                current = gen == self._chat_generation
            if not current:
                logger.debug("reply for a discarded chat dropped")
                return None
            self.store.upsert(ChatMessage(
                id=f"reply-{uuid.uuid4().hex}", role="ASSISTANT", content=reply.reply,
                created_at=_now(), books=list(reply.books),
            ))
            if is_new_chat:
                self.sessions.refresh()
            return None

        return self.mutator.mutate(message.id, lambda _: message, remote, error_message="could not send message")

    def close(self) -> None:
        self.session.close()
        self.sessions.close()
        super().close()
