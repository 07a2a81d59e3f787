from __future__ import annotations

from collections.abc import Hashable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Literal, TypeVar

from .exceptions import ErrorInfo

T = TypeVar("T")

InsertAt = Literal["start", "end"]


# --- Identity / credential ---


@dataclass(frozen=True)
class Identity:
    user_id: int | str
    role: str = "USER"
    name: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class Credential:
    token: str | None = None
    identity: Identity | None = None


# --- Paging ---


@dataclass(frozen=True)
class Page(Generic[T]):
    items: tuple[T, ...]
    number: int = 0
    size: int = 20
    total_count: int = 0
    total_pages: int = 0
    is_last: bool = True

    @property
    def next_cursor(self) -> int:
        return self.number + 1


class LoadState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADING_MORE = "loading_more"
    ERROR = "error"


@dataclass(frozen=True)
class PageStoreState(Generic[T]):
    items: tuple[T, ...] = ()
    next_cursor: int = 0
    is_last: bool = False
    total_count: int = 0
    load_state: LoadState = LoadState.IDLE
    error: ErrorInfo | None = None
    loaded: bool = False

    @property
    def is_loading(self) -> bool:
        return self.load_state in (LoadState.LOADING, LoadState.LOADING_MORE)


# --- Optimistic edits ---


class EditStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class OptimisticEdit(Generic[T]):
    target_id: Hashable
    previous_snapshot: T | None = None
    applied_snapshot: T | None = None
    status: EditStatus = EditStatus.PENDING
    error: ErrorInfo | None = None


@dataclass(frozen=True)
class BatchResult:
    total: int
    succeeded: int
    failed_ids: tuple[Any, ...] = ()

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def summary(self) -> str:
        return f"{self.succeeded} of {self.total} succeeded"


# --- Chat session ---


class CreationState(str, Enum):
    NOT_CREATED = "not_created"
    CREATING = "creating"
    CREATED = "created"


@dataclass(frozen=True)
class SessionHandle:
    id: int | str | None = None
    creation_state: CreationState = CreationState.NOT_CREATED


# --- Domain resources ---


@dataclass
class Book:
    isbn13: str
    title: str
    author: str = ""
    cover: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class Review:
    id: int
    content: str
    author_name: str
    author_id: int | None = None
    author_picture: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    isbn13: str | None = None
    book_title: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class ReportedReview:
    id: int
    content: str
    author_id: int | None = None
    author_name: str = ""
    report_count: int = 0
    reasons: list[str] = field(default_factory=list)
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class CommunityPost:
    id: int
    title: str
    content: str
    author_id: int
    author_name: str
    category_id: int | None = None
    post_type: str = "DISCUSSION"
    like_count: int = 0
    comment_count: int = 0
    view_count: int = 0
    liked: bool = False
    created_at: str | None = None
    book_isbn13: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class Comment:
    id: int
    content: str
    author_id: int
    author_name: str
    created_at: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class UserCollection:
    id: int
    name: str
    book_count: int = 0
    created_at: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class CollectionBook:
    isbn13: str
    title: str
    author: str = ""
    cover: str | None = None
    reading_status: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class ChatSession:
    id: int
    title: str
    created_at: str | None = None
    updated_at: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


MessageRole = Literal["USER", "ASSISTANT"]


@dataclass
class ChatMessage:
    id: str
    role: MessageRole
    content: str
    created_at: str | None = None
    books: list[Book] = field(default_factory=list)


@dataclass
class ChatReply:
    session_id: int
    reply: str
    books: list[Book] = field(default_factory=list)
