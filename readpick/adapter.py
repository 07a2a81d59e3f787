from __future__ import annotations

from collections.abc import Callable
from typing import Any, Mapping, TypeVar

from .exceptions import APISchemaError, ServerRejected
from .structures import (
    Book,
    ChatMessage,
    ChatReply,
    ChatSession,
    CollectionBook,
    Comment,
    CommunityPost,
    Identity,
    Page,
    ReportedReview,
    Review,
    UserCollection,
)

T = TypeVar("T")

DEFAULT_ENVELOPE_MESSAGE = "request was not successful"


def unwrap(payload: Any, default: str = DEFAULT_ENVELOPE_MESSAGE) -> Any:
    """Decode ``{success, data, message}``; failure is ``success`` false or ``data`` absent."""
    if not isinstance(payload, Mapping):
        raise APISchemaError("envelope is not an object")
    if not payload.get("success") or payload.get("data") is None:
        raise ServerRejected(payload.get("message") or default)
    return payload["data"]


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_page(raw: Mapping[str, Any], parse_item: Callable[[Mapping[str, Any]], T]) -> Page[T]:
    """Parse a Spring page, either with a nested ``page`` block or with flat page fields."""
    if not isinstance(raw, Mapping):
        raise APISchemaError("page is not an object")
    content = raw.get("content")
    if not isinstance(content, list):
        raise APISchemaError("page missing content")

    info = raw.get("page") if isinstance(raw.get("page"), Mapping) else raw
    number = _as_int(info.get("number"))
    total_pages = _as_int(info.get("totalPages"))
    last = info.get("last")
    if last is None:
        last = number >= total_pages - 1

    return Page(
        items=tuple(parse_item(c) for c in content if isinstance(c, Mapping)),
        number=number,
        size=_as_int(info.get("size"), len(content)),
        total_count=_as_int(info.get("totalElements"), len(content)),
        total_pages=total_pages,
        is_last=bool(last),
    )


def single_page(items: list[T]) -> Page[T]:
    """Wrap an unpaged list endpoint as one final page."""
    return Page(items=tuple(items), number=0, size=len(items), total_count=len(items),
                total_pages=1, is_last=True)


def _require_id(raw: Mapping[str, Any], what: str, field: str = "id") -> Any:
    value = raw.get(field)
    if value is None or value == "":
        raise APISchemaError(f"{what} missing {field}")
    return value


def parse_identity(raw: Mapping[str, Any]) -> Identity:
    return Identity(
        user_id=_require_id(raw, "login", "userId"),
        role=raw.get("role") or "USER",
        name=raw.get("name"),
        email=raw.get("email"),
    )


def parse_book(raw: Mapping[str, Any]) -> Book:
    return Book(
        isbn13=str(_require_id(raw, "book", "isbn13")),
        title=raw.get("title") or "",
        author=raw.get("author") or "",
        cover=raw.get("cover"),
        raw=dict(raw),
    )


def parse_review(raw: Mapping[str, Any]) -> Review:
    return Review(
        id=_as_int(_require_id(raw, "review")),
        content=raw.get("content") or "",
        author_name=raw.get("userName") or raw.get("authorName") or "",
        author_id=raw.get("userId") if raw.get("userId") is not None else raw.get("authorId"),
        author_picture=raw.get("userPicture"),
        created_at=raw.get("createdAt"),
        updated_at=raw.get("updatedAt"),
        isbn13=raw.get("isbn13"),
        book_title=raw.get("bookTitle"),
        raw=dict(raw),
    )


def parse_reported_review(raw: Mapping[str, Any]) -> ReportedReview:
    rid = raw.get("reviewId") if raw.get("reviewId") is not None else raw.get("id")
    if rid is None:
        raise APISchemaError("reported review missing id")
    reasons = raw.get("reasons") or raw.get("reportReasons") or []
    return ReportedReview(
        id=_as_int(rid),
        content=raw.get("content") or "",
        author_id=raw.get("userId"),
        author_name=raw.get("userName") or "",
        report_count=_as_int(raw.get("reportCount")),
        reasons=[str(r) for r in reasons] if isinstance(reasons, list) else [],
        raw=dict(raw),
    )


def parse_post(raw: Mapping[str, Any]) -> CommunityPost:
    return CommunityPost(
        id=_as_int(_require_id(raw, "post")),
        title=raw.get("title") or "",
        content=raw.get("content") or "",
        author_id=_as_int(raw.get("authorId")),
        author_name=raw.get("authorName") or "",
        category_id=raw.get("categoryId"),
        post_type=raw.get("postType") or "DISCUSSION",
        like_count=_as_int(raw.get("likeCount")),
        comment_count=_as_int(raw.get("commentCount")),
        view_count=_as_int(raw.get("viewCount")),
        liked=bool(raw.get("liked", False)),
        created_at=raw.get("createdAt"),
        book_isbn13=raw.get("bookIsbn13"),
        raw=dict(raw),
    )


def parse_comment(raw: Mapping[str, Any]) -> Comment:
    return Comment(
        id=_as_int(_require_id(raw, "comment")),
        content=raw.get("content") or "",
        author_id=_as_int(raw.get("authorId")),
        author_name=raw.get("authorName") or "",
        created_at=raw.get("createdAt"),
        raw=dict(raw),
    )


def parse_collection(raw: Mapping[str, Any]) -> UserCollection:
    return UserCollection(
        id=_as_int(_require_id(raw, "collection")),
        name=raw.get("name") or "",
        book_count=_as_int(raw.get("bookCount")),
        created_at=raw.get("createdAt"),
        raw=dict(raw),
    )


def parse_collection_book(raw: Mapping[str, Any]) -> CollectionBook:
    return CollectionBook(
        isbn13=str(_require_id(raw, "collection book", "isbn13")),
        title=raw.get("title") or "",
        author=raw.get("author") or "",
        cover=raw.get("cover"),
        reading_status=raw.get("readingStatus"),
        raw=dict(raw),
    )


def parse_session(raw: Mapping[str, Any]) -> ChatSession:
    sid = raw.get("id") if raw.get("id") is not None else raw.get("sessionId")
    if sid is None:
        raise APISchemaError("session missing id")
    return ChatSession(
        id=_as_int(sid),
        title=raw.get("title") or "",
        created_at=raw.get("createdAt"),
        updated_at=raw.get("updatedAt"),
        raw=dict(raw),
    )


def parse_chat_reply(raw: Mapping[str, Any]) -> ChatReply:
    books = raw.get("books") or []
    return ChatReply(
        session_id=_as_int(_require_id(raw, "reply", "sessionId")),
        reply=raw.get("reply") or "",
        books=[parse_book(b) for b in books if isinstance(b, Mapping)],
    )


def parse_chat_message(raw: Mapping[str, Any], index: int) -> ChatMessage:
    role = str(raw.get("role") or raw.get("sender") or "USER").upper()
    books = raw.get("books") or []
    return ChatMessage(
        id=str(raw.get("messageId") or raw.get("id") or f"m{index}"),
        role="ASSISTANT" if role in ("ASSISTANT", "AI") else "USER",
        content=raw.get("content") or "",
        created_at=raw.get("createdAt") or raw.get("timestamp"),
        books=[parse_book(b) for b in books if isinstance(b, Mapping)],
    )
