from __future__ import annotations

import logging
from typing import Any, Literal
from urllib.parse import quote, urljoin

import requests

from .adapter import (
    parse_chat_message,
    parse_chat_reply,
    parse_collection,
    parse_collection_book,
    parse_comment,
    parse_identity,
    parse_page,
    parse_post,
    parse_reported_review,
    parse_review,
    parse_session,
    single_page,
    unwrap,
)
from .exceptions import APISchemaError, AuthError, AuthRequired, NetworkFailure, ServerRejected
from .ratecontrol import BaseRetryPolicy, ExponentialBackoff
from .structures import (
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
from .tokengate import TokenGate

logger = logging.getLogger(__name__)

AuthMode = Literal["none", "optional", "required"]

# retried by default; a POST is sent at most once unless retries= is given
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE"})


class ReadPickContext:
    """HTTP transport for the ReadPick backend.

    Every request carries the bearer token from the TokenGate when one is present. Endpoints
    that need a signed-in caller are sent with ``auth="required"`` and fail before any I/O
    when there is no token.
    """

    DEFAULT_BASE_URL = "http://localhost:8080"
    HEADERS = {
        "Accept": "application/json",
        "User-Agent": "readpick-python",
    }

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        gate: TokenGate | None = None,
        session: requests.Session | None = None,
        retry_policy: BaseRetryPolicy | None = None,
        request_timeout: float = 20,
        max_retries: int = 2,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.gate = gate or TokenGate()
        self.session = session or requests.Session()
        for k, v in self.HEADERS.items():
            self.session.headers.setdefault(k, v)
        self.retry = retry_policy or ExponentialBackoff()
        self.req_timeout = request_timeout
        self.max_retries = max_retries

    def close(self) -> None:
        self.session.close()

    # --- plumbing ---

    def request(
        self,
        method: str,
        path: str,
        *,
        auth: AuthMode = "required",
        retries: int | None = None,
        **kwargs,
    ) -> requests.Response:
        if retries is None:
            retries = self.max_retries if method.upper() in IDEMPOTENT_METHODS else 0
        target = path if path.startswith("http") else urljoin(self.base_url, path.lstrip("/"))
        token = self.gate.current_token() if auth != "none" else None
        if auth == "required" and not token:
            raise AuthRequired(f"sign-in required: {method} {path}")

        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        timeout = kwargs.pop("timeout", self.req_timeout)

        for attempt in range(retries + 1):
            try:
                resp = self.session.request(method, target, headers=headers, timeout=timeout, **kwargs)
            except requests.RequestException as e:
                if attempt < retries and self.retry.should_retry(None):
                    logger.debug("retrying %s %s after %s", method, target, e)
                    self.retry.wait_before_retry(attempt)
                    continue
                raise NetworkFailure(f"request failed: {method} {target}") from e

            self.retry.handle_response(resp.status_code)
            if resp.status_code < 400:
                return resp
            if attempt < retries and self.retry.should_retry(resp.status_code):
                resp.close()
                self.retry.wait_before_retry(attempt)
                continue
            self._raise_for_status(resp)

        raise NetworkFailure(f"request failed: {method} {target}")

    def _raise_for_status(self, resp: requests.Response) -> None:
        status = resp.status_code
        message = self._error_message(resp) or f"http {status}"
        resp.close()
        if status in (401, 403):
            raise AuthError(message, status=status)
        raise ServerRejected(message, status=status)

    @staticmethod
    def _error_message(resp: requests.Response) -> str | None:
        try:
            body = resp.json()
        except ValueError:
            text = (resp.text or "").strip()
            return text[:200] or None
        if isinstance(body, dict):
            return body.get("message") or body.get("error")
        return None

    def _json(self, method: str, path: str, **kwargs) -> Any:
        resp = self.request(method, path, **kwargs)
        try:
            return resp.json()
        except ValueError as e:
            raise APISchemaError(f"invalid json from {path}", status=resp.status_code) from e
        finally:
            resp.close()

    def _data(self, method: str, path: str, **kwargs) -> Any:
        return unwrap(self._json(method, path, **kwargs))

    def _no_body(self, method: str, path: str, **kwargs) -> None:
        self.request(method, path, **kwargs).close()

    @staticmethod
    def _paging(page: int, size: int, **extra) -> dict[str, Any]:
        params: dict[str, Any] = {"page": int(page), "size": int(size)}
        params.update({k: v for k, v in extra.items() if v is not None})
        return params

    # --- auth ---

    def login(self, provider: str, id_token: str) -> tuple[str, Identity]:
        data = self._data("POST", f"v1/api/auth/{quote(provider, safe='')}", auth="none",
                          json={"idToken": id_token})
        token = data.get("accessToken") if isinstance(data, dict) else None
        if not token:
            raise APISchemaError("login response missing accessToken")
        identity = parse_identity(data)
        self.gate.set_credential(token, identity)
        return token, identity

    def logout(self) -> None:
        try:
            if self.gate.current_token():
                self._no_body("POST", "v1/api/auth/logout")
        finally:
            self.gate.clear()

    # --- reviews ---

    def get_reviews(self, isbn13: str, page: int = 0, size: int = 20) -> Page[Review]:
        data = self._json("GET", f"v1/api/books/{isbn13}/reviews", auth="optional",
                          params=self._paging(page, size))
        return parse_page(data, parse_review)

    def create_review(self, isbn13: str, content: str) -> Review:
        return parse_review(self._json("POST", f"v1/api/books/{isbn13}/reviews", json={"content": content}))

    def update_review(self, isbn13: str, content: str) -> Review:
        return parse_review(self._json("PUT", f"v1/api/books/{isbn13}/reviews", json={"content": content}))

    def delete_review(self, isbn13: str) -> None:
        self._no_body("DELETE", f"v1/api/books/{isbn13}/reviews")

    def report_review(self, review_id: int, reason: str) -> None:
        self._no_body("POST", f"v1/api/reviews/{review_id}/report", json={"reason": reason})

    # --- community ---

    def get_posts(
        self, page: int = 0, size: int = 20, *, category_id: int | None = None, sort: str = "latest"
    ) -> Page[CommunityPost]:
        data = self._data("GET", "v1/api/communities/posts", auth="optional",
                          params=self._paging(page, size, categoryId=category_id, sort=sort))
        return parse_page(data, parse_post)

    def get_post(self, post_id: int) -> CommunityPost:
        return parse_post(self._data("GET", f"v1/api/communities/posts/{post_id}", auth="optional"))

    def create_post(
        self, *, category_id: int, post_type: str, title: str, content: str, book_isbn13: str | None = None
    ) -> CommunityPost:
        body = {"categoryId": category_id, "postType": post_type, "title": title,
                "content": content, "bookIsbn13": book_isbn13}
        return parse_post(self._data("POST", "v1/api/communities/posts", json=body))

    def delete_post(self, post_id: int) -> None:
        self._no_body("DELETE", f"v1/api/communities/posts/{post_id}")

    def like_post(self, post_id: int) -> None:
        self._no_body("POST", f"v1/api/communities/posts/{post_id}/like")

    def unlike_post(self, post_id: int) -> None:
        self._no_body("DELETE", f"v1/api/communities/posts/{post_id}/like")

    def get_comments(self, post_id: int, page: int = 0, size: int = 50) -> Page[Comment]:
        data = self._data("GET", f"v1/api/communities/posts/{post_id}/comments", auth="optional",
                          params=self._paging(page, size))
        return parse_page(data, parse_comment)

    def create_comment(self, post_id: int, content: str) -> Comment:
        return parse_comment(self._data("POST", f"v1/api/communities/posts/{post_id}/comments",
                                        json={"content": content}))

    def delete_comment(self, comment_id: int) -> None:
        self._no_body("DELETE", f"v1/api/communities/comments/{comment_id}")

    # --- collections ---

    def get_collections(self) -> Page[UserCollection]:
        data = self._data("GET", "api/users/me/collections")
        if not isinstance(data, list):
            raise APISchemaError("collections is not a list")
        return single_page([parse_collection(c) for c in data if isinstance(c, dict)])

    def create_collection(self, name: str) -> UserCollection:
        return parse_collection(self._data("POST", "api/users/me/collections", json={"name": name}))

    def rename_collection(self, collection_id: int, name: str) -> UserCollection:
        return parse_collection(self._data("PUT", f"api/users/me/collections/{collection_id}",
                                           json={"name": name}))

    def delete_collection(self, collection_id: int) -> None:
        self._no_body("DELETE", f"api/users/me/collections/{collection_id}")

    def get_collection_books(self, collection_id: int, page: int = 0, size: int = 20) -> Page[CollectionBook]:
        data = self._json("GET", f"api/users/me/collections/{collection_id}/books",
                          params=self._paging(page, size))
        return parse_page(data, parse_collection_book)

    def add_book_to_collection(self, collection_id: int, isbn13: str) -> None:
        self._no_body("POST", f"api/users/me/collections/{collection_id}/books/{isbn13}")

    def remove_book_from_collection(self, collection_id: int, isbn13: str) -> None:
        self._no_body("DELETE", f"api/users/me/collections/{collection_id}/books/{isbn13}")

    # --- chatbot ---

    def create_session(self) -> ChatSession:
        return parse_session(self._data("POST", "v1/api/chatbot/conversations/sessions"))

    def get_sessions(self) -> Page[ChatSession]:
        data = self._data("GET", "v1/api/chatbot/conversations/sessions")
        if not isinstance(data, list):
            raise APISchemaError("sessions is not a list")
        return single_page([parse_session(s) for s in data if isinstance(s, dict)])

    def get_session_messages(self, session_id: int) -> Page[ChatMessage]:
        data = self._data("GET", f"v1/api/chatbot/conversations/sessions/{session_id}")
        messages = data.get("messages") if isinstance(data, dict) else None
        if not isinstance(messages, list):
            raise APISchemaError("session detail missing messages")
        return single_page([parse_chat_message(m, i) for i, m in enumerate(messages) if isinstance(m, dict)])

    def send_message(self, session_id: int | str, message: str) -> ChatReply:
        return parse_chat_reply(self._data("POST", f"v1/api/chatbot/conversations/sessions/{session_id}/messages",
                                           json={"message": message}))

    # --- admin ---

    def get_reported_reviews(self, page: int = 0, size: int = 20) -> Page[ReportedReview]:
        data = self._data("GET", "v1/api/admin/reviews/reported", params=self._paging(page, size))
        return parse_page(data, parse_reported_review)

    def hide_review(self, review_id: int, reason: str) -> None:
        self._no_body("DELETE", f"v1/api/admin/reviews/{review_id}", json={"reason": reason})

    def suspend_user(self, user_id: int, reason: str) -> None:
        self._no_body("POST", f"v1/api/admin/users/{user_id}/suspend", json={"reason": reason})

    def unsuspend_user(self, user_id: int) -> None:
        self._no_body("POST", f"v1/api/admin/users/{user_id}/unsuspend")
