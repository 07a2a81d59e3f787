"""Tests for envelope and payload parsing."""
from __future__ import annotations

import pytest

from readpick.adapter import (
    parse_chat_message,
    parse_chat_reply,
    parse_identity,
    parse_page,
    parse_post,
    parse_reported_review,
    parse_review,
    parse_session,
    single_page,
    unwrap,
)
from readpick.exceptions import APISchemaError, ServerRejected


class TestUnwrap:
    def test_success_returns_data(self):
        assert unwrap({"success": True, "data": {"id": 1}}) == {"id": 1}

    def test_false_success_raises_with_message(self):
        with pytest.raises(ServerRejected, match="already liked"):
            unwrap({"success": False, "data": None, "message": "already liked"})

    def test_missing_data_is_failure(self):
        with pytest.raises(ServerRejected, match="request was not successful"):
            unwrap({"success": True, "data": None})

    def test_non_object_is_schema_error(self):
        with pytest.raises(APISchemaError):
            unwrap([1, 2])


class TestParsePage:
    def test_nested_page_block(self):
        raw = {
            "content": [{"id": 1, "title": "a", "authorId": 3, "authorName": "kim"}],
            "page": {"size": 20, "number": 0, "totalElements": 41, "totalPages": 3},
        }
        page = parse_page(raw, parse_post)
        assert [p.id for p in page.items] == [1]
        assert page.total_count == 41
        assert page.total_pages == 3
        assert not page.is_last
        assert page.next_cursor == 1

    def test_flat_spring_page_uses_last(self):
        raw = {"content": [], "number": 4, "size": 20, "totalElements": 80, "totalPages": 4, "last": True}
        page = parse_page(raw, parse_review)
        assert page.is_last
        assert page.number == 4

    def test_last_derived_from_total_pages(self):
        raw = {"content": [], "number": 2, "totalPages": 3}
        assert parse_page(raw, parse_review).is_last

    def test_missing_content_is_schema_error(self):
        with pytest.raises(APISchemaError):
            parse_page({"number": 0}, parse_review)

    def test_single_page_is_last(self):
        page = single_page([1, 2, 3])
        assert page.is_last
        assert page.total_count == 3


class TestResources:
    def test_review_author_fields(self):
        review = parse_review({"id": "9", "content": "good", "userName": "lee", "userId": 5})
        assert review.id == 9
        assert review.author_name == "lee"
        assert review.author_id == 5

    def test_legacy_review_has_no_author_id(self):
        review = parse_review({"id": 9, "content": "good", "userName": "lee"})
        assert review.author_id is None

    def test_review_missing_id(self):
        with pytest.raises(APISchemaError, match="review missing id"):
            parse_review({"content": "x"})

    def test_reported_review_prefers_review_id(self):
        rr = parse_reported_review({"reviewId": 4, "id": 99, "content": "spam", "reportCount": 2,
                                    "userId": 1, "userName": "park"})
        assert rr.id == 4
        assert rr.report_count == 2

    def test_identity_requires_user_id(self):
        with pytest.raises(APISchemaError):
            parse_identity({"accessToken": "t"})
        ident = parse_identity({"userId": 3, "name": "kim", "role": "ADMIN"})
        assert ident.role == "ADMIN"

    def test_session_from_create_response(self):
        session = parse_session({"sessionId": 12, "title": "New chat"})
        assert session.id == 12

    def test_chat_reply_books(self):
        reply = parse_chat_reply({"sessionId": 12, "reply": "try this",
                                  "books": [{"isbn13": "9780000000001", "title": "Dune"}]})
        assert reply.reply == "try this"
        assert [b.title for b in reply.books] == ["Dune"]

    def test_chat_message_role_normalized(self):
        msg = parse_chat_message({"role": "ai", "content": "hi"}, 3)
        assert msg.role == "ASSISTANT"
        assert msg.id == "m3"
