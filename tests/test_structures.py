"""Tests for value types."""
from __future__ import annotations

import dataclasses

import pytest
from hypothesis import given, strategies as st

from readpick.structures import (
    BatchResult,
    Credential,
    CreationState,
    EditStatus,
    Identity,
    LoadState,
    OptimisticEdit,
    Page,
    PageStoreState,
    SessionHandle,
)


class TestPage:
    def test_next_cursor_follows_number(self):
        assert Page(items=(), number=3).next_cursor == 4

    def test_page_is_frozen(self):
        page = Page(items=(1, 2))
        with pytest.raises(dataclasses.FrozenInstanceError):
            page.number = 5  # type: ignore[misc]


class TestPageStoreState:
    def test_defaults(self):
        state = PageStoreState()
        assert state.items == ()
        assert state.next_cursor == 0
        assert state.load_state == LoadState.IDLE
        assert state.error is None
        assert not state.loaded

    @pytest.mark.parametrize("load_state,loading", [
        (LoadState.IDLE, False),
        (LoadState.LOADING, True),
        (LoadState.LOADING_MORE, True),
        (LoadState.ERROR, False),
    ])
    def test_is_loading(self, load_state, loading):
        assert PageStoreState(load_state=load_state).is_loading is loading


class TestBatchResult:
    @given(total=st.integers(min_value=0, max_value=50), data=st.data())
    def test_summary_counts(self, total, data):
        """PBT: failed + succeeded == total and summary names both."""
        succeeded = data.draw(st.integers(min_value=0, max_value=total))
        result = BatchResult(total=total, succeeded=succeeded)
        assert result.failed + result.succeeded == total
        assert result.summary() == f"{succeeded} of {total} succeeded"
        assert result.ok is (succeeded == total)


class TestSmallTypes:
    def test_credential_defaults_empty(self):
        cred = Credential()
        assert cred.token is None and cred.identity is None

    def test_identity_default_role(self):
        assert Identity(user_id=7).role == "USER"

    def test_edit_starts_pending(self):
        edit = OptimisticEdit(target_id=1)
        assert edit.status == EditStatus.PENDING
        assert edit.error is None

    def test_session_handle_starts_not_created(self):
        handle = SessionHandle()
        assert handle.id is None
        assert handle.creation_state == CreationState.NOT_CREATED
