from __future__ import annotations

import logging
from typing import Any

from .tokengate import TokenGate

logger = logging.getLogger(__name__)


def author_of(resource: Any) -> tuple[Any, str | None]:
    """Return ``(author_id, author_name)`` for any resource exposing either field."""
    author_id = getattr(resource, "author_id", None)
    name = getattr(resource, "author_name", None)
    return author_id, name


def is_mine(resource: Any, gate: TokenGate, *, allow_name_fallback: bool = True) -> bool:
    ident = gate.identity()
    if ident is None or resource is None:
        return False

    author_id, name = author_of(resource)
    if author_id is not None:
        return str(author_id) == str(ident.user_id)

    # Legacy review payloads only carry the display name; two users may share one.
    if allow_name_fallback and name and ident.name:
        if name == ident.name:
            logger.warning("ownership matched by display name for %r", getattr(resource, "id", None))
            return True
    return False
