from __future__ import annotations

from readpick.context import ReadPickContext
from readpick.exceptions import (
    APISchemaError,
    AuthError,
    AuthRequired,
    Cancelled,
    ErrorInfo,
    ErrorKind,
    NetworkFailure,
    ReadPickException,
    ServerRejected,
    ValidationFailure,
)
from readpick.features import (
    AdminReviewQueue,
    ChatConversation,
    CollectionBooks,
    CollectionShelf,
    CommunityFeed,
    PostComments,
    ReviewFeed,
)
from readpick.identity import is_mine
from readpick.mutator import OptimisticMutator
from readpick.pagestore import PageStore
from readpick.session import SessionLifecycle
from readpick.structures import (
    BatchResult,
    CreationState,
    EditStatus,
    Identity,
    LoadState,
    OptimisticEdit,
    Page,
    PageStoreState,
    SessionHandle,
)
from readpick.tokengate import CredentialStore, TokenGate, get_config_dir
from readpick.ui import ErrorSurface

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # exceptions
    "ReadPickException",
    "NetworkFailure",
    "ServerRejected",
    "AuthError",
    "APISchemaError",
    "Cancelled",
    "ValidationFailure",
    "AuthRequired",
    "ErrorKind",
    "ErrorInfo",
    # structures
    "Identity",
    "Page",
    "LoadState",
    "PageStoreState",
    "EditStatus",
    "OptimisticEdit",
    "BatchResult",
    "CreationState",
    "SessionHandle",
    # engine
    "TokenGate",
    "CredentialStore",
    "PageStore",
    "OptimisticMutator",
    "SessionLifecycle",
    "ErrorSurface",
    "is_mine",
    "ReadPickContext",
    # features
    "ReviewFeed",
    "CommunityFeed",
    "PostComments",
    "CollectionShelf",
    "CollectionBooks",
    "ChatConversation",
    "AdminReviewQueue",
    "get_config_dir",
]
