from __future__ import annotations

from concurrent.futures import CancelledError
from dataclasses import dataclass
from enum import Enum

import requests


class ReadPickException(Exception):
    pass


class NetworkFailure(ReadPickException):
    pass


class ServerRejected(ReadPickException):
    def __init__(self, message: str = "", status: int | None = None):
        super().__init__(message)
        self.status = status


class AuthError(ServerRejected):
    pass


class APISchemaError(ServerRejected):
    pass


class Cancelled(ReadPickException):
    pass


class ValidationFailure(ReadPickException):
    pass


class AuthRequired(ValidationFailure):
    pass


class ErrorKind(str, Enum):
    NETWORK = "network"
    SERVER = "server"
    CANCELLED = "cancelled"
    VALIDATION = "validation"


@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    message: str
    status: int | None = None


DEFAULT_MESSAGE = "something went wrong"


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, (Cancelled, CancelledError)):
        return ErrorKind.CANCELLED
    if isinstance(exc, ValidationFailure):
        return ErrorKind.VALIDATION
    if isinstance(exc, (NetworkFailure, requests.ConnectionError, requests.Timeout, TimeoutError)):
        return ErrorKind.NETWORK
    return ErrorKind.SERVER


def describe(exc: BaseException, default: str = DEFAULT_MESSAGE) -> ErrorInfo:
    status = exc.status if isinstance(exc, ServerRejected) else None
    return ErrorInfo(kind=classify(exc), message=str(exc) or default, status=status)


_EXIT_CODE_MAP: dict[type[BaseException], int] = {
    AuthError: 3,
    AuthRequired: 3,
    ValidationFailure: 2,
    NetworkFailure: 4,
}

_DEFAULT_EXIT_CODE = 1
_KEYBOARD_INTERRUPT_EXIT_CODE = 5


def map_exception_to_exit_code(exc: BaseException) -> int:
    if isinstance(exc, KeyboardInterrupt):
        return _KEYBOARD_INTERRUPT_EXIT_CODE
    for exc_type, code in _EXIT_CODE_MAP.items():
        if isinstance(exc, exc_type):
            return code
    return _DEFAULT_EXIT_CODE
