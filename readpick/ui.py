from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from rich.console import Console
from rich.markup import escape

from .exceptions import DEFAULT_MESSAGE, ErrorInfo, ErrorKind, describe
from .structures import BatchResult

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    ERROR = "error"
    BATCH_DONE = "batch_done"
    NOTICE = "notice"


@dataclass(slots=True)
class UIEvent:
    kind: EventKind
    message: str | None = None
    error: ErrorInfo | None = None
    action: str | None = None
    total: int | None = None
    succeeded: int | None = None


@runtime_checkable
class EventSink(Protocol):
    def emit(self, event: UIEvent) -> None: ...
    def close(self) -> None: ...


class NullSink:
    def emit(self, event: UIEvent) -> None:
        pass

    def close(self) -> None:
        pass


class RichSink:
    def __init__(self, console: Console) -> None:
        self._console = console

    def emit(self, event: UIEvent) -> None:
        try:
            self._handle(event)
        except Exception:
            logger.debug("RichSink.emit failed", exc_info=True)

    def close(self) -> None:
        pass

    def _handle(self, event: UIEvent) -> None:
        kind = event.kind
        if kind == EventKind.ERROR and event.error:
            self._console.print(f"[red]✗[/red] {escape(event.error.message)}")
        elif kind == EventKind.BATCH_DONE:
            action = escape(event.action or "batch")
            if event.succeeded == event.total:
                self._console.print(f"[green]✓[/green] {action}: {event.succeeded} done")
            else:
                self._console.print(f"[yellow]![/yellow] {action}: {escape(event.message or '')}")
        elif kind == EventKind.NOTICE:
            self._console.print(escape(event.message or ""))


class ErrorSurface:
    """Normalizes failures into ErrorInfo and hands them to the UI sink.

    Cancellations are dropped here: a torn-down screen has nobody to show them to.
    """

    def __init__(self, sink: EventSink | None = None) -> None:
        self._sink: EventSink = sink or NullSink()
        self._lock = threading.Lock()
        self._last: ErrorInfo | None = None

    @property
    def last_error(self) -> ErrorInfo | None:
        return self._last

    def report(self, exc: BaseException, default: str = DEFAULT_MESSAGE) -> ErrorInfo | None:
        info = describe(exc, default)
        if info.kind == ErrorKind.CANCELLED:
            logger.debug("cancelled: %s", exc)
            return None
        with self._lock:
            self._last = info
        logger.warning("%s failure: %s", info.kind.value, info.message)
        self._safe_emit(UIEvent(kind=EventKind.ERROR, message=info.message, error=info))
        return info

    def report_batch(self, result: BatchResult, action: str) -> None:
        if not result.ok:
            logger.warning("%s: %s", action, result.summary())
        self._safe_emit(UIEvent(
            kind=EventKind.BATCH_DONE, action=action, message=result.summary(),
            total=result.total, succeeded=result.succeeded,
        ))

    def notice(self, message: str) -> None:
        self._safe_emit(UIEvent(kind=EventKind.NOTICE, message=message))

    def clear(self) -> None:
        with self._lock:
            self._last = None

    def _safe_emit(self, event: UIEvent) -> None:
        try:
            self._sink.emit(event)
        except Exception:
            logger.debug("sink.emit failed", exc_info=True)
