"""Progress reporting for long-running operations.

Each operation runs as one asyncio task that pushes ordered events into a
bounded queue.  Intermediate events are dropped when the consumer falls behind;
the final event is always delivered and is always the last one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Callable, Coroutine

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_QUEUE_SIZE = 64
SAMPLE_BYTES = 1024 * 1024


class EventKind(StrEnum):
    PHASE = "phase"
    ITEM_STARTED = "item_started"
    ITEM_DONE = "item_done"
    ITEM_SKIPPED = "item_skipped"
    ITEM_FAILED = "item_failed"
    BYTES = "bytes"
    FINAL = "final"


class BatchPhase(StrEnum):
    """States of a bulk operation."""

    SCANNING = "scanning"
    PICKING = "picking"
    PROCESSING = "processing"
    COMMITTING = "committing"
    DONE = "done"


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update. ``final`` is set only on the closing event."""

    kind: EventKind
    message: str = ""
    item_id: str = ""
    done: int = 0
    total: int = 0
    final: bool = False
    error: str | None = None

    @property
    def percent(self) -> float | None:
        if self.total <= 0:
            return None
        return min(100.0, self.done * 100.0 / self.total)


class ProgressStream:
    """Single-producer, single-consumer event queue."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE, *, enabled: bool = True) -> None:
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)
        self._enabled = enabled
        self._closed = False
        self.dropped = 0

    @classmethod
    def disabled(cls) -> ProgressStream:
        """A stream that discards everything, for callers that do not listen."""
        return cls(maxsize=1, enabled=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: ProgressEvent) -> bool:
        """Queue an intermediate event. Returns False if it was dropped."""
        if not self._enabled:
            return False
        if self._closed:
            msg = "progress stream already finished"
            raise RuntimeError(msg)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def phase(self, phase: BatchPhase, message: str = "") -> None:
        self.emit(ProgressEvent(EventKind.PHASE, message=message or phase.value))

    def item(self, kind: EventKind, item_id: str, message: str = "", *, done: int = 0, total: int = 0) -> None:
        self.emit(ProgressEvent(kind, message=message, item_id=item_id, done=done, total=total))

    def finish(self, message: str = "", *, error: str | None = None) -> None:
        """Deliver the closing event, evicting the oldest queued event if the queue is full."""
        if self._closed:
            return
        self._closed = True
        if not self._enabled:
            return
        event = ProgressEvent(EventKind.FINAL, message=message, final=True, error=error)
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in order until the final one."""
        while True:
            event = await self._queue.get()
            yield event
            if event.final:
                return


class ProgressReader:
    """Wraps a chunk stream, reporting cumulative bytes every SAMPLE_BYTES and at the end."""

    def __init__(
        self,
        chunks: AsyncIterable[bytes],
        progress: ProgressStream,
        *,
        item_id: str = "",
        total: int = 0,
        sample_bytes: int = SAMPLE_BYTES,
    ) -> None:
        self._chunks = chunks
        self._progress = progress
        self._item_id = item_id
        self._total = total
        self._sample_bytes = sample_bytes
        self.done = 0

    def _report(self) -> None:
        self._progress.item(EventKind.BYTES, self._item_id, done=self.done, total=self._total)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        next_sample = self._sample_bytes
        async for chunk in self._chunks:
            self.done += len(chunk)
            if self.done >= next_sample:
                self._report()
                next_sample = (self.done // self._sample_bytes + 1) * self._sample_bytes
            yield chunk
        self._report()


class OperationHandle(Generic[T]):
    """Caller's view of a launched operation."""

    def __init__(self, task: asyncio.Task[T], stream: ProgressStream, cancel_event: asyncio.Event) -> None:
        self._task = task
        self._stream = stream
        self._cancel_event = cancel_event

    def events(self) -> AsyncIterator[ProgressEvent]:
        return self._stream.events()

    async def result(self) -> T:
        """Wait for completion. Errors from the operation are re-raised here."""
        return await self._task

    def cancel(self) -> None:
        """Ask the operation to stop before its next item. In-flight transfers finish."""
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def done(self) -> bool:
        return self._task.done()


def _summarize(result: object) -> str:
    summary = getattr(result, "summary", None)
    if callable(summary):
        return str(summary())
    return "done"


def launch(
    operation: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    queue_size: int = DEFAULT_QUEUE_SIZE,
    **kwargs: Any,
) -> OperationHandle[T]:
    """Run operation as a background task wired to a fresh progress stream.

    The operation must accept ``progress`` and ``cancel`` keyword arguments.
    """
    stream = ProgressStream(maxsize=queue_size)
    cancel_event = asyncio.Event()

    async def runner() -> T:
        try:
            result = await operation(*args, progress=stream, cancel=cancel_event, **kwargs)
        except BaseException as exc:
            stream.finish("failed", error=str(exc) or type(exc).__name__)
            raise
        stream.finish(_summarize(result))
        return result

    task = asyncio.create_task(runner(), name=getattr(operation, "__name__", "operation"))
    return OperationHandle(task, stream, cancel_event)
