"""Outbound notifications and their delivery hub."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Optional, Union

from ragcore.models import DocumentStatus, Turn

if TYPE_CHECKING:
    from ragcore.providers.stream import CancellationToken


@dataclass(frozen=True)
class TokenAppended:
    session_id: str
    text_delta: str


@dataclass(frozen=True)
class GenerationFinished:
    session_id: str
    turn: Turn


@dataclass(frozen=True)
class GenerationError:
    session_id: str
    error_kind: str
    message: str


@dataclass(frozen=True)
class GenerationCancelled:
    """Terminal notification for a cancelled generation; ``turn`` is set when the partial turn was kept."""

    session_id: str
    turn: Optional[Turn] = None


@dataclass(frozen=True)
class IngestionStatusChanged:
    document_id: str
    status: DocumentStatus


Notification = Union[
    TokenAppended,
    GenerationFinished,
    GenerationError,
    GenerationCancelled,
    IngestionStatusChanged,
]

TERMINAL_TYPES = (GenerationFinished, GenerationError, GenerationCancelled)


def is_terminal(notification: Notification) -> bool:
    return isinstance(notification, TERMINAL_TYPES)


def _turn_payload(turn: Turn) -> Dict[str, Any]:
    return {
        "role": turn.role.value,
        "content": turn.content,
        "status": turn.status.value,
        "created_at": turn.created_at.isoformat(),
        "citations": [
            {"document_id": c.document_id, "ordinal": c.ordinal, "score": c.score} for c in turn.citations
        ],
        "error_kind": turn.error_kind,
    }


def to_payload(notification: Notification) -> Dict[str, Any]:
    """Serialize a notification into a JSON-compatible mapping."""
    if isinstance(notification, TokenAppended):
        return {"type": "token", "session_id": notification.session_id, "text": notification.text_delta}
    if isinstance(notification, GenerationFinished):
        return {"type": "finished", "session_id": notification.session_id, "turn": _turn_payload(notification.turn)}
    if isinstance(notification, GenerationError):
        return {
            "type": "error",
            "session_id": notification.session_id,
            "kind": notification.error_kind,
            "message": notification.message,
        }
    if isinstance(notification, GenerationCancelled):
        turn = _turn_payload(notification.turn) if notification.turn is not None else None
        return {"type": "cancelled", "session_id": notification.session_id, "turn": turn}
    if isinstance(notification, IngestionStatusChanged):
        return {
            "type": "ingestion_status",
            "document_id": notification.document_id,
            "state": notification.status.state.value,
            "reason": notification.status.reason,
        }
    raise TypeError(f"Unknown notification type: {type(notification).__name__}")


class Subscription:
    """Bounded queue of notifications for one consumer.

    Producers wait while the queue is full, so a slow consumer paces token
    production instead of letting tokens pile up.
    """

    def __init__(
        self,
        hub: "NotificationHub",
        accepts: Callable[[Notification], bool],
        maxsize: int,
    ) -> None:
        self._hub = hub
        self._accepts = accepts
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def accepts(self, notification: Notification) -> bool:
        return not self.closed and self._accepts(notification)

    async def put(self, notification: Notification, cancel: Optional["CancellationToken"] = None) -> bool:
        """Wait for room in the queue; gives up and returns ``False`` once ``cancel`` fires."""
        if cancel is None:
            await self._queue.put(notification)
            return True
        put = asyncio.ensure_future(self._queue.put(notification))
        stop = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({put, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not put.done():
                put.cancel()
        if not put.done():
            await asyncio.wait({put})
        return not put.cancelled()

    def offer(self, notification: Notification, *, evict: bool = True) -> None:
        """Enqueue without waiting.

        A full queue evicts its oldest entry, or drops ``notification`` when
        ``evict`` is false.
        """
        if self.closed:
            return
        if self._queue.full():
            if not evict:
                return
            self._queue.get_nowait()
        self._queue.put_nowait(notification)

    async def get(self) -> Notification:
        return await self._queue.get()

    def get_nowait(self) -> Notification:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub._remove(self)
        # Unblock a producer waiting on a full queue.
        while not self._queue.empty():
            self._queue.get_nowait()

    async def until_terminal(self) -> AsyncIterator[Notification]:
        """Yield notifications up to and including the first terminal one."""
        while True:
            notification = await self.get()
            yield notification
            if is_terminal(notification):
                return

    def __aiter__(self) -> AsyncIterator[Notification]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Notification]:
        while not self.closed:
            yield await self.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class NotificationHub:
    """Fans notifications out to subscribers; events nobody listens for are dropped."""

    def __init__(self, buffer_size: int = 64) -> None:
        self._buffer_size = max(1, buffer_size)
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        accepts: Callable[[Notification], bool] | None = None,
        *,
        buffer_size: int | None = None,
    ) -> Subscription:
        subscription = Subscription(self, accepts or (lambda _: True), buffer_size or self._buffer_size)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def subscribe_session(self, session_id: str, *, buffer_size: int | None = None) -> Subscription:
        return self.subscribe(
            lambda notification: getattr(notification, "session_id", None) == session_id,
            buffer_size=buffer_size,
        )

    def subscribe_document(self, document_id: str, *, buffer_size: int | None = None) -> Subscription:
        return self.subscribe(
            lambda notification: getattr(notification, "document_id", None) == document_id,
            buffer_size=buffer_size,
        )

    async def publish(self, notification: Notification, *, cancel: Optional["CancellationToken"] = None) -> None:
        """Deliver to every interested subscriber, waiting while their queues are full.

        Once ``cancel`` fires, a full subscriber no longer holds up the
        producer: other notifications are dropped for subscribers without room
        and terminal notifications replace the oldest queued entry.
        """
        with self._lock:
            targets = [subscription for subscription in self._subscribers if subscription.accepts(notification)]
        terminal = is_terminal(notification)
        for subscription in targets:
            if subscription.closed:
                continue
            if cancel is None:
                await subscription.put(notification)
            elif cancel.cancelled or not await subscription.put(notification, cancel):
                subscription.offer(notification, evict=terminal)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
