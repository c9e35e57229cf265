"""In-process event delivery between the resilience services and their host."""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Event:
    """One notification. ``key`` is the connection id, device serial or service name."""

    kind: str
    key: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "key": self.key,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
        }


EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


class Subscription:
    def __init__(self, bus: "EventBus", handler: EventHandler, kinds: Optional[FrozenSet[str]]) -> None:
        self._bus = bus
        self.handler = handler
        self.kinds = kinds
        self.active = True

    def accepts(self, event: Event) -> bool:
        return self.active and (self.kinds is None or event.kind in self.kinds)

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)


class EventBus:
    """Synchronous fan-out in emission order.

    Handlers run inside :meth:`emit`, so events for one key reach every
    subscriber in the order they were produced. Coroutine handlers are
    scheduled on the running loop. A failing handler is logged and skipped.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._subscriptions: List[Subscription] = []
        self._sequence = itertools.count(1)

    def subscribe(self, handler: EventHandler, kinds: Optional[Iterable[str]] = None) -> Subscription:
        subscription = Subscription(self, handler, frozenset(kinds) if kinds is not None else None)
        self._subscriptions.append(subscription)
        return subscription

    def open_queue(
        self,
        kinds: Optional[Iterable[str]] = None,
        *,
        maxsize: int = 0,
    ) -> tuple["asyncio.Queue[Event]", Subscription]:
        """Return a queue fed with matching events, for pollers and websockets.

        Must be called from the loop that consumes the queue; events emitted
        from other threads are handed over with ``call_soon_threadsafe``.
        """
        queue: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=maxsize)
        owner = asyncio.get_running_loop()

        def _put(event: Event) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full; dropping %s for %s", event.kind, event.key)

        def _enqueue(event: Event) -> None:
            try:
                current = asyncio.get_running_loop()
            except RuntimeError:
                current = None
            if current is owner:
                _put(event)
            elif not owner.is_closed():
                owner.call_soon_threadsafe(_put, event)

        return queue, self.subscribe(_enqueue, kinds)

    def emit(self, kind: str, key: Optional[str] = None, **payload: Any) -> Event:
        event = Event(
            kind=kind,
            key=key,
            payload=payload,
            timestamp=self._clock(),
            sequence=next(self._sequence),
        )
        for subscription in tuple(self._subscriptions):
            if subscription.accepts(event):
                self._dispatch(subscription.handler, event)
        return event

    def clear(self) -> None:
        for subscription in tuple(self._subscriptions):
            subscription.active = False
        self._subscriptions.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _dispatch(self, handler: EventHandler, event: Event) -> None:
        try:
            outcome = handler(event)
            if asyncio.iscoroutine(outcome):
                try:
                    asyncio.get_running_loop().create_task(outcome)
                except RuntimeError:
                    outcome.close()
                    logger.warning("No running loop for async handler of %s", event.kind)
        except Exception:
            logger.exception("Event handler raised for %s", event.kind)

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass


class EventRecorder:
    """Collects events in memory; handy for tests and the CLI."""

    def __init__(self, bus: EventBus, kinds: Optional[Iterable[str]] = None) -> None:
        self.events: List[Event] = []
        self.subscription = bus.subscribe(self.events.append, kinds)

    def kinds(self) -> List[str]:
        return [event.kind for event in self.events]

    def of_kind(self, kind: str) -> List[Event]:
        return [event for event in self.events if event.kind == kind]


__all__ = ["Event", "EventBus", "EventHandler", "EventRecorder", "Subscription"]
