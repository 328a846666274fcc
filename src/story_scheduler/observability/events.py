"""
In-process event bus for scheduler lifecycle events.

Publishing stamps each event with the next ``sequence`` number and keeps it in
a bounded replay buffer. Subscribers may be plain callables or coroutine
functions. A failing subscriber is recorded as a :class:`DispatchError` and
never reaches the publisher or the other subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from typing import Final

from story_scheduler.domain.events import EventType, SchedulerEvent, build_event

Subscriber = Callable[[SchedulerEvent], object]

ALL_EVENTS: Final[str] = "*"
ERROR_HISTORY: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    sequence: int
    event_type: str
    target: str
    error_type: str
    message: str

    @classmethod
    def capture(cls, event: SchedulerEvent, target: str, exc: BaseException) -> DispatchError:
        return cls(
            sequence=event.sequence,
            event_type=event.event_type.value,
            target=target,
            error_type=type(exc).__name__,
            message=str(exc),
        )


class EventBus:
    """Synchronous fan-out with replay; async subscribers run as loop tasks."""

    def __init__(self, *, buffer_size: int = 1024) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int):
            raise ValueError(f"buffer_size must be an integer, got {type(buffer_size).__name__}")
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")

        self._lock = threading.RLock()
        self._history: deque[SchedulerEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=ERROR_HISTORY)
        self._routes: defaultdict[str, dict[int, Subscriber]] = defaultdict(dict)
        self._last_token = 0
        self._last_sequence = 0
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Register ``callback`` for one event type (``None``: every event); returns a token."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        route = _route_key(event_type)
        with self._lock:
            self._last_token += 1
            self._routes[route][self._last_token] = callback
            return self._last_token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            for callbacks in self._routes.values():
                if callbacks.pop(token, None) is not None:
                    return True
        return False

    def publish(self, event: SchedulerEvent) -> SchedulerEvent:
        """Stamp, buffer and deliver ``event``; returns the stamped copy."""

        if not isinstance(event, SchedulerEvent):
            raise ValueError(f"event must be SchedulerEvent, got {type(event).__name__}")
        with self._lock:
            self._last_sequence += 1
            stamped = replace(event, sequence=self._last_sequence)
            self._history.append(stamped)
            # Delivery follows subscription order across both routes.
            targets = sorted(
                [
                    *self._routes.get(stamped.event_type.value, {}).items(),
                    *self._routes.get(ALL_EVENTS, {}).items(),
                ]
            )

        for _, callback in targets:
            self._deliver(callback, stamped)
        return stamped

    def emit(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object] | None = None,
        *,
        batch_id: str | None = None,
    ) -> SchedulerEvent:
        return self.publish(build_event(event_type, payload, batch_id=batch_id))

    async def drain_async(self) -> tuple[DispatchError, ...]:
        """Wait for async subscribers started by :meth:`publish`; returns all recorded errors."""

        with self._lock:
            running, self._tasks = self._tasks, set()
        if running:
            await asyncio.wait(running)
        return self.dispatch_errors()

    def replay(
        self,
        *,
        event_type: str | EventType | None = None,
        batch_id: str | None = None,
        limit: int | None = None,
    ) -> tuple[SchedulerEvent, ...]:
        route = _route_key(event_type)
        with self._lock:
            history = list(self._history)
        matches = [
            event
            for event in history
            if route in (ALL_EVENTS, event.event_type.value)
            and (batch_id is None or event.batch_id == batch_id)
        ]
        if limit is None:
            return tuple(matches)
        return tuple(matches[-limit:]) if limit > 0 else ()

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)

    def _deliver(self, callback: Subscriber, event: SchedulerEvent) -> None:
        target = getattr(callback, "__name__", "") or type(callback).__name__
        try:
            outcome = callback(event)
            if not inspect.isawaitable(outcome):
                return
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(_await(outcome))
                return
        except Exception as exc:  # noqa: BLE001
            self._record(DispatchError.capture(event, target, exc))
            return

        task = loop.create_task(_await(outcome))
        with self._lock:
            self._tasks.add(task)
        task.add_done_callback(lambda done: self._settle(done, event, target))

    def _settle(self, task: asyncio.Task[None], event: SchedulerEvent, target: str) -> None:
        with self._lock:
            self._tasks.discard(task)
        failure = None if task.cancelled() else task.exception()
        if isinstance(failure, Exception):
            self._record(DispatchError.capture(event, target, failure))

    def _record(self, error: DispatchError) -> None:
        with self._lock:
            self._errors.append(error)


def _route_key(event_type: str | EventType | None) -> str:
    if event_type is None:
        return ALL_EVENTS
    if isinstance(event_type, EventType):
        return event_type.value
    route = event_type.strip()
    if not route:
        raise ValueError("event type must not be empty")
    return route


async def _await(awaitable: Awaitable[object]) -> None:
    await awaitable


__all__ = ["ALL_EVENTS", "DispatchError", "EventBus", "Subscriber"]
