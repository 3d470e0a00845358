"""Outbound event registry shared by the trainer core components."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DEVICES_EVENT = "devices"
TELEMETRY_EVENT = "telemetry"
STATUS_EVENT = "status"
TARGET_WATTS_EVENT = "target-watts"

EVENT_NAMES = (DEVICES_EVENT, TELEMETRY_EVENT, STATUS_EVENT, TARGET_WATTS_EVENT)

Listener = Callable[[Any], Awaitable[None] | None]


@dataclass(frozen=True)
class StatusUpdate:
    connected: bool
    controlling: bool
    running: bool
    scanning: bool
    paused: bool = False
    device_id: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EventBus:
    """Synchronous fan-out of core events to collaborator callbacks.

    Listeners run in registration order. A coroutine returned by a listener
    is scheduled on the running loop; a listener that raises is logged and
    does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {name: [] for name in EVENT_NAMES}
        self._pending: set[asyncio.Task[None]] = set()

    def on(self, event: str, listener: Listener) -> None:
        self._listeners_for(event).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners_for(event)
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, payload: Any) -> None:
        for listener in list(self._listeners_for(event)):
            try:
                maybe_coro = listener(payload)
            except Exception:
                logger.exception("Listener for %r failed", event)
                continue
            if asyncio.iscoroutine(maybe_coro):
                task = asyncio.ensure_future(maybe_coro)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    def _listeners_for(self, event: str) -> list[Listener]:
        try:
            return self._listeners[event]
        except KeyError:
            raise ValueError(f"Unknown event {event!r}") from None
