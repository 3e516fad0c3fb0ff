from __future__ import annotations

import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from loguru import logger


WILDCARD = "*"


class EventType(str, Enum):
    TASK_CREATED = "task:created"
    TASK_UPDATED = "task:updated"
    TASK_MOVED = "task:moved"
    TASK_DELETED = "task:deleted"

    # Control messages exchanged with websocket clients.
    CONNECTION_ESTABLISHED = "connection:established"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    SERVER_SHUTDOWN = "server:shutdown"


TASK_EVENTS = (
    EventType.TASK_CREATED,
    EventType.TASK_UPDATED,
    EventType.TASK_MOVED,
    EventType.TASK_DELETED,
)

Listener = Callable[[str, dict[str, Any]], Union[None, Awaitable[None]]]


def _event_name(event_type: Union[str, EventType]) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


class EventBus:
    """In-process fan-out from the board service to its observers.

    Listeners are called in subscription order with ``(event_type, data)``.
    A listener that raises is logged and skipped; the emitting mutation has
    already been persisted and is never rolled back.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event_type: Union[str, EventType], listener: Listener) -> None:
        name = _event_name(event_type)
        listeners = self._listeners.setdefault(name, [])
        if listener not in listeners:
            listeners.append(listener)

    def unsubscribe(self, event_type: Union[str, EventType], listener: Listener) -> bool:
        listeners = self._listeners.get(_event_name(event_type), [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def listener_count(self, event_type: Union[str, EventType, None] = None) -> int:
        if event_type is None:
            return sum(len(v) for v in self._listeners.values())
        return len(self._listeners.get(_event_name(event_type), []))

    async def emit(self, event_type: Union[str, EventType], data: dict[str, Any]) -> int:
        """Deliver an event; returns the number of listeners that succeeded."""
        name = _event_name(event_type)
        targets = list(self._listeners.get(name, [])) + list(self._listeners.get(WILDCARD, []))
        delivered = 0
        for listener in targets:
            try:
                result = listener(name, data)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as exc:
                logger.opt(exception=exc).warning("Event listener failed for {}: {}", name, exc)
        logger.debug("Emitted {} to {} listener(s)", name, delivered)
        return delivered
