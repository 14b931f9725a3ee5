"""Async pub/sub EventBus for exchange progress, usage and bulk-test results.

Event types are dotted (``exchange.delta``, ``bulk.result``...).  Handlers
subscribe to one type, to a whole family with ``"exchange.*"``, or to
everything with ``"*"``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from openai_lab.types import EventType, LabEvent

_logger = logging.getLogger(__name__)

_WILDCARD = "*"
_FAMILY_SUFFIX = ".*"

Handler = Callable[[LabEvent], Any]


class EventBus:
    """Fan exchange and bulk-test events out to sync or async handlers.

    A failing handler is logged and never affects the publisher.  The
    last ``max_history`` events are kept for inspection, e.g. to replay
    one request's timeline with :meth:`timeline`.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[LabEvent] = []
        self._max_history = max_history

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        self._handlers.setdefault(self._key(event_type), []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(self._key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def _handlers_for(self, event_type: EventType) -> list[Handler]:
        key = event_type.value
        family = key.split(".", 1)[0] + _FAMILY_SUFFIX
        handlers = list(self._handlers.get(key, []))
        if family != key:
            handlers.extend(self._handlers.get(family, []))
        handlers.extend(self._handlers.get(_WILDCARD, []))
        return handlers

    async def emit(self, event: LabEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]

        handlers = self._handlers_for(event.type)
        if handlers:
            await asyncio.gather(
                *(self._call_handler(h, event) for h in handlers),
                return_exceptions=True,
            )

    async def publish(self, event_type: EventType, **data: Any) -> LabEvent:
        """Build and emit a :class:`LabEvent` in one call."""
        event = LabEvent(type=event_type, data=data)
        await self.emit(event)
        return event

    @property
    def history(self) -> list[LabEvent]:
        return list(self._history)

    def events_of(self, event_type: EventType) -> list[LabEvent]:
        return [e for e in self._history if e.type == event_type]

    def timeline(self, request_id: str, include_deltas: bool = False) -> list[LabEvent]:
        """Retained events for one exchange, in emission order."""
        return [
            e for e in self._history
            if e.data.get("request_id") == request_id
            and (include_deltas or e.type != EventType.EXCHANGE_DELTA)
        ]

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    @staticmethod
    async def _call_handler(handler: Handler, event: LabEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for event %s",
                getattr(handler, "__name__", handler),
                event.type.value,
            )
