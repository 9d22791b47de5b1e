"""
knowledge/events.py - Change notification and query-keyed event sources

Every formula collection is an EventSource:

- on_changed(handler): called with the collection after each effective mutation
- subscribe(ask_query, handler): called with (source, query, satisfied) when
  the collection starts or stops satisfying the query
- subscribe(event_type, handler): called with (source, event_type, data) when
  raise_event(event_type, data) is invoked

Each registration returns a Disposable that removes it. Delivery is
synchronous on the mutating thread; routing elsewhere is the messaging
layer's concern. A failing handler is logged and never undoes or
interrupts the mutation that triggered it.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .disposable import Disposable
from .terms import Uri

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _QueryWatch:
    query: Any
    handler: Callable[..., None]
    satisfied: bool


class EventSource:
    """Mixin providing change and event subscriptions."""

    def _init_events(self) -> None:
        self._event_lock = threading.RLock()
        self._changed_handlers: list[Callable[[Any], None]] = []
        self._query_watches: list[_QueryWatch] = []
        self._event_handlers: dict[Uri, list[Callable[..., None]]] = {}

    def on_changed(self, handler: Callable[[Any], None]) -> Disposable:
        """Register handler(source) for every effective mutation."""
        with self._event_lock:
            self._changed_handlers.append(handler)
        return Disposable(lambda: self._remove(self._changed_handlers, handler))

    def subscribe(self, key: Any, handler: Callable[..., None]) -> Disposable:
        """Subscribe to an event type Uri or to transitions of an Ask query.

        Args:
            key: Uri event type, or an AskQuery
            handler: (source, event_type, data) for events,
                (source, query, satisfied) for queries
        """
        if isinstance(key, Uri):
            with self._event_lock:
                self._event_handlers.setdefault(key, []).append(handler)
            return Disposable(lambda: self._remove(self._event_handlers.get(key, []), handler))

        if not getattr(key, "is_ask", False):
            raise TypeError(f"subscribe() expects a Uri event type or an Ask query, got {type(key).__name__}")

        watch = _QueryWatch(query=key, handler=handler, satisfied=bool(self.query(key)))
        with self._event_lock:
            self._query_watches.append(watch)
        return Disposable(lambda: self._remove(self._query_watches, watch))

    def raise_event(self, event_type: Uri, data: Any = None) -> int:
        """Deliver an event to its subscribers. Returns the handler count."""
        with self._event_lock:
            handlers = list(self._event_handlers.get(event_type, []))
        self._deliver([(h, (self, event_type, data)) for h in handlers])
        return len(handlers)

    def _notify_changed(self) -> None:
        with self._event_lock:
            changed = list(self._changed_handlers)
            watches = list(self._query_watches)

        calls: list[tuple[Callable[..., None], tuple]] = [(h, (self,)) for h in changed]
        for watch in watches:
            satisfied = bool(self.query(watch.query))
            if satisfied != watch.satisfied:
                watch.satisfied = satisfied
                calls.append((watch.handler, (self, watch.query, satisfied)))
        self._deliver(calls)

    def _deliver(self, calls: list[tuple[Callable[..., None], tuple]]) -> None:
        for handler, args in calls:
            try:
                handler(*args)
            except Exception as e:
                # The mutation has already happened
                logger.warning(f"Event handler {handler!r} failed: {e}", exc_info=True)

    def _remove(self, handlers: list, item: Any) -> None:
        with self._event_lock:
            if item in handlers:
                handlers.remove(item)
