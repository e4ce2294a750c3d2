"""Lifecycle notifications for renderers and other observers."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
	TICK_STARTED = "tick_started"
	TRAFFIC_GENERATED = "traffic_generated"
	REQUESTS_PROCESSED = "requests_processed"
	METRICS_UPDATED = "metrics_updated"
	RENDER_REQUESTED = "render_requested"
	SERVICE_DEPLOYED = "service_deployed"
	SERVICE_REMOVED = "service_removed"
	GAME_OVER = "game_over"
	GAME_RESET = "game_reset"


def freeze(value: Any) -> Any:
	if isinstance(value, Mapping):
		return MappingProxyType({k: freeze(v) for k, v in value.items()})
	if isinstance(value, (list, tuple)):
		return tuple(freeze(v) for v in value)
	return value


@dataclass(frozen=True)
class Event:
	id: int
	type: EventType
	tick: int
	data: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
	timestamp: float = field(default_factory=time.time)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"type": self.type.value,
			"tick": self.tick,
			"data": thaw(self.data),
			"timestamp": self.timestamp,
		}


def thaw(value: Any) -> Any:
	if isinstance(value, Mapping):
		return {k: thaw(v) for k, v in value.items()}
	if isinstance(value, tuple):
		return [thaw(v) for v in value]
	return value


Handler = Callable[[Event], None]


class EventBus:
	"""Synchronous publish/subscribe with a bounded history.

	Payloads are frozen on emit. A handler that raises is logged and skipped;
	the remaining handlers still run.
	"""

	def __init__(self, maxlen: int = 1000) -> None:
		self._handlers: Dict[Optional[EventType], List[Handler]] = {}
		self._history: Deque[Event] = deque(maxlen=maxlen)
		self._ids = itertools.count(1)
		self._lock = threading.Lock()
		self.handler_errors = 0

	def subscribe(self, event_type: Optional[EventType], handler: Handler) -> Callable[[], None]:
		"""Register ``handler`` for one type, or for every type when ``None``.

		Returns a callable that removes the subscription.
		"""
		with self._lock:
			self._handlers.setdefault(event_type, []).append(handler)

		def unsubscribe() -> None:
			with self._lock:
				handlers = self._handlers.get(event_type, [])
				if handler in handlers:
					handlers.remove(handler)

		return unsubscribe

	def emit(self, event_type: EventType, tick: int, data: Optional[Mapping[str, Any]] = None) -> Event:
		with self._lock:
			event = Event(id=next(self._ids), type=event_type, tick=tick, data=freeze(data or {}))
			self._history.append(event)
			handlers = list(self._handlers.get(event_type, ())) + list(self._handlers.get(None, ()))
		for handler in handlers:
			try:
				handler(event)
			except Exception as e:
				self.handler_errors += 1
				logger.error(f"Error in {event_type.value} handler {getattr(handler, '__name__', handler)!r}: {e}")
		return event

	def recent(self, limit: int = 100, since_id: Optional[int] = None) -> List[Event]:
		with self._lock:
			events = list(self._history)
		if since_id is not None:
			events = [e for e in events if e.id > since_id]
		return events[-limit:] if limit > 0 else []

	def clear(self) -> None:
		with self._lock:
			self._history.clear()
