"""Fixed-rate tick clock running on a daemon thread."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TickClock:
	"""Calls ``callback`` once per ``interval_s`` until stopped.

	Deadlines are fixed-rate from the start time. When a callback overruns,
	the slots it covered are skipped rather than replayed.
	"""

	def __init__(self, interval_s: float, callback: Callable[[], None]) -> None:
		"""
		Args:
			interval_s: Seconds between ticks (must be > 0)
			callback: Called on the clock thread for every tick
		"""
		if interval_s <= 0:
			raise ValueError("interval_s must be greater than 0")
		self.interval_s = interval_s
		self.callback = callback
		self.skipped_slots = 0

		self._running = False
		self._thread: Optional[threading.Thread] = None
		self._stop_event = threading.Event()
		self._lock = threading.Lock()

	@property
	def running(self) -> bool:
		return self._running

	def start(self) -> bool:
		"""Start ticking. Returns False when already running."""
		with self._lock:
			if self._running:
				logger.warning("TickClock already running")
				return False
			self._running = True
			self._stop_event = threading.Event()
			self._thread = threading.Thread(
				target=self._loop,
				args=(self._stop_event,),
				name="cloudfall-clock",
				daemon=True,
			)
			self._thread.start()
		logger.info(f"TickClock started (interval={self.interval_s}s)")
		return True

	def stop(self, timeout: float = 5.0) -> None:
		"""Stop ticking. Safe to call from inside the callback."""
		with self._lock:
			if not self._running:
				return
			self._running = False
			self._stop_event.set()
			thread = self._thread
			self._thread = None
		if thread is not None and thread is not threading.current_thread():
			thread.join(timeout=timeout)
		logger.info("TickClock stopped")

	def _loop(self, stop_event: threading.Event) -> None:
		next_deadline = time.monotonic() + self.interval_s
		while not stop_event.wait(max(0.0, next_deadline - time.monotonic())):
			try:
				self.callback()
			except Exception as e:
				logger.error(f"Error in tick callback: {e}")

			now = time.monotonic()
			next_deadline += self.interval_s
			if next_deadline <= now:
				missed = int((now - next_deadline) // self.interval_s) + 1
				self.skipped_slots += missed
				next_deadline += missed * self.interval_s
				logger.warning(f"Tick overran, skipping {missed} slot(s)")
