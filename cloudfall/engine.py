"""The tick orchestrator: owns every subsystem and the game clock."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from cloudfall.clock import TickClock
from cloudfall.config import ServiceConfig, SimulationSettings
from cloudfall.errors import ConfigurationError, EngineBusyError, GameOverError
from cloudfall.events import EventBus, EventType, freeze, thaw
from cloudfall.metrics import GameMetrics, MetricsSnapshot
from cloudfall.registry import CostSummary, HealthSummary, ProviderSection, Router, ServiceRegistry
from cloudfall.traffic import TrafficGenerator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GameSnapshot:
	"""Consistent view of the game taken after a tick or command completed."""
	tick: int
	running: bool
	sections: Mapping[str, ProviderSection]
	metrics: MetricsSnapshot
	health: HealthSummary
	costs: CostSummary
	services: Tuple[Mapping[str, Any], ...] = ()

	@property
	def game_over(self) -> bool:
		return self.metrics.game_over

	def to_dict(self) -> Dict[str, Any]:
		return {
			"tick": self.tick,
			"running": self.running,
			"game_over": self.game_over,
			"providers": {name: section.to_dict() for name, section in self.sections.items()},
			"metrics": self.metrics.to_dict(),
			"health": self.health.to_dict(),
			"costs": self.costs.to_dict(),
			"services": [thaw(s) for s in self.services],
		}


class SimulationEngine:
	"""Runs generate -> process -> score -> notify once per tick.

	All mutation happens under one lock. A tick that arrives while another is
	running is skipped, never overlapped. Readers get the last completed
	``GameSnapshot``.
	"""

	def __init__(
		self,
		settings: Optional[SimulationSettings] = None,
		rng: Optional[random.Random] = None,
		router: Optional[Router] = None,
	) -> None:
		self.settings = settings or SimulationSettings()
		errors = self.settings.validate()
		if errors:
			raise ConfigurationError(errors)

		self.rng = rng or random.Random(self.settings.seed)
		self.registry = ServiceRegistry(rng=self.rng, router=router)
		self.generator = TrafficGenerator(
			rng=self.rng,
			tick_interval_s=self.settings.tick_interval_s,
			base_traffic=self.settings.base_traffic,
			growth_rate=self.settings.growth_rate,
			attack_probability=self.settings.attack_probability,
			bot_ratio=self.settings.bot_ratio,
		)
		self.metrics = GameMetrics(
			sla_threshold=self.settings.sla_threshold,
			initial_reputation=self.settings.initial_reputation,
			drop_penalty=self.settings.drop_penalty,
			block_reward=self.settings.block_reward,
			sla_breach_window=self.settings.sla_breach_window,
		)
		self.bus = EventBus(maxlen=self.settings.event_history)
		self.clock = TickClock(self.settings.tick_interval_s, self._on_clock)

		self.tick_count = 0
		self.skipped_ticks = 0
		self._lock = threading.RLock()
		self._in_tick = False
		self._snapshot = self._build_snapshot()
		logger.info(
			f"SimulationEngine initialized: interval={self.settings.tick_interval_s}s, "
			f"seed={self.settings.seed}, sla={self.settings.sla_threshold}%"
		)

	# ------------------------------------------------------------------ state

	@property
	def running(self) -> bool:
		return self.clock.running

	@property
	def is_over(self) -> bool:
		return self.metrics.is_over

	# ------------------------------------------------------------------ commands

	def start(self) -> bool:
		"""Start the clock. No-op (False) when running or when the game is over."""
		if self.is_over:
			logger.warning("Ignoring start: game is over, reset first")
			return False
		started = self.clock.start()
		if started:
			self._refresh_snapshot()
			logger.info(f"Simulation started at tick {self.tick_count}")
		return started

	def pause(self) -> bool:
		if not self.clock.running:
			return False
		self.clock.stop()
		self._refresh_snapshot()
		logger.info(f"Simulation paused at tick {self.tick_count}")
		return True

	def reset(self) -> GameSnapshot:
		"""Stop the clock and clear every subsystem in one step."""
		with self._lock:
			self._ensure_outside_tick("reset")
		self.clock.stop()
		with self._lock:
			if self.settings.seed is not None:
				self.rng.seed(self.settings.seed)
			self.registry.reset()
			self.generator.reset()
			self.metrics.reset()
			self.tick_count = 0
			self.skipped_ticks = 0
			self._snapshot = self._build_snapshot()
			self.bus.emit(EventType.GAME_RESET, 0)
		logger.info("Simulation reset")
		return self._snapshot

	def deploy_service(self, config: Union[ServiceConfig, Dict[str, Any]]) -> Dict[str, Any]:
		"""Deploy a service and return its view; raises ``ConfigurationError``."""
		if not isinstance(config, ServiceConfig):
			config = ServiceConfig.from_dict(config)
		with self._lock:
			self._ensure_outside_tick("deploy service")
			self._ensure_playable("deploy service")
			service = self.registry.deploy(config)
			view = service.snapshot()
			self._snapshot = self._build_snapshot()
			self.bus.emit(EventType.SERVICE_DEPLOYED, self.tick_count, view)
		return view

	def remove_service(self, service_id: str) -> bool:
		with self._lock:
			self._ensure_outside_tick("remove service")
			self._ensure_playable("remove service")
			removed = self.registry.remove(service_id)
			if removed:
				self._snapshot = self._build_snapshot()
				self.bus.emit(EventType.SERVICE_REMOVED, self.tick_count, {"id": service_id})
		return removed

	def trigger_spike(self, multiplier: float = 5.0, duration_s: float = 10.0) -> None:
		with self._lock:
			self._ensure_outside_tick("trigger spike")
			self._ensure_playable("trigger spike")
			self.generator.trigger_spike(multiplier, duration_s)

	def _ensure_outside_tick(self, command: str) -> None:
		# Only the tick thread can hold the lock with _in_tick set
		if self._in_tick:
			logger.warning(f"Rejected {command}: issued from inside tick {self.tick_count}")
			raise EngineBusyError(command)

	def _ensure_playable(self, command: str) -> None:
		if self.is_over:
			reason = self.metrics.reason.value if self.metrics.reason else "over"
			logger.warning(f"Rejected {command}: game over ({reason})")
			raise GameOverError(command, reason)

	# ------------------------------------------------------------------ tick

	def _on_clock(self) -> None:
		self.tick()
		if self.is_over:
			self.clock.stop()

	def tick(self) -> Optional[GameSnapshot]:
		"""Advance one tick. Returns None when the tick was skipped."""
		if not self._lock.acquire(blocking=False):
			self.skipped_ticks += 1
			logger.warning(f"Tick {self.tick_count + 1} skipped: engine busy with a previous tick or command")
			return None
		try:
			if self._in_tick:
				self.skipped_ticks += 1
				logger.warning(f"Tick {self.tick_count + 1} skipped: requested from inside a tick")
				return None
			if self.is_over:
				logger.debug("Tick ignored: game is over")
				return self._snapshot
			self._in_tick = True
			try:
				return self._run_tick()
			finally:
				self._in_tick = False
		finally:
			self._lock.release()

	def _run_tick(self) -> GameSnapshot:
		self.tick_count += 1
		tick = self.tick_count
		self.bus.emit(EventType.TICK_STARTED, tick, {"tick": tick})

		requests = self.generator.generate(tick)
		summary = self.generator.history[-1]
		self.bus.emit(EventType.TRAFFIC_GENERATED, tick, summary.to_dict())

		result = self.registry.process(requests, tick)
		self.bus.emit(EventType.REQUESTS_PROCESSED, tick, {
			"offered": result.offered,
			"processed": len(result.processed),
			"dropped": len(result.dropped),
			"blocked": len(result.blocked),
			"average_latency_ms": result.average_latency_ms,
			"cost": result.cost,
		})

		metrics = self.metrics.update(tick, result, self.registry.total_cost())
		self.bus.emit(EventType.METRICS_UPDATED, tick, metrics.to_dict())

		reason = self.metrics.check_game_over()
		self._snapshot = self._build_snapshot()
		if reason is not None:
			self.bus.emit(EventType.GAME_OVER, tick, {
				"reason": reason.value,
				"metrics": self.metrics.current.to_dict(),
			})
		self.bus.emit(EventType.RENDER_REQUESTED, tick, self._snapshot.to_dict())
		logger.debug(
			f"tick={tick} offered={result.offered} availability={metrics.availability:.1f}% "
			f"reputation={self.metrics.reputation:.1f}"
		)
		return self._snapshot

	# ------------------------------------------------------------------ views

	def _build_snapshot(self) -> GameSnapshot:
		sections = self.registry.provider_sections()
		return GameSnapshot(
			tick=self.tick_count,
			running=self.clock.running and not self.is_over,
			sections=MappingProxyType({p.value: s for p, s in sections.items()}),
			metrics=self.metrics.current,
			health=self.registry.health_summary(),
			costs=self.registry.cost_summary(),
			services=tuple(freeze(s.snapshot()) for s in self.registry.list_services()),
		)

	def _refresh_snapshot(self) -> None:
		with self._lock:
			self._snapshot = self._build_snapshot()

	def snapshot(self) -> GameSnapshot:
		return self._snapshot

	def status(self) -> Dict[str, Any]:
		snap = self._snapshot
		return {
			**snap.to_dict(),
			"phase": self.metrics.phase.value,
			"service_count": len(snap.services),
			"skipped_ticks": self.skipped_ticks,
			"traffic": self.generator.statistics(),
		}

	def get_service(self, service_id: str) -> Dict[str, Any]:
		"""Current view of one service; raises ``UnknownServiceError``."""
		with self._lock:
			return self.registry.get(service_id).snapshot()
