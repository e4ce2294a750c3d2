"""Shared capacity/degradation model for every service variant."""

from __future__ import annotations

import logging
import math
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from cloudfall.config import Provider, ServiceConfig, ServiceType, is_number
from cloudfall.request import Request, RequestStatus

logger = logging.getLogger(__name__)


class Health(str, Enum):
	HEALTHY = "healthy"
	DEGRADED = "degraded"
	FAILED = "failed"


# Load-model params any variant may override
MODEL_PARAMS = ("latency_base_ms", "latency_multiplier", "degradation_threshold", "failure_threshold")


def round_ms(value: float) -> int:
	"""Round half up to whole milliseconds."""
	return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class ProviderProfile:
	"""Default parameters of one provider's product for a service type."""
	provider: Provider
	product: str
	capacity: float
	base_cost: float
	base_latency_ms: float
	latency_multiplier: float
	degradation_threshold: float
	failure_threshold: float
	# Provider specific defaults merged under the caller's params
	params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class ProcessResult:
	processed: Tuple[Request, ...] = ()
	dropped: Tuple[Request, ...] = ()
	blocked: Tuple[Request, ...] = ()
	cost: float = 0.0

	@property
	def offered(self) -> int:
		return len(self.processed) + len(self.dropped) + len(self.blocked)

	@property
	def total_latency_ms(self) -> int:
		return sum(r.latency_ms for r in self.processed)


@dataclass
class ServiceMetrics:
	requests_per_second: int = 0
	average_latency_ms: float = 0.0
	error_rate: float = 0.0
	uptime: float = 100.0
	cost: float = 0.0
	processed_total: int = 0
	dropped_total: int = 0
	blocked_total: int = 0

	def to_dict(self) -> Dict[str, Any]:
		return {
			"requests_per_second": self.requests_per_second,
			"average_latency_ms": round(self.average_latency_ms, 2),
			"error_rate": round(self.error_rate, 2),
			"uptime": round(self.uptime, 2),
			"cost": round(self.cost, 6),
			"processed_total": self.processed_total,
			"dropped_total": self.dropped_total,
			"blocked_total": self.blocked_total,
		}


class ServiceVariant(ABC):
	"""A capacity, latency and cost model for one (provider, type) pair.

	Subclasses implement one service type for all providers and receive the
	provider's numbers through a ``ProviderProfile``. The tick contract is
	``process(requests, tick) -> ProcessResult``; variants customise it
	through the hooks below rather than by overriding ``process``.
	"""

	service_type: ServiceType
	# Type-wide parameter defaults, overridden by profile params then config params
	PARAM_DEFAULTS: Mapping[str, Any] = MappingProxyType({})
	# Params whose overrides may take a different shape than their default
	FLEXIBLE_PARAMS: Tuple[str, ...] = ()

	def __init__(
		self,
		config: ServiceConfig,
		profile: ProviderProfile,
		rng: Optional[random.Random] = None,
		service_id: Optional[str] = None,
	) -> None:
		self.profile = profile
		self.provider = profile.provider
		self.id = service_id or f"{self.service_type.value}-{uuid.uuid4().hex[:8]}"
		self.name = config.name or profile.product
		self.capacity = float(config.capacity if config.capacity is not None else profile.capacity)
		self.capacity_overridden = config.capacity is not None
		self.base_cost = float(config.base_cost if config.base_cost is not None else profile.base_cost)
		self.params: Dict[str, Any] = {**self.PARAM_DEFAULTS, **profile.params, **config.params}
		self.rng = rng or random.Random()

		self.base_latency_ms = float(self.params.get("latency_base_ms", profile.base_latency_ms))
		self.latency_multiplier = float(self.params.get("latency_multiplier", profile.latency_multiplier))
		self.degradation_threshold = float(
			self.params.get("degradation_threshold", profile.degradation_threshold)
		)
		self.failure_threshold = float(self.params.get("failure_threshold", profile.failure_threshold))

		self.load = 0.0
		self.health = Health.HEALTHY
		self.tick = 0
		self.metrics = ServiceMetrics()
		self._cost_terms: Dict[str, float] = {}
		self._setup()
		self._cost_terms = self.cost_breakdown()

	# ------------------------------------------------------------------ validation

	@classmethod
	def validate_config(cls, config: ServiceConfig, profile: ProviderProfile) -> List[str]:
		"""Every violation for ``config``; empty when it may be deployed."""
		errors = config.validate()
		if isinstance(config.params, dict):
			params = {**cls.PARAM_DEFAULTS, **profile.params, **config.params}
			# Range checks assume well-typed params
			errors.extend(cls.param_type_errors(config.params, profile) or cls.validate_params(params, profile))
		return errors

	@classmethod
	def param_type_errors(cls, overrides: Mapping[str, Any], profile: ProviderProfile) -> List[str]:
		"""Overrides must keep the shape of the default they replace."""
		defaults = {**cls.PARAM_DEFAULTS, **profile.params}
		errors: List[str] = []
		for key, value in overrides.items():
			if key in MODEL_PARAMS:
				if not is_number(value):
					errors.append(f"{key} must be a number (got {value!r})")
				continue
			default = defaults.get(key)
			if default is None or isinstance(default, bool) or key in cls.FLEXIBLE_PARAMS:
				continue
			if is_number(default) and not is_number(value):
				errors.append(f"{key} must be a number (got {value!r})")
			elif isinstance(default, str) and not isinstance(value, str):
				errors.append(f"{key} must be a string (got {value!r})")
			elif isinstance(default, Mapping) and not isinstance(value, Mapping):
				errors.append(f"{key} must be a mapping (got {value!r})")
			elif isinstance(default, (list, tuple)) and not isinstance(value, (list, tuple)):
				errors.append(f"{key} must be a list (got {value!r})")
		return errors

	@classmethod
	def validate_params(cls, params: Dict[str, Any], profile: ProviderProfile) -> List[str]:
		errors: List[str] = []
		degradation = params.get("degradation_threshold", profile.degradation_threshold)
		failure = params.get("failure_threshold", profile.failure_threshold)
		if not all(isinstance(v, (int, float)) for v in (degradation, failure)):
			errors.append("health thresholds must be numbers")
		elif degradation <= 0 or failure <= 0:
			errors.append("health thresholds must be greater than 0")
		elif degradation > failure:
			errors.append("degradation_threshold must not exceed failure_threshold")
		return errors

	# ------------------------------------------------------------------ hooks

	def _setup(self) -> None:
		"""Initialise extension state."""

	def _begin_tick(self) -> None:
		"""Advance time-based extension state before requests are handled."""

	def _outage_active(self) -> bool:
		"""True while a variant event (interruption, failover) drops all traffic."""
		return False

	@abstractmethod
	def _handle(self, request: Request, latency_ms: float) -> Tuple[float, RequestStatus]:
		"""Apply variant behaviour to one admitted request.

		Receives the load curve latency and returns the final latency and the
		request's disposition (``PROCESSED`` or ``BLOCKED``).
		"""

	def _end_tick(self, result: ProcessResult) -> None:
		"""Observe the tick's outcome (scaling decisions, counters)."""

	def _cost_addons(self) -> Dict[str, float]:
		return {}

	def _extension_summary(self) -> Dict[str, Any]:
		return {}

	# ------------------------------------------------------------------ model

	def effective_capacity(self) -> float:
		return self.capacity

	def health_for(self, load: float) -> Health:
		if load > self.failure_threshold:
			return Health.FAILED
		if load > self.degradation_threshold:
			return Health.DEGRADED
		return Health.HEALTHY

	def base_latency(self) -> float:
		return round_ms(self.base_latency_ms * (1 + (self.load * self.latency_multiplier) ** 2))

	def drop_probability(self) -> float:
		if self.load > self.failure_threshold:
			return (self.load - self.failure_threshold) / self.failure_threshold
		return 0.0

	def process(self, requests: Sequence[Request], tick: int = 0) -> ProcessResult:
		self.tick = tick
		self._begin_tick()

		offered = len(requests)
		self.load = offered / self.effective_capacity()
		self.health = self.health_for(self.load)
		self.metrics.requests_per_second = offered

		processed: List[Request] = []
		dropped: List[Request] = []
		blocked: List[Request] = []

		if self.health is Health.FAILED or self._outage_active():
			dropped = [r.mark(RequestStatus.DROPPED) for r in requests]
		else:
			drop_p = self.drop_probability()
			latency = self.base_latency()
			for req in requests:
				if drop_p > 0 and self.rng.random() < drop_p:
					dropped.append(req.mark(RequestStatus.DROPPED))
					continue
				final_latency, status = self._handle(req, latency)
				handled = req.advance(self.id, round_ms(final_latency)).mark(status)
				if status is RequestStatus.BLOCKED:
					blocked.append(handled)
				elif status is RequestStatus.DROPPED:
					dropped.append(handled)
				else:
					processed.append(handled)

		result = ProcessResult(tuple(processed), tuple(dropped), tuple(blocked))
		self._end_tick(result)
		self._cost_terms = self.cost_breakdown()
		cost = sum(self._cost_terms.values())
		self._record(result, cost)
		logger.debug(
			f"{self.id} tick={tick} load={self.load:.2f} health={self.health.value} "
			f"processed={len(processed)} dropped={len(dropped)} blocked={len(blocked)}"
		)
		return ProcessResult(result.processed, result.dropped, result.blocked, cost)

	def _record(self, result: ProcessResult, cost: float) -> None:
		m = self.metrics
		m.requests_per_second = result.offered
		m.average_latency_ms = (
			result.total_latency_ms / len(result.processed) if result.processed else 0.0
		)
		m.error_rate = len(result.dropped) / result.offered * 100 if result.offered else 0.0
		m.cost = cost
		m.processed_total += len(result.processed)
		m.dropped_total += len(result.dropped)
		m.blocked_total += len(result.blocked)
		if self.health is Health.FAILED:
			m.uptime = max(0.0, m.uptime - 1.0)
		elif self.health is Health.HEALTHY:
			m.uptime = min(100.0, m.uptime + 0.1)

	# ------------------------------------------------------------------ cost

	def base_cost_term(self) -> float:
		if self.load > 0.5:
			return self.base_cost * (1 + (self.load - 0.5))
		return self.base_cost

	def cost_breakdown(self) -> Dict[str, float]:
		"""Named cost terms for the current tick; their sum is ``cost()``."""
		terms = {"base": self.base_cost_term()}
		terms.update(self._cost_addons())
		return terms

	def cost(self) -> float:
		return sum(self._cost_terms.values())

	# ------------------------------------------------------------------ views

	def snapshot(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"name": self.name,
			"provider": self.provider.value,
			"type": self.service_type.value,
			"product": self.profile.product,
			"capacity": self.effective_capacity(),
			"load": round(self.load, 4),
			"health": self.health.value,
			"cost": round(self.cost(), 6),
			"cost_breakdown": {k: round(v, 6) for k, v in self._cost_terms.items()},
			"metrics": self.metrics.to_dict(),
			"extension": self._extension_summary(),
		}

	def __repr__(self) -> str:
		return f"<{type(self).__name__} {self.id} {self.provider.value} load={self.load:.2f}>"
