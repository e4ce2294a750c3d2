"""Deployed service instances, request routing and per-tick aggregation."""

from __future__ import annotations

import itertools
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from cloudfall.config import Provider, ServiceConfig, ServiceType, parse_provider, parse_service_type
from cloudfall.errors import UnknownServiceError
from cloudfall.request import Request, RequestStatus
from cloudfall.variants import ServiceVariant, create_variant
from cloudfall.variants.base import Health

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSection:
    provider: Provider
    service_ids: Tuple[str, ...] = ()
    total_cost: float = 0.0

    def to_dict(self) -> dict:
        return {"service_ids": list(self.service_ids), "total_cost": round(self.total_cost, 6)}


@dataclass(frozen=True)
class HealthSummary:
    total: int = 0
    healthy: int = 0
    degraded: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"total": self.total, "healthy": self.healthy, "degraded": self.degraded, "failed": self.failed}


@dataclass(frozen=True)
class CostSummary:
    by_provider: Mapping[str, float]
    total: float = 0.0

    def to_dict(self) -> dict:
        return {**{k: round(v, 6) for k, v in self.by_provider.items()}, "total": round(self.total, 6)}


@dataclass(frozen=True)
class TickResult:
    """Registry-wide outcome of one tick."""
    offered: int
    processed: Tuple[Request, ...] = ()
    dropped: Tuple[Request, ...] = ()
    blocked: Tuple[Request, ...] = ()
    total_latency_ms: int = 0
    cost: float = 0.0

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / len(self.processed) if self.processed else 0.0


class Router(ABC):
    """Assigns each request of a batch to one deployed service."""

    @abstractmethod
    def route(self, requests: Sequence[Request], services: Sequence[ServiceVariant]) -> Dict[str, List[Request]]:
        ...


class RoundRobinRouter(Router):
    """Request i goes to service i mod n, in deployment order, ignoring type."""

    def route(self, requests: Sequence[Request], services: Sequence[ServiceVariant]) -> Dict[str, List[Request]]:
        batches: Dict[str, List[Request]] = {s.id: [] for s in services}
        if not services:
            return batches
        for index, req in enumerate(requests):
            batches[services[index % len(services)].id].append(req)
        return batches


class EdgeFirstRouter(Router):
    """Sends traffic only to edge services (firewalls, load balancers) when any are deployed.

    Falls back to round-robin over everything otherwise.
    """

    EDGE_TYPES = (ServiceType.WAF, ServiceType.LOAD_BALANCER)

    def __init__(self) -> None:
        self._fallback = RoundRobinRouter()

    def route(self, requests: Sequence[Request], services: Sequence[ServiceVariant]) -> Dict[str, List[Request]]:
        edge = [s for s in services if s.service_type in self.EDGE_TYPES]
        batches = self._fallback.route(requests, edge or services)
        for s in services:
            batches.setdefault(s.id, [])
        return batches


class ServiceRegistry:
    """Owns service instances from deployment until removal."""

    def __init__(self, rng: Optional[random.Random] = None, router: Optional[Router] = None) -> None:
        self.rng = rng or random.Random()
        self.router = router or RoundRobinRouter()
        self._services: Dict[str, ServiceVariant] = {}
        self._ids = itertools.count(1)
        self._sections: Dict[Provider, ProviderSection] = {p: ProviderSection(p) for p in Provider}
        logger.info(f"ServiceRegistry initialized with {type(self.router).__name__}")

    # ------------------------------------------------------------------ lifecycle

    def deploy(self, config: ServiceConfig) -> ServiceVariant:
        """Admit a new service; raises ``ConfigurationError`` listing every violation."""
        provider = parse_provider(config.provider)
        stype = parse_service_type(config.service_type)
        service_id = None
        if provider is not None and stype is not None:
            service_id = f"{provider.value}-{stype.value}-{next(self._ids)}"
        service = create_variant(
            config,
            rng=random.Random(self.rng.getrandbits(64)),
            service_id=service_id,
        )
        self._services[service.id] = service
        self._recompute_sections()
        logger.info(f"Deployed {service.id} ({service.profile.product}, capacity={service.capacity:g})")
        return service

    def remove(self, service_id: str) -> bool:
        service = self._services.pop(service_id, None)
        if service is None:
            return False
        self._recompute_sections()
        logger.info(f"Removed {service_id}")
        return True

    def reset(self) -> None:
        self._services.clear()
        self._ids = itertools.count(1)
        self._recompute_sections()

    def get(self, service_id: str) -> ServiceVariant:
        try:
            return self._services[service_id]
        except KeyError:
            raise UnknownServiceError(service_id) from None

    def list_services(self) -> List[ServiceVariant]:
        return list(self._services.values())

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._services

    # ------------------------------------------------------------------ tick

    def route(self, requests: Sequence[Request]) -> Dict[str, List[Request]]:
        return self.router.route(requests, self.list_services())

    def process(self, requests: Sequence[Request], tick: int = 0) -> TickResult:
        if not self._services:
            dropped = tuple(r.mark(RequestStatus.DROPPED) for r in requests)
            self._recompute_sections()
            return TickResult(offered=len(requests), dropped=dropped)

        processed: List[Request] = []
        dropped: List[Request] = []
        blocked: List[Request] = []
        total_latency = 0
        cost = 0.0
        for service_id, batch in self.route(requests).items():
            result = self._services[service_id].process(batch, tick)
            processed.extend(result.processed)
            dropped.extend(result.dropped)
            blocked.extend(result.blocked)
            total_latency += result.total_latency_ms
            cost += result.cost

        self._recompute_sections()
        return TickResult(
            offered=len(requests),
            processed=tuple(processed),
            dropped=tuple(dropped),
            blocked=tuple(blocked),
            total_latency_ms=total_latency,
            cost=cost,
        )

    # ------------------------------------------------------------------ summaries

    def _recompute_sections(self) -> None:
        sections = {}
        for provider in Provider:
            members = [s for s in self._services.values() if s.provider is provider]
            sections[provider] = ProviderSection(
                provider=provider,
                service_ids=tuple(s.id for s in members),
                total_cost=sum(s.cost() for s in members),
            )
        self._sections = sections

    def provider_sections(self) -> Mapping[Provider, ProviderSection]:
        return MappingProxyType(dict(self._sections))

    def health_summary(self) -> HealthSummary:
        counts = {h: 0 for h in Health}
        for service in self._services.values():
            counts[service.health] += 1
        return HealthSummary(
            total=len(self._services),
            healthy=counts[Health.HEALTHY],
            degraded=counts[Health.DEGRADED],
            failed=counts[Health.FAILED],
        )

    def cost_summary(self) -> CostSummary:
        by_provider = {p.value: self._sections[p].total_cost for p in Provider}
        return CostSummary(by_provider=MappingProxyType(by_provider), total=sum(by_provider.values()))

    def total_cost(self) -> float:
        return sum(s.cost() for s in self._services.values())
