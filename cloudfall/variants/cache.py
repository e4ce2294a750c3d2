"""In-memory caches: ElastiCache, Memorystore and Azure Cache for Redis."""

from __future__ import annotations

import itertools
from collections import OrderedDict
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Tuple

from cloudfall.config import Provider, ServiceType
from cloudfall.request import Request, RequestStatus
from cloudfall.variants.base import ProviderProfile, ServiceVariant

MINUTES_PER_MONTH = 43200.0
BYTES_PER_GB = 1024 ** 3

ENGINES = ("redis", "memcached")
EVICTION_POLICIES = ("allkeys-lru", "allkeys-random", "volatile-lru")


def _profile(provider: Provider, product: str, default_node: str, nodes: Dict[str, Tuple[float, float]]) -> ProviderProfile:
	# nodes: node type -> (memory GB, $/hour)
	return ProviderProfile(
		provider=provider,
		product=product,
		capacity=10000,
		base_cost=0.034,
		base_latency_ms=1,
		latency_multiplier=0.3,
		degradation_threshold=0.85,
		failure_threshold=1.8,
		params=MappingProxyType({"node_type": default_node, "node_types": nodes}),
	)


PROFILES = {
	Provider.AWS: _profile(Provider.AWS, "ElastiCache", "cache.t3.micro", {
		"cache.t3.micro": (0.5, 0.017),
		"cache.t3.small": (1.37, 0.034),
		"cache.t3.medium": (3.09, 0.068),
		"cache.m5.large": (6.38, 0.126),
		"cache.m5.xlarge": (12.93, 0.252),
		"cache.r5.large": (12.3, 0.126),
		"cache.r5.xlarge": (25.05, 0.252),
	}),
	Provider.GCP: _profile(Provider.GCP, "Memorystore", "basic-m1", {
		"basic-m1": (1.0, 0.049),
		"basic-m5": (5.0, 0.135),
		"standard-m1": (1.0, 0.098),
		"standard-m5": (5.0, 0.27),
		"standard-m16": (16.0, 0.59),
	}),
	Provider.AZURE: _profile(Provider.AZURE, "Azure Cache for Redis", "C0", {
		"C0": (0.25, 0.022),
		"C1": (1.0, 0.055),
		"C2": (2.5, 0.09),
		"C3": (6.0, 0.18),
		"P1": (6.0, 0.554),
		"P2": (13.0, 1.108),
	}),
}


@dataclass
class CacheEntry:
	value: str
	created_seq: int
	size: int


class CacheVariant(ServiceVariant):
	"""Key/value cache with bounded capacity and configurable eviction.

	Requests carry ``cache_op`` (get/set/delete) and ``cache_key`` attributes;
	without them a request is a ``get`` on its path. With ``populate_on_miss``
	a missed ``get`` stores the key, so repeated paths start hitting.
	"""

	service_type = ServiceType.CACHE
	PARAM_DEFAULTS = MappingProxyType({
		"engine": "redis",
		"replication_groups": 1,
		"replicas_per_group": 0,
		"num_nodes": 1,
		"cluster_mode": False,
		"multi_az": False,
		"encryption_at_rest": False,
		"encryption_in_transit": False,
		"backup_retention_days": 0,
		"port": 6379,
		"eviction_policy": "allkeys-lru",
		"populate_on_miss": True,
	})

	@classmethod
	def validate_params(cls, params: Dict[str, Any], profile: ProviderProfile) -> List[str]:
		errors = super().validate_params(params, profile)
		engine = params.get("engine")
		if engine not in ENGINES:
			errors.append(f"engine must be one of {', '.join(ENGINES)}")
		if params.get("node_type") not in params.get("node_types", {}):
			errors.append(f"unknown node_type {params.get('node_type')!r} for {profile.product}")
		if params.get("eviction_policy") not in EVICTION_POLICIES:
			errors.append(f"eviction_policy must be one of {', '.join(EVICTION_POLICIES)}")
		if engine == "redis":
			if not 1 <= params.get("replication_groups", 1) <= 500:
				errors.append("replication_groups must be between 1 and 500")
			if not 0 <= params.get("replicas_per_group", 0) <= 5:
				errors.append("replicas_per_group must be between 0 and 5")
			if not 0 <= params.get("backup_retention_days", 0) <= 35:
				errors.append("backup_retention_days must be between 0 and 35")
		elif engine == "memcached":
			if not 1 <= params.get("num_nodes", 1) <= 40:
				errors.append("num_nodes must be between 1 and 40")
			if params.get("backup_retention_days"):
				errors.append("memcached does not support backups")
		if not 1024 <= params.get("port", 6379) <= 65535:
			errors.append("port must be between 1024 and 65535")
		return errors

	def _setup(self) -> None:
		p = self.params
		self.engine = p["engine"]
		self.memory_gb, self.hourly_price = p["node_types"][p["node_type"]]
		self.max_entries = max(1, int(self.memory_gb * 1024))
		self.store: "OrderedDict[str, CacheEntry]" = OrderedDict()
		self._seq = itertools.count()
		self.stats = {"gets": 0, "sets": 0, "hits": 0, "misses": 0, "deletes": 0, "evictions": 0}
		self.bytes_out = 0

	@property
	def node_count(self) -> int:
		if self.engine == "redis":
			return self.params["replication_groups"] * (1 + self.params["replicas_per_group"])
		return self.params["num_nodes"]

	@property
	def hit_rate(self) -> float:
		gets = self.stats["gets"]
		return self.stats["hits"] / gets * 100 if gets else 0.0

	# ------------------------------------------------------------------ store

	def get(self, key: str) -> bool:
		self.stats["gets"] += 1
		entry = self.store.get(key)
		if entry is None:
			self.stats["misses"] += 1
			return False
		self.stats["hits"] += 1
		self.store.move_to_end(key)
		self.bytes_out += entry.size
		return True

	def set(self, key: str, value: str = "data", size: int = 1024) -> None:
		self.stats["sets"] += 1
		if key not in self.store and len(self.store) >= self.max_entries:
			self.evict()
		self.store[key] = CacheEntry(value, next(self._seq), size)
		self.store.move_to_end(key)

	def delete(self, key: str) -> bool:
		self.stats["deletes"] += 1
		return self.store.pop(key, None) is not None

	def evict(self) -> None:
		if not self.store:
			return
		policy = self.params["eviction_policy"]
		if policy == "allkeys-lru":
			self.store.popitem(last=False)
		elif policy == "allkeys-random":
			del self.store[self.rng.choice(list(self.store))]
		else:
			oldest = min(self.store, key=lambda k: self.store[k].created_seq)
			del self.store[oldest]
		self.stats["evictions"] += 1

	def clear(self) -> None:
		self.store.clear()

	# ------------------------------------------------------------------ tick

	def _begin_tick(self) -> None:
		self.bytes_out = 0

	def _handle(self, request: Request, latency_ms: float) -> Tuple[float, RequestStatus]:
		op = request.attribute("cache_op", "get")
		key = request.attribute("cache_key") or request.path or "default"
		size = int(request.size_kb * 1024)
		if op == "set":
			self.set(key, request.attribute("cache_value", "data"), size)
			hit = True
		elif op == "delete":
			hit = self.delete(key)
		else:
			hit = self.get(key)
			if not hit and self.params["populate_on_miss"]:
				self.set(key, "data", size)

		latency = latency_ms * (0.5 if hit else 1.2)
		latency *= 0.9 if self.engine == "redis" else 0.8
		if self.params["cluster_mode"]:
			latency *= 1.1
		if self.params["multi_az"]:
			latency += 1
		if self.params["encryption_in_transit"] or self.params["encryption_at_rest"]:
			latency *= 1.05
		return latency, RequestStatus.PROCESSED

	def _cost_addons(self) -> Dict[str, float]:
		terms = {"nodes": self.hourly_price / 60 * self.node_count}
		days = self.params["backup_retention_days"]
		if self.engine == "redis" and days > 0:
			terms["backup"] = 0.085 / MINUTES_PER_MONTH * self.memory_gb * 0.5 * days
		terms["data_transfer"] = self.bytes_out / BYTES_PER_GB * 0.09
		return terms

	def _extension_summary(self) -> Dict[str, Any]:
		return {
			"engine": self.engine,
			"entries": len(self.store),
			"max_entries": self.max_entries,
			"hit_rate": round(self.hit_rate, 2),
			**self.stats,
		}
