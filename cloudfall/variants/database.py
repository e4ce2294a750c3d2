"""Managed relational databases: RDS, Cloud SQL and Azure SQL Database."""

from __future__ import annotations

import logging
from collections import Counter
from types import MappingProxyType
from typing import Any, Dict, List, Tuple

from cloudfall.config import Provider, ServiceType
from cloudfall.request import Request, RequestStatus
from cloudfall.variants.base import ProviderProfile, ServiceVariant

logger = logging.getLogger(__name__)

MINUTES_PER_MONTH = 43200.0

QUERY_FACTORS = {"SELECT": 0.8, "INSERT": 1.2, "UPDATE": 1.5, "DELETE": 1.3}
WRITE_QUERIES = ("INSERT", "UPDATE", "DELETE")
METHOD_QUERIES = {"GET": "SELECT", "HEAD": "SELECT", "POST": "INSERT", "PUT": "UPDATE", "PATCH": "UPDATE", "DELETE": "DELETE"}
MAX_READ_REPLICAS = 15


def _profile(provider: Provider, product: str, params: Dict[str, Any]) -> ProviderProfile:
	return ProviderProfile(
		provider=provider,
		product=product,
		capacity=1000,
		base_cost=0.017,
		base_latency_ms=3,
		latency_multiplier=1.5,
		degradation_threshold=0.8,
		failure_threshold=1.2,
		params=MappingProxyType(params),
	)


# instance classes: name -> ($/hour, vCPUs, max connections)
PROFILES = {
	Provider.AWS: _profile(Provider.AWS, "RDS", {
		"engine": "mysql",
		"engines": ("mysql", "postgresql", "mariadb", "oracle", "sqlserver"),
		"instance_class": "db.t3.micro",
		"instance_classes": {
			"db.t3.micro": (0.017, 2, 85), "db.t3.small": (0.034, 2, 85),
			"db.t3.medium": (0.068, 2, 150), "db.t3.large": (0.136, 2, 300),
			"db.m5.large": (0.192, 2, 648), "db.m5.xlarge": (0.384, 4, 1320),
			"db.r5.large": (0.24, 2, 648), "db.r5.xlarge": (0.48, 4, 1320),
		},
		"storage_type": "gp2",
		# $/GB-month, latency factor
		"storage_types": {"gp2": (0.115, 1.0), "gp3": (0.092, 0.9), "io1": (0.138, 0.7), "io2": (0.138, 0.7)},
		"availability_zone": "us-east-1a",
		"secondary_zone": "us-east-1b",
	}),
	Provider.GCP: _profile(Provider.GCP, "Cloud SQL", {
		"engine": "postgresql",
		"engines": ("mysql", "postgresql", "sqlserver"),
		"instance_class": "db-f1-micro",
		"instance_classes": {
			"db-f1-micro": (0.015, 1, 25), "db-g1-small": (0.05, 1, 50),
			"db-n1-standard-1": (0.0965, 1, 250), "db-n1-standard-2": (0.193, 2, 500),
			"db-n1-standard-4": (0.386, 4, 1000),
		},
		"storage_type": "pd-ssd",
		"storage_types": {"pd-hdd": (0.09, 1.0), "pd-ssd": (0.17, 0.8)},
		"availability_zone": "us-central1-a",
		"secondary_zone": "us-central1-b",
	}),
	Provider.AZURE: _profile(Provider.AZURE, "Azure SQL Database", {
		"engine": "sqlserver",
		"engines": ("sqlserver", "postgresql", "mysql"),
		"instance_class": "GP_Gen5_2",
		"instance_classes": {
			"B_Gen5_1": (0.034, 1, 50), "B_Gen5_2": (0.068, 2, 100),
			"GP_Gen5_2": (0.252, 2, 300), "GP_Gen5_4": (0.504, 4, 600),
			"BC_Gen5_2": (0.68, 2, 800),
		},
		"storage_type": "standard",
		"storage_types": {"standard": (0.115, 1.0), "premium": (0.23, 0.75)},
		"availability_zone": "eastus-1",
		"secondary_zone": "eastus-2",
	}),
}


class DatabaseVariant(ServiceVariant):
	"""Relational store with read/write split, replicas and multi-zone failover.

	The SQL verb comes from the request's ``query`` attribute, falling back to
	one derived from the HTTP method. A failover (multi-zone deployments only)
	drops every request for ``failover_ticks`` and then swaps the primary and
	secondary zones.
	"""

	service_type = ServiceType.DATABASE
	# A replica count or a list of replica settings
	FLEXIBLE_PARAMS = ("read_replicas",)
	PARAM_DEFAULTS = MappingProxyType({
		"allocated_storage_gb": 20,
		"multi_az": False,
		"read_replicas": [],
		"backup_retention_days": 7,
		"performance_insights": False,
		"performance_insights_retention": 7,
		"enhanced_monitoring": False,
		"failover_probability": 0.0001,
		"failover_ticks": 60,
		"slow_query_ratio": 0.05,
	})

	@classmethod
	def validate_params(cls, params: Dict[str, Any], profile: ProviderProfile) -> List[str]:
		errors = super().validate_params(params, profile)
		if params.get("engine") not in params.get("engines", ()):
			errors.append(f"engine must be one of {', '.join(params.get('engines', ()))}")
		classes = params.get("instance_classes", {})
		if params.get("instance_class") not in classes:
			errors.append(f"unknown instance_class {params.get('instance_class')!r} for {profile.product}")
		if params.get("storage_type") not in params.get("storage_types", {}):
			errors.append(f"unknown storage_type {params.get('storage_type')!r}")
		storage = params.get("allocated_storage_gb")
		if not isinstance(storage, (int, float)) or not 20 <= storage <= 65536:
			errors.append("allocated_storage_gb must be between 20 and 65536")
		if not 0 <= params.get("backup_retention_days", 0) <= 35:
			errors.append("backup_retention_days must be between 0 and 35")
		if params.get("performance_insights") and params.get("performance_insights_retention", 7) < 7:
			errors.append("performance_insights_retention must be at least 7 days")
		raw_replicas = params.get("read_replicas")
		if isinstance(raw_replicas, bool) or not (
			isinstance(raw_replicas, int) and raw_replicas >= 0
			or isinstance(raw_replicas, list) and all(isinstance(r, dict) for r in raw_replicas)
		):
			errors.append("read_replicas must be a count or a list of replica settings")
			return errors
		replicas = cls._replicas_from(raw_replicas)
		if len(replicas) > MAX_READ_REPLICAS:
			errors.append(f"at most {MAX_READ_REPLICAS} read replicas are allowed")
		for replica in replicas:
			class_name = replica.get("instance_class")
			if class_name and (not isinstance(class_name, str) or class_name not in classes):
				errors.append(f"unknown replica instance_class {replica['instance_class']!r}")
		return errors

	@staticmethod
	def _replicas_from(value: Any) -> List[Dict[str, Any]]:
		if isinstance(value, int):
			return [{} for _ in range(value)]
		return [dict(r) for r in (value or [])]

	def _setup(self) -> None:
		p = self.params
		self.engine = p["engine"]
		self.instance_class = p["instance_class"]
		self.hourly_price, self.vcpus, self.max_connections = p["instance_classes"][self.instance_class]
		self.read_replicas = self._replicas_from(p["read_replicas"])
		self.availability_zone = p["availability_zone"]
		self.secondary_zone = p["secondary_zone"]
		self.failover_until = -1
		self.failovers = 0
		self.replica_lag_ms = 0.0
		self.active_connections = 0
		self.queries: Counter = Counter()

	# ------------------------------------------------------------------ failover

	def _begin_tick(self) -> None:
		if self.failover_until >= 0 and self.tick >= self.failover_until:
			self.availability_zone, self.secondary_zone = self.secondary_zone, self.availability_zone
			self.failover_until = -1
			logger.info(f"{self.id}: failover complete, primary now in {self.availability_zone}")
		if self.params["multi_az"] and not self._outage_active():
			if self.rng.random() < self.params["failover_probability"]:
				self.failover_until = self.tick + int(self.params["failover_ticks"])
				self.failovers += 1
				logger.info(f"{self.id}: multi-AZ failover started, lasting until tick {self.failover_until}")
		if self.read_replicas:
			self.replica_lag_ms = self.rng.uniform(0, 100)

	def _outage_active(self) -> bool:
		return self.failover_until >= 0 and self.tick < self.failover_until

	# ------------------------------------------------------------------ queries

	def query_type(self, request: Request) -> str:
		query = request.attribute("query")
		if query and query.upper() in QUERY_FACTORS:
			return query.upper()
		return METHOD_QUERIES.get(request.method.upper(), "SELECT")

	def _handle(self, request: Request, latency_ms: float) -> Tuple[float, RequestStatus]:
		query = self.query_type(request)
		self.queries[query] += 1
		latency = latency_ms * QUERY_FACTORS[query]
		if self.rng.random() < self.params["slow_query_ratio"]:
			self.queries["slow"] += 1
			latency *= 10
		if self.params["multi_az"] and query in WRITE_QUERIES:
			latency += 2
		if self.read_replicas and query == "SELECT":
			latency *= 0.7
		latency *= self.params["storage_types"][self.params["storage_type"]][1]
		if self.params["performance_insights"]:
			latency *= 1.02
		return latency, RequestStatus.PROCESSED

	def _end_tick(self, result) -> None:
		self.active_connections = min(len(result.processed), self.max_connections)

	# ------------------------------------------------------------------ cost

	def _cost_addons(self) -> Dict[str, float]:
		p = self.params
		classes = p["instance_classes"]
		instance = self.hourly_price / 60
		terms = {"instance": instance}
		if p["multi_az"]:
			terms["multi_az_standby"] = instance
		if self.read_replicas:
			replicas = 0.0
			for replica in self.read_replicas:
				price = classes[replica.get("instance_class", self.instance_class)][0] / 60
				replicas += price * (2 if replica.get("multi_az") else 1)
			terms["read_replicas"] = replicas
		per_gb = p["storage_types"][p["storage_type"]][0] / MINUTES_PER_MONTH
		terms["storage"] = per_gb * p["allocated_storage_gb"]
		if p["backup_retention_days"] > 0:
			terms["backup"] = 0.095 / MINUTES_PER_MONTH * p["allocated_storage_gb"] * 0.3
		if p["performance_insights"]:
			terms["performance_insights"] = 0.00232 / 60 * self.vcpus
		if p["enhanced_monitoring"]:
			terms["enhanced_monitoring"] = 0.75 / MINUTES_PER_MONTH
		return terms

	def _extension_summary(self) -> Dict[str, Any]:
		return {
			"engine": self.engine,
			"instance_class": self.instance_class,
			"availability_zone": self.availability_zone,
			"read_replicas": len(self.read_replicas),
			"replica_lag_ms": round(self.replica_lag_ms, 1),
			"active_connections": self.active_connections,
			"max_connections": self.max_connections,
			"failover_in_progress": self._outage_active(),
			"failovers": self.failovers,
			"queries": dict(self.queries),
		}
