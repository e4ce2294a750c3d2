"""Virtual machine compute: EC2, Compute Engine and Azure VMs."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Dict, List, Tuple

from cloudfall.config import Provider, ServiceType, is_number
from cloudfall.request import Request, RequestStatus
from cloudfall.variants.base import ProviderProfile, ServiceVariant

logger = logging.getLogger(__name__)

MINUTES_PER_MONTH = 43200.0

TENANCIES = ("default", "dedicated", "host")
PLACEMENT_FACTORS = {"none": 1.0, "cluster": 0.85, "partition": 0.95, "spread": 1.05}

PROFILES = {
	Provider.AWS: ProviderProfile(
		provider=Provider.AWS,
		product="EC2",
		capacity=500,
		base_cost=0.05,
		base_latency_ms=5,
		latency_multiplier=1.2,
		degradation_threshold=1.0,
		failure_threshold=1.3,
		params=MappingProxyType({
			"instance_type": "t3.medium",
			"volume_type": "gp3",
			"burstable_prefixes": ("t2.", "t3.", "t4g."),
			"instance_prices": {
				"t3.nano": 0.0052, "t3.micro": 0.0104, "t3.small": 0.0208,
				"t3.medium": 0.0416, "t3.large": 0.0832, "t3.xlarge": 0.1664,
				"m5.large": 0.096, "m5.xlarge": 0.192, "m5.2xlarge": 0.384,
				"c5.large": 0.085, "c5.xlarge": 0.17,
			},
			# $/GB-month
			"storage_prices": {"gp2": 0.10, "gp3": 0.08, "io1": 0.125, "io2": 0.125},
			"provisioned_iops_types": ("io1", "io2"),
		}),
	),
	Provider.GCP: ProviderProfile(
		provider=Provider.GCP,
		product="Compute Engine",
		capacity=500,
		base_cost=0.048,
		base_latency_ms=5,
		latency_multiplier=1.2,
		degradation_threshold=1.0,
		failure_threshold=1.3,
		params=MappingProxyType({
			"instance_type": "e2-medium",
			"volume_type": "pd-balanced",
			"burstable_prefixes": ("e2-micro", "e2-small", "e2-medium", "f1-", "g1-"),
			"instance_prices": {
				"e2-micro": 0.0084, "e2-small": 0.0168, "e2-medium": 0.0335,
				"e2-standard-2": 0.067, "e2-standard-4": 0.134,
				"n2-standard-2": 0.0971, "n2-standard-4": 0.1942,
				"c2-standard-4": 0.2088,
			},
			"storage_prices": {"pd-standard": 0.04, "pd-balanced": 0.10, "pd-ssd": 0.17},
			"provisioned_iops_types": (),
			"sustained_use_max_discount": 0.3,
			"sustained_use_ramp_ticks": 720,
		}),
	),
	Provider.AZURE: ProviderProfile(
		provider=Provider.AZURE,
		product="Virtual Machines",
		capacity=500,
		base_cost=0.052,
		base_latency_ms=5,
		latency_multiplier=1.2,
		degradation_threshold=1.0,
		failure_threshold=1.3,
		params=MappingProxyType({
			"instance_type": "Standard_B2s",
			"volume_type": "standard_ssd",
			"burstable_prefixes": ("Standard_B",),
			"instance_prices": {
				"Standard_B1s": 0.0104, "Standard_B2s": 0.0416, "Standard_B2ms": 0.0832,
				"Standard_D2s_v5": 0.096, "Standard_D4s_v5": 0.192,
				"Standard_F2s_v2": 0.085, "Standard_F4s_v2": 0.169,
			},
			"storage_prices": {"standard_hdd": 0.045, "standard_ssd": 0.075, "premium_ssd": 0.135},
			"provisioned_iops_types": ("premium_ssd",),
			"hybrid_benefit_discount": 0.4,
		}),
	),
}


class ComputeVariant(ServiceVariant):
	"""Instance-backed compute with CPU credits, auto-scaling and pricing options."""

	service_type = ServiceType.COMPUTE
	PARAM_DEFAULTS = MappingProxyType({
		"tenancy": "default",
		"volume_size_gb": 20,
		"iops": 3000,
		"placement": "none",
		"enhanced_networking": False,
		"spot": False,
		"spot_interruption_probability": 0.05 / 60,
		"spot_recovery_ticks": 5,
		"reserved": False,
		"reserved_term_months": 12,
		"hybrid_benefit": False,
		"initial_credits": 30.0,
		"max_credits": 144.0,
		"credit_earn_rate": 0.2,
		"baseline_utilization": 20.0,
		"auto_scaling": {},
		"data_transfer_rate": 0.00001,
	})

	SCALING_DEFAULTS = MappingProxyType({
		"enabled": False,
		"min": 1,
		"max": 10,
		"desired": 1,
		"scale_up_threshold": 70.0,
		"scale_down_threshold": 30.0,
		"cooldown_ticks": 300,
	})

	@classmethod
	def validate_params(cls, params: Dict[str, Any], profile: ProviderProfile) -> List[str]:
		errors = super().validate_params(params, profile)
		if params.get("instance_type") not in params.get("instance_prices", {}):
			errors.append(f"unknown instance_type {params.get('instance_type')!r} for {profile.product}")
		if params.get("tenancy") not in TENANCIES:
			errors.append(f"tenancy must be one of {', '.join(TENANCIES)}")
		if params.get("volume_type") not in params.get("storage_prices", {}):
			errors.append(f"unknown volume_type {params.get('volume_type')!r}")
		size = params.get("volume_size_gb")
		if not isinstance(size, (int, float)) or not 1 <= size <= 16384:
			errors.append("volume_size_gb must be between 1 and 16384")
		if params.get("placement") not in PLACEMENT_FACTORS:
			errors.append(f"placement must be one of {', '.join(PLACEMENT_FACTORS)}")
		if params.get("spot") and params.get("reserved"):
			errors.append("an instance cannot be both spot and reserved")
		scaling = {**cls.SCALING_DEFAULTS, **(params.get("auto_scaling") or {})}
		untyped = [k for k in cls.SCALING_DEFAULTS if k != "enabled" and not is_number(scaling[k])]
		for key in untyped:
			errors.append(f"auto_scaling.{key} must be a number (got {scaling[key]!r})")
		if untyped:
			return errors
		if scaling["min"] < 1:
			errors.append("auto_scaling.min must be at least 1")
		if scaling["min"] > scaling["max"]:
			errors.append("auto_scaling.min must not exceed auto_scaling.max")
		elif not scaling["min"] <= scaling["desired"] <= scaling["max"]:
			errors.append("auto_scaling.desired must be between min and max")
		if scaling["scale_down_threshold"] >= scaling["scale_up_threshold"]:
			errors.append("auto_scaling.scale_down_threshold must be below scale_up_threshold")
		return errors

	def _setup(self) -> None:
		p = self.params
		self.instance_type: str = p["instance_type"]
		self.burstable = any(self.instance_type.startswith(prefix) for prefix in p["burstable_prefixes"])
		self.cpu_credits = float(p["initial_credits"]) if self.burstable else 0.0
		self.scaling = {**self.SCALING_DEFAULTS, **(p.get("auto_scaling") or {})}
		self.instances = int(self.scaling["desired"])
		self._last_scale_tick = None
		self.interrupted_until = -1
		self.ticks_running = 0

	# ------------------------------------------------------------------ per tick

	def effective_capacity(self) -> float:
		return self.capacity * self.instances

	def _begin_tick(self) -> None:
		self.ticks_running += 1
		if self.params["spot"] and not self._outage_active():
			if self.rng.random() < self.params["spot_interruption_probability"]:
				self.interrupted_until = self.tick + int(self.params["spot_recovery_ticks"])
				logger.info(f"{self.id}: spot capacity reclaimed until tick {self.interrupted_until}")

	def _outage_active(self) -> bool:
		return self.tick < self.interrupted_until

	@property
	def utilization(self) -> float:
		return min(100.0, self.load * 100)

	def _credit_factor(self) -> float:
		if not self.burstable:
			return 1.0
		baseline = self.params["baseline_utilization"]
		if self.utilization <= baseline:
			return 1.0
		if self.cpu_credits <= 0:
			return 1 + (self.load - baseline / 100) * 3
		return 0.8

	def _handle(self, request: Request, latency_ms: float) -> Tuple[float, RequestStatus]:
		latency = latency_ms * self._credit_factor()
		if self.params["enhanced_networking"]:
			latency *= 0.9
		latency *= PLACEMENT_FACTORS[self.params["placement"]]
		return latency, RequestStatus.PROCESSED

	def _end_tick(self, result) -> None:
		self._update_credits()
		if self.scaling["enabled"]:
			self._autoscale()

	def _update_credits(self) -> None:
		if not self.burstable:
			return
		baseline = self.params["baseline_utilization"]
		if self.utilization > baseline:
			self.cpu_credits = max(0.0, self.cpu_credits - (self.utilization - baseline) / 100)
		else:
			self.cpu_credits = min(self.params["max_credits"], self.cpu_credits + self.params["credit_earn_rate"])

	def _autoscale(self) -> None:
		s = self.scaling
		if self._last_scale_tick is not None and self.tick - self._last_scale_tick < s["cooldown_ticks"]:
			return
		target = self.instances
		if self.utilization > s["scale_up_threshold"] and self.instances < s["max"]:
			target += 1
		elif self.utilization < s["scale_down_threshold"] and self.instances > s["min"]:
			target -= 1
		if target != self.instances:
			logger.info(f"{self.id}: scaling {self.instances} -> {target} instances at {self.utilization:.0f}% utilization")
			self.instances = target
			self._last_scale_tick = self.tick

	# ------------------------------------------------------------------ cost

	def _cost_addons(self) -> Dict[str, float]:
		p = self.params
		hourly = p["instance_prices"][self.instance_type]
		instances = hourly / 60 * self.instances
		terms = {
			"instances": instances,
			"storage": p["storage_prices"][p["volume_type"]] * p["volume_size_gb"] / MINUTES_PER_MONTH,
			"data_transfer": p["data_transfer_rate"] * self.metrics.requests_per_second,
		}
		if p["volume_type"] in p["provisioned_iops_types"]:
			terms["iops"] = 0.065 * p["iops"] / MINUTES_PER_MONTH
		if p["tenancy"] != "default":
			terms["dedicated_tenancy"] = instances * 0.1
		if p["spot"]:
			terms["spot_discount"] = -instances * 0.7
		elif p["reserved"]:
			factor = 0.6 if p["reserved_term_months"] >= 36 else 0.75
			terms["reserved_discount"] = -instances * (1 - factor)
		if "sustained_use_max_discount" in p and not p["spot"]:
			ramp = min(1.0, self.ticks_running / p["sustained_use_ramp_ticks"])
			terms["sustained_use_discount"] = -instances * p["sustained_use_max_discount"] * ramp
		if p["hybrid_benefit"] and "hybrid_benefit_discount" in p:
			terms["hybrid_benefit_discount"] = -instances * p["hybrid_benefit_discount"]
		return terms

	def _extension_summary(self) -> Dict[str, Any]:
		return {
			"instance_type": self.instance_type,
			"instances": self.instances,
			"burstable": self.burstable,
			"cpu_credits": round(self.cpu_credits, 2),
			"interrupted": self._outage_active(),
		}
