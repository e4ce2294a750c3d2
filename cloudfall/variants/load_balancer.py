"""Layer 7 load balancers: ALB, Cloud Load Balancing and Application Gateway."""

from __future__ import annotations

import ipaddress
import math
import re
from collections import Counter
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Tuple

from cloudfall.config import Provider, ServiceType, is_number
from cloudfall.request import Request, RequestStatus
from cloudfall.variants.base import ProviderProfile, ServiceVariant

SCHEMES = ("internet-facing", "internal")
IP_ADDRESS_TYPES = ("ipv4", "dualstack")
MAX_SESSIONS = 10000


def _profile(provider: Provider, product: str, base_cost: float, hourly: float, capacity_unit: float) -> ProviderProfile:
	return ProviderProfile(
		provider=provider,
		product=product,
		capacity=1000,
		base_cost=base_cost,
		base_latency_ms=2,
		latency_multiplier=0.5,
		degradation_threshold=0.9,
		failure_threshold=1.5,
		params=MappingProxyType({
			"hourly_rate": hourly,
			"capacity_unit_rate": capacity_unit,
		}),
	)


PROFILES = {
	Provider.AWS: _profile(Provider.AWS, "Application Load Balancer", 0.025, 0.0225, 0.008),
	Provider.GCP: _profile(Provider.GCP, "Cloud Load Balancing", 0.025, 0.025, 0.008),
	Provider.AZURE: _profile(Provider.AZURE, "Application Gateway", 0.03, 0.0246, 0.0080),
}


class LoadBalancerVariant(ServiceVariant):
	"""Routes requests to target groups by path, host and header rules.

	Params:
		routing_rules: ``[{"priority", "conditions": {"path", "host", "headers"}, "target_group"}]``;
			the first matching rule in priority order wins.
		target_groups: ``[{"name", "targets": [{"id", "provider", "zone"}]}]``
		sticky_sessions: pin clients to a session affinity hash
		ssl_certificate: terminate TLS at the balancer (+2 ms)
		scheme: ``internal`` balancers drop requests from public addresses
		ip_address_type: ``ipv4`` listeners drop IPv6 clients; ``dualstack`` takes both
	"""

	service_type = ServiceType.LOAD_BALANCER
	PARAM_DEFAULTS = MappingProxyType({
		"scheme": "internet-facing",
		"ip_address_type": "ipv4",
		"routing_rules": [],
		"target_groups": [{"name": "default", "targets": []}],
		"sticky_sessions": False,
		"cross_zone": True,
		"ssl_certificate": None,
		"health_check": {"enabled": True, "interval": 30},
		"integration_bonus": 0.1,
		"requests_per_capacity_unit": 25,
	})

	@classmethod
	def validate_params(cls, params: Dict[str, Any], profile: ProviderProfile) -> List[str]:
		errors = super().validate_params(params, profile)
		if params.get("scheme") not in SCHEMES:
			errors.append(f"scheme must be one of {', '.join(SCHEMES)}")
		if params.get("ip_address_type") not in IP_ADDRESS_TYPES:
			errors.append(f"ip_address_type must be one of {', '.join(IP_ADDRESS_TYPES)}")
		if params.get("requests_per_capacity_unit", 25) <= 0:
			errors.append("requests_per_capacity_unit must be greater than 0")
		interval = (params.get("health_check") or {}).get("interval", 30)
		if not isinstance(interval, (int, float)) or not 5 <= interval <= 300:
			errors.append("health_check.interval must be between 5 and 300")
		groups = params.get("target_groups") or []
		if not groups:
			errors.append("at least one target group is required")
		names = set()
		for group in groups:
			if not isinstance(group, dict) or not isinstance(group.get("name"), str) or not group["name"]:
				errors.append(f"target group needs a name (got {group!r})")
				continue
			names.add(group["name"])
			targets = group.get("targets", [])
			if not isinstance(targets, list) or not all(isinstance(t, dict) for t in targets):
				errors.append(f"target group {group['name']!r}: targets must be a list of mappings")
		for rule in params.get("routing_rules") or []:
			if not isinstance(rule, dict):
				errors.append(f"routing rule must be a mapping (got {rule!r})")
				continue
			if not is_number(rule.get("priority", 0)):
				errors.append(f"routing rule priority must be a number (got {rule.get('priority')!r})")
			if rule.get("target_group") not in names:
				errors.append(f"routing rule targets unknown group {rule.get('target_group')!r}")
			conditions = rule.get("conditions") or {}
			if not isinstance(conditions, dict):
				errors.append("routing rule conditions must be a mapping")
				continue
			patterns = [(key, conditions.get(key)) for key in ("path", "host")]
			headers = conditions.get("headers") or {}
			if isinstance(headers, dict) and all(isinstance(name, str) for name in headers):
				patterns.extend((f"header {name!r}", pattern) for name, pattern in headers.items())
			else:
				errors.append("routing rule headers must map header names to patterns")
			for key, pattern in patterns:
				if pattern is None:
					continue
				try:
					re.compile(pattern)
				except (re.error, TypeError) as e:
					errors.append(f"invalid {key} pattern {pattern!r}: {e}")
		return errors

	def _setup(self) -> None:
		p = self.params
		self.rules = sorted(p["routing_rules"], key=lambda r: r.get("priority", 0))
		self.target_groups: Dict[str, Dict[str, Any]] = {
			g["name"]: {"targets": list(g.get("targets", [])), "healthy_targets": len(g.get("targets", []))}
			for g in p["target_groups"]
		}
		self.default_group = p["target_groups"][0]["name"]
		self.routed: Counter = Counter()
		self.refused = 0
		self.sessions: Dict[str, int] = {}
		self._zones = {
			t.get("zone") for g in self.target_groups.values() for t in g["targets"] if t.get("zone")
		}

	def has_same_provider_targets(self) -> bool:
		return any(
			t.get("provider") == self.provider.value
			for g in self.target_groups.values()
			for t in g["targets"]
		)

	def accepts(self, request: Request) -> bool:
		"""Internal balancers take private sources only; IPv4 listeners refuse IPv6 clients."""
		try:
			address = ipaddress.ip_address(request.client_ip)
		except ValueError:
			# No client address means the request came from an upstream hop
			return True
		if address.version == 6 and self.params["ip_address_type"] == "ipv4":
			return False
		return self.params["scheme"] != "internal" or address.is_private

	def match_rule(self, request: Request) -> Optional[Dict[str, Any]]:
		for rule in self.rules:
			cond = rule.get("conditions") or {}
			if cond.get("path") and not re.search(cond["path"], request.path):
				continue
			if cond.get("host") and not re.search(cond["host"], request.headers.get("host", "")):
				continue
			headers = cond.get("headers") or {}
			if any(not re.search(pattern, request.headers.get(name.lower(), "")) for name, pattern in headers.items()):
				continue
			return rule
		return None

	@staticmethod
	def session_affinity(key: str) -> int:
		"""31-based string hash folded to a signed 32-bit value."""
		h = 0
		for ch in key:
			h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
		return h - (1 << 32) if h >= (1 << 31) else h

	def _begin_tick(self) -> None:
		check = self.params["health_check"]
		if check.get("enabled", True) and self.tick % int(check.get("interval", 30)) == 0:
			ratio = 0.8 if self.load > 0.8 else 0.95
			for group in self.target_groups.values():
				group["healthy_targets"] = math.floor(len(group["targets"]) * ratio)

	def _handle(self, request: Request, latency_ms: float) -> Tuple[float, RequestStatus]:
		if not self.accepts(request):
			self.refused += 1
			return latency_ms, RequestStatus.DROPPED
		rule = self.match_rule(request)
		self.routed[rule["target_group"] if rule else self.default_group] += 1
		if self.params["sticky_sessions"]:
			key = request.headers.get("cookie") or request.client_ip or "default"
			if key in self.sessions or len(self.sessions) < MAX_SESSIONS:
				self.sessions[key] = self.session_affinity(key)

		latency = latency_ms
		if self.has_same_provider_targets():
			latency *= 1 - self.params["integration_bonus"]
		if self.params["cross_zone"] and len(self._zones) > 1:
			latency += 1
		if self.params["ssl_certificate"]:
			latency += 2
		return latency, RequestStatus.PROCESSED

	def _cost_addons(self) -> Dict[str, float]:
		p = self.params
		per_minute = self.metrics.requests_per_second * 60
		units = math.ceil(per_minute / p["requests_per_capacity_unit"])
		terms = {
			"hourly": p["hourly_rate"] / 60,
			"capacity_units": units * p["capacity_unit_rate"] / 60,
		}
		if p["ssl_certificate"]:
			terms["ssl"] = 0.001
		if p["cross_zone"]:
			terms["cross_zone"] = 0.002
		return terms

	def _extension_summary(self) -> Dict[str, Any]:
		return {
			"routed": dict(self.routed),
			"target_groups": {
				name: {"targets": len(g["targets"]), "healthy_targets": g["healthy_targets"]}
				for name, g in self.target_groups.items()
			},
			"sticky_sessions": len(self.sessions),
			"scheme": self.params["scheme"],
			"ip_address_type": self.params["ip_address_type"],
			"refused": self.refused,
		}
