"""Web application firewalls: AWS WAF, Cloud Armor and Front Door WAF."""

from __future__ import annotations

from collections import Counter, deque
from types import MappingProxyType
from typing import Any, Deque, Dict, List, Tuple

from cloudfall.config import Provider, ServiceType
from cloudfall.request import Request, RequestStatus
from cloudfall.rules import Inspection, RuleAction, RuleEngine, RuleType, validate_rules
from cloudfall.variants.base import ProviderProfile, ServiceVariant

MINUTES_PER_MONTH = 43200.0

SCOPES = ("CLOUDFRONT", "REGIONAL")
# Sampled inspections kept for the request log
SAMPLE_HISTORY = 100


def _profile(provider: Provider, product: str, acl: float, group: float, per_million: float) -> ProviderProfile:
	return ProviderProfile(
		provider=provider,
		product=product,
		capacity=25000,
		base_cost=0.60 / MINUTES_PER_MONTH,
		base_latency_ms=2,
		latency_multiplier=0.4,
		degradation_threshold=0.95,
		failure_threshold=2.5,
		params=MappingProxyType({
			"acl_monthly": acl,
			"rule_group_monthly": group,
			"request_rate": per_million,
		}),
	)


PROFILES = {
	Provider.AWS: _profile(Provider.AWS, "AWS WAF", 1.00, 1.00, 0.60),
	Provider.GCP: _profile(Provider.GCP, "Cloud Armor", 5.00, 1.00, 0.75),
	Provider.AZURE: _profile(Provider.AZURE, "Front Door WAF", 5.00, 1.00, 0.60),
}


class FirewallVariant(ServiceVariant):
	"""Inspects each request with a ``RuleEngine``.

	``BLOCK`` dispositions are returned as blocked, never as dropped.
	``CAPTCHA`` and ``CHALLENGE`` pass the request on after recording it.
	"""

	service_type = ServiceType.WAF
	PARAM_DEFAULTS = MappingProxyType({
		"scope": "REGIONAL",
		"default_action": "ALLOW",
		"managed_rule_groups": None,
		"rules": [],
		"ml_capabilities": {},
		"logging": False,
		"sampling_rate": 100,
		"inspect_body": True,
	})

	@classmethod
	def validate_params(cls, params: Dict[str, Any], profile: ProviderProfile) -> List[str]:
		errors = super().validate_params(params, profile)
		if params.get("scope") not in SCOPES:
			errors.append(f"scope must be one of {', '.join(SCOPES)}")
		rate = params.get("sampling_rate")
		if not isinstance(rate, (int, float)) or not 0 <= rate <= 100:
			errors.append("sampling_rate must be between 0 and 100")
		errors.extend(validate_rules(params, profile.provider))
		return errors

	def _setup(self) -> None:
		self.engine = RuleEngine.from_params(self.params, self.provider)
		ml = self.params["ml_capabilities"] or {}
		self.bot_control = bool(ml.get("bot_control"))
		self.fraud_control = bool(ml.get("fraud_control"))
		self.actions: Counter = Counter()
		self.tick_actions: Counter = Counter()
		self.sampled: Deque[Dict[str, Any]] = deque(maxlen=SAMPLE_HISTORY)
		self.logged = 0

	def inspect(self, request: Request) -> Inspection:
		return self.engine.evaluate(request)

	def _begin_tick(self) -> None:
		self.engine.advance(self.tick)
		self.tick_actions = Counter()

	def _handle(self, request: Request, latency_ms: float) -> Tuple[float, RequestStatus]:
		inspection = self.inspect(request)
		self.actions[inspection.action] += 1
		self.tick_actions[inspection.action] += 1
		for match in inspection.matched_rules:
			if match.action is RuleAction.COUNT:
				self.tick_actions[RuleAction.COUNT] += 1

		latency = latency_ms + 0.1 * (len(inspection.matched_rules) + 1)
		if any("Bot" in m.name or "Fraud" in m.name for m in inspection.matched_rules):
			latency *= 1.5
		if self.params["inspect_body"]:
			latency += 1
		if self.params["logging"]:
			latency *= 1.02
			self._log_sample(request, inspection)

		if inspection.action is RuleAction.BLOCK:
			return latency, RequestStatus.BLOCKED
		return latency, RequestStatus.PROCESSED

	def _log_sample(self, request: Request, inspection: Inspection) -> None:
		"""Record ``sampling_rate`` percent of inspected requests in the request log."""
		rate = self.params["sampling_rate"]
		if rate <= 0 or (rate < 100 and self.rng.random() * 100 >= rate):
			return
		self.logged += 1
		self.sampled.append({
			"tick": self.tick,
			"request_id": request.id,
			"client_ip": request.client_ip,
			"path": request.path,
			"action": inspection.action.value,
			"terminating_rule": inspection.terminating_rule,
		})

	def _cost_addons(self) -> Dict[str, float]:
		p = self.params
		managed = sum(1 for r in self.engine.rules if r.rule_type is RuleType.MANAGED)
		inspected = sum(v for k, v in self.tick_actions.items() if k is not RuleAction.COUNT)
		terms = {
			"web_acl": p["acl_monthly"] / MINUTES_PER_MONTH,
			"rule_groups": managed * p["rule_group_monthly"] / MINUTES_PER_MONTH,
			"requests": inspected * p["request_rate"] / 1_000_000,
		}
		if self.bot_control:
			terms["bot_control"] = inspected * 1.00 / 1_000_000
		if self.fraud_control:
			terms["fraud_control"] = inspected * 7.50 / 1_000_000
		captchas = self.tick_actions[RuleAction.CAPTCHA]
		if captchas:
			terms["captcha"] = captchas * 0.40 / 1000
		return terms

	def _extension_summary(self) -> Dict[str, Any]:
		return {
			"default_action": self.engine.default_action.value,
			"rules": len(self.engine.rules),
			"actions": {k.value: v for k, v in self.actions.items()},
			"rule_matches": dict(self.engine.match_counts),
			"logged": self.logged,
			"recent_samples": list(self.sampled)[-5:],
		}
