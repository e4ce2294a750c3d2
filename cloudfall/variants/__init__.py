"""Service variants keyed by (provider, service type)."""

from __future__ import annotations

import random
from typing import Dict, List, Optional, Tuple, Type

from cloudfall.config import Provider, ServiceConfig, ServiceType, parse_provider, parse_service_type
from cloudfall.errors import ConfigurationError
from cloudfall.variants import cache, compute, database, firewall, load_balancer, queue
from cloudfall.variants.base import Health, ProcessResult, ProviderProfile, ServiceVariant

VariantEntry = Tuple[Type[ServiceVariant], ProviderProfile]

_CLASSES: Dict[ServiceType, Tuple[Type[ServiceVariant], Dict[Provider, ProviderProfile]]] = {
	ServiceType.LOAD_BALANCER: (load_balancer.LoadBalancerVariant, load_balancer.PROFILES),
	ServiceType.COMPUTE: (compute.ComputeVariant, compute.PROFILES),
	ServiceType.CACHE: (cache.CacheVariant, cache.PROFILES),
	ServiceType.DATABASE: (database.DatabaseVariant, database.PROFILES),
	ServiceType.QUEUE: (queue.QueueVariant, queue.PROFILES),
	ServiceType.WAF: (firewall.FirewallVariant, firewall.PROFILES),
}

VARIANTS: Dict[Tuple[Provider, ServiceType], VariantEntry] = {
	(provider, stype): (cls, profiles[provider])
	for stype, (cls, profiles) in _CLASSES.items()
	for provider in Provider
}


def register_variant(provider: Provider, service_type: ServiceType, cls: Type[ServiceVariant], profile: ProviderProfile) -> None:
	"""Add or replace the model used for ``(provider, service_type)``."""
	VARIANTS[(provider, service_type)] = (cls, profile)


def validate(config: ServiceConfig) -> List[str]:
	provider = parse_provider(config.provider)
	stype = parse_service_type(config.service_type)
	if provider is None or stype is None or (provider, stype) not in VARIANTS:
		errors = config.validate()
		if provider is not None and stype is not None:
			errors.append(f"no {stype.value} variant for provider {provider.value}")
		return errors
	cls, profile = VARIANTS[(provider, stype)]
	return cls.validate_config(config, profile)


def create_variant(
	config: ServiceConfig,
	rng: Optional[random.Random] = None,
	service_id: Optional[str] = None,
) -> ServiceVariant:
	"""Validate ``config`` and build its variant; raises ``ConfigurationError``."""
	errors = validate(config)
	if errors:
		raise ConfigurationError(errors)
	cls, profile = VARIANTS[(parse_provider(config.provider), parse_service_type(config.service_type))]
	return cls(config, profile, rng=rng, service_id=service_id)


__all__ = [
	"Health",
	"ProcessResult",
	"ProviderProfile",
	"ServiceVariant",
	"VARIANTS",
	"create_variant",
	"register_variant",
	"validate",
]
