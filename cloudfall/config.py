"""Deploy configuration objects and simulation settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from cloudfall.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path(__file__).resolve().parents[1] / "deploy" / "simulation.yaml"


class Provider(str, Enum):
    AWS = "aws"
    GCP = "gcp"
    AZURE = "azure"


class ServiceType(str, Enum):
    LOAD_BALANCER = "loadbalancer"
    COMPUTE = "compute"
    CACHE = "cache"
    DATABASE = "database"
    QUEUE = "queue"
    WAF = "waf"


# Provider product names accepted as type aliases
_TYPE_ALIASES = {
    "lb": ServiceType.LOAD_BALANCER,
    "alb": ServiceType.LOAD_BALANCER,
    "load_balancer": ServiceType.LOAD_BALANCER,
    "ec2": ServiceType.COMPUTE,
    "vm": ServiceType.COMPUTE,
    "elasticache": ServiceType.CACHE,
    "memorystore": ServiceType.CACHE,
    "rds": ServiceType.DATABASE,
    "cloudsql": ServiceType.DATABASE,
    "sqs": ServiceType.QUEUE,
    "pubsub": ServiceType.QUEUE,
    "servicebus": ServiceType.QUEUE,
    "firewall": ServiceType.WAF,
    "cloudarmor": ServiceType.WAF,
}


def parse_provider(value: Any) -> Optional[Provider]:
    if isinstance(value, Provider):
        return value
    try:
        return Provider(str(value).lower())
    except ValueError:
        return None


def parse_service_type(value: Any) -> Optional[ServiceType]:
    if isinstance(value, ServiceType):
        return value
    key = str(value).lower()
    if key in _TYPE_ALIASES:
        return _TYPE_ALIASES[key]
    try:
        return ServiceType(key)
    except ValueError:
        return None


@dataclass
class ServiceConfig:
    """Parameters accepted by ``deploy_service``.

    ``provider`` and ``service_type`` may be given as raw strings; unknown
    values are reported by validation rather than at construction so that the
    caller gets the full list of problems in one ``ConfigurationError``.
    ``capacity``/``base_cost`` of ``None`` take the variant's defaults.
    """
    provider: Any
    service_type: Any
    name: str = ""
    capacity: Optional[float] = None
    base_cost: Optional[float] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceConfig":
        if not isinstance(data, dict):
            raise ConfigurationError(["service config must be a mapping"])
        known = {"provider", "type", "service_type", "name", "capacity", "base_cost", "params"}
        raw_params = data.get("params")
        if raw_params is not None and not isinstance(raw_params, dict):
            # Left as-is so validate() reports it
            params: Any = raw_params
        else:
            params = dict(raw_params or {})
        # Anything not recognised at the top level is treated as a variant param
        for key, value in data.items():
            if key not in known and isinstance(params, dict):
                params[key] = value
        return cls(
            provider=data.get("provider"),
            service_type=data.get("service_type", data.get("type")),
            name=str(data.get("name") or ""),
            capacity=data.get("capacity"),
            base_cost=data.get("base_cost"),
            params=params,
        )

    def validate(self) -> List[str]:
        """Common checks shared by every variant. Returns violation messages."""
        errors: List[str] = []
        if parse_provider(self.provider) is None:
            errors.append(
                f"provider must be one of {', '.join(p.value for p in Provider)} (got {self.provider!r})"
            )
        if parse_service_type(self.service_type) is None:
            errors.append(
                f"type must be one of {', '.join(t.value for t in ServiceType)} (got {self.service_type!r})"
            )
        if self.capacity is not None:
            if not is_number(self.capacity) or self.capacity <= 0:
                errors.append(f"capacity must be a number greater than 0 (got {self.capacity!r})")
        if self.base_cost is not None:
            if not is_number(self.base_cost) or self.base_cost < 0:
                errors.append(f"base_cost must be a number >= 0 (got {self.base_cost!r})")
        if not isinstance(self.params, dict):
            errors.append("params must be a mapping")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        provider = parse_provider(self.provider)
        stype = parse_service_type(self.service_type)
        return {
            "provider": provider.value if provider else self.provider,
            "type": stype.value if stype else self.service_type,
            "name": self.name,
            "capacity": self.capacity,
            "base_cost": self.base_cost,
            "params": dict(self.params),
        }


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class SimulationSettings:
    tick_interval_s: float = 1.0
    seed: Optional[int] = None
    sla_threshold: float = 90.0
    # Consecutive breaching ticks before game over; 1 means instantaneous
    sla_breach_window: int = 1
    initial_reputation: float = 100.0
    drop_penalty: float = 0.5
    block_reward: float = 0.1
    base_traffic: float = 10.0
    growth_rate: float = 0.02
    attack_probability: float = 0.05
    bot_ratio: float = 0.15
    event_history: int = 1000

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SimulationSettings":
        data = data or {}
        names = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - names)
        if unknown:
            logger.warning(f"Ignoring unknown simulation settings: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in names})

    def validate(self) -> List[str]:
        errors: List[str] = []
        if self.tick_interval_s <= 0:
            errors.append("tick_interval_s must be greater than 0")
        if not 0 <= self.sla_threshold <= 100:
            errors.append("sla_threshold must be between 0 and 100")
        if self.sla_breach_window < 1:
            errors.append("sla_breach_window must be at least 1")
        if not 0 <= self.initial_reputation <= 100:
            errors.append("initial_reputation must be between 0 and 100")
        if not 0 <= self.attack_probability <= 1:
            errors.append("attack_probability must be between 0 and 1")
        if not 0 <= self.bot_ratio <= 1:
            errors.append("bot_ratio must be between 0 and 1")
        if self.base_traffic < 0:
            errors.append("base_traffic must be >= 0")
        return errors


def load_settings(path: Optional[str] = None) -> SimulationSettings:
    """Load settings from YAML, then apply environment overrides.

    A missing or unreadable file is not fatal: defaults are used and a
    warning is logged. Invalid values raise ``ConfigurationError``.
    """
    path = path or os.getenv("CLOUDFALL_SETTINGS", str(DEFAULT_SETTINGS_PATH))
    data: Dict[str, Any] = {}
    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            logger.info(f"Loaded simulation settings from {path}")
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load simulation settings from {path}: {e}")
            data = {}
    else:
        logger.info(f"Settings file {path} not found, using defaults")

    settings = SimulationSettings.from_dict(data.get("simulation", data))

    seed = os.getenv("CLOUDFALL_SEED")
    if seed:
        settings.seed = int(seed)
    interval = os.getenv("CLOUDFALL_TICK_INTERVAL")
    if interval:
        settings.tick_interval_s = float(interval)

    errors = settings.validate()
    if errors:
        raise ConfigurationError(errors)
    return settings


def load_layout(path: str) -> List[ServiceConfig]:
    """Read a list of service configs (``services:`` key) from a YAML file."""
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    entries = data.get("services", []) if isinstance(data, dict) else data
    return [ServiceConfig.from_dict(entry) for entry in entries]
