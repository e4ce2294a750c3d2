from __future__ import annotations

import random
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple


class RequestKind(str, Enum):
    USER = "user"
    BOT = "bot"
    ATTACK = "attack"


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    DROPPED = "dropped"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class Hop:
    """One service visit: which instance held the request and the latency it added."""
    service_id: str
    latency_ms: int


# (low, span) pairs: value = low + rng.random() * span
_USER_VALUE = {
    "organic": (5.0, 10.0),
    "campaign": (3.0, 8.0),
}
_DEFAULT_USER_VALUE = (2.0, 5.0)
_BOT_VALUE = (0.5, 2.0)
_ATTACK_VALUE = (-1.0, -5.0)

_SIZE_KB = {
    RequestKind.USER: (10.0, 50.0),
    RequestKind.BOT: (5.0, 20.0),
    RequestKind.ATTACK: (200.0, 100.0),
}

_TOLERANCE_MS = {
    RequestKind.USER: (1000.0, 2000.0),
    RequestKind.BOT: (5000.0, 5000.0),
    RequestKind.ATTACK: (50.0, 100.0),
}

_EMPTY: Mapping[str, str] = MappingProxyType({})


@dataclass(frozen=True)
class Request:
    """A single unit of traffic for one tick.

    Requests are never mutated in place. Services hand back new objects via
    ``advance``/``mark`` so no stage keeps a live reference to a request it
    has already passed on.
    """
    id: str
    kind: RequestKind
    source: str
    path: str = "/"
    created_tick: int = 0
    value: float = 0.0
    size_kb: float = 0.0
    latency_tolerance_ms: float = 1000.0
    method: str = "GET"
    query_string: str = ""
    body: str = ""
    user_agent: str = ""
    client_ip: str = ""
    country: str = ""
    headers: Mapping[str, str] = field(default_factory=lambda: _EMPTY)
    # Per-service operation hints (cache op/key, queue op, SQL verb, ...)
    attributes: Mapping[str, str] = field(default_factory=lambda: _EMPTY)
    latency_ms: int = 0
    status: RequestStatus = RequestStatus.PENDING
    hops: Tuple[Hop, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.headers, MappingProxyType):
            object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))
        if not isinstance(self.attributes, MappingProxyType):
            object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @classmethod
    def create(
        cls,
        kind: RequestKind,
        source: str,
        rng: random.Random,
        path: str = "/",
        tick: int = 0,
        **extra,
    ) -> "Request":
        """Build a request with value, size and latency tolerance drawn from ``rng``."""
        if kind is RequestKind.USER:
            low, span = _USER_VALUE.get(source, _DEFAULT_USER_VALUE)
        elif kind is RequestKind.BOT:
            low, span = _BOT_VALUE
        else:
            low, span = _ATTACK_VALUE
        value = low + rng.random() * span
        size_low, size_span = _SIZE_KB[kind]
        tol_low, tol_span = _TOLERANCE_MS[kind]
        return cls(
            id=f"req-{uuid.UUID(int=rng.getrandbits(128)).hex[:12]}",
            kind=kind,
            source=source,
            path=path,
            created_tick=tick,
            value=value,
            size_kb=size_low + rng.random() * size_span,
            latency_tolerance_ms=tol_low + rng.random() * tol_span,
            **extra,
        )

    @property
    def is_malicious(self) -> bool:
        return self.kind is RequestKind.ATTACK

    @property
    def exceeded_tolerance(self) -> bool:
        return self.latency_ms > self.latency_tolerance_ms

    def attribute(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.attributes.get(name, default)

    def advance(self, service_id: str, latency_ms: int) -> "Request":
        """Return a copy that has passed through ``service_id``."""
        latency_ms = max(0, int(latency_ms))
        return replace(
            self,
            latency_ms=self.latency_ms + latency_ms,
            hops=self.hops + (Hop(service_id, latency_ms),),
        )

    def mark(self, status: RequestStatus) -> "Request":
        return replace(self, status=status)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "source": self.source,
            "path": self.path,
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "value": round(self.value, 3),
            "size_kb": round(self.size_kb, 2),
            "hops": [{"service_id": h.service_id, "latency_ms": h.latency_ms} for h in self.hops],
        }
