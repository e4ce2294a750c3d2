"""Synthetic traffic: diurnal volume, bot share, attack episodes and operator spikes."""

from __future__ import annotations

import logging
import math
import random
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, List, Optional, Tuple

import numpy as np

from cloudfall.errors import ConfigurationError
from cloudfall.request import Request, RequestKind

logger = logging.getLogger(__name__)

TICKS_PER_DAY = 240
PEAK_HOURS = np.array([10.0, 15.0, 20.0])
PEAK_WIDTH = 1.0

USER_SOURCES = (("organic", 0.6), ("campaign", 0.25), ("referral", 0.15))
BOT_SOURCES = (("search_crawler", 0.4), ("monitoring", 0.3), ("scraping", 0.3))
ATTACK_SOURCES = (("ddos", 0.6), ("brute_force", 0.2), ("injection", 0.2))

USER_PATHS = ("/", "/products", "/products/42", "/cart", "/checkout", "/api/search", "/login", "/account")
WRITE_PATHS = ("/cart", "/checkout", "/login")
BOT_PATHS = ("/robots.txt", "/sitemap.xml", "/", "/products", "/health")
ATTACK_PATHS = {
    "ddos": ("/", "/api/search", "/products"),
    "brute_force": ("/login", "/admin", "/wp-login.php"),
    "injection": ("/../../etc/passwd", "/.env", "/admin", "/api/search"),
}
INJECTION_QUERIES = (
    "q=1' or '1'='1",
    "id=1 union select password from users",
    "q=<script>alert(1)</script>",
    "redirect=javascript:alert(1)",
    "file=%00",
)

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/124.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
)
BOT_AGENTS = {
    "search_crawler": "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
    "monitoring": "UptimeRobot/2.0",
    "scraping": "Scrapy/2.11 (+https://scrapy.org) spider",
}
ATTACK_AGENTS = {
    "ddos": "Mozilla/5.0",
    "brute_force": "curl/8.4.0",
    "injection": "sqlmap/1.7",
}
COUNTRIES = ("US", "GB", "DE", "IN", "BR", "JP", "FR", "CA")


@dataclass
class AttackEpisode:
    source: str
    started_tick: int
    duration: int
    remaining: int
    addresses: Tuple[str, ...]


@dataclass
class Spike:
    multiplier: float
    remaining: int


@dataclass(frozen=True)
class TrafficSummary:
    tick: int
    volume: int
    users: int
    bots: int
    attacks: int
    spike_multiplier: float = 1.0
    attack_source: Optional[str] = None

    @property
    def total(self) -> int:
        return self.users + self.bots + self.attacks

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "total": self.total}


@dataclass
class TrafficParameters:
    base_traffic: float = 10.0
    growth_rate: float = 0.02
    attack_probability: float = 0.05
    bot_ratio: float = 0.15

    def validate(self) -> List[str]:
        errors = []
        if self.base_traffic < 0:
            errors.append("base_traffic must be >= 0")
        if self.growth_rate < -1:
            errors.append("growth_rate must be > -1")
        if not 0 <= self.attack_probability <= 1:
            errors.append("attack_probability must be between 0 and 1")
        if not 0 <= self.bot_ratio <= 1:
            errors.append("bot_ratio must be between 0 and 1")
        return errors


class TrafficGenerator:
    """Produces the request batch for each tick.

    Volume is ``base * (1 + growth)^tick * time_pattern(tick) * spike``, split
    into users and bots by ``bot_ratio``. At most one attack episode runs at a
    time; while it lasts it adds 50-149 attack requests per tick.
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        tick_interval_s: float = 1.0,
        history_size: int = 100,
        **parameters: float,
    ) -> None:
        self.rng = rng or random.Random()
        self.tick_interval_s = tick_interval_s
        self.params = TrafficParameters()
        self.set_parameters(**parameters)
        self.attack: Optional[AttackEpisode] = None
        self.spike: Optional[Spike] = None
        self.history: Deque[TrafficSummary] = deque(maxlen=history_size)
        logger.info(
            f"TrafficGenerator initialized: base={self.params.base_traffic}, "
            f"growth={self.params.growth_rate}, bot_ratio={self.params.bot_ratio}"
        )

    def set_parameters(self, **parameters: float) -> None:
        unknown = set(parameters) - set(TrafficParameters.__dataclass_fields__)
        if unknown:
            raise ConfigurationError([f"unknown traffic parameter {name!r}" for name in sorted(unknown)])
        candidate = TrafficParameters(**{**asdict(self.params), **parameters})
        errors = candidate.validate()
        if errors:
            raise ConfigurationError(errors)
        self.params = candidate

    def reset(self) -> None:
        self.attack = None
        self.spike = None
        self.history.clear()

    # ------------------------------------------------------------------ volume

    @staticmethod
    def time_pattern(tick: int) -> float:
        """Between 0.3 and ~1.0, peaking at simulated hours 10, 15 and 20."""
        hour = (tick % TICKS_PER_DAY) / 10
        bells = np.exp(-((hour - PEAK_HOURS) ** 2) / (2 * PEAK_WIDTH ** 2))
        return float(0.3 + 0.7 * bells.sum())

    @property
    def spike_multiplier(self) -> float:
        return self.spike.multiplier if self.spike else 1.0

    def volume(self, tick: int) -> int:
        growth = (1 + self.params.growth_rate) ** tick
        raw = self.params.base_traffic * growth * self.time_pattern(tick) * self.spike_multiplier
        return max(1, int(math.floor(raw + 0.5)))

    def trigger_spike(self, multiplier: float = 5.0, duration_s: float = 10.0) -> None:
        if multiplier <= 0 or duration_s <= 0:
            raise ConfigurationError(["spike multiplier and duration must be greater than 0"])
        ticks = max(1, math.ceil(duration_s / self.tick_interval_s))
        self.spike = Spike(multiplier=float(multiplier), remaining=ticks)
        logger.info(f"Traffic spike x{multiplier} for {ticks} ticks")

    @property
    def attack_active(self) -> bool:
        return self.attack is not None

    # ------------------------------------------------------------------ generation

    def generate(self, tick: int) -> List[Request]:
        volume = self.volume(tick)
        bots = int(math.floor(volume * self.params.bot_ratio + 0.5))
        users = int(math.floor(volume * (1 - self.params.bot_ratio) + 0.5))

        batch: List[Request] = []
        for _ in range(users):
            batch.append(self._user_request(tick))
        for _ in range(bots):
            batch.append(self._bot_request(tick))

        attack_source = None
        attacks = 0
        self._maybe_start_attack(tick)
        if self.attack is not None:
            attack_source = self.attack.source
            attacks = self.rng.randint(50, 149)
            for _ in range(attacks):
                batch.append(self._attack_request(tick, self.attack))
            self.attack.remaining -= 1
            if self.attack.remaining <= 0:
                logger.info(f"Attack {self.attack.source} ended at tick {tick}")
                self.attack = None

        summary = TrafficSummary(
            tick=tick,
            volume=volume,
            users=users,
            bots=bots,
            attacks=attacks,
            spike_multiplier=self.spike_multiplier,
            attack_source=attack_source,
        )
        self.history.append(summary)

        if self.spike is not None:
            self.spike.remaining -= 1
            if self.spike.remaining <= 0:
                logger.info(f"Traffic spike ended at tick {tick}")
                self.spike = None
        logger.debug(f"tick={tick} generated {summary.total} requests")
        return batch

    def _maybe_start_attack(self, tick: int) -> None:
        if self.attack is not None or self.rng.random() >= self.params.attack_probability:
            return
        source = self._weighted(ATTACK_SOURCES)
        duration = int(self.rng.random() * 10) + 5
        addresses = tuple(self._attack_address() for _ in range(20))
        self.attack = AttackEpisode(source, tick, duration, duration, addresses)
        logger.info(f"Attack {source} started at tick {tick}, lasting {duration} ticks")

    def _weighted(self, table: Tuple[Tuple[str, float], ...]) -> str:
        names, weights = zip(*table)
        return self.rng.choices(names, weights=weights)[0]

    def _address(self) -> str:
        r = self.rng
        return f"{r.randint(1, 223)}.{r.randint(0, 255)}.{r.randint(0, 255)}.{r.randint(1, 254)}"

    def _attack_address(self) -> str:
        # Roughly a third of a botnet is on known-bad reputation lists
        if self.rng.random() < 0.3:
            return f"{self.rng.randint(1, 223)}.{self.rng.randint(0, 255)}.123.123"
        return self._address()

    def _user_request(self, tick: int) -> Request:
        source = self._weighted(USER_SOURCES)
        path = self.rng.choice(USER_PATHS)
        query = f"q=item{self.rng.randint(1, 500)}" if path == "/api/search" else ""
        return Request.create(
            RequestKind.USER,
            source,
            self.rng,
            path=path,
            tick=tick,
            method="POST" if path in WRITE_PATHS else "GET",
            query_string=query,
            user_agent=self.rng.choice(USER_AGENTS),
            client_ip=self._address(),
            country=self.rng.choice(COUNTRIES),
            headers={"host": "shop.example.com", "referer": source},
        )

    def _bot_request(self, tick: int) -> Request:
        source = self._weighted(BOT_SOURCES)
        return Request.create(
            RequestKind.BOT,
            source,
            self.rng,
            path=self.rng.choice(BOT_PATHS),
            tick=tick,
            user_agent=BOT_AGENTS[source],
            client_ip=self._address(),
            country=self.rng.choice(COUNTRIES),
            headers={"host": "shop.example.com"},
        )

    def _attack_request(self, tick: int, attack: AttackEpisode) -> Request:
        source = attack.source
        path = self.rng.choice(ATTACK_PATHS[source])
        ip = self.rng.choice(attack.addresses)
        return Request.create(
            RequestKind.ATTACK,
            source,
            self.rng,
            path=path,
            tick=tick,
            method="POST" if source == "brute_force" else "GET",
            query_string=self.rng.choice(INJECTION_QUERIES) if source == "injection" else "",
            body="username=admin&password=guess" if source == "brute_force" else "",
            user_agent=ATTACK_AGENTS[source],
            client_ip=ip,
            country=self.rng.choice(COUNTRIES),
            headers={"host": "shop.example.com", "x-forwarded-for": ip},
        )

    # ------------------------------------------------------------------ stats

    def statistics(self, window: int = 10) -> Dict[str, Any]:
        recent = list(self.history)[-window:]
        if not recent:
            return {
                "average_total": 0.0, "average_users": 0.0, "average_bots": 0.0,
                "average_attacks": 0.0, "attack_active": self.attack_active,
                "spike_multiplier": self.spike_multiplier,
            }
        counts = np.array([[s.total, s.users, s.bots, s.attacks] for s in recent], dtype=float)
        means = counts.mean(axis=0)
        return {
            "average_total": float(means[0]),
            "average_users": float(means[1]),
            "average_bots": float(means[2]),
            "average_attacks": float(means[3]),
            "attack_active": self.attack_active,
            "spike_multiplier": self.spike_multiplier,
        }
