"""Score keeping and the running/over state machine."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from cloudfall.registry import TickResult

logger = logging.getLogger(__name__)


class GameOverReason(str, Enum):
    REPUTATION = "reputation"
    SLA_BREACH = "SLA breach"


class GamePhase(str, Enum):
    RUNNING = "running"
    OVER = "over"


@dataclass(frozen=True)
class MetricsSnapshot:
    tick: int = 0
    availability: float = 100.0
    average_latency_ms: float = 0.0
    reputation: float = 100.0
    total_cost: float = 0.0
    processed: int = 0
    dropped: int = 0
    blocked: int = 0
    sla_threshold: float = 90.0
    breach_streak: int = 0
    game_over: bool = False
    reason: Optional[GameOverReason] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["availability"] = round(self.availability, 3)
        data["average_latency_ms"] = round(self.average_latency_ms, 3)
        data["reputation"] = round(self.reputation, 3)
        data["total_cost"] = round(self.total_cost, 6)
        data["reason"] = self.reason.value if self.reason else None
        return data


def availability(processed: int, dropped: int) -> float:
    """Percent of counted requests that were served; 100 when nothing was counted."""
    counted = processed + dropped
    return processed / counted * 100 if counted else 100.0


class GameMetrics:
    """Turns each tick's registry result into scores and decides game over.

    Only reputation and the terminal state outlive a tick. The SLA check
    fires once availability has been under the threshold for
    ``sla_breach_window`` consecutive ticks (1 = the same tick).
    """

    def __init__(
        self,
        sla_threshold: float = 90.0,
        initial_reputation: float = 100.0,
        drop_penalty: float = 0.5,
        block_reward: float = 0.1,
        sla_breach_window: int = 1,
    ) -> None:
        self.sla_threshold = sla_threshold
        self.initial_reputation = initial_reputation
        self.drop_penalty = drop_penalty
        self.block_reward = block_reward
        self.sla_breach_window = max(1, int(sla_breach_window))
        self.reset()

    def reset(self) -> None:
        self.reputation = float(self.initial_reputation)
        self.phase = GamePhase.RUNNING
        self.reason: Optional[GameOverReason] = None
        self.breach_streak = 0
        self.current = MetricsSnapshot(
            reputation=self.reputation,
            sla_threshold=self.sla_threshold,
        )

    @property
    def is_over(self) -> bool:
        return self.phase is GamePhase.OVER

    def update_reputation(self, dropped: int, blocked: int) -> float:
        value = self.reputation - dropped * self.drop_penalty + blocked * self.block_reward
        self.reputation = min(100.0, max(0.0, value))
        return self.reputation

    def update(self, tick: int, result: TickResult, total_cost: float) -> MetricsSnapshot:
        """Score one tick. A finished game is left untouched."""
        if self.is_over:
            logger.warning(f"Ignoring metrics update for tick {tick}: game already over")
            return self.current

        processed, dropped, blocked = len(result.processed), len(result.dropped), len(result.blocked)
        avail = availability(processed, dropped)
        self.update_reputation(dropped, blocked)
        self.breach_streak = self.breach_streak + 1 if avail < self.sla_threshold else 0
        self.current = MetricsSnapshot(
            tick=tick,
            availability=avail,
            average_latency_ms=result.average_latency_ms,
            reputation=self.reputation,
            total_cost=total_cost,
            processed=processed,
            dropped=dropped,
            blocked=blocked,
            sla_threshold=self.sla_threshold,
            breach_streak=self.breach_streak,
        )
        return self.current

    def check_game_over(self) -> Optional[GameOverReason]:
        """Evaluate termination for the latest tick: reputation first, then SLA."""
        if self.is_over:
            return self.reason
        reason = None
        if self.reputation <= 0:
            reason = GameOverReason.REPUTATION
        elif self.breach_streak >= self.sla_breach_window:
            reason = GameOverReason.SLA_BREACH
        if reason is not None:
            self.phase = GamePhase.OVER
            self.reason = reason
            self.current = MetricsSnapshot(**{
                **{k: getattr(self.current, k) for k in self.current.__dataclass_fields__},
                "game_over": True,
                "reason": reason,
            })
            logger.info(
                f"Game over at tick {self.current.tick}: {reason.value} "
                f"(availability={self.current.availability:.1f}%, reputation={self.reputation:.1f})"
            )
        return reason
