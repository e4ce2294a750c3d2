#!/usr/bin/env python3
"""
Run the simulation in-process for a fixed number of ticks.

Prints one JSON line per tick and a final summary line, which makes seeded
runs easy to diff.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from cloudfall.config import load_layout, load_settings
from cloudfall.engine import SimulationEngine
from cloudfall.errors import ConfigurationError

DEFAULT_LAYOUT = Path(__file__).resolve().parents[1] / "deploy" / "starter-layout.yaml"


def main() -> None:
    parser = argparse.ArgumentParser(description="CloudFall headless runner")
    parser.add_argument("--ticks", type=int, default=60)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--settings", default=None, help="simulation settings YAML")
    parser.add_argument("--layout", default=str(DEFAULT_LAYOUT), type=Path, help="services YAML")
    parser.add_argument("--spike-at", type=int, default=None, help="trigger a 5x spike before this tick")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    settings = load_settings(args.settings)
    if args.seed is not None:
        settings.seed = args.seed
    engine = SimulationEngine(settings)

    try:
        for config in load_layout(str(args.layout)):
            engine.deploy_service(config)
    except ConfigurationError as e:
        raise SystemExit(f"Invalid layout {args.layout}: {e}")

    for i in range(1, args.ticks + 1):
        if args.spike_at == i:
            engine.trigger_spike()
        snap = engine.tick()
        if snap is None:
            continue
        m = snap.metrics
        print(json.dumps({
            "tick": snap.tick,
            "availability": round(m.availability, 2),
            "latency_ms": round(m.average_latency_ms, 2),
            "reputation": round(m.reputation, 2),
            "cost": round(m.total_cost, 6),
            "processed": m.processed,
            "dropped": m.dropped,
            "blocked": m.blocked,
            "health": snap.health.to_dict(),
        }))
        if snap.game_over:
            break

    status = engine.status()
    print(json.dumps({
        "summary": {
            "ticks": status["tick"],
            "phase": status["phase"],
            "reason": status["metrics"]["reason"],
            "reputation": status["metrics"]["reputation"],
            "services": status["service_count"],
            "traffic": status["traffic"],
        }
    }))
    sys.exit(1 if engine.is_over else 0)


if __name__ == "__main__":
    main()
