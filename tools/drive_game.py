#!/usr/bin/env python3
"""
Drive a running CloudFall server over HTTP: deploy a layout, start the clock
and poll snapshots until the game ends or the time limit is reached.
"""

from __future__ import annotations

import argparse
import time
from pathlib import Path

import requests
import yaml


def main() -> None:
    parser = argparse.ArgumentParser(description="CloudFall HTTP driver")
    parser.add_argument("--url", default="http://localhost:8080")
    parser.add_argument("--layout", default="deploy/starter-layout.yaml", type=Path)
    parser.add_argument("--duration", type=float, default=60.0, help="seconds to run")
    parser.add_argument("--poll", type=float, default=1.0, help="seconds between snapshots")
    parser.add_argument("--reset", action="store_true", help="reset the game first")
    args = parser.parse_args()

    base = args.url.rstrip("/")
    session = requests.Session()

    if args.reset:
        session.post(f"{base}/reset", timeout=10).raise_for_status()

    with open(args.layout, "r") as f:
        layout = yaml.safe_load(f) or {}
    for service in layout.get("services", []):
        response = session.post(f"{base}/services", json=service, timeout=10)
        data = response.json()
        if response.status_code == 201:
            print(f"deployed {data['id']} ({data['product']})")
        else:
            print(f"deploy failed ({response.status_code}): {data.get('violations') or data.get('error')}")

    session.post(f"{base}/start", timeout=10).raise_for_status()
    deadline = time.time() + args.duration
    try:
        while time.time() < deadline:
            snap = session.get(f"{base}/snapshot", timeout=10).json()
            m = snap["metrics"]
            print(
                f"[{time.strftime('%H:%M:%S')}] tick={snap['tick']} avail={m['availability']}% "
                f"lat={m['average_latency_ms']}ms rep={m['reputation']} cost={m['total_cost']} "
                f"healthy={snap['health']['healthy']}/{snap['health']['total']}"
            )
            if snap["game_over"]:
                print(f"Game over: {m['reason']}")
                break
            time.sleep(max(0.2, args.poll))
    except KeyboardInterrupt:
        print("Stopping driver")
    finally:
        session.post(f"{base}/pause", timeout=10)


if __name__ == "__main__":
    main()
