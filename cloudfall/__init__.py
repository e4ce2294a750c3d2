"""
CloudFall infrastructure simulation package.

Modules:
- request: immutable simulated requests and their hop trail
- config: service configs, simulation settings and YAML loaders
- variants: per-(provider, type) capacity, latency and cost models
- rules: firewall rule engine (managed groups, rate limits, custom rules)
- registry: deployed services, routing and per-tick aggregation
- traffic: synthetic user/bot/attack traffic with spikes
- metrics: availability, reputation and the game-over state machine
- events: lifecycle notifications with bounded history
- clock: fixed-rate tick thread
- engine: tick orchestrator owning all of the above
- api: REST surface for commands, snapshots and events
"""
