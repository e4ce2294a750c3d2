import sys
import threading
import time
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from cloudfall.clock import TickClock
from cloudfall.config import ServiceConfig, SimulationSettings
from cloudfall.engine import SimulationEngine
from cloudfall.errors import ConfigurationError, EngineBusyError, GameOverError
from cloudfall.events import EventBus, EventType
from cloudfall.metrics import GameOverReason

TICK_ORDER = [
    EventType.TICK_STARTED,
    EventType.TRAFFIC_GENERATED,
    EventType.REQUESTS_PROCESSED,
    EventType.METRICS_UPDATED,
    EventType.RENDER_REQUESTED,
]


@pytest.fixture
def engine():
    eng = SimulationEngine(SimulationSettings(seed=1234, attack_probability=0.0, tick_interval_s=0.01))
    try:
        yield eng
    finally:
        eng.pause()


def deploy_compute(engine, **kwargs):
    return engine.deploy_service(ServiceConfig("aws", "compute", **kwargs))


def test_tick_runs_stages_in_order(engine):
    deploy_compute(engine)
    seen = []
    engine.bus.subscribe(None, lambda e: seen.append(e.type))
    snap = engine.tick()

    assert seen == TICK_ORDER
    assert snap.tick == 1
    assert snap.metrics.availability == 100.0
    assert snap.health.healthy == 1


def test_no_services_means_zero_availability_and_game_over(engine):
    snap = engine.tick()

    assert snap.metrics.availability == 0.0
    assert snap.metrics.processed == 0
    assert snap.metrics.dropped > 0
    assert snap.game_over
    assert engine.metrics.reason is GameOverReason.SLA_BREACH
    assert [e.type for e in engine.bus.recent()][-2:] == [EventType.GAME_OVER, EventType.RENDER_REQUESTED]


def test_ticks_after_game_over_change_nothing(engine):
    engine.tick()
    frozen = engine.snapshot()

    assert engine.tick() is frozen
    assert engine.tick_count == 1
    assert engine.start() is False
    with pytest.raises(GameOverError):
        deploy_compute(engine)
    with pytest.raises(GameOverError):
        engine.trigger_spike()


def test_snapshot_is_immutable(engine):
    deploy_compute(engine)
    snap = engine.tick()

    with pytest.raises(AttributeError):
        snap.tick = 99
    with pytest.raises(TypeError):
        snap.services[0]["load"] = 0
    with pytest.raises(TypeError):
        engine.bus.recent()[-1].data["tick"] = 5


def test_deploy_and_remove_emit_events(engine):
    service = deploy_compute(engine, name="web")
    assert engine.snapshot().sections["aws"].service_ids == (service["id"],)

    assert engine.remove_service(service["id"]) is True
    assert engine.remove_service(service["id"]) is False
    types = [e.type for e in engine.bus.recent()]
    assert types == [EventType.SERVICE_DEPLOYED, EventType.SERVICE_REMOVED]


def test_invalid_deploy_raises_with_violations(engine):
    with pytest.raises(ConfigurationError) as exc:
        engine.deploy_service({"provider": "aws", "type": "compute", "capacity": -1, "tenancy": "shared"})
    assert len(exc.value.violations) == 2
    assert len(engine.registry) == 0


def test_failing_subscriber_does_not_stop_tick(engine):
    deploy_compute(engine)
    received = []

    def broken(event):
        raise RuntimeError("renderer crashed")

    engine.bus.subscribe(EventType.METRICS_UPDATED, broken)
    engine.bus.subscribe(EventType.RENDER_REQUESTED, received.append)
    snap = engine.tick()

    assert snap is not None
    assert len(received) == 1
    assert engine.bus.handler_errors == 1


def test_overlapping_tick_is_skipped(engine):
    deploy_compute(engine)
    holding = threading.Event()
    release = threading.Event()

    def hold_lock():
        with engine._lock:
            holding.set()
            release.wait(5)

    worker = threading.Thread(target=hold_lock)
    worker.start()
    holding.wait(5)
    try:
        assert engine.tick() is None
        assert engine.skipped_ticks == 1
        assert engine.tick_count == 0
    finally:
        release.set()
        worker.join()
    assert engine.tick() is not None


def test_tick_requested_from_a_subscriber_is_skipped(engine):
    deploy_compute(engine)
    nested = []
    engine.bus.subscribe(EventType.TICK_STARTED, lambda e: nested.append(engine.tick()))
    engine.tick()

    assert nested == [None]
    assert engine.tick_count == 1


def test_commands_from_inside_a_tick_are_rejected(engine):
    service = deploy_compute(engine)
    rejected = []

    def meddle(event):
        commands = (
            engine.reset,
            lambda: deploy_compute(engine),
            lambda: engine.remove_service(service["id"]),
            engine.trigger_spike,
        )
        for command in commands:
            try:
                command()
            except EngineBusyError as e:
                rejected.append(e.command)

    engine.bus.subscribe(EventType.TRAFFIC_GENERATED, meddle)
    snap = engine.tick()

    assert rejected == ["reset", "deploy service", "remove service", "trigger spike"]
    assert snap.tick == 1
    assert not snap.game_over
    assert snap.metrics.availability == 100.0
    assert len(engine.registry) == 1
    assert engine.generator.spike is None
    assert engine.bus.handler_errors == 0


def test_reset_clears_everything(engine):
    deploy_compute(engine)
    engine.trigger_spike(3.0, 5.0)
    engine.tick()
    snap = engine.reset()

    assert snap.tick == 0
    assert len(engine.registry) == 0
    assert engine.generator.spike is None
    assert engine.metrics.reputation == 100.0
    assert not engine.running
    assert engine.bus.recent()[-1].type is EventType.GAME_RESET


def test_same_seed_replays_exactly():
    def run():
        eng = SimulationEngine(SimulationSettings(seed=99, attack_probability=0.3))
        eng.deploy_service(ServiceConfig("aws", "waf"))
        eng.deploy_service(ServiceConfig("gcp", "compute"))
        return [eng.tick().metrics for _ in range(10)]

    assert run() == run()


def test_clock_drives_ticks_until_paused(engine):
    deploy_compute(engine, capacity=100000)
    assert engine.start() is True
    assert engine.start() is False

    deadline = time.time() + 5
    while engine.tick_count < 3 and time.time() < deadline:
        time.sleep(0.01)
    assert engine.pause() is True
    stopped_at = engine.tick_count
    time.sleep(0.05)

    assert stopped_at >= 3
    assert engine.tick_count == stopped_at
    assert not engine.snapshot().running


def test_clock_stops_itself_on_game_over(engine):
    engine.start()
    deadline = time.time() + 5
    while engine.running and time.time() < deadline:
        time.sleep(0.01)

    assert not engine.running
    assert engine.is_over
    assert engine.tick_count == 1


def test_status_includes_traffic_statistics(engine):
    deploy_compute(engine)
    engine.tick()
    status = engine.status()

    assert status["service_count"] == 1
    assert status["phase"] == "running"
    assert status["traffic"]["average_total"] > 0


# ---------------------------------------------------------------------- clock and bus


def test_tick_clock_skips_missed_slots():
    calls = []

    def slow():
        calls.append(time.monotonic())
        if len(calls) == 1:
            time.sleep(0.05)

    clock = TickClock(0.01, slow)
    clock.start()
    time.sleep(0.1)
    clock.stop()

    assert clock.skipped_slots >= 3
    assert not clock.running


def test_tick_clock_logs_callback_errors():
    calls = []

    def flaky():
        calls.append(1)
        raise ValueError("boom")

    clock = TickClock(0.01, flaky)
    clock.start()
    time.sleep(0.1)
    clock.stop()
    assert len(calls) >= 2


def test_event_bus_history_and_unsubscribe():
    bus = EventBus(maxlen=3)
    seen = []
    unsubscribe = bus.subscribe(EventType.TICK_STARTED, seen.append)
    for tick in range(5):
        bus.emit(EventType.TICK_STARTED, tick, {"tick": tick})
    unsubscribe()
    bus.emit(EventType.TICK_STARTED, 5)

    assert len(seen) == 5
    assert [e.tick for e in bus.recent()] == [3, 4, 5]
    assert [e.tick for e in bus.recent(since_id=5)] == [5]
    assert bus.recent(limit=1)[0].to_dict()["type"] == "tick_started"
