import random
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from cloudfall.errors import ConfigurationError
from cloudfall.request import RequestKind
from cloudfall.traffic import TrafficGenerator


@pytest.fixture
def quiet():
    """Generator without attacks so volumes are exact."""
    return TrafficGenerator(rng=random.Random(11), attack_probability=0.0)


def test_time_pattern_is_bounded():
    values = [TrafficGenerator.time_pattern(t) for t in range(240)]
    assert min(values) >= 0.3
    assert max(values) <= 1.0 + 0.7 * 3
    # simulated 10:00 is a peak, 03:00 is quiet
    assert TrafficGenerator.time_pattern(100) > TrafficGenerator.time_pattern(30)


def test_batch_split_between_users_and_bots(quiet):
    requests = quiet.generate(0)
    summary = quiet.history[-1]

    assert len(requests) == summary.total
    assert summary.attacks == 0
    kinds = [r.kind for r in requests]
    assert kinds.count(RequestKind.USER) == summary.users
    assert kinds.count(RequestKind.BOT) == summary.bots
    assert summary.volume == quiet.volume(0)


def test_volume_grows_with_tick(quiet):
    quiet.set_parameters(base_traffic=1000.0)
    pattern = TrafficGenerator.time_pattern
    ratio = quiet.volume(100) / pattern(100) / (quiet.volume(0) / pattern(0))
    assert ratio == pytest.approx(1.02 ** 100, rel=0.01)


def test_volume_never_below_one():
    gen = TrafficGenerator(rng=random.Random(1), base_traffic=0.0, attack_probability=0.0)
    assert gen.volume(5) == 1


def test_spike_multiplies_then_reverts(quiet):
    quiet.set_parameters(growth_rate=0.0)
    normal = quiet.volume(50)
    quiet.trigger_spike(multiplier=4.0, duration_s=2.0)
    assert quiet.volume(50) >= normal * 4 - 1

    quiet.generate(50)
    quiet.generate(51)
    assert quiet.spike is None
    assert quiet.volume(50) == normal


def test_spike_duration_respects_tick_interval():
    gen = TrafficGenerator(rng=random.Random(2), tick_interval_s=0.5, attack_probability=0.0)
    gen.trigger_spike(2.0, duration_s=3.0)
    assert gen.spike.remaining == 6


def test_attack_emits_burst_and_only_one_at_a_time():
    gen = TrafficGenerator(rng=random.Random(5), attack_probability=1.0)
    requests = gen.generate(0)
    attacks = [r for r in requests if r.kind is RequestKind.ATTACK]

    assert 50 <= len(attacks) <= 149
    assert all(r.value < 0 for r in attacks)
    episode = gen.attack
    assert episode is not None and 5 <= episode.duration <= 14

    gen.generate(1)
    if episode.duration > 2:
        assert gen.attack is episode


def test_attack_ends_after_duration():
    gen = TrafficGenerator(rng=random.Random(9), attack_probability=1.0)
    gen.generate(0)
    duration = gen.attack.duration
    gen.set_parameters(attack_probability=0.0)
    for tick in range(1, duration):
        gen.generate(tick)
    assert gen.attack is None


def test_invalid_parameters_are_rejected(quiet):
    with pytest.raises(ConfigurationError) as exc:
        quiet.set_parameters(bot_ratio=1.5, attack_probability=-0.1)
    assert len(exc.value.violations) == 2
    with pytest.raises(ConfigurationError):
        quiet.set_parameters(volume=3)
    with pytest.raises(ConfigurationError):
        quiet.trigger_spike(multiplier=0)


def test_same_seed_same_traffic():
    a = TrafficGenerator(rng=random.Random(42))
    b = TrafficGenerator(rng=random.Random(42))
    for tick in range(20):
        assert [r.id for r in a.generate(tick)] == [r.id for r in b.generate(tick)]


def test_statistics_average_recent_history(quiet):
    assert quiet.statistics()["average_total"] == 0.0
    for tick in range(15):
        quiet.generate(tick)
    stats = quiet.statistics(window=10)
    recent = list(quiet.history)[-10:]
    assert stats["average_total"] == pytest.approx(sum(s.total for s in recent) / 10)
    assert stats["attack_active"] is False
