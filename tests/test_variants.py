import random
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from cloudfall.config import Provider, ServiceConfig, ServiceType
from cloudfall.errors import ConfigurationError
from cloudfall.request import Request, RequestKind, RequestStatus
from cloudfall.variants import VARIANTS, create_variant, validate
from cloudfall.variants.base import Health
from cloudfall.variants.queue import FIFO_GROUP_THROUGHPUT


def make_requests(n, path="/", method="GET", **attributes):
    return [
        Request(id=f"r{i}", kind=RequestKind.USER, source="organic", path=path, method=method,
                client_ip=f"10.0.{i // 250}.{i % 250 + 1}", attributes=attributes)
        for i in range(n)
    ]


def deploy(provider, service_type, seed=7, **kwargs):
    config = ServiceConfig(provider=provider, service_type=service_type, **kwargs)
    return create_variant(config, rng=random.Random(seed), service_id=f"{provider}-{service_type}-1")


@pytest.fixture
def compute():
    return deploy("aws", "compute")


def test_every_provider_has_every_service_type():
    for provider in Provider:
        for stype in ServiceType:
            assert (provider, stype) in VARIANTS


def test_compute_at_capacity_stays_healthy(compute):
    result = compute.process(make_requests(500), tick=1)

    assert compute.health is Health.HEALTHY
    assert len(result.dropped) == 0
    assert len(result.processed) == 500
    assert all(r.status is RequestStatus.PROCESSED for r in result.processed)
    assert all(r.hops[-1].service_id == compute.id for r in result.processed)


def test_compute_past_failure_threshold_drops_everything(compute):
    result = compute.process(make_requests(700), tick=1)

    assert compute.load == pytest.approx(1.4)
    assert compute.health is Health.FAILED
    assert len(result.dropped) == 700
    assert not result.processed
    assert all(r.status is RequestStatus.DROPPED for r in result.dropped)


def test_compute_degrades_between_thresholds():
    svc = deploy("gcp", "compute", capacity=100)
    result = svc.process(make_requests(120), tick=1)

    assert svc.health is Health.DEGRADED
    assert len(result.processed) == 120


def test_latency_follows_load_curve(compute):
    compute.load = 1.0
    # 5 * (1 + (1.0 * 1.2)^2) = 12.2
    assert compute.base_latency() == 12
    compute.load = 0.0
    assert compute.base_latency() == 5


def test_outcomes_conserve_offered_requests():
    for stype in ServiceType:
        svc = deploy("azure", stype.value)
        result = svc.process(make_requests(250), tick=1)
        assert len(result.processed) + len(result.dropped) + len(result.blocked) == 250


def test_cost_is_sum_of_breakdown(compute):
    compute.process(make_requests(400), tick=1)
    breakdown = compute.cost_breakdown()

    assert set(breakdown) >= {"base", "instances", "storage", "data_transfer"}
    assert compute.cost() == pytest.approx(sum(breakdown.values()))
    # load 0.8 scales the base term by 1 + (0.8 - 0.5)
    assert breakdown["base"] == pytest.approx(compute.base_cost * 1.3)


def test_config_errors_are_collected():
    config = ServiceConfig(provider="oracle", service_type="mainframe", capacity=-5, base_cost=-1)
    errors = validate(config)

    assert len(errors) == 4
    with pytest.raises(ConfigurationError) as exc:
        create_variant(config)
    assert exc.value.violations == errors


def test_request_defaults_are_read_only_mappings():
    first = Request(id="a", kind=RequestKind.USER, source="organic")
    second = Request(id="b", kind=RequestKind.USER, source="organic")

    assert dict(first.headers) == {}
    assert dict(second.attributes) == {}
    with pytest.raises(TypeError):
        first.headers["host"] = "shop.example.com"


@pytest.mark.parametrize("service_type, params", [
    ("compute", {"auto_scaling": {"min": "two"}}),
    ("compute", {"latency_base_ms": "fast"}),
    ("loadbalancer", {"target_groups": [{"targets": []}]}),
    ("loadbalancer", {"routing_rules": ["/api"]}),
    ("cache", {"port": "6379"}),
    ("cache", {"replicas_per_group": None}),
    ("database", {"read_replicas": "two"}),
    ("queue", {"max_message_size": "big"}),
    ("queue", {"dead_letter_queue": {"enabled": True, "max_receive_count": "3"}}),
])
def test_malformed_params_are_reported_as_violations(service_type, params):
    config = ServiceConfig("aws", service_type, params=params)
    errors = validate(config)

    assert errors
    with pytest.raises(ConfigurationError) as exc:
        create_variant(config)
    assert exc.value.violations == errors


def test_from_dict_reports_non_mapping_params():
    config = ServiceConfig.from_dict({"provider": "aws", "type": "compute", "params": ["spot"]})
    assert validate(config) == ["params must be a mapping"]


def test_threshold_order_is_validated():
    with pytest.raises(ConfigurationError) as exc:
        deploy("aws", "compute", params={"degradation_threshold": 2.0, "failure_threshold": 1.5})
    assert "degradation_threshold must not exceed failure_threshold" in exc.value.violations


def test_from_dict_accepts_type_alias_and_loose_params():
    config = ServiceConfig.from_dict({"provider": "AWS", "type": "load_balancer", "sticky_sessions": True})
    svc = create_variant(config)

    assert svc.service_type is ServiceType.LOAD_BALANCER
    assert svc.params["sticky_sessions"] is True


# ---------------------------------------------------------------------- compute


def test_compute_rejects_spot_and_reserved():
    errors = validate(ServiceConfig("aws", "compute", params={"spot": True, "reserved": True, "instance_type": "x1"}))
    assert "an instance cannot be both spot and reserved" in errors
    assert any("unknown instance_type" in e for e in errors)


def test_compute_scales_out_under_load():
    svc = deploy("aws", "compute", params={"auto_scaling": {"enabled": True, "cooldown_ticks": 0, "max": 3}})
    svc.process(make_requests(450), tick=1)
    assert svc.instances == 2
    assert svc.effective_capacity() == 1000

    svc.process(make_requests(100), tick=2)
    assert svc.instances == 1


def test_burstable_credits_drain_above_baseline(compute):
    before = compute.cpu_credits
    compute.process(make_requests(500), tick=1)
    assert compute.cpu_credits == pytest.approx(before - 0.8)


def test_spot_interruption_drops_traffic():
    svc = deploy("aws", "compute", params={"spot": True, "spot_interruption_probability": 1.0, "spot_recovery_ticks": 2})
    result = svc.process(make_requests(10), tick=1)

    assert len(result.dropped) == 10
    assert svc.cost_breakdown()["spot_discount"] < 0


# ---------------------------------------------------------------------- load balancer


def test_load_balancer_routes_by_path():
    svc = deploy("aws", "loadbalancer", params={
        "target_groups": [{"name": "web", "targets": []}, {"name": "api", "targets": []}],
        "routing_rules": [{"priority": 1, "conditions": {"path": "^/api"}, "target_group": "api"}],
    })
    svc.process(make_requests(3, path="/api/search") + make_requests(2, path="/"), tick=1)

    assert svc.routed == {"api": 3, "web": 2}


def test_load_balancer_rejects_unknown_target_group():
    errors = validate(ServiceConfig("gcp", "loadbalancer", params={
        "routing_rules": [{"priority": 1, "conditions": {"path": "/x"}, "target_group": "missing"}],
    }))
    assert errors == ["routing rule targets unknown group 'missing'"]


def test_session_affinity_hash_is_signed_32_bit():
    from cloudfall.variants.load_balancer import LoadBalancerVariant

    assert LoadBalancerVariant.session_affinity("a") == 97
    assert LoadBalancerVariant.session_affinity("") == 0
    assert -(1 << 31) <= LoadBalancerVariant.session_affinity("x" * 50) < (1 << 31)


def test_internal_load_balancer_refuses_public_clients():
    svc = deploy("aws", "loadbalancer", params={"scheme": "internal"})
    public = Request(id="public", kind=RequestKind.USER, source="organic", client_ip="8.8.8.8")
    result = svc.process(make_requests(2) + [public], tick=1)

    assert len(result.processed) == 2
    assert [r.id for r in result.dropped] == ["public"]
    assert svc.snapshot()["extension"]["refused"] == 1


def test_ipv4_listener_refuses_ipv6_clients():
    client = Request(id="v6", kind=RequestKind.USER, source="organic", client_ip="2001:4860:4860::8888")
    ipv4 = deploy("gcp", "loadbalancer")
    dualstack = deploy("gcp", "loadbalancer", params={"ip_address_type": "dualstack"})

    assert len(ipv4.process([client], tick=1).dropped) == 1
    assert len(dualstack.process([client], tick=1).processed) == 1


# ---------------------------------------------------------------------- cache


def test_cache_populates_on_miss_then_hits():
    svc = deploy("aws", "cache")
    svc.process(make_requests(1, path="/products"), tick=1)
    svc.process(make_requests(1, path="/products"), tick=2)

    assert svc.stats["misses"] == 1
    assert svc.stats["hits"] == 1
    assert svc.hit_rate == pytest.approx(50.0)


def test_cache_lru_eviction():
    svc = deploy("gcp", "cache")
    svc.max_entries = 2
    svc.set("a")
    svc.set("b")
    svc.get("a")
    svc.set("c")

    assert list(svc.store) == ["a", "c"]
    assert svc.stats["evictions"] == 1


def test_memcached_cannot_back_up():
    errors = validate(ServiceConfig("aws", "cache", params={"engine": "memcached", "backup_retention_days": 3}))
    assert "memcached does not support backups" in errors


# ---------------------------------------------------------------------- database


def test_database_failover_drops_then_swaps_zones():
    svc = deploy("aws", "database", params={"multi_az": True, "failover_probability": 1.0, "failover_ticks": 3})
    primary = svc.availability_zone

    result = svc.process(make_requests(5), tick=1)
    assert len(result.dropped) == 5
    assert svc.failovers == 1

    svc.params["failover_probability"] = 0.0
    result = svc.process(make_requests(5), tick=4)
    assert len(result.processed) == 5
    assert svc.availability_zone != primary


def test_database_query_type_from_method_or_attribute():
    svc = deploy("azure", "database")
    post = make_requests(1, method="POST")[0]
    explicit = make_requests(1, query="update")[0]

    assert svc.query_type(post) == "INSERT"
    assert svc.query_type(explicit) == "UPDATE"
    assert svc.query_type(make_requests(1)[0]) == "SELECT"


# ---------------------------------------------------------------------- queue


def test_fifo_queue_orders_groups_and_deduplicates():
    svc = deploy("aws", "queue", params={"queue_type": "fifo"})
    assert svc.capacity == 300

    first = svc.send("one", group_id="g1", deduplication_id="d1")
    assert svc.send("again", group_id="g1", deduplication_id="d1") is None
    svc.send("two", group_id="g1", deduplication_id="d2")
    assert svc.send("no group") is None

    received = svc.receive(max_messages=10)
    assert [m.body for m in received] == ["one", "two"]
    assert received[0].id == first
    assert svc.counters["duplicates"] == 1
    assert svc.counters["rejected"] == 1


def test_visibility_timeout_moves_message_to_dead_letters():
    svc = deploy("gcp", "queue", params={
        "visibility_timeout": 2,
        "dead_letter_queue": {"enabled": True, "max_receive_count": 1},
    })
    svc.tick = 1
    svc.send("payload")
    svc.receive()
    assert len(svc.in_flight) == 1

    svc.process([], tick=3)
    assert len(svc.in_flight) == 0
    assert len(svc.dead_letters) == 1
    assert not svc.messages


def test_deleted_message_is_not_redelivered():
    svc = deploy("azure", "queue")
    svc.send("payload")
    message = svc.receive()[0]

    assert svc.delete(message.receipt_handle)
    svc.process([], tick=100)
    assert svc.receive() == []


def test_queue_rejects_oversize_messages():
    svc = deploy("aws", "queue", params={"max_message_size": 1024})
    assert svc.send("x" * 2048) is None
    assert svc.send("small") is not None

    big = Request(id="big", kind=RequestKind.ATTACK, source="ddos", size_kb=300.0)
    result = svc.process([big], tick=1)
    assert len(result.processed) == 1
    assert svc.counters["oversize"] == 2
    assert len(svc.messages) == 1


def test_fifo_throughput_per_message_group():
    svc = deploy("aws", "queue", params={
        "queue_type": "fifo",
        "fifo_throughput_limit": "perMessageGroupId",
        "high_throughput_fifo": True,
    })
    svc.tick = 1
    sent = [svc.send(f"m{i}", group_id="g1") for i in range(FIFO_GROUP_THROUGHPUT + 1)]

    assert sent[-1] is None
    assert svc.counters["throttled"] == 1
    assert svc.send("other", group_id="g2") is not None

    svc.process([], tick=2)
    assert svc.send("again", group_id="g1") is not None


def test_dead_letters_expire_after_retention():
    svc = deploy("gcp", "queue", params={
        "visibility_timeout": 2,
        "message_retention_seconds": 60,
        "dead_letter_queue": {"enabled": True, "max_receive_count": 1},
    })
    svc.tick = 1
    svc.send("payload")
    svc.receive()
    svc.process([], tick=3)
    assert len(svc.dead_letters) == 1

    svc.process([], tick=62)
    assert not svc.dead_letters
    assert svc.counters["expired"] == 1
