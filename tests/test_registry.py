import random
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from cloudfall.config import Provider, ServiceConfig
from cloudfall.errors import ConfigurationError, UnknownServiceError
from cloudfall.registry import EdgeFirstRouter, ServiceRegistry
from cloudfall.request import Request, RequestKind, RequestStatus


def batch(n):
    return [Request(id=f"r{i}", kind=RequestKind.USER, source="organic") for i in range(n)]


@pytest.fixture
def registry():
    return ServiceRegistry(rng=random.Random(3))


def test_deploy_assigns_readable_ids(registry):
    a = registry.deploy(ServiceConfig("aws", "compute"))
    b = registry.deploy(ServiceConfig("gcp", "cache"))

    assert a.id == "aws-compute-1"
    assert b.id == "gcp-cache-2"
    assert len(registry) == 2
    assert "aws-compute-1" in registry


def test_invalid_deploy_leaves_registry_untouched(registry):
    with pytest.raises(ConfigurationError):
        registry.deploy(ServiceConfig("aws", "compute", capacity=0))
    assert len(registry) == 0


def test_remove_and_lookup(registry):
    svc = registry.deploy(ServiceConfig("azure", "queue"))

    assert registry.get(svc.id) is svc
    assert registry.remove(svc.id) is True
    assert registry.remove(svc.id) is False
    with pytest.raises(UnknownServiceError):
        registry.get(svc.id)


def test_no_services_drops_everything(registry):
    result = registry.process(batch(25), tick=1)

    assert result.offered == 25
    assert len(result.dropped) == 25
    assert all(r.status is RequestStatus.DROPPED for r in result.dropped)
    assert result.average_latency_ms == 0.0


def test_round_robin_spreads_requests(registry):
    first = registry.deploy(ServiceConfig("aws", "compute"))
    second = registry.deploy(ServiceConfig("gcp", "compute"))
    batches = registry.route(batch(5))

    assert [r.id for r in batches[first.id]] == ["r0", "r2", "r4"]
    assert [r.id for r in batches[second.id]] == ["r1", "r3"]


def test_process_aggregates_and_conserves(registry):
    registry.deploy(ServiceConfig("aws", "compute"))
    registry.deploy(ServiceConfig("aws", "database"))
    result = registry.process(batch(300), tick=1)

    assert len(result.processed) + len(result.dropped) + len(result.blocked) == 300
    assert result.cost == pytest.approx(registry.total_cost())
    assert result.average_latency_ms > 0


def test_provider_sections_are_recomputed(registry):
    aws = registry.deploy(ServiceConfig("aws", "compute"))
    registry.deploy(ServiceConfig("azure", "cache"))
    registry.process(batch(10), tick=1)

    sections = registry.provider_sections()
    assert sections[Provider.AWS].service_ids == (aws.id,)
    assert sections[Provider.GCP].service_ids == ()
    assert sections[Provider.AWS].total_cost == pytest.approx(aws.cost())

    registry.remove(aws.id)
    assert registry.provider_sections()[Provider.AWS].total_cost == 0.0
    summary = registry.cost_summary()
    assert summary.total == pytest.approx(sum(summary.by_provider.values()))


def test_health_summary_counts(registry):
    small = registry.deploy(ServiceConfig("aws", "compute", capacity=1))
    registry.deploy(ServiceConfig("aws", "compute"))
    registry.process(batch(6), tick=1)

    health = registry.health_summary()
    assert health.total == 2
    assert health.failed == 1
    assert health.healthy == 1
    assert small.health.value == "failed"


def test_edge_first_router_sends_traffic_to_edge():
    registry = ServiceRegistry(rng=random.Random(1), router=EdgeFirstRouter())
    waf = registry.deploy(ServiceConfig("aws", "waf", params={"managed_rule_groups": []}))
    compute = registry.deploy(ServiceConfig("aws", "compute"))
    batches = registry.route(batch(4))

    assert len(batches[waf.id]) == 4
    assert batches[compute.id] == []


def test_reset_clears_services_and_ids(registry):
    registry.deploy(ServiceConfig("aws", "compute"))
    registry.reset()
    assert len(registry) == 0
    assert registry.deploy(ServiceConfig("aws", "compute")).id == "aws-compute-1"
