import random
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from cloudfall.config import Provider, ServiceConfig
from cloudfall.errors import ConfigurationError
from cloudfall.request import Request, RequestKind, RequestStatus
from cloudfall.rules import RuleAction, RuleEngine, validate_rules
from cloudfall.variants import create_variant, validate


def request(path="/", **kwargs):
    kwargs.setdefault("client_ip", "203.0.113.10")
    return Request(id=f"req-{path}", kind=RequestKind.USER, source="organic", path=path, **kwargs)


def admin_rule(priority=10, action="BLOCK"):
    return {
        "name": "block-admin",
        "priority": priority,
        "action": action,
        "conditions": [{"field": "URI", "operator": "STARTS_WITH", "value": "/admin"}],
    }


@pytest.fixture
def waf():
    config = ServiceConfig("aws", "waf", params={
        "default_action": "ALLOW",
        "managed_rule_groups": [],
        "rules": [admin_rule()],
    })
    return create_variant(config, rng=random.Random(1), service_id="aws-waf-1")


def test_custom_block_rule_blocks_admin(waf):
    assert waf.inspect(request("/admin")).action is RuleAction.BLOCK

    result = waf.process([request("/admin")], tick=1)
    assert len(result.blocked) == 1
    assert result.blocked[0].status is RequestStatus.BLOCKED
    assert not result.dropped


def test_unmatched_request_falls_through_to_default(waf):
    inspection = waf.inspect(request("/"))
    assert inspection.action is RuleAction.ALLOW
    assert inspection.terminating_rule is None

    result = waf.process([request("/")], tick=1)
    assert len(result.processed) == 1


def test_count_rule_does_not_terminate():
    engine = RuleEngine.from_params({
        "managed_rule_groups": [],
        "rules": [admin_rule(priority=1, action="COUNT"), admin_rule(priority=2, action="BLOCK")],
    }, Provider.AWS)
    inspection = engine.evaluate(request("/admin/users"))

    assert inspection.action is RuleAction.BLOCK
    assert [m.action for m in inspection.matched_rules] == [RuleAction.COUNT, RuleAction.BLOCK]
    assert inspection.terminating_rule == "custom-2"


def test_lowest_priority_wins():
    engine = RuleEngine.from_params({
        "managed_rule_groups": [],
        "rules": [admin_rule(priority=20, action="BLOCK"), admin_rule(priority=5, action="ALLOW")],
    }, Provider.GCP)
    assert engine.evaluate(request("/admin")).action is RuleAction.ALLOW


def test_default_managed_groups_catch_injection_and_bad_reputation():
    config = ServiceConfig("gcp", "waf")
    waf = create_variant(config, rng=random.Random(1))

    assert waf.inspect(request("/search", query_string="id=1 union select password")).action is RuleAction.BLOCK
    assert waf.inspect(request("/../../etc/passwd")).action is RuleAction.BLOCK
    assert waf.inspect(request("/", client_ip="45.12.123.123")).action is RuleAction.BLOCK
    assert waf.inspect(request("/products")).action is RuleAction.ALLOW


def test_bot_control_only_when_enabled():
    bot = request("/", user_agent="Googlebot/2.1")
    plain = create_variant(ServiceConfig("azure", "waf"))
    guarded = create_variant(ServiceConfig("azure", "waf", params={"ml_capabilities": {"bot_control": True}}))

    assert plain.inspect(bot).action is RuleAction.ALLOW
    assert guarded.inspect(bot).action is RuleAction.BLOCK
    assert "bot_control" in guarded.cost_breakdown()


def test_rate_rule_blocks_after_limit_within_window():
    engine = RuleEngine.from_params({
        "managed_rule_groups": [],
        "rules": [{"type": "RATE_BASED", "priority": 1, "limit": 3, "window": 10}],
    }, Provider.AWS)

    engine.advance(1)
    actions = [engine.evaluate(request("/login")).action for _ in range(4)]
    assert actions == [RuleAction.ALLOW] * 3 + [RuleAction.BLOCK]

    engine.advance(20)
    assert engine.evaluate(request("/login")).action is RuleAction.ALLOW


def test_ip_set_and_geo_rules():
    engine = RuleEngine.from_params({
        "managed_rule_groups": [],
        "rules": [
            {"type": "IP_SET", "priority": 1, "addresses": ["198.51.100.0/24"]},
            {"type": "GEO_MATCH", "priority": 2, "country_codes": ["kp"]},
        ],
    }, Provider.AWS)

    assert engine.evaluate(request("/", client_ip="198.51.100.7")).action is RuleAction.BLOCK
    assert engine.evaluate(request("/", country="KP")).action is RuleAction.BLOCK
    assert engine.evaluate(request("/", country="DE")).action is RuleAction.ALLOW


def test_captcha_passes_request_and_is_billed():
    waf = create_variant(ServiceConfig("aws", "waf", params={
        "managed_rule_groups": [],
        "rules": [admin_rule(action="CAPTCHA")],
    }))
    result = waf.process([request("/admin")], tick=1)

    assert len(result.processed) == 1
    assert waf.cost_breakdown()["captcha"] == pytest.approx(0.40 / 1000)


def test_duplicate_priorities_are_rejected():
    errors = validate(ServiceConfig("aws", "waf", params={
        "managed_rule_groups": [],
        "rules": [admin_rule(priority=3), admin_rule(priority=3)],
    }))
    assert any("priority" in e for e in errors)

    engine = RuleEngine()
    engine.add_rule(RuleEngine.from_params({"managed_rule_groups": [], "rules": [admin_rule()]}, Provider.AWS).rules[0])
    with pytest.raises(ConfigurationError):
        engine.add_rule(RuleEngine.from_params({"managed_rule_groups": [], "rules": [admin_rule()]}, Provider.AWS).rules[0])


def test_invalid_rules_report_every_problem():
    errors = validate_rules({
        "default_action": "MAYBE",
        "managed_rule_groups": ["NotARealGroup"],
        "rules": [{"priority": 1, "action": "EXPLODE", "conditions": [{"field": "URI", "operator": "LIKE", "value": "/"}]}],
    }, Provider.AWS)
    assert len(errors) >= 4


@pytest.mark.parametrize("rule", [
    {**admin_rule(), "priority": "high"},
    {**admin_rule(), "conditions": ["/admin"]},
    {"type": "RATE_BASED", "priority": 5, "limit": "lots"},
    {"type": "RATE_BASED", "priority": 5, "window": 0},
    {"type": "REGEX", "priority": 5, "patterns": [42]},
    {"type": "IP_SET", "priority": 5, "addresses": "10.0.0.0/8"},
])
def test_malformed_rules_are_violations(rule):
    config = ServiceConfig("aws", "waf", params={"managed_rule_groups": [], "rules": [rule]})
    errors = validate(config)

    assert errors
    with pytest.raises(ConfigurationError) as exc:
        create_variant(config)
    assert exc.value.violations == errors


def test_logging_samples_inspected_requests():
    full = create_variant(ServiceConfig("aws", "waf", params={"managed_rule_groups": [], "logging": True}))
    silent = create_variant(ServiceConfig("aws", "waf", params={
        "managed_rule_groups": [],
        "logging": True,
        "sampling_rate": 0,
    }))
    requests = [request(f"/p{i}") for i in range(5)]
    full.process(requests, tick=1)
    silent.process(requests, tick=1)

    assert full.logged == 5
    samples = full.snapshot()["extension"]["recent_samples"]
    assert [s["path"] for s in samples] == [f"/p{i}" for i in range(5)]
    assert samples[0]["action"] == "ALLOW"
    assert silent.logged == 0
