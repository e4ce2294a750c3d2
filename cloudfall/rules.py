"""Firewall rule engine: priority-ordered rules with terminating and counting actions."""

from __future__ import annotations

import ipaddress
import json
import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from cloudfall.config import Provider, is_integer
from cloudfall.errors import ConfigurationError
from cloudfall.request import Request


class RuleAction(str, Enum):
    ALLOW = "ALLOW"
    BLOCK = "BLOCK"
    COUNT = "COUNT"
    CAPTCHA = "CAPTCHA"
    CHALLENGE = "CHALLENGE"

    @property
    def terminating(self) -> bool:
        return self is not RuleAction.COUNT


class RuleType(str, Enum):
    MANAGED = "MANAGED"
    CUSTOM = "CUSTOM"
    RATE_BASED = "RATE_BASED"
    IP_SET = "IP_SET"
    GEO_MATCH = "GEO_MATCH"
    REGEX = "REGEX"


class ManagedBehavior(str, Enum):
    COMMON = "common"
    KNOWN_BAD_INPUTS = "known_bad_inputs"
    IP_REPUTATION = "ip_reputation"
    BOT_CONTROL = "bot_control"


# Provider rule group names, mapped onto the behaviour they reproduce
MANAGED_GROUPS: Dict[Provider, Dict[str, ManagedBehavior]] = {
    Provider.AWS: {
        "AWSManagedRulesCommonRuleSet": ManagedBehavior.COMMON,
        "AWSManagedRulesKnownBadInputsRuleSet": ManagedBehavior.KNOWN_BAD_INPUTS,
        "AWSManagedRulesAmazonIpReputationList": ManagedBehavior.IP_REPUTATION,
        "AWSManagedRulesBotControlRuleSet": ManagedBehavior.BOT_CONTROL,
    },
    Provider.GCP: {
        "sqli-xss-v33-stable": ManagedBehavior.COMMON,
        "lfi-rce-v33-stable": ManagedBehavior.KNOWN_BAD_INPUTS,
        "cloudarmor-threat-intel": ManagedBehavior.IP_REPUTATION,
        "recaptcha-bot-management": ManagedBehavior.BOT_CONTROL,
    },
    Provider.AZURE: {
        "Microsoft_DefaultRuleSet": ManagedBehavior.COMMON,
        "Microsoft_DefaultRuleSet_LFI": ManagedBehavior.KNOWN_BAD_INPUTS,
        "Microsoft_IPReputation": ManagedBehavior.IP_REPUTATION,
        "Microsoft_BotManagerRuleSet": ManagedBehavior.BOT_CONTROL,
    },
}

# Groups enabled when a firewall is deployed without an explicit list
DEFAULT_MANAGED = (ManagedBehavior.COMMON, ManagedBehavior.KNOWN_BAD_INPUTS, ManagedBehavior.IP_REPUTATION)

INJECTION_PATTERNS = [re.compile(p, re.I) for p in (
    r"union.*select",
    r"<script.*>",
    r"javascript:",
    r"on\w+\s*=",
    r"'\s*or\s*'",
    r'"\s*or\s*"',
)]
BAD_INPUT_PATTERNS = [
    re.compile(r"\.\./\.\./"),
    re.compile(r"/etc/passwd"),
    re.compile(r"cmd\.exe", re.I),
    re.compile(r"powershell", re.I),
    re.compile(r"%00"),
]
BAD_REPUTATION_FRAGMENTS = (".666", ".999", ".123.123")
BOT_PATTERN = re.compile(r"bot|crawler|spider|scraper|curl|wget", re.I)

FIELDS = ("URI", "QUERY_STRING", "HEADER", "SINGLE_HEADER", "METHOD", "BODY", "USER_AGENT")
OPERATORS = ("EXACTLY_MATCHES", "STARTS_WITH", "ENDS_WITH", "CONTAINS", "CONTAINS_WORD", "REGEX_MATCH")
AGGREGATE_KEYS = ("IP", "FORWARDED_IP", "CUSTOM_KEYS")


def field_value(request: Request, name: str, header: Optional[str] = None) -> str:
    if name == "URI":
        return request.path
    if name == "QUERY_STRING":
        return request.query_string
    if name in ("HEADER", "SINGLE_HEADER"):
        return request.headers.get((header or "").lower(), "")
    if name == "METHOD":
        return request.method
    if name == "BODY":
        return request.body
    if name == "USER_AGENT":
        return request.user_agent
    return ""


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: str
    header: Optional[str] = None

    def matches(self, request: Request) -> bool:
        text = field_value(request, self.field, self.header)
        op = self.operator
        if op == "EXACTLY_MATCHES":
            return text == self.value
        if op == "STARTS_WITH":
            return text.startswith(self.value)
        if op == "ENDS_WITH":
            return text.endswith(self.value)
        if op == "CONTAINS":
            return self.value in text
        if op == "CONTAINS_WORD":
            return re.search(rf"\b{re.escape(self.value)}\b", text, re.I) is not None
        if op == "REGEX_MATCH":
            return re.search(self.value, text, re.I) is not None
        return False


@dataclass
class Rule:
    id: str
    name: str
    priority: int
    action: RuleAction
    rule_type: RuleType = RuleType.CUSTOM
    behavior: Optional[ManagedBehavior] = None
    conditions: Tuple[Condition, ...] = ()
    # rate based
    limit: int = 0
    window_ticks: int = 300
    aggregate_key: str = "IP"
    # ip set / geo / regex
    networks: Tuple[Any, ...] = ()
    country_codes: Tuple[str, ...] = ()
    patterns: Tuple[Any, ...] = ()
    match_field: str = "URI"
    header: Optional[str] = None
    _windows: Dict[str, Deque[int]] = field(default_factory=dict, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "action": self.action.value,
            "type": self.rule_type.value,
        }


@dataclass(frozen=True)
class RuleMatch:
    rule_id: str
    name: str
    action: RuleAction


@dataclass(frozen=True)
class Inspection:
    """Outcome of evaluating one request against the rule list."""
    action: RuleAction
    matched_rules: Tuple[RuleMatch, ...] = ()
    terminating_rule: Optional[str] = None


class RuleEngine:
    """Evaluates requests against rules in ascending priority.

    A match with ``COUNT`` is recorded and evaluation continues; any other
    matching action ends evaluation and becomes the disposition. When nothing
    terminates the default action applies.
    """

    def __init__(self, default_action: RuleAction = RuleAction.ALLOW, bot_control: bool = False) -> None:
        self.default_action = RuleAction(default_action)
        self.bot_control = bot_control
        self.rules: List[Rule] = []
        self.match_counts: Dict[str, int] = {}
        self.tick = 0

    # ------------------------------------------------------------------ rule set

    def add_rule(self, rule: Rule) -> None:
        if any(r.priority == rule.priority for r in self.rules):
            raise ConfigurationError([f"duplicate rule priority: {rule.priority}"])
        self.rules.append(rule)
        self.rules.sort(key=lambda r: r.priority)

    def remove_rule(self, rule_id: str) -> bool:
        before = len(self.rules)
        self.rules = [r for r in self.rules if r.id != rule_id]
        return len(self.rules) != before

    @classmethod
    def from_params(cls, params: Dict[str, Any], provider: Provider) -> "RuleEngine":
        engine = cls(
            RuleAction(str(params.get("default_action", "ALLOW")).upper()),
            bot_control=bool((params.get("ml_capabilities") or {}).get("bot_control")),
        )
        for rule in build_rules(params, provider):
            engine.add_rule(rule)
        return engine

    # ------------------------------------------------------------------ evaluation

    def advance(self, tick: int) -> None:
        """Move rate windows forward, dropping keys with no recent requests."""
        self.tick = tick
        for rule in self.rules:
            if rule.rule_type is not RuleType.RATE_BASED:
                continue
            for key in list(rule._windows):
                window = rule._windows[key]
                while window and window[0] <= tick - rule.window_ticks:
                    window.popleft()
                if not window:
                    del rule._windows[key]

    def evaluate(self, request: Request) -> Inspection:
        matched: List[RuleMatch] = []
        for rule in self.rules:
            if not self.rule_matches(rule, request):
                continue
            matched.append(RuleMatch(rule.id, rule.name, rule.action))
            self.match_counts[rule.id] = self.match_counts.get(rule.id, 0) + 1
            if rule.action.terminating:
                return Inspection(rule.action, tuple(matched), rule.id)
        return Inspection(self.default_action, tuple(matched), None)

    def rule_matches(self, rule: Rule, request: Request) -> bool:
        kind = rule.rule_type
        if kind is RuleType.MANAGED:
            return self.managed_matches(rule.behavior, request)
        if kind is RuleType.CUSTOM:
            return bool(rule.conditions) and all(c.matches(request) for c in rule.conditions)
        if kind is RuleType.RATE_BASED:
            return self._rate_exceeded(rule, request)
        if kind is RuleType.IP_SET:
            return _ip_in(request.client_ip, rule.networks)
        if kind is RuleType.GEO_MATCH:
            return (request.country or "US") in rule.country_codes
        if kind is RuleType.REGEX:
            text = field_value(request, rule.match_field, rule.header)
            return any(p.search(text) for p in rule.patterns)
        return False

    def managed_matches(self, behavior: Optional[ManagedBehavior], request: Request) -> bool:
        if behavior is ManagedBehavior.COMMON:
            content = " ".join((
                request.path,
                request.query_string,
                request.user_agent,
                json.dumps(dict(request.headers)),
                request.body,
            )).lower()
            return any(p.search(content) for p in INJECTION_PATTERNS)
        if behavior is ManagedBehavior.KNOWN_BAD_INPUTS:
            content = " ".join((request.path, request.query_string, request.body))
            return any(p.search(content) for p in BAD_INPUT_PATTERNS)
        if behavior is ManagedBehavior.IP_REPUTATION:
            ip = request.client_ip or "127.0.0.1"
            return any(fragment in ip for fragment in BAD_REPUTATION_FRAGMENTS)
        if behavior is ManagedBehavior.BOT_CONTROL:
            return self.bot_control and BOT_PATTERN.search(request.user_agent) is not None
        return False

    def _rate_exceeded(self, rule: Rule, request: Request) -> bool:
        key = rate_key(request, rule.aggregate_key)
        window = rule._windows.setdefault(key, deque())
        window.append(self.tick)
        while window[0] <= self.tick - rule.window_ticks:
            window.popleft()
        return len(window) > rule.limit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default_action": self.default_action.value,
            "rules": [r.to_dict() for r in self.rules],
            "match_counts": dict(self.match_counts),
        }


def rate_key(request: Request, aggregate: str) -> str:
    ip = request.client_ip or "127.0.0.1"
    if aggregate == "FORWARDED_IP":
        return request.headers.get("x-forwarded-for") or ip
    if aggregate == "CUSTOM_KEYS":
        return f"{ip}-{request.user_agent}"
    return ip


def _ip_in(address: str, networks: Iterable[Any]) -> bool:
    try:
        ip = ipaddress.ip_address(address or "127.0.0.1")
    except ValueError:
        return False
    return any(ip in net for net in networks)


# ---------------------------------------------------------------------- building


def build_rules(params: Dict[str, Any], provider: Provider) -> List[Rule]:
    """Managed groups get priorities 1..n in list order; other rules carry their own."""
    groups = MANAGED_GROUPS[provider]
    by_behavior = {behavior: name for name, behavior in groups.items()}
    managed = params.get("managed_rule_groups")
    if managed is None:
        managed = [by_behavior[b] for b in DEFAULT_MANAGED]
        if (params.get("ml_capabilities") or {}).get("bot_control"):
            managed.append(by_behavior[ManagedBehavior.BOT_CONTROL])

    rules: List[Rule] = []
    for index, name in enumerate(managed, start=1):
        rules.append(Rule(
            id=f"managed-{index}",
            name=name,
            priority=index,
            action=RuleAction.BLOCK,
            rule_type=RuleType.MANAGED,
            behavior=groups[name],
        ))
    for index, entry in enumerate(params.get("rules") or [], start=1):
        rules.append(_rule_from_dict(entry, index))
    return rules


def _rule_from_dict(entry: Dict[str, Any], index: int) -> Rule:
    rule_type = RuleType(str(entry.get("type", "CUSTOM")).upper())
    rule = Rule(
        id=entry.get("id") or f"{rule_type.value.lower()}-{index}",
        name=entry.get("name") or f"rule-{index}",
        priority=int(entry["priority"]),
        action=RuleAction(str(entry.get("action", "BLOCK")).upper()),
        rule_type=rule_type,
    )
    if rule_type is RuleType.CUSTOM:
        rule.conditions = tuple(
            Condition(
                field=str(c.get("field", "URI")).upper(),
                operator=str(c.get("operator", "EXACTLY_MATCHES")).upper(),
                value=str(c.get("value", "")),
                header=c.get("header"),
            )
            for c in entry.get("conditions") or []
        )
    elif rule_type is RuleType.RATE_BASED:
        rule.limit = int(entry.get("limit", 100))
        rule.window_ticks = int(entry.get("window", 300))
        rule.aggregate_key = str(entry.get("aggregate_key", "IP")).upper()
    elif rule_type is RuleType.IP_SET:
        rule.networks = tuple(ipaddress.ip_network(a, strict=False) for a in entry.get("addresses") or [])
    elif rule_type is RuleType.GEO_MATCH:
        rule.country_codes = tuple(str(c).upper() for c in entry.get("country_codes") or [])
    elif rule_type is RuleType.REGEX:
        rule.patterns = tuple(re.compile(p, re.I) for p in entry.get("patterns") or [])
        rule.match_field = str(entry.get("field", "URI")).upper()
        rule.header = entry.get("header")
    return rule


def validate_rules(params: Dict[str, Any], provider: Provider) -> List[str]:
    """Collect every problem with a firewall rule configuration."""
    errors: List[str] = []
    if str(params.get("default_action", "ALLOW")).upper() not in ("ALLOW", "BLOCK"):
        errors.append("default_action must be ALLOW or BLOCK")
    groups = MANAGED_GROUPS[provider]
    managed = params.get("managed_rule_groups")
    if managed is not None and not isinstance(managed, list):
        errors.append("managed_rule_groups must be a list")
        managed = []
    ml = params.get("ml_capabilities") or {}
    if not isinstance(ml, dict):
        errors.append("ml_capabilities must be a mapping")
        ml = {}
    for name in managed or []:
        if not isinstance(name, str) or name not in groups:
            errors.append(f"unknown managed rule group {name!r} for {provider.value}")
    priorities = list(range(1, len(managed) + 1)) if managed is not None else []
    if managed is None:
        priorities = list(range(1, len(DEFAULT_MANAGED) + 1))
        if ml.get("bot_control"):
            priorities.append(len(priorities) + 1)

    entries = params.get("rules") or []
    if not isinstance(entries, list):
        errors.append("rules must be a list")
        entries = []
    for entry in entries:
        if not isinstance(entry, dict):
            errors.append("each rule must be a mapping")
            continue
        label = entry.get("name") or entry.get("id") or "rule"
        try:
            rule_type = RuleType(str(entry.get("type", "CUSTOM")).upper())
        except ValueError:
            errors.append(f"{label}: unknown rule type {entry.get('type')!r}")
            continue
        if "priority" not in entry:
            errors.append(f"{label}: priority is required")
        elif not is_integer(entry["priority"]):
            errors.append(f"{label}: priority must be an integer (got {entry['priority']!r})")
        else:
            priorities.append(entry["priority"])
        try:
            RuleAction(str(entry.get("action", "BLOCK")).upper())
        except ValueError:
            errors.append(f"{label}: unknown action {entry.get('action')!r}")
        for key in ("addresses", "country_codes", "patterns"):
            if key in entry and not isinstance(entry[key], list):
                errors.append(f"{label}: {key} must be a list")
                entry = {k: v for k, v in entry.items() if k != key}
        if rule_type is RuleType.CUSTOM:
            conditions = entry.get("conditions") or []
            if not isinstance(conditions, list):
                errors.append(f"{label}: conditions must be a list")
                conditions = []
            elif not conditions:
                errors.append(f"{label}: custom rules need at least one condition")
            for c in conditions:
                if not isinstance(c, dict):
                    errors.append(f"{label}: each condition must be a mapping (got {c!r})")
                    continue
                if str(c.get("field", "URI")).upper() not in FIELDS:
                    errors.append(f"{label}: unknown field {c.get('field')!r}")
                if str(c.get("operator", "EXACTLY_MATCHES")).upper() not in OPERATORS:
                    errors.append(f"{label}: unknown operator {c.get('operator')!r}")
                elif str(c.get("operator")).upper() == "REGEX_MATCH":
                    errors.extend(_regex_errors(label, [c.get("value", "")]))
        elif rule_type is RuleType.RATE_BASED:
            for key, default in (("limit", 100), ("window", 300)):
                value = entry.get(key, default)
                if not is_integer(value) or value < 1:
                    errors.append(f"{label}: {key} must be an integer of at least 1 (got {value!r})")
            if str(entry.get("aggregate_key", "IP")).upper() not in AGGREGATE_KEYS:
                errors.append(f"{label}: aggregate_key must be one of {', '.join(AGGREGATE_KEYS)}")
        elif rule_type is RuleType.IP_SET:
            for address in entry.get("addresses") or []:
                try:
                    ipaddress.ip_network(address, strict=False)
                except ValueError:
                    errors.append(f"{label}: invalid address {address!r}")
        elif rule_type is RuleType.REGEX:
            errors.extend(_regex_errors(label, entry.get("patterns") or []))

    seen = set()
    for priority in priorities:
        if priority in seen:
            errors.append(f"duplicate rule priority: {priority}")
        seen.add(priority)
    return errors


def _regex_errors(label: str, patterns: Iterable[str]) -> List[str]:
    errors = []
    for pattern in patterns:
        try:
            re.compile(pattern)
        except (re.error, TypeError) as e:
            errors.append(f"{label}: invalid pattern {pattern!r}: {e}")
    return errors
