"""Models of Prometheus-style rule groups and their YAML form."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

import yaml


def _key(name: Any) -> str:
    if isinstance(name, bool):
        return "true" if name else "false"
    return str(name)


def _string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"cannot unmarshal {type(value).__name__} into field {key!r} of type string")
    return value


def _string_map(data: dict[str, Any], key: str) -> dict[str, str]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"cannot unmarshal {type(value).__name__} into field {key!r} of type object")
    result: dict[str, str] = {}
    for name, item in value.items():
        if not isinstance(item, str):
            raise ValueError(
                f"error unmarshaling field {_key(name)}: "
                f"cannot unmarshal {type(item).__name__} into string"
            )
        result[_key(name)] = item
    return result


def _mapping(data: Any, what: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"cannot unmarshal {type(data).__name__} into {what}")
    return data


@dataclass
class AlertingRule:
    """A rule that fires an alert when its expression holds."""

    alert: str = ""
    expr: str = ""
    for_: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> AlertingRule:
        return cls(
            alert=_string(data, "alert"),
            expr=_string(data, "expr"),
            for_=_string(data, "for"),
            labels=_string_map(data, "labels"),
            annotations=_string_map(data, "annotations"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the rule as a plain mapping."""
        return {
            "alert": self.alert,
            "annotations": dict(self.annotations),
            "expr": self.expr,
            "for": self.for_,
            "labels": dict(self.labels),
        }


@dataclass
class RecordingRule:
    """A rule that records the result of its expression as a new series."""

    record: str = ""
    expr: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> RecordingRule:
        return cls(
            record=_string(data, "record"),
            expr=_string(data, "expr"),
            labels=_string_map(data, "labels"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the rule as a plain mapping."""
        return {"expr": self.expr, "labels": dict(self.labels), "record": self.record}


Rule = Union[AlertingRule, RecordingRule]


def parse_rule(data: Any) -> Rule:
    """Build an alerting rule when the mapping has an "alert" key, else a recording rule."""
    data = _mapping(data, "rule")
    if "alert" in data:
        return AlertingRule._from_dict(data)
    return RecordingRule._from_dict(data)


@dataclass
class RuleGroup:
    """A named group of rules evaluated at one interval."""

    interval: str = ""
    name: str = ""
    rules: list[Rule] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> RuleGroup:
        """Build a group from a mapping; an empty rule list becomes None."""
        data = _mapping(data, "RuleGroup")
        raw_rules = data.get("rules")
        if raw_rules is None:
            raw_rules = []
        if not isinstance(raw_rules, list):
            raise ValueError(f"cannot unmarshal {type(raw_rules).__name__} into field 'rules'")
        rules = [parse_rule(item) for item in raw_rules]
        return cls(
            interval=_string(data, "interval"),
            name=_string(data, "name"),
            rules=rules or None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the group as a plain mapping."""
        return {
            "interval": self.interval,
            "name": self.name,
            "rules": None if self.rules is None else [rule.to_dict() for rule in self.rules],
        }


@dataclass
class Rules:
    """A set of rule groups."""

    groups: list[RuleGroup] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Rules:
        """Build the rule set from a mapping with a "groups" list."""
        data = _mapping(data, "Rules")
        groups = data.get("groups")
        if groups is None:
            return cls()
        if not isinstance(groups, list):
            raise ValueError(f"cannot unmarshal {type(groups).__name__} into field 'groups'")
        return cls(groups=[RuleGroup.from_dict(group) for group in groups])

    def to_dict(self) -> dict[str, Any]:
        """Return the rule set as a plain mapping."""
        return {"groups": [group.to_dict() for group in self.groups]}


def _load(text: str | bytes) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as err:
        raise ValueError(f"could not parse rules: {err}") from err


def load_rule_group(text: str | bytes) -> RuleGroup:
    """Parse one rule group from YAML or JSON text."""
    return RuleGroup.from_dict(_load(text))


def load_rules(text: str | bytes) -> Rules:
    """Parse a rule set from YAML or JSON text."""
    return Rules.from_dict(_load(text))


def dump_rules(rules: Rules) -> str:
    """Render a rule set as YAML."""
    return yaml.safe_dump(rules.to_dict(), sort_keys=True, default_flow_style=False)