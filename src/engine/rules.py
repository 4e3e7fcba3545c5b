"""Rule compilation and first-match-wins line classification."""

import re
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from models import Match, Rule, RuleSet
from utils.addresses import normalize_address
from utils.logger import get_logger
from utils.settings import ConfigError, Settings, parse_ports

from .rulesets import BUILTIN_RULES

logger = get_logger("rules")


def compile_rule(definition: Mapping[str, Any], rule_set: str = "") -> Rule:
    """
    Build a Rule from a definition dict.

    Args:
        definition: Mapping with pattern, classification and optional
            weight, ports, description
        rule_set: Owning rule set name, for error messages

    Raises:
        ConfigError: On a bad regex, missing ip group or bad weight
    """
    where = f"rule set '{rule_set}'" if rule_set else "rule"
    pattern_text = definition.get("pattern")
    classification = definition.get("classification")
    if not pattern_text or not classification:
        raise ConfigError(f"{where}: every rule needs a pattern and a classification")

    try:
        pattern = re.compile(pattern_text)
    except re.error as e:
        raise ConfigError(f"{where}: invalid pattern {pattern_text!r}: {e}")
    if "ip" not in pattern.groupindex:
        raise ConfigError(f"{where}: pattern {pattern_text!r} has no (?P<ip>...) group")

    try:
        weight = int(definition.get("weight", 1))
    except (TypeError, ValueError):
        raise ConfigError(f"{where}: weight must be an integer")
    if weight < 1:
        raise ConfigError(f"{where}: weight must be >= 1")

    return Rule(
        pattern=pattern,
        classification=str(classification),
        weight=weight,
        port_hint=parse_ports(definition.get("ports")),
        description=str(definition.get("description") or f"{classification} triggered by"),
    )


def build_rule_set(name: str, definitions: Iterable[Mapping[str, Any]]) -> RuleSet:
    """Compile definitions into an immutable rule set."""
    return RuleSet(name=name, rules=tuple(compile_rule(d, name) for d in definitions))


def _custom_definitions(settings: Settings) -> Dict[str, List[Mapping[str, Any]]]:
    custom: Dict[str, List[Mapping[str, Any]]] = {}
    sections = [settings.section("rules")]

    rules_file = settings.get_str("rules_file")
    if rules_file:
        path = Path(rules_file)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read rules file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Rules file {path} must be a mapping")
        sections.append(data.get("rules", data))

    for section in sections:
        for name, definitions in section.items():
            if not isinstance(definitions, list):
                raise ConfigError(f"Rule set '{name}' must be a list of rules")
            custom.setdefault(str(name), []).extend(definitions)
    return custom


def load_rule_sets(settings: Settings) -> Dict[str, RuleSet]:
    """
    Load built-in rule sets merged with custom ones from settings.

    Custom rules for a built-in rule set name are evaluated after the
    built-in rules.

    Raises:
        ConfigError: On any invalid rule
    """
    merged: Dict[str, List[Mapping[str, Any]]] = {name: list(defs) for name, defs in BUILTIN_RULES.items()}
    for name, definitions in _custom_definitions(settings).items():
        merged.setdefault(name, []).extend(definitions)

    rule_sets = {name: build_rule_set(name, defs) for name, defs in merged.items()}
    logger.debug(f"Loaded {len(rule_sets)} rule sets ({sum(len(r) for r in rule_sets.values())} rules)")
    return rule_sets


class RuleEngine:
    """
    Applies a rule set to log lines.

    The first rule whose pattern matches decides. If that rule captures
    something that is not a valid address the line is skipped rather
    than offered to later rules.

    Usage:
        engine = RuleEngine()
        match = engine.apply(rule_sets["sshd"], line)
        if match:
            ledger.record(match.address, match.classification, match.weight, now)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.stats: Dict[str, int] = {"lines": 0, "matched": 0, "skipped": 0}

    def _bump(self, key: str) -> None:
        with self._lock:
            self.stats[key] += 1

    def apply(self, rule_set: RuleSet, line: str) -> Optional[Match]:
        """
        Classify a line.

        Args:
            rule_set: Rules to evaluate, in order
            line: Log line without trailing newline

        Returns:
            Match or None when no rule matches or the address is invalid
        """
        self._bump("lines")
        for rule in rule_set.rules:
            found = rule.pattern.search(line)
            if not found:
                continue

            address = normalize_address(found.group("ip"))
            if address is None:
                self._bump("skipped")
                return None

            groups = found.groupdict()
            description = rule.description
            if groups.get("ruleid"):
                description = description.replace(" triggered by", f" (id:{groups['ruleid']}) triggered by", 1)

            self._bump("matched")
            return Match(
                address=address,
                classification=rule.classification,
                weight=rule.weight,
                ports=rule.port_hint,
                description=description,
                account=groups.get("account") or "",
            )
        return None
