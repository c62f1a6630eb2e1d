"""Content safety filter for the chat relay.

Checks the latest user message against an ordered set of case-insensitive
patterns covering clearly harmful requests. A match rejects the request
with an actionable message before anything is sent upstream.

This is friction for casual misuse, not a security boundary: trivially
rephrased requests pass, and the upstream model's own refusals remain the
real line of defence.

Extra rules can be appended from a YAML file::

    rules:
      - name: no-lockpicking
        pattern: 'pick\\s+a\\s+lock'
      - name: disabled-example
        pattern: 'foo'
        enabled: false
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import yaml

from chat_relay.models import ChatMessage

logger = logging.getLogger("chat_relay")


@dataclass(frozen=True)
class SafetyRule:
    """A single named pattern rule."""

    name: str
    pattern: "re.Pattern[str]"

    @classmethod
    def compile(cls, name: str, pattern: str) -> "SafetyRule":
        return cls(name=name, pattern=re.compile(pattern, re.IGNORECASE))

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


DEFAULT_RULES: List[SafetyRule] = [
    SafetyRule.compile("child_sexual", r"child\s+sexual"),
    SafetyRule.compile("bomb_making", r"how\s+to\s+make\s+(?:a\s+)?bomb"),
    SafetyRule.compile("explosives", r"make\s+explosives?"),
    SafetyRule.compile("hitman", r"hire\s+hitman"),
    SafetyRule.compile("malware", r"write\s+malware"),
    SafetyRule.compile("exploit_vulnerability", r"exploit\s+this\s+vulnerability"),
    SafetyRule.compile("security_bypass", r"bypass\s+(?:auth|2fa|drm|paywall)"),
    SafetyRule.compile("card_number_generator", r"credit\s*card\s*number\s*generator"),
    SafetyRule.compile(
        "drug_synthesis", r"make\s+fentanyl|illicit\s+drug\s+manufacture"
    ),
    SafetyRule.compile("doxxing", r"doxx?ing"),
]


class SafetyFilter:
    """Evaluates text against an ordered list of safety rules.

    The first matching rule wins; no rules matching (or empty text) means
    the text is considered safe.
    """

    def __init__(self, rules: Optional[Iterable[SafetyRule]] = None) -> None:
        self._rules = list(DEFAULT_RULES if rules is None else rules)

    @property
    def rules(self) -> List[SafetyRule]:
        """Return the configured rules in evaluation order."""
        return self._rules

    def first_match(self, text: Optional[str]) -> Optional[str]:
        """Return the name of the first rule matching text, or None."""
        if not text:
            return None
        for rule in self._rules:
            if rule.matches(text):
                return rule.name
        return None

    def is_unsafe(self, text: Optional[str]) -> bool:
        """Return True if any rule matches text."""
        return self.first_match(text) is not None


def latest_user_content(messages: Sequence[ChatMessage]) -> str:
    """Return the content of the most recent user message, or ''."""
    for message in reversed(messages):
        if message.role == "user":
            return message.content or ""
    return ""


def _rule_from_dict(data: Dict[str, Any], index: int) -> Optional[SafetyRule]:
    if not isinstance(data, dict) or "pattern" not in data:
        raise ValueError("Rule #{} must be a mapping with a 'pattern'".format(index))
    if not data.get("enabled", True):
        return None
    name = str(data.get("name") or "custom-rule-{}".format(index))
    try:
        return SafetyRule.compile(name, str(data["pattern"]))
    except re.error as exc:
        raise ValueError("Rule '{}' has an invalid pattern: {}".format(name, exc))


def load_rules(path: str) -> List[SafetyRule]:
    """Load extra safety rules from a YAML file.

    Args:
        path: Path to the YAML rules file.

    Returns:
        The enabled rules, in file order.

    Raises:
        FileNotFoundError: If the rules file does not exist.
        ValueError: If the YAML is invalid or a rule is malformed.
    """
    rules_path = Path(path)
    if not rules_path.exists():
        raise FileNotFoundError("Safety rules file not found: {}".format(path))

    with open(rules_path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError("Invalid YAML in {}: {}".format(path, exc))

    if not isinstance(raw, dict) or not isinstance(raw.get("rules", []), list):
        raise ValueError("Safety rules file must contain a 'rules' list")

    rules = []
    for index, entry in enumerate(raw.get("rules", [])):
        rule = _rule_from_dict(entry, index)
        if rule is not None:
            rules.append(rule)
    return rules


def build_safety_filter(rules_file: Optional[str] = None) -> SafetyFilter:
    """Build a SafetyFilter from the built-in rules plus an optional file.

    A broken rules file is logged and ignored; the built-in rules still apply.
    """
    rules = list(DEFAULT_RULES)
    if rules_file:
        try:
            rules.extend(load_rules(rules_file))
        except (FileNotFoundError, ValueError) as exc:
            logger.warning("Ignoring safety rules file: %s", exc)
    return SafetyFilter(rules)
