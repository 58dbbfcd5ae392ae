"""Rule registry for managing validation rules."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .models import RuleCategory, RuleContext, Severity, ValidationFinding

RuleCheck = Callable[[RuleContext], list[ValidationFinding]]
RuleFixer = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class ValidationRule:
    """A pluggable validation rule.

    Attributes:
        rule_id: Stable identifier, used for overrides
        category: Category the rule's findings count against
        check: Callable returning the rule's findings for one record
        severity: Highest severity the rule reports
        jurisdictions: Jurisdictions the rule applies in (None for all)
        fixer: Deterministic correction applied to a record copy on auto-fix
        critical: Whether an ERROR from this rule is a critical clinical issue
    """

    rule_id: str
    category: RuleCategory
    check: RuleCheck
    severity: Severity = Severity.ERROR
    description: str = ""
    jurisdictions: frozenset[str] | None = None
    fixer: RuleFixer | None = None
    critical: bool = False

    def applies_to(self, jurisdiction: str) -> bool:
        return self.jurisdictions is None or jurisdiction in self.jurisdictions

    def __call__(self, context: RuleContext) -> list[ValidationFinding]:
        return [
            finding.located(None, category=self.category, critical=self.critical)
            for finding in self.check(context)
        ]


class RuleRegistry:
    def __init__(self) -> None:
        self._rules: dict[str, ValidationRule] = {}

    def register(self, rule: ValidationRule) -> None:
        """Register a rule.

        Raises:
            ValueError: If another rule already uses the same id
        """
        existing = self._rules.get(rule.rule_id)
        if existing is not None and existing != rule:
            raise ValueError(f"Rule already registered: {rule.rule_id}")
        self._rules[rule.rule_id] = rule

    def extend(self, rules: Iterable[ValidationRule]) -> None:
        for rule in rules:
            self.register(rule)

    def get(self, rule_id: str) -> ValidationRule | None:
        return self._rules.get(rule_id)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def active_rules(
        self, jurisdiction: str, disabled: Iterable[str] = ()
    ) -> tuple[ValidationRule, ...]:
        skip = set(disabled)
        return tuple(
            rule
            for rule in self._rules.values()
            if rule.rule_id not in skip and rule.applies_to(jurisdiction)
        )


def build_default_registry() -> RuleRegistry:
    """Create a registry holding the built-in rule catalogue."""
    from .rules import DEFAULT_RULES

    registry = RuleRegistry()
    registry.extend(DEFAULT_RULES)
    return registry
