"""Rule and RuleSystem value types for the FUNGI rule language.

A rule system is an ordered tuple of rules. Both types are frozen so they can
be shared between the answering task and the lifecycle without copying.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, List, Mapping, Optional, Tuple

PROGRAM_START = "FUNGISTART"
PROGRAM_END = "FUNGIEND"
RULE_LABEL = "RULE:"
RULE_SEPARATOR = "|" + RULE_LABEL


@dataclass(frozen=True)
class Rule:
    """A trigger/response pair, optionally with a condition and template defaults."""

    trigger: str
    response: str
    condition: Optional[str] = None
    template: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.trigger, str) or not self.trigger.strip():
            raise ValueError("rule trigger must be a non-empty string")
        # Freeze the template so the rule stays immutable.
        object.__setattr__(self, "template", MappingProxyType(dict(self.template or {})))

    def __eq__(self, other):
        if not isinstance(other, Rule):
            return NotImplemented
        return (
            self.trigger == other.trigger
            and self.response == other.response
            and self.condition == other.condition
            and dict(self.template) == dict(other.template)
        )

    def __hash__(self):
        return hash((self.trigger, self.response, self.condition, tuple(sorted(self.template.items()))))

    def to_clause(self) -> str:
        parts = [self.trigger, f"RESPONSE:{self.response}"]
        if self.condition:
            parts.append(f"CONDITION:{self.condition}")
        if self.template:
            parts.append("TEMPLATE:" + ",".join(f"{k}={v}" for k, v in self.template.items()))
        return "|".join(parts)


@dataclass(frozen=True)
class RuleSystem:
    """Ordered rules evaluated together against one input."""

    rules: Tuple[Rule, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "rules", tuple(self.rules))

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self.rules)

    def __bool__(self) -> bool:
        return bool(self.rules)

    def triggers(self) -> List[str]:
        return [r.trigger for r in self.rules]

    def pairs(self) -> List[Tuple[str, str]]:
        """(trigger, response) pairs in rule order."""
        return [(r.trigger, r.response) for r in self.rules]

    def to_program(self) -> str:
        """Render as a FUNGISTART ... FUNGIEND program that parses back to this system."""
        body = RULE_SEPARATOR.join(r.to_clause() for r in self.rules)
        if body:
            body = RULE_LABEL + body
        return f"{PROGRAM_START} {body} {PROGRAM_END}"
