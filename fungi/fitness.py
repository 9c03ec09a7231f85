"""Fitness scoring hook for the SCORING phase of the lifecycle.

Scorers implement ``compute_fitness(rule_system, interaction_log) -> float``.
The interaction log holds every mention the active rule system answered
during the current cycle.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Iterator, List, Protocol

from fungi.rule_model import RuleSystem


@dataclass(frozen=True)
class Interaction:
    text: str
    response: str
    matched: bool
    timestamp: float = field(default_factory=time.time)


class InteractionLog:
    """Interactions answered by the current rule system this cycle."""

    def __init__(self):
        self._items: List[Interaction] = []

    def record(self, text: str, response: str, matched: bool) -> Interaction:
        item = Interaction(text=text, response=response, matched=matched)
        self._items.append(item)
        return item

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Interaction]:
        return iter(list(self._items))

    def match_count(self) -> int:
        return sum(1 for i in self._items if i.matched)

    def snapshot(self) -> "InteractionLog":
        """Independent copy; later records do not show up in it."""
        copy = InteractionLog()
        copy._items = list(self._items)
        return copy

    def consume(self, count: int) -> None:
        """Drop the ``count`` oldest interactions, keeping anything recorded since."""
        del self._items[:max(0, count)]


class FitnessScorer(Protocol):
    def compute_fitness(self, rule_system: RuleSystem, interaction_log: InteractionLog) -> float:
        ...


class ConstantFitness:
    """Scores every rule system the same."""

    def __init__(self, value: float = 0.0):
        self.value = float(value)

    def compute_fitness(self, rule_system: RuleSystem, interaction_log: InteractionLog) -> float:
        return self.value


class MatchRateFitness:
    """Fraction of this cycle's interactions that some rule matched."""

    def compute_fitness(self, rule_system: RuleSystem, interaction_log: InteractionLog) -> float:
        total = len(interaction_log)
        if total == 0:
            return 0.0
        return round(interaction_log.match_count() / total, 4)


SCORERS = {
    "constant": ConstantFitness,
    "match_rate": MatchRateFitness,
}


def get_fitness_scorer(name: str = "constant") -> FitnessScorer:
    key = str(name or "constant").strip().lower()
    if key not in SCORERS:
        raise ValueError(f"unknown fitness scorer: {name!r}")
    return SCORERS[key]()
