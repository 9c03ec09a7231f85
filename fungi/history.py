"""Per-cycle records of rule systems and the fitness they achieved."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

from fungi.rule_model import RuleSystem


@dataclass(frozen=True)
class FungiState:
    """One rule system paired with its fitness score (higher is better)."""

    rule_system: RuleSystem
    fitness: float = 0.0


class FungiHistory:
    """Append-only lineage of this bot's own rule systems.

    ``max_entries`` of 0 or None keeps everything; otherwise the oldest
    entries are dropped once the limit is exceeded.
    """

    def __init__(self, states: Optional[Iterable[FungiState]] = None, max_entries: Optional[int] = None):
        self.max_entries = max_entries or 0
        self._states: List[FungiState] = []
        for state in states or ():
            self.append(state)

    def append(self, state: FungiState) -> None:
        self._states.append(state)
        if self.max_entries and len(self._states) > self.max_entries:
            self._states = self._states[-self.max_entries:]

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[FungiState]:
        return iter(list(self._states))

    @property
    def states(self) -> List[FungiState]:
        return list(self._states)

    def rule_systems(self) -> List[RuleSystem]:
        return [s.rule_system for s in self._states]

    def latest(self) -> Optional[FungiState]:
        return self._states[-1] if self._states else None

    def best(self) -> Optional[FungiState]:
        if not self._states:
            return None
        return max(self._states, key=lambda s: s.fitness)


class MycelialHistory:
    """Rule systems and fitness scores scraped from other bots this cycle."""

    def __init__(self, observations: Optional[Iterable[FungiState]] = None):
        self._observations: List[FungiState] = list(observations or ())

    def append(self, observation: FungiState) -> None:
        self._observations.append(observation)

    def __len__(self) -> int:
        return len(self._observations)

    def __iter__(self) -> Iterator[FungiState]:
        return iter(list(self._observations))

    @property
    def observations(self) -> List[FungiState]:
        return list(self._observations)

    def rule_systems(self) -> List[RuleSystem]:
        return [o.rule_system for o in self._observations]
