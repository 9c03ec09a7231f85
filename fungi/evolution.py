"""
Evolutionary engine for FUNGI rule systems.

Combines this bot's own lineage (FungiHistory), the rule systems other bots
published this cycle (MycelialHistory) and the currently active system into a
fitness-weighted candidate pool, then breeds the next system:

    pool = create_pool(local, mycelial, current)
    parent_a, parent_b = pool.select(rng), pool.select(rng)
    child = mutate(crossover(parent_a, parent_b))

Every operator returns a non-empty RuleSystem whose rules all have non-empty
triggers. The random source is injected so runs are reproducible per seed.
"""

from __future__ import annotations

import logging
import math
import random
import string
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from fungi.history import FungiHistory, MycelialHistory
from fungi.rule_model import Rule, RuleSystem

logger = logging.getLogger("fungi.evolution")

TRIGGER_VOCABULARY = (
    "hello", "hi", "help", "support", "pricing", "weather", "news", "thanks",
    "spore", "mushroom", "forest", "rain", "morning", "night", "why", "how",
)
RESPONSE_VOCABULARY = (
    "Hello, Fediverse user!",
    "Hi there! How can I help?",
    "The mycelium hears you.",
    "Spores are on their way.",
    "Thanks for reaching out!",
    "Ask me about the forest.",
    "Good morning from the underground.",
    "Sleep well, the network keeps growing.",
    "I am still evolving, try again later.",
)
_LETTERS = string.ascii_lowercase


class EmptyPoolError(RuntimeError):
    """Raised when selecting from a pool that holds no rule systems."""


@dataclass(frozen=True)
class EvolutionConfig:
    """Rates and bounds for the mutation and crossover operators."""

    mutation_rate: float = 0.5
    add_rule_rate: float = 0.3
    delete_rule_rate: float = 0.1
    response_mutation_rate: float = 0.2
    crossover_probability_per_rule: float = 0.5
    min_rules: int = 1
    max_rules: int = 12
    weight_floor: float = 0.05
    max_mutation_attempts: int = 8
    max_program_chars: int = 240


class CandidatePool:
    """Fitness-weighted rule systems used as parent material for one cycle."""

    def __init__(self, entries: Optional[Iterable[Tuple[RuleSystem, float]]] = None):
        self._entries: List[Tuple[RuleSystem, float]] = []
        for rule_system, weight in entries or ():
            self.add(rule_system, weight)

    def add(self, rule_system: RuleSystem, weight: float) -> None:
        value = float(weight)
        if not math.isfinite(value):
            value = 0.0
        self._entries.append((rule_system, max(0.0, value)))

    @property
    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def rule_systems(self) -> List[RuleSystem]:
        return [rs for rs, _ in self._entries]

    def weights(self) -> List[float]:
        return [w for _, w in self._entries]

    def select(self, rng: random.Random) -> RuleSystem:
        """Roulette-wheel selection proportional to weight."""
        if not self._entries:
            raise EmptyPoolError("candidate pool is empty")
        total = sum(w for _, w in self._entries)
        if total <= 0:
            return rng.choice(self._entries)[0]
        r = rng.random() * total
        cumulative = 0.0
        for rule_system, weight in self._entries:
            cumulative += weight
            if r < cumulative:
                return rule_system
        return self._entries[-1][0]


class EvolutionaryEngine:
    """Mutation, crossover and selection over rule systems."""

    def __init__(self, rng: Optional[random.Random] = None, config: EvolutionConfig = EvolutionConfig()):
        self.rng = rng or random.Random()
        self.config = config

    # ------ Pool ------

    def create_pool(
        self,
        local_history: FungiHistory,
        mycelial_history: MycelialHistory,
        current_system: RuleSystem,
        current_fitness: float = 0.0,
    ) -> CandidatePool:
        """Current system first, then local lineage, then scraped systems."""
        pool = CandidatePool()
        pool.add(current_system, self._weight(current_fitness))
        for state in local_history:
            pool.add(state.rule_system, self._weight(state.fitness))
        for observation in mycelial_history:
            pool.add(observation.rule_system, self._weight(observation.fitness))
        return pool

    def _weight(self, fitness: float) -> float:
        try:
            value = float(fitness)
        except (TypeError, ValueError):
            value = 0.0
        if not math.isfinite(value):
            value = 0.0
        return max(value, 0.0) + self.config.weight_floor

    # ------ Rule operators ------

    def generate_random_rule(self) -> Rule:
        return Rule(
            trigger=self.rng.choice(TRIGGER_VOCABULARY),
            response=self.rng.choice(RESPONSE_VOCABULARY),
        )

    def mutate_rule(self, rule: Rule) -> Rule:
        """Return a copy of ``rule`` with a different, non-empty trigger."""
        trigger = rule.trigger
        for _ in range(max(1, self.config.max_mutation_attempts)):
            candidate = self._perturb_trigger(rule.trigger)
            if candidate.strip() and candidate != rule.trigger:
                trigger = candidate
                break
        else:
            trigger = rule.trigger + self.rng.choice(_LETTERS)

        response = rule.response
        if self.rng.random() < self.config.response_mutation_rate:
            response = self.rng.choice(RESPONSE_VOCABULARY)
        return Rule(trigger=trigger, response=response, condition=rule.condition, template=rule.template)

    def _perturb_trigger(self, trigger: str) -> str:
        op = self.rng.choice(("swap_case", "drop", "insert", "replace", "extend"))
        if op == "extend":
            return f"{trigger} {self.rng.choice(TRIGGER_VOCABULARY)}"
        chars = list(trigger)
        idx = self.rng.randrange(len(chars))
        if op == "swap_case":
            chars[idx] = chars[idx].swapcase()
        elif op == "drop":
            if len(chars) > 1:
                del chars[idx]
        elif op == "insert":
            chars.insert(self.rng.randrange(len(chars) + 1), self.rng.choice(_LETTERS))
        else:
            chars[idx] = self.rng.choice(_LETTERS)
        return "".join(chars).strip()

    # ------ System operators ------

    def mutate(self, rule_system: RuleSystem) -> RuleSystem:
        """Mutate some rules, maybe inject or delete one; never returns an empty system."""
        cfg = self.config
        rules = [
            self.mutate_rule(r) if self.rng.random() < cfg.mutation_rate else r
            for r in rule_system
        ]
        if self.rng.random() < cfg.add_rule_rate:
            rules.insert(self.rng.randrange(len(rules) + 1), self.generate_random_rule())
        if self.rng.random() < cfg.delete_rule_rate and len(rules) > max(1, cfg.min_rules):
            del rules[self.rng.randrange(len(rules))]
        while len(rules) < max(1, cfg.min_rules):
            rules.append(self.generate_random_rule())
        return RuleSystem(tuple(rules[:max(1, cfg.max_rules)]))

    def crossover(self, parent_a: RuleSystem, parent_b: RuleSystem) -> RuleSystem:
        """Positional interleave of both parents with per-rule inclusion."""
        cfg = self.config
        interleaved: List[Rule] = []
        for i in range(max(len(parent_a), len(parent_b))):
            if i < len(parent_a):
                interleaved.append(parent_a.rules[i])
            if i < len(parent_b):
                interleaved.append(parent_b.rules[i])

        child = [r for r in interleaved if self.rng.random() < cfg.crossover_probability_per_rule]

        # Pad from the parents' remaining rules to reach the minimum size
        remaining = [r for r in interleaved if r not in child]
        min_rules = max(1, cfg.min_rules)
        while len(child) < min_rules and remaining:
            child.append(remaining.pop(self.rng.randrange(len(remaining))))
        if not child:
            child.append(self.generate_random_rule())
        return RuleSystem(tuple(child[:max(1, cfg.max_rules)]))

    def fit_to_budget(self, rule_system: RuleSystem) -> RuleSystem:
        """Drop trailing rules until the rendered program fits ``max_program_chars``.

        A single rule is always kept; 0 disables the budget.
        """
        budget = self.config.max_program_chars
        if budget <= 0:
            return rule_system
        rules = list(rule_system.rules)
        while len(rules) > 1 and len(RuleSystem(tuple(rules)).to_program()) > budget:
            rules.pop()
        return RuleSystem(tuple(rules))

    def evolve(
        self,
        local_history: FungiHistory,
        mycelial_history: MycelialHistory,
        current_system: RuleSystem,
        current_fitness: float = 0.0,
    ) -> RuleSystem:
        """Breed the next-cycle rule system."""
        pool = self.create_pool(local_history, mycelial_history, current_system, current_fitness)
        parent_a = pool.select(self.rng)
        parent_b = pool.select(self.rng)
        offspring = self.fit_to_budget(self.mutate(self.crossover(parent_a, parent_b)))
        logger.info(
            "Evolved rule system: pool=%d parents=(%d, %d rules) offspring=%d rules",
            pool.size, len(parent_a), len(parent_b), len(offspring),
        )
        return offspring
