"""
Fungi lifecycle controller.

A fungi moves through five phases:

1. SEARCHING: look under the mycelial hashtag for a post carrying a FUNGI
   program and adopt it as the seed; fall back to a built-in program.
2. ACTIVE: the current rule system answers mentions.
3. SCORING: a pluggable scorer turns this cycle's interactions into fitness.
4. PUBLISHING: post the program with its fitness under the hashtag and scrape
   what other bots posted there (the mycelial history for this cycle).
5. EVOLVING: breed the next rule system from the local lineage, the scraped
   systems and the current one, then return to ACTIVE.

SEARCHING happens once at startup. The lifecycle task (3-5) is serialized;
answering may run concurrently and always reads one consistent snapshot of
the current rule system.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from fungi.channel import Channel, CollaboratorIOError
from fungi.diagnostics import log_exception
from fungi.evolution import EvolutionaryEngine
from fungi.fitness import ConstantFitness, FitnessScorer, InteractionLog
from fungi.history import FungiHistory, FungiState, MycelialHistory
from fungi.match_engine import NO_MATCH_RESPONSE, respond
from fungi.rule_model import RuleSystem
from fungi.rule_parser import RuleParser, get_rule_parser

logger = logging.getLogger("fungi.lifecycle")

# Parsed when nothing valid is found on the channel.
FALLBACK_PROGRAM = "FUNGISTART RULE:Hello|RESPONSE:Hello, Fediverse user! FUNGIEND"
FITNESS_LABEL = " Fitness: "
# X rejects longer posts.
MESSAGE_MAX = 280


class LifecyclePhase(str, Enum):
    SEARCHING = "searching"
    ACTIVE = "active"
    SCORING = "scoring"
    PUBLISHING = "publishing"
    EVOLVING = "evolving"


@dataclass
class LifecycleState:
    """The single piece of mutable process state."""

    phase: LifecyclePhase = LifecyclePhase.SEARCHING
    current_system: RuleSystem = field(default_factory=RuleSystem)
    fitness: float = 0.0
    local_history: FungiHistory = field(default_factory=FungiHistory)
    interaction_log: InteractionLog = field(default_factory=InteractionLog)
    last_mention_id: Optional[str] = None
    replied_mention_ids: Set[str] = field(default_factory=set)
    cycles: int = 0
    seeded: bool = False


def format_publication(rule_system: RuleSystem, fitness: float, hashtag: str = "") -> str:
    """Channel message for a rule system: program, fitness, then the hashtag."""
    text = rule_system.to_program() + FITNESS_LABEL + str(fitness)
    if hashtag:
        text += f" #{hashtag.lstrip('#')}"
    return text


def fit_publication(
    rule_system: RuleSystem, fitness: float, hashtag: str = "", limit: int = MESSAGE_MAX
) -> Tuple[RuleSystem, str]:
    """Trim ``rule_system`` until its publication fits in ``limit`` characters.

    Trailing rules are dropped first; if one rule is left and still too long,
    the shortest rule of the system is tried alone. The returned message can
    still exceed ``limit`` when no single rule fits. 0 disables the limit.
    """
    message = format_publication(rule_system, fitness, hashtag)
    if limit <= 0 or len(message) <= limit:
        return rule_system, message

    rules = list(rule_system.rules)
    while len(rules) > 1:
        rules.pop()
        trimmed = RuleSystem(tuple(rules))
        message = format_publication(trimmed, fitness, hashtag)
        if len(message) <= limit:
            return trimmed, message

    shortest = RuleSystem((min(rule_system.rules, key=lambda r: len(r.to_clause())),))
    return shortest, format_publication(shortest, fitness, hashtag)


def _is_newer(mention_id: str, last: Optional[str]) -> bool:
    if last is None:
        return True
    try:
        return int(mention_id) > int(last)
    except ValueError:
        return mention_id != last


class LifecycleController:
    """Drives search -> execute -> score -> publish/scrape -> evolve."""

    def __init__(
        self,
        channel: Channel,
        *,
        parser: Optional[RuleParser] = None,
        engine: Optional[EvolutionaryEngine] = None,
        scorer: Optional[FitnessScorer] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        cfg = dict(config or {})
        self.channel = channel
        self.parser = parser or get_rule_parser()
        self.engine = engine or EvolutionaryEngine()
        self.scorer = scorer or ConstantFitness()
        self.hashtag = str(cfg.get("mycelial_hashtag") or "fungifeed").lstrip("#")
        self.candidate_limit = int(cfg.get("candidate_limit", 30) or 30)
        self.message_limit = int(cfg.get("max_message_chars", MESSAGE_MAX) or 0)
        self.state = LifecycleState(
            local_history=FungiHistory(max_entries=int(cfg.get("history_limit", 0) or 0)),
        )
        self._state_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()

    # ------ Phase 1: search ------

    def find_seed_program(self) -> Optional[str]:
        """Decoded content of the first candidate message holding a valid program."""
        messages = self.channel.fetch_candidate_messages(self.hashtag, self.candidate_limit)
        for message in messages:
            content = self.channel.decode_markup(message.get("content", ""))
            if self.parser.contains_valid_program(content):
                logger.info("Found status with FUNGI code (id=%s)", message.get("id", ""))
                return content
        return None

    def run_initial_search(self) -> RuleSystem:
        """Seed the current rule system; never fails."""
        self._set_phase(LifecyclePhase.SEARCHING)
        try:
            program = self.find_seed_program()
        except CollaboratorIOError as exc:
            logger.warning("Initial search failed, using fallback program: %s", exc)
            program = None
        if program is None:
            logger.info("No FUNGI code found under #%s, using fallback program", self.hashtag)
            program = FALLBACK_PROGRAM

        seed = self.parser.parse(program)
        with self._state_lock:
            self.state.current_system = seed
            self.state.fitness = 0.0
            self.state.seeded = True
            self.state.phase = LifecyclePhase.ACTIVE
        logger.info("Seeded rule system with %d rules", len(seed))
        return seed

    # ------ Phase 2: answering ------

    def current_system(self) -> RuleSystem:
        with self._state_lock:
            return self.state.current_system

    def answer(self, text: str) -> str:
        response = respond(self.current_system(), text)
        self._record(text, response)
        return response

    def _record(self, text: str, response: str) -> None:
        with self._state_lock:
            self.state.interaction_log.record(text, response, matched=response != NO_MATCH_RESPONSE)
        logger.info("Response: %r", response)

    def answer_mentions(self) -> Dict[str, Any]:
        """Reply to every new mention; one failure does not block the others.

        The last seen mention id only moves past mentions that were replied
        to or failed for good. After a transient channel failure it stays put
        so the mention is fetched again next run; mentions already replied to
        in the meantime are skipped then.
        """
        with self._state_lock:
            since_id = self.state.last_mention_id
        try:
            mentions = self.channel.fetch_mentions(since_id)
        except CollaboratorIOError as exc:
            logger.warning("Fetching mentions failed: %s", exc)
            return {"mentions_found": 0, "answered": 0, "failed": 0, "error": str(exc)[:200]}

        answered = 0
        failed = 0
        held = False
        for mention in mentions:
            status = mention.get("status", {})
            mention_id = str(status.get("id") or "")
            with self._state_lock:
                already_replied = bool(mention_id) and mention_id in self.state.replied_mention_ids
            if already_replied:
                if not held:
                    self._advance_mention_id(mention_id)
                continue
            try:
                content = self.channel.decode_markup(status.get("content", ""))
                response = respond(self.current_system(), content)
                self.channel.reply(response, mention)
            except CollaboratorIOError as exc:
                failed += 1
                held = True
                logger.warning("Reply to mention %s failed, retrying next run: %s", mention_id or "?", exc)
                continue
            except Exception as exc:
                failed += 1
                log_exception("lifecycle", f"answering mention {mention_id or '?'} failed", exc)
            else:
                answered += 1
                self._record(content, response)
                if held and mention_id:
                    with self._state_lock:
                        self.state.replied_mention_ids.add(mention_id)
            if not held:
                self._advance_mention_id(mention_id)

        if mentions:
            logger.info("answer_mentions: %d mentions, %d answered, %d failed", len(mentions), answered, failed)
        return {"mentions_found": len(mentions), "answered": answered, "failed": failed}

    def _advance_mention_id(self, mention_id: str) -> None:
        if not mention_id:
            return
        with self._state_lock:
            if not _is_newer(mention_id, self.state.last_mention_id):
                return
            self.state.last_mention_id = mention_id
            self.state.replied_mention_ids = {
                m for m in self.state.replied_mention_ids if _is_newer(m, mention_id)
            }

    # ------ Phases 3-5 ------

    def scrape_mycelial_history(self, own_message: str = "") -> MycelialHistory:
        """Rule systems and fitness posted by other bots under the hashtag."""
        history = MycelialHistory()
        for message in self.channel.fetch_candidate_messages(self.hashtag, self.candidate_limit):
            content = self.channel.decode_markup(message.get("content", ""))
            if own_message and content.strip() == own_message.strip():
                continue
            observation = self.parser.parse_observation(content)
            if observation is not None:
                history.append(observation)
        logger.info("Scraped %d rule systems from #%s", len(history), self.hashtag)
        return history

    def run_lifecycle(self) -> Dict[str, Any]:
        """One scoring/publishing/evolving cycle. Concurrent calls are skipped."""
        if not self._lifecycle_lock.acquire(blocking=False):
            logger.info("Lifecycle already running, skipping this trigger")
            return {"skipped": "busy"}
        try:
            if not self.state.seeded:
                self.run_initial_search()
            return self._run_cycle()
        finally:
            self._lifecycle_lock.release()

    def _run_cycle(self) -> Dict[str, Any]:
        with self._state_lock:
            current = self.state.current_system
            scored_log = self.state.interaction_log.snapshot()
        interactions = len(scored_log)

        self._set_phase(LifecyclePhase.SCORING)
        fitness = float(self.scorer.compute_fitness(current, scored_log))
        with self._state_lock:
            self.state.fitness = fitness

        phase = LifecyclePhase.PUBLISHING
        self._set_phase(phase)
        current, message = self._publishable(current, fitness)
        try:
            self.channel.publish(message)
            mycelial = self.scrape_mycelial_history(own_message=message)
        except CollaboratorIOError as exc:
            logger.warning("Lifecycle deferred during %s: %s", phase.value, exc)
            self._set_phase(LifecyclePhase.ACTIVE)
            return {"deferred": phase.value, "error": str(exc)[:200]}

        self._set_phase(LifecyclePhase.EVOLVING)
        next_system = self.engine.evolve(self.state.local_history, mycelial, current, fitness)
        with self._state_lock:
            self.state.local_history.append(FungiState(current, fitness))
            self.state.current_system = next_system
            self.state.interaction_log.consume(interactions)
            self.state.cycles += 1
            self.state.phase = LifecyclePhase.ACTIVE
            cycles = self.state.cycles

        logger.info(
            "Cycle %d complete: fitness=%.4f interactions=%d mycelial=%d next=%d rules",
            cycles, fitness, interactions, len(mycelial), len(next_system),
        )
        return {
            "cycle": cycles,
            "fitness": fitness,
            "interactions": interactions,
            "mycelial": len(mycelial),
            "rules": len(next_system),
        }

    def _publishable(self, rule_system: RuleSystem, fitness: float) -> Tuple[RuleSystem, str]:
        """The rule system as it will be published, and its message."""
        fitted, message = fit_publication(rule_system, fitness, self.hashtag, self.message_limit)
        if self.message_limit > 0 and len(message) > self.message_limit:
            logger.warning("No rule fits in %d characters, publishing the fallback program", self.message_limit)
            fitted = self.parser.parse(FALLBACK_PROGRAM)
            message = format_publication(fitted, fitness, self.hashtag)
        elif len(fitted) < len(rule_system):
            logger.info(
                "Trimmed rule system from %d to %d rules to fit %d characters",
                len(rule_system), len(fitted), self.message_limit,
            )
        return fitted, message

    # ------ Status ------

    def _set_phase(self, phase: LifecyclePhase) -> None:
        with self._state_lock:
            self.state.phase = phase

    def snapshot(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                "phase": self.state.phase.value,
                "program": self.state.current_system.to_program(),
                "fitness": self.state.fitness,
                "history": len(self.state.local_history),
                "interactions": len(self.state.interaction_log),
                "cycles": self.state.cycles,
                "last_mention_id": self.state.last_mention_id,
            }
