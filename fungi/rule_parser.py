"""
Parser for the FUNGI rule language (single-line version).

Programs are embedded in plain-text channel messages and delimited by
FUNGISTART / FUNGIEND. Everything outside the delimiters is ignored, so a
message may carry commentary around the program. Clause format:

    [RULE:]trigger|RESPONSE:response[|CONDITION:key==value][|TEMPLATE:k1=v1,k2=v2]

Clauses are separated by ``|RULE:``. Example:

    FUNGISTART RULE:hello|RESPONSE:Hi there!|
    RULE:pricing|RESPONSE:Plans are at https://example.com/pricing|
    RULE:weather|RESPONSE:Today's weather in {city} is {sky}|TEMPLATE:city=Berlin,sky=grey FUNGIEND

Published programs carry a ``Fitness: <score>`` suffix after the end marker;
``extract_fitness`` reads it back when scraping other bots' messages.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Dict, List, Optional

from fungi.history import FungiState
from fungi.rule_model import (
    PROGRAM_END,
    PROGRAM_START,
    RULE_LABEL,
    RULE_SEPARATOR,
    Rule,
    RuleSystem,
)

logger = logging.getLogger("fungi.parser")

FITNESS_RE = re.compile(r"Fitness:\s*(-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)")
_NEWLINES_RE = re.compile(r"[\r\n]+")


class MalformedProgramError(ValueError):
    """Raised when a program is missing a marker or holds an unparseable clause."""


class RuleParser:
    """Turns FUNGI program text into RuleSystem values."""

    def __init__(self, program_start: str = PROGRAM_START, program_end: str = PROGRAM_END):
        self.program_start = program_start
        self.program_end = program_end

    def parse(self, raw: str) -> RuleSystem:
        """Parse the first program found in ``raw``.

        Raises MalformedProgramError when either marker is absent or a clause
        has no trigger or no RESPONSE segment.
        """
        body = self._program_body(raw)
        rules: List[Rule] = []
        for clause in body.split(RULE_SEPARATOR):
            stripped = clause.strip()
            if not stripped.replace("|", "").strip():
                continue
            rules.append(self._parse_clause(stripped))
        return RuleSystem(tuple(rules))

    def contains_valid_program(self, content: str) -> bool:
        """True when ``content`` embeds a program with at least one well-formed clause."""
        if self.program_start not in content and self.program_end not in content:
            return False
        try:
            return len(self.parse(content)) > 0
        except MalformedProgramError as exc:
            logger.debug("Rejected candidate program: %s", exc)
            return False

    def extract_fitness(self, content: str) -> Optional[float]:
        """Fitness score published after the end marker, if any."""
        end = content.find(self.program_end)
        tail = content[end + len(self.program_end):] if end != -1 else content
        m = FITNESS_RE.search(tail)
        if not m:
            return None
        try:
            value = float(m.group(1))
        except ValueError:
            return None
        if not math.isfinite(value):
            logger.debug("Ignoring non-finite fitness %r", m.group(1))
            return None
        return value

    def parse_observation(self, content: str) -> Optional[FungiState]:
        """Parse a scraped message into a (rule system, fitness) observation."""
        if not self.contains_valid_program(content):
            return None
        fitness = self.extract_fitness(content)
        return FungiState(self.parse(content), fitness if fitness is not None else 0.0)

    # ------ internals ------

    def _program_body(self, raw: str) -> str:
        start = raw.find(self.program_start)
        if start == -1:
            raise MalformedProgramError(f"did not find program start ({self.program_start})")
        body_start = start + len(self.program_start)
        end = raw.find(self.program_end, body_start)
        if end == -1:
            raise MalformedProgramError(f"did not find program end ({self.program_end})")
        return _NEWLINES_RE.sub("", raw[body_start:end])

    def _parse_clause(self, clause: str) -> Rule:
        parts = clause.split("|")
        trigger = parts[0].strip()
        if trigger.startswith(RULE_LABEL):
            trigger = trigger[len(RULE_LABEL):].strip()
        if not trigger:
            raise MalformedProgramError(f"clause without trigger: {clause!r}")

        response: Optional[str] = None
        condition: Optional[str] = None
        template: Dict[str, str] = {}
        for part in parts[1:]:
            key, sep, value = part.partition(":")
            if not sep:
                continue
            key = key.strip()
            value = value.strip()
            if key == "RESPONSE":
                response = value
            elif key == "CONDITION":
                condition = value
            elif key == "TEMPLATE":
                template = _parse_template(value)

        if response is None:
            raise MalformedProgramError(f"clause without RESPONSE: {clause!r}")
        return Rule(trigger=trigger, response=response, condition=condition or None, template=template)


def _parse_template(value: str) -> Dict[str, str]:
    template: Dict[str, str] = {}
    for pair in value.split(","):
        k, sep, v = pair.partition("=")
        k = k.strip()
        if not sep or not k:
            continue
        template[k] = v.strip()
    return template


_parser: Optional[RuleParser] = None


def get_rule_parser() -> RuleParser:
    """Get the shared RuleParser instance."""
    global _parser
    if _parser is None:
        _parser = RuleParser()
    return _parser
