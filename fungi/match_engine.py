"""Selects a response for an input text from a rule system."""

from __future__ import annotations

from fungi.rule_model import Rule, RuleSystem

NO_MATCH_RESPONSE = "Sorry, no match"


def matches(rule: Rule, text: str) -> bool:
    """Case-insensitive substring test of the rule trigger against ``text``."""
    return rule.trigger.lower() in (text or "").lower()


def respond(rule_system: RuleSystem, text: str) -> str:
    """Return the response of the last matching rule, or NO_MATCH_RESPONSE.

    Later rules override earlier ones. Conditions and templates are carried
    on rules but not evaluated here.
    """
    response = NO_MATCH_RESPONSE
    for rule in rule_system:
        if matches(rule, text):
            response = rule.response
    return response
