"""Tests for fungi/lifecycle.py -- the five-phase fungi lifecycle."""

import random
import threading

import pytest

from fungi.channel import CollaboratorIOError, decode_markup
from fungi.evolution import EvolutionaryEngine
from fungi.fitness import ConstantFitness, MatchRateFitness
from fungi.lifecycle import (
    FALLBACK_PROGRAM,
    LifecycleController,
    LifecyclePhase,
    MESSAGE_MAX,
    fit_publication,
    format_publication,
)
from fungi.match_engine import NO_MATCH_RESPONSE
from fungi.rule_model import Rule, RuleSystem


class FakeChannel:
    """In-memory stand-in for the X channel."""

    def __init__(self, candidates=None, mentions=None):
        self.candidates = list(candidates or [])
        self.mentions = list(mentions or [])
        self.published = []
        self.replies = []
        self.fail_fetch = False
        self.fail_publish = False
        self.fail_reply_ids = set()
        self.broken_reply_ids = set()
        self.max_length = None
        self.fetch_calls = 0
        self.mention_since_ids = []

    def fetch_candidate_messages(self, tag, limit):
        self.fetch_calls += 1
        if self.fail_fetch:
            raise CollaboratorIOError("timeline unavailable")
        return self.candidates[:limit]

    def fetch_mentions(self, since_id=None):
        self.mention_since_ids.append(since_id)
        if self.fail_fetch:
            raise CollaboratorIOError("mentions unavailable")
        return [m for m in self.mentions if since_id is None or int(m["status"]["id"]) > int(since_id)]

    def publish(self, text):
        if self.fail_publish:
            raise CollaboratorIOError("post failed")
        if self.max_length is not None and len(text) > self.max_length:
            raise CollaboratorIOError("create_tweet failed: 400 Bad Request")
        self.published.append(text)
        return str(len(self.published))

    def reply(self, text, target):
        if target["status"]["id"] in self.fail_reply_ids:
            raise CollaboratorIOError("reply failed")
        if target["status"]["id"] in self.broken_reply_ids:
            raise ValueError("malformed mention")
        self.replies.append((text, target["status"]["id"]))
        return "r" + target["status"]["id"]

    def decode_markup(self, text):
        return decode_markup(text)


def _mention(mid, content):
    return {"status": {"id": str(mid), "content": content, "author": "alice"}}


def _controller(channel, scorer=None, **config):
    return LifecycleController(
        channel,
        engine=EvolutionaryEngine(random.Random(0)),
        scorer=scorer or ConstantFitness(),
        config={"mycelial_hashtag": "fungifeed", "candidate_limit": 30, **config},
    )


# ------ SEARCHING ------


def test_initial_search_adopts_first_valid_program():
    channel = FakeChannel(candidates=[
        {"id": "1", "content": "<p>no code here</p>"},
        {"id": "2", "content": "<p>FUNGISTART RULE:hi|RESPONSE:Hi &amp; welcome FUNGIEND</p>"},
        {"id": "3", "content": "FUNGISTART RULE:later|RESPONSE:ignored FUNGIEND"},
    ])
    controller = _controller(channel)
    seed = controller.run_initial_search()
    assert seed.pairs() == [("hi", "Hi & welcome")]
    assert controller.state.phase == LifecyclePhase.ACTIVE


def test_initial_search_falls_back_when_nothing_found():
    channel = FakeChannel(candidates=[{"id": "1", "content": "hello world"}])
    controller = _controller(channel)
    seed = controller.run_initial_search()
    assert seed == controller.parser.parse(FALLBACK_PROGRAM)


def test_initial_search_never_fails_on_channel_error():
    channel = FakeChannel()
    channel.fail_fetch = True
    controller = _controller(channel)
    seed = controller.run_initial_search()
    assert seed.pairs() == [("Hello", "Hello, Fediverse user!")]
    assert controller.state.phase == LifecyclePhase.ACTIVE


# ------ ACTIVE ------


def test_answer_mentions_replies_to_each():
    channel = FakeChannel(mentions=[_mention(10, "@bot Hello!"), _mention(11, "@bot what?")])
    controller = _controller(channel)
    controller.run_initial_search()

    stats = controller.answer_mentions()
    assert stats == {"mentions_found": 2, "answered": 2, "failed": 0}
    assert channel.replies == [("Hello, Fediverse user!", "10"), (NO_MATCH_RESPONSE, "11")]
    assert controller.state.last_mention_id == "11"
    assert len(controller.state.interaction_log) == 2


def test_answer_mentions_skips_already_answered():
    channel = FakeChannel(mentions=[_mention(10, "hello")])
    controller = _controller(channel)
    controller.run_initial_search()
    controller.answer_mentions()
    stats = controller.answer_mentions()
    assert stats["mentions_found"] == 0
    assert channel.mention_since_ids == [None, "10"]


def test_one_failed_reply_does_not_block_others():
    channel = FakeChannel(mentions=[_mention(1, "hello"), _mention(2, "hello"), _mention(3, "hello")])
    channel.fail_reply_ids = {"2"}
    controller = _controller(channel)
    controller.run_initial_search()

    stats = controller.answer_mentions()
    assert stats["answered"] == 2
    assert stats["failed"] == 1
    assert [mid for _, mid in channel.replies] == ["1", "3"]


def test_transient_reply_failure_is_retried_next_run():
    channel = FakeChannel(mentions=[_mention(1, "hello"), _mention(2, "hello"), _mention(3, "hello")])
    channel.fail_reply_ids = {"2"}
    controller = _controller(channel)
    controller.run_initial_search()

    controller.answer_mentions()
    assert controller.state.last_mention_id == "1"

    channel.fail_reply_ids = set()
    stats = controller.answer_mentions()
    assert stats == {"mentions_found": 2, "answered": 1, "failed": 0}
    assert [mid for _, mid in channel.replies] == ["1", "3", "2"]
    assert controller.state.last_mention_id == "3"
    assert controller.state.replied_mention_ids == set()
    assert len(controller.state.interaction_log) == 3
    assert controller.answer_mentions()["mentions_found"] == 0


def test_permanent_reply_failure_is_not_retried():
    channel = FakeChannel(mentions=[_mention(1, "hello"), _mention(2, "hello")])
    channel.broken_reply_ids = {"2"}
    controller = _controller(channel)
    controller.run_initial_search()

    stats = controller.answer_mentions()
    assert stats["failed"] == 1
    assert controller.state.last_mention_id == "2"
    assert controller.answer_mentions()["mentions_found"] == 0


def test_mention_fetch_failure_reports_error():
    channel = FakeChannel()
    controller = _controller(channel)
    controller.run_initial_search()
    channel.fail_fetch = True
    stats = controller.answer_mentions()
    assert stats["mentions_found"] == 0
    assert "error" in stats


# ------ SCORING / PUBLISHING / EVOLVING ------


def test_run_lifecycle_publishes_and_evolves():
    other = "FUNGISTART RULE:spore|RESPONSE:Spores! FUNGIEND Fitness: 2.0 #fungifeed"
    channel = FakeChannel(candidates=[{"id": "9", "content": other}])
    controller = _controller(channel)
    seed = controller.run_initial_search()

    stats = controller.run_lifecycle()
    assert channel.published == [format_publication(seed, 0.0, "fungifeed")]
    assert channel.published[0].endswith(" Fitness: 0.0 #fungifeed")
    assert stats["cycle"] == 1
    assert stats["mycelial"] == 1
    assert len(controller.state.local_history) == 1
    assert controller.state.local_history.latest().rule_system == seed
    assert len(controller.current_system()) > 0
    assert controller.state.phase == LifecyclePhase.ACTIVE


def test_run_lifecycle_seeds_lazily():
    channel = FakeChannel()
    controller = _controller(channel)
    stats = controller.run_lifecycle()
    assert stats["cycle"] == 1
    assert controller.state.seeded


def test_scoring_uses_interactions_then_clears_them():
    channel = FakeChannel(mentions=[_mention(1, "hello"), _mention(2, "nothing")])
    controller = _controller(channel, scorer=MatchRateFitness())
    controller.run_initial_search()
    controller.answer_mentions()

    stats = controller.run_lifecycle()
    assert stats["fitness"] == 0.5
    assert stats["interactions"] == 2
    assert controller.state.local_history.latest().fitness == 0.5
    assert "Fitness: 0.5" in channel.published[0]
    assert len(controller.state.interaction_log) == 0


class _AnsweringScorer:
    """Records a new interaction while the cycle is being scored."""

    def __init__(self):
        self.controller = None

    def compute_fitness(self, rule_system, interaction_log):
        self.controller.answer("hello during scoring")
        return float(len(interaction_log))


def test_scoring_reads_a_snapshot_of_the_interaction_log():
    channel = FakeChannel(mentions=[_mention(1, "hello"), _mention(2, "nothing")])
    scorer = _AnsweringScorer()
    controller = _controller(channel, scorer=scorer)
    scorer.controller = controller
    controller.run_initial_search()
    controller.answer_mentions()

    stats = controller.run_lifecycle()
    assert stats["fitness"] == 2.0
    assert stats["interactions"] == 2
    assert [i.text for i in controller.state.interaction_log] == ["hello during scoring"]


def _program_of_length(length):
    rules = [Rule("hello", "Hi there"), Rule("pad", "x")]
    base = len(RuleSystem(tuple(rules)).to_program())
    rules[1] = Rule("pad", "x" * (length - base + 1))
    return RuleSystem(tuple(rules)).to_program()


def test_oversized_publication_is_trimmed_and_cycles_advance():
    seed_program = _program_of_length(273)
    assert len(seed_program) == 273
    channel = FakeChannel(candidates=[{"id": "1", "content": seed_program}])
    channel.max_length = MESSAGE_MAX
    controller = _controller(channel)
    seed = controller.run_initial_search()
    assert len(format_publication(seed, 0.0, "fungifeed")) > MESSAGE_MAX

    for _ in range(5):
        assert "deferred" not in controller.run_lifecycle()
    assert controller.state.cycles == 5
    assert all(len(message) <= MESSAGE_MAX for message in channel.published)
    first = controller.parser.parse(channel.published[0])
    assert first.pairs() == [("hello", "Hi there")]
    assert list(controller.state.local_history)[0].rule_system == first


def test_publication_falls_back_when_no_rule_fits():
    long_program = RuleSystem((Rule("long", "y" * 150),)).to_program()
    channel = FakeChannel(candidates=[{"id": "1", "content": long_program}])
    channel.max_length = 100
    controller = _controller(channel, max_message_chars=100)
    controller.run_initial_search()

    stats = controller.run_lifecycle()
    fallback = controller.parser.parse(FALLBACK_PROGRAM)
    assert stats["cycle"] == 1
    assert channel.published == [format_publication(fallback, 0.0, "fungifeed")]
    assert controller.state.local_history.latest().rule_system == fallback


def test_fit_publication():
    system = RuleSystem(tuple(Rule(f"word{i}", "a reply of moderate length") for i in range(12)))
    fitted, message = fit_publication(system, 0.5, "fungifeed", limit=120)
    assert len(message) <= 120
    assert 0 < len(fitted) < len(system)
    assert fitted.rules == system.rules[:len(fitted)]
    assert message == format_publication(fitted, 0.5, "fungifeed")

    unlimited, _ = fit_publication(system, 0.5, "fungifeed", limit=0)
    assert unlimited == system


def test_fit_publication_prefers_shortest_single_rule():
    system = RuleSystem((Rule("long", "z" * 300), Rule("hi", "Hello")))
    fitted, message = fit_publication(system, 0.0, "fungifeed")
    assert fitted.pairs() == [("hi", "Hello")]
    assert len(message) <= MESSAGE_MAX


def test_own_publication_is_not_scraped_as_mycelial():
    channel = FakeChannel()
    controller = _controller(channel)
    controller.run_initial_search()
    real_publish = channel.publish

    def publish_and_echo(text):
        channel.candidates.insert(0, {"id": "echo", "content": text})
        return real_publish(text)

    channel.publish = publish_and_echo
    stats = controller.run_lifecycle()
    assert stats["mycelial"] == 0


def test_publish_failure_defers_without_changing_state():
    channel = FakeChannel()
    controller = _controller(channel)
    seed = controller.run_initial_search()
    channel.fail_publish = True

    stats = controller.run_lifecycle()
    assert stats["deferred"] == "publishing"
    assert controller.current_system() == seed
    assert len(controller.state.local_history) == 0
    assert controller.state.phase == LifecyclePhase.ACTIVE

    channel.fail_publish = False
    assert controller.run_lifecycle()["cycle"] == 1


def test_scrape_failure_defers():
    channel = FakeChannel()
    controller = _controller(channel)
    controller.run_initial_search()
    channel.fail_fetch = True
    stats = controller.run_lifecycle()
    assert stats["deferred"] == "publishing"
    assert controller.state.cycles == 0


def test_concurrent_lifecycle_invocation_is_skipped():
    channel = FakeChannel()
    controller = _controller(channel)
    controller.run_initial_search()

    entered = threading.Event()
    release = threading.Event()
    real_publish = channel.publish

    def slow_publish(text):
        entered.set()
        release.wait(5)
        return real_publish(text)

    channel.publish = slow_publish
    results = {}
    worker = threading.Thread(target=lambda: results.setdefault("first", controller.run_lifecycle()))
    worker.start()
    assert entered.wait(5)
    try:
        assert controller.run_lifecycle() == {"skipped": "busy"}
        # Answering still works while the lifecycle is in flight
        assert controller.answer("hello") == "Hello, Fediverse user!"
    finally:
        release.set()
        worker.join(5)
    assert results["first"]["cycle"] == 1


def test_several_cycles_grow_history():
    channel = FakeChannel()
    controller = _controller(channel, history_limit=2)
    controller.run_initial_search()
    for _ in range(3):
        controller.run_lifecycle()
    assert controller.state.cycles == 3
    assert len(controller.state.local_history) == 2
    assert len(channel.published) == 3
    for message in channel.published:
        assert controller.parser.contains_valid_program(message)


def test_snapshot():
    controller = _controller(FakeChannel())
    controller.run_initial_search()
    snap = controller.snapshot()
    assert snap["phase"] == "active"
    assert snap["program"].startswith("FUNGISTART")
    assert snap["cycles"] == 0


@pytest.mark.parametrize("raw,expected", [
    ("<p>FUNGISTART RULE:a|RESPONSE:b &lt;3 FUNGIEND</p>", "FUNGISTART RULE:a|RESPONSE:b <3 FUNGIEND"),
    ("line one<br>line two", "line one\nline two"),
    ("", ""),
])
def test_decode_markup(raw, expected):
    assert decode_markup(raw) == expected
