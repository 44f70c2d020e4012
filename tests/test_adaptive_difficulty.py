"""Tests for core/adaptive_difficulty.py"""

import random

import pytest

from conftest import make_mcq
from core.adaptive_difficulty import AdaptiveDifficultyEngine
from core.topic_performance import TopicPerformance


@pytest.fixture
def engine(store):
    return AdaptiveDifficultyEngine(store, rng=random.Random(3))


def test_default_target_picks_closest_to_half(engine, question_bank):
    question = engine.get_next_question("s1", "t1")
    assert question.id == "q10"
    assert question.difficulty == 0.5


def test_target_follows_topic_performance(engine, store, question_bank):
    store.save_topic_performance(TopicPerformance("s1", "t1", current_difficulty=0.3))
    assert engine.get_next_question("s1", "t1").difficulty == 0.3


def test_failure_streak_nudges_target_down(engine, store, question_bank):
    store.save_topic_performance(
        TopicPerformance("s1", "t1", current_difficulty=0.5, consecutive_failures=3)
    )
    assert engine.target_difficulty("s1", "t1") == 0.4
    assert engine.get_next_question("s1", "t1").difficulty == 0.4


def test_success_streak_nudges_target_up(engine, store):
    store.save_topic_performance(
        TopicPerformance("s1", "t1", current_difficulty=0.9, consecutive_successes=5)
    )
    assert engine.target_difficulty("s1", "t1") == 0.9


def test_excluded_questions_are_skipped(engine, question_bank):
    question = engine.get_next_question("s1", "t1", exclude_question_ids=["q10"])
    assert question.id != "q10"
    assert question.difficulty in (0.45, 0.55)


def test_less_used_candidates_rank_first(engine, store):
    store.save_question(make_mcq("busy", difficulty=0.5, usage_count=50))
    store.save_question(make_mcq("fresh", difficulty=0.6))
    for i in range(10):
        store.save_question(make_mcq(f"filler{i}", difficulty=0.65, usage_count=1))

    # the heavily used exact match falls outside the ten-candidate cap
    assert engine.get_next_question("s1", "t1").id == "fresh"


def test_fallback_outside_band(engine, store):
    store.save_question(make_mcq("hard-used", difficulty=0.95, usage_count=4))
    store.save_question(make_mcq("hard-new", difficulty=0.99, usage_count=0))

    assert engine.get_next_question("s1", "t1").id == "hard-new"


def test_inactive_questions_are_ignored(engine, store):
    store.save_question(make_mcq("retired", difficulty=0.5, is_active=False))
    assert engine.get_next_question("s1", "t1") is None


def test_no_questions_returns_none(engine, question_bank):
    used = [q.id for q in question_bank]
    assert engine.get_next_question("s1", "t1", used) is None


# ==================== Batch Selection ====================

def test_questions_for_topic_are_distinct(engine, question_bank):
    questions = engine.get_adaptive_questions_for_topic("s1", "t1", count=5)
    ids = [q.id for q in questions]
    assert len(ids) == 5
    assert len(set(ids)) == 5


def test_questions_for_chapter_spread_over_topics(engine, store):
    for topic_id in ("t1", "t2", "t3"):
        for i in range(4):
            store.save_question(make_mcq(f"{topic_id}-{i}", difficulty=0.4 + i * 0.05, topic_id=topic_id))

    questions = engine.get_adaptive_questions_for_chapter("s1", "ch1", count=7)

    assert len(questions) == 7
    assert len({q.id for q in questions}) == 7
    assert {q.topic_id for q in questions} <= {"t1", "t2", "t3"}


def test_questions_for_unknown_chapter(engine, question_bank):
    assert engine.get_adaptive_questions_for_chapter("s1", "missing", count=5) == []


def test_shuffle_keeps_every_item(engine):
    items = list(range(20))
    shuffled = engine.shuffle(items)

    assert sorted(shuffled) == items
    assert items == list(range(20))
