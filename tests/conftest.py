"""Shared fixtures: in-memory store, controllable clock, question factories."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from core.adaptive_difficulty import AdaptiveDifficultyEngine
from core.questions import FillInBlankQuestion, McqQuestion, ShortAnswerQuestion
from core.session_manager import SessionHooks, SessionManager
from core.topic_performance import TopicPerformanceTracker
from memory_store import InMemoryStore


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_mcq(question_id, difficulty=0.5, chapter_id="ch1", topic_id="t1", **kwargs):
    return McqQuestion(
        id=question_id,
        stem=f"Question {question_id}",
        choices=["A", "B", "C", "D"],
        correct_index=kwargs.pop("correct_index", 1),
        chapter_id=chapter_id,
        topic_id=topic_id,
        topic=topic_id,
        difficulty=difficulty,
        **kwargs,
    )


def make_fill_in(question_id, correct_answer="Paris", accepted_answers=None, **kwargs):
    return FillInBlankQuestion(
        id=question_id,
        stem="The capital of France is ____",
        correct_answer=correct_answer,
        accepted_answers=accepted_answers or [],
        chapter_id=kwargs.pop("chapter_id", "ch1"),
        topic_id=kwargs.pop("topic_id", "t1"),
        **kwargs,
    )


def make_short_answer(question_id, correct_answer="photosynthesis", accepted_answers=None, **kwargs):
    return ShortAnswerQuestion(
        id=question_id,
        stem="How do plants make food?",
        correct_answer=correct_answer,
        accepted_answers=accepted_answers or [],
        chapter_id=kwargs.pop("chapter_id", "ch1"),
        topic_id=kwargs.pop("topic_id", "t1"),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore(lock_wait_seconds=1)


@pytest.fixture
def hook_calls():
    return {"on_answer": [], "on_session_complete": []}


@pytest.fixture
def manager(store, clock, hook_calls):
    hooks = SessionHooks(
        on_answer=hook_calls["on_answer"].append,
        on_session_complete=hook_calls["on_session_complete"].append,
    )
    return SessionManager(
        store,
        engine=AdaptiveDifficultyEngine(store, rng=random.Random(7)),
        tracker=TopicPerformanceTracker(store, clock=clock),
        hooks=hooks,
        clock=clock,
    )


@pytest.fixture
def question_bank(store):
    """Twenty mcq questions in ch1/t1 spread over difficulty 0.05 .. 1.0, correct_index 1."""
    questions = [make_mcq(f"q{i:02d}", difficulty=round(i * 0.05, 2)) for i in range(1, 21)]
    for question in questions:
        store.save_question(question)
    return questions
