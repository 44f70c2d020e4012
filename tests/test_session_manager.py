"""Tests for core/session_manager.py"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_fill_in, make_mcq
from core.errors import (
    ActiveSessionExists, InvalidAnswerFormat, InvalidRequest, NoActiveSession,
    NoCurrentQuestion, NoQuestionsAvailable, SessionAccessDenied, SessionBusy,
    SessionNotActive, SessionNotFound, StorageError,
)
from core.session import (
    ABANDONED, ACTIVE, COMPLETED, FIXED, REVISION,
    AdaptiveParameters, AssessmentSession, ResponseRecord,
)
from core.session_manager import SessionHooks, SessionManager
from memory_store import InMemoryStore


def _answer_all(manager, session_id, count, correct=True):
    """Answer `count` questions (correct_index is 1 in the bank). Returns the last result."""
    result = None
    for _ in range(count):
        result = manager.submit_answer(session_id, "s1", answer_index=1 if correct else 0, response_time_ms=1000)
    return result


# ==================== Start ====================

def test_start_presents_first_question(manager, store, question_bank):
    result = manager.start_session("s1", "ch1")

    session = result.session
    assert session.status == ACTIVE
    assert session.total_questions == 1
    assert result.first_question["question_number"] == 1
    assert result.first_question["total_questions"] == 20
    assert "correct_index" not in result.first_question
    assert store.find_active_session("s1").id == session.id


def test_adaptive_start_uses_initial_difficulty(manager, question_bank):
    result = manager.start_session("s1", "ch1", adaptive_parameters={"initial_difficulty": 0.8})
    assert result.first_question["difficulty"] == 0.8


def test_fixed_start_uses_least_used_question(manager, store, question_bank):
    question = store.get_question("q01")
    question.usage_count = 3
    store.save_question(question)

    result = manager.start_session("s1", "ch1", session_type=FIXED)
    assert result.first_question["id"] == "q02"


def test_start_with_topic_filter(manager, store, question_bank):
    store.save_question(make_mcq("other-topic", topic_id="t2"))
    result = manager.start_session("s1", "ch1", topic="t2")
    assert result.first_question["id"] == "other-topic"


def test_start_rejects_second_active_session(manager, clock, question_bank):
    first = manager.start_session("s1", "ch1").session
    clock.advance(minutes=30)

    with pytest.raises(ActiveSessionExists) as excinfo:
        manager.start_session("s1", "ch1")
    assert excinfo.value.details == {"session_id": first.id}


def test_stale_session_is_abandoned_on_start(manager, store, clock, question_bank):
    old = manager.start_session("s1", "ch1").session
    clock.advance(hours=3)

    new = manager.start_session("s1", "ch1").session

    assert store.get_session(old.id).status == ABANDONED
    assert store.get_session(old.id).finished_at == clock.now
    assert new.status == ACTIVE
    assert store.find_active_session("s1").id == new.id


def test_start_without_questions(manager, store):
    with pytest.raises(NoQuestionsAvailable):
        manager.start_session("s1", "empty-chapter")
    assert store.find_active_session("s1") is None


@pytest.mark.parametrize("kwargs", [
    {"session_type": "random"},
    {"mode": "exam"},
    {"max_questions": 2},
    {"adaptive_parameters": {"confidence_threshold": 1.5}},
])
def test_start_validates_parameters(manager, store, question_bank, kwargs):
    with pytest.raises(InvalidRequest):
        manager.start_session("s1", "ch1", **kwargs)
    assert store.list_sessions("s1") == []


def test_practice_mode_allows_retry(manager, question_bank):
    session = manager.start_session("s1", "ch1", mode="practice").session
    assert session.allow_retry and session.show_solutions


# ==================== Termination ====================

def test_adaptive_session_stops_once_confident(manager, question_bank, hook_calls):
    session_id = manager.start_session("s1", "ch1").session.id

    result = _answer_all(manager, session_id, 5)
    assert not result.is_complete
    assert result.next_question["question_number"] == 6

    result = _answer_all(manager, session_id, 2)
    assert not result.is_complete

    # 8 answered -> confidence 0.8 meets the default threshold
    result = _answer_all(manager, session_id, 1)
    assert result.is_complete
    assert result.next_question is None
    assert result.session.status == COMPLETED
    assert result.session.answered_questions == 8
    assert result.session.finished_at is not None

    assert len(hook_calls["on_answer"]) == 8
    assert hook_calls["on_session_complete"] == [{
        "user_id": "s1",
        "correct_answers": 8,
        "answered_questions": 8,
        "completed_sessions": 1,
    }]


def test_adaptive_session_stops_at_max_before_confident(manager, question_bank):
    session_id = manager.start_session(
        "s1", "ch1", max_questions=9, adaptive_parameters={"confidence_threshold": 0.95}
    ).session.id

    assert not _answer_all(manager, session_id, 8).is_complete
    result = _answer_all(manager, session_id, 1)
    assert result.is_complete
    assert result.session.answered_questions == 9


def test_fixed_session_runs_to_max_questions(manager, question_bank):
    session_id = manager.start_session("s1", "ch1", session_type=FIXED, max_questions=10).session.id

    result = _answer_all(manager, session_id, 9, correct=False)
    assert not result.is_complete
    assert result.session.total_questions == 10

    result = _answer_all(manager, session_id, 1, correct=False)
    assert result.is_complete
    assert result.session.answered_questions == 10
    assert result.session.correct_answers == 0
    assert result.session.status == COMPLETED


def test_session_completes_when_questions_run_out(manager, store):
    store.save_question(make_mcq("a", topic_id="t1"))
    store.save_question(make_mcq("b", topic_id="t2"))

    session_id = manager.start_session("s1", "ch1").session.id
    first = manager.submit_answer(session_id, "s1", answer_index=1)
    assert first.next_question["id"] == "b"

    second = manager.submit_answer(session_id, "s1", answer_index=1)
    assert second.is_complete
    assert second.session.answered_questions == 2


def test_completed_sessions_count_grows(manager, clock, question_bank, hook_calls):
    for _ in range(2):
        session_id = manager.start_session("s1", "ch1", session_type=FIXED, max_questions=5).session.id
        _answer_all(manager, session_id, 5)
        clock.advance(minutes=10)

    assert [c["completed_sessions"] for c in hook_calls["on_session_complete"]] == [1, 2]


# ==================== Submit ====================

def test_submit_updates_everything(manager, store, clock, question_bank, hook_calls):
    start = manager.start_session("s1", "ch1")
    question_id = start.first_question["id"]
    clock.advance(seconds=20)

    result = manager.submit_answer(start.session.id, "s1", answer_index=1, response_time_ms=20000)

    assert result.validation.is_correct
    assert result.feedback["type"] == "success"
    item = result.session.items[0]
    assert item.answered_at == clock.now
    assert item.answer_index == 1
    assert item.response_time_ms == 20000
    assert result.session.estimated_ability == pytest.approx(1.0)
    assert len(result.session.ability_history) == 1

    performance = store.get_topic_performance("s1", "t1")
    assert performance.attempts_count == 1
    assert performance.current_difficulty == 0.5

    question = store.get_question(question_id)
    assert question.usage_count == 1
    assert question.success_rate == 1.0
    assert question.average_response_time == 20000

    responses = store.list_responses("s1")
    assert [r.question_id for r in responses] == [question_id]

    assert hook_calls["on_answer"] == [{
        "user_id": "s1", "is_correct": True, "difficulty": 0.5, "response_time_ms": 20000,
    }]


def test_fill_in_blank_answer_is_normalized(manager, store):
    store.save_question(make_fill_in("angles", correct_answer="180", chapter_id="geometry"))
    session_id = manager.start_session("s1", "geometry", session_type=FIXED).session.id

    result = manager.submit_answer(session_id, "s1", answer=" 180 ")

    assert result.validation.is_correct
    assert result.session.items[0].answer == " 180 "
    assert result.session.items[0].answer_index is None


def test_invalid_answer_changes_nothing(manager, store, question_bank, hook_calls):
    session_id = manager.start_session("s1", "ch1").session.id

    with pytest.raises(InvalidAnswerFormat):
        manager.submit_answer(session_id, "s1", answer_index=7)
    with pytest.raises(InvalidAnswerFormat):
        manager.submit_answer(session_id, "s1")

    session = store.get_session(session_id)
    assert session.answered_questions == 0
    assert session.current_item.question_number == 1
    assert store.get_topic_performance("s1", "t1") is None
    assert store.list_responses("s1") == []
    assert hook_calls["on_answer"] == []


def test_submit_ownership_and_lookup(manager, store, question_bank):
    session_id = manager.start_session("s1", "ch1").session.id

    with pytest.raises(SessionAccessDenied):
        manager.submit_answer(session_id, "intruder", answer_index=1)
    with pytest.raises(SessionNotFound):
        manager.submit_answer("missing", "s1", answer_index=1)

    assert store.get_session(session_id).answered_questions == 0


def test_submit_to_finished_session(manager, question_bank):
    session_id = manager.start_session("s1", "ch1").session.id
    manager.abandon_session("s1")

    with pytest.raises(SessionNotActive):
        manager.submit_answer(session_id, "s1", answer_index=1)


def test_negative_response_time_is_rejected(manager, question_bank):
    session_id = manager.start_session("s1", "ch1").session.id
    with pytest.raises(InvalidRequest):
        manager.submit_answer(session_id, "s1", answer_index=1, response_time_ms=-5)


# ==================== Idempotent Retry ====================

def test_retry_of_answered_question_is_replayed(manager, store, question_bank, hook_calls):
    session_id = manager.start_session("s1", "ch1").session.id

    first = manager.submit_answer(session_id, "s1", answer_index=0, question_number=1)
    retry = manager.submit_answer(session_id, "s1", answer_index=1, question_number=1)

    assert retry.replayed
    assert not retry.validation.is_correct
    assert retry.next_question == first.next_question
    assert retry.session.answered_questions == 1
    assert store.get_topic_performance("s1", "t1").attempts_count == 1
    assert len(store.list_responses("s1")) == 1
    assert len(hook_calls["on_answer"]) == 1


def test_retry_after_completion_is_replayed(manager, question_bank):
    session_id = manager.start_session("s1", "ch1", session_type=FIXED, max_questions=5).session.id
    for number in range(1, 6):
        last = manager.submit_answer(session_id, "s1", answer_index=1, question_number=number)
    assert last.is_complete

    retry = manager.submit_answer(session_id, "s1", answer_index=1, question_number=5)
    assert retry.replayed
    assert retry.is_complete
    assert retry.session.answered_questions == 5


def test_question_number_must_match_current_item(manager, question_bank):
    session_id = manager.start_session("s1", "ch1").session.id
    with pytest.raises(NoCurrentQuestion):
        manager.submit_answer(session_id, "s1", answer_index=1, question_number=4)


class FlakyStore(InMemoryStore):
    """Fails the next N session saves / response writes."""

    def __init__(self):
        super().__init__(lock_wait_seconds=1)
        self.failing_saves = 0
        self.failing_responses = 0

    def save_session(self, session):
        if self.failing_saves:
            self.failing_saves -= 1
            raise StorageError()
        super().save_session(session)

    def record_response(self, record):
        if self.failing_responses:
            self.failing_responses -= 1
            raise StorageError()
        super().record_response(record)


@pytest.fixture
def flaky_store():
    store = FlakyStore()
    for i in range(1, 11):
        store.save_question(make_mcq(f"q{i:02d}", difficulty=round(i * 0.05, 2)))
    return store


@pytest.mark.parametrize("failure", ["failing_saves", "failing_responses"])
def test_retry_after_storage_failure_counts_answer_once(flaky_store, clock, failure):
    manager = SessionManager(flaky_store, clock=clock)
    session_id = manager.start_session("s1", "ch1", session_type=FIXED, max_questions=5).session.id

    setattr(flaky_store, failure, 1)
    with pytest.raises(StorageError):
        manager.submit_answer(session_id, "s1", answer_index=1, response_time_ms=1000, question_number=1)
    assert flaky_store.get_session(session_id).answered_questions == 0

    result = manager.submit_answer(session_id, "s1", answer_index=1, response_time_ms=1000, question_number=1)

    assert not result.replayed
    assert result.session.answered_questions == 1
    assert flaky_store.get_session(session_id).answered_questions == 1
    assert flaky_store.get_topic_performance("s1", "t1").attempts_count == 1
    assert flaky_store.get_question("q01").usage_count == 1
    assert len(flaky_store.list_responses("s1")) == 1


# ==================== Hooks ====================

def test_failing_hooks_do_not_break_submission(store, clock, question_bank):
    def explode(payload):
        raise RuntimeError("gamification is down")

    manager = SessionManager(
        store, clock=clock, hooks=SessionHooks(on_answer=explode, on_session_complete=explode)
    )
    session_id = manager.start_session("s1", "ch1", session_type=FIXED, max_questions=5).session.id

    result = _answer_all(manager, session_id, 5)
    assert result.is_complete


# ==================== Revision Mode ====================

def test_revision_starts_with_most_missed_question(manager, store, clock, question_bank):
    def miss(question_id, minutes_ago):
        store.record_response(ResponseRecord(
            student_id="s1", session_id="old", question_id=question_id, is_correct=False,
            answered_at=clock.now - timedelta(minutes=minutes_ago), chapter_id="ch1", topic_id="t1",
        ))

    miss("q03", 50)
    miss("q07", 40)
    miss("q07", 30)
    miss("q12", 20)
    miss("q12", 10)

    result = manager.start_session("s1", "ch1", mode=REVISION)
    # q07 and q12 tie on misses; q12 was missed more recently
    assert result.first_question["id"] == "q12"

    next_question = manager.submit_answer(result.session.id, "s1", answer_index=1).next_question
    assert next_question["id"] == "q07"


def test_revision_without_history_falls_back(manager, question_bank):
    result = manager.start_session("s1", "ch1", mode=REVISION)
    assert result.first_question["id"] == "q01"


# ==================== Queries / Abandon / Cleanup ====================

def test_get_session_access(manager, question_bank):
    session_id = manager.start_session("s1", "ch1").session.id

    session, current = manager.get_session(session_id, "s1")
    assert session.id == session_id
    assert current["question_number"] == 1
    assert "correct_index" not in current

    with pytest.raises(SessionAccessDenied):
        manager.get_session(session_id, "s2")
    assert manager.get_session(session_id, "t100", "teacher")[0].id == session_id
    with pytest.raises(SessionNotFound):
        manager.get_session("missing", "s1")


def test_get_active_session(manager, question_bank):
    assert manager.get_active_session("s1") is None
    session_id = manager.start_session("s1", "ch1").session.id
    assert manager.get_active_session("s1").id == session_id


def test_abandon_session(manager, store, clock, question_bank):
    with pytest.raises(NoActiveSession):
        manager.abandon_session("s1")

    session_id = manager.start_session("s1", "ch1").session.id
    clock.advance(minutes=5)
    abandoned = manager.abandon_session("s1")

    assert abandoned.id == session_id
    assert abandoned.status == ABANDONED
    assert abandoned.finished_at == clock.now
    assert manager.get_active_session("s1") is None


def test_cleanup_stale_sessions(manager, store, clock, question_bank):
    session_id = manager.start_session("s1", "ch1").session.id
    assert manager.cleanup_stale_sessions("s1") == 0

    clock.advance(hours=2, minutes=1)
    assert manager.cleanup_stale_sessions("s1") == 1
    assert store.get_session(session_id).status == ABANDONED
    assert manager.cleanup_stale_sessions("s1") == 0


def test_should_continue_policy():
    session = AssessmentSession(
        id="x", student_id="s1", chapter_id="ch1",
        started_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        adaptive_parameters=AdaptiveParameters(min_questions=5, max_questions=20, confidence_threshold=0.8),
    )
    session.answered_questions = 5
    assert SessionManager.should_continue(session)
    session.answered_questions = 10
    assert not SessionManager.should_continue(session)

    session.session_type = FIXED
    assert SessionManager.should_continue(session)
    session.answered_questions = 20
    assert not SessionManager.should_continue(session)


# ==================== Concurrency ====================

def test_concurrent_submissions_answer_once(manager, store, question_bank, hook_calls):
    session_id = manager.start_session("s1", "ch1").session.id
    barrier = threading.Barrier(2)
    results, errors = [], []

    def submit():
        barrier.wait()
        try:
            results.append(manager.submit_answer(
                session_id, "s1", answer_index=1, response_time_ms=1000, question_number=1
            ))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=submit) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(r.replayed for r in results) == [False, True]

    session = store.get_session(session_id)
    assert session.answered_questions == 1
    assert len([item for item in session.items if item.is_answered]) == 1
    assert store.get_topic_performance("s1", "t1").attempts_count == 1
    assert len(store.list_responses("s1")) == 1
    assert len(hook_calls["on_answer"]) == 1


def test_submit_while_session_is_locked(manager, store, question_bank):
    session_id = manager.start_session("s1", "ch1").session.id
    store.lock_wait_seconds = 0.05

    with store.lock(f"session:{session_id}"):
        with pytest.raises(SessionBusy):
            manager.submit_answer(session_id, "s1", answer_index=1)

    assert store.get_session(session_id).answered_questions == 0
    assert manager.submit_answer(session_id, "s1", answer_index=1).session.answered_questions == 1


def test_stale_session_is_not_abandoned_while_being_answered(manager, store, clock, question_bank):
    old_id = manager.start_session("s1", "ch1").session.id
    clock.advance(hours=3)
    store.lock_wait_seconds = 0.05

    with store.lock(f"session:{old_id}"):
        with pytest.raises(SessionBusy):
            manager.start_session("s1", "ch1")

    assert store.get_session(old_id).status == ACTIVE
    assert len(store.list_sessions("s1")) == 1

    new_id = manager.start_session("s1", "ch1").session.id
    assert store.get_session(old_id).status == ABANDONED
    assert [s.id for s in store.list_sessions("s1", ACTIVE)] == [new_id]


def test_idle_locks_are_released(manager, store, question_bank):
    session_id = manager.start_session("s1", "ch1").session.id
    manager.submit_answer(session_id, "s1", answer_index=1)
    manager.abandon(session_id)

    assert store._locks == {}
