"""
Session Manager - Assessment session state machine.

    active --(termination policy / no questions left)--> completed
    active --(abandon / stale on next start)-----------> abandoned

Every answer submission runs: ownership + state checks -> AnswerValidator ->
item update -> ability estimate -> topic tracker -> question usage stats ->
termination policy -> next item or completion. Checks all happen before the
first write, and the whole submission holds the session lock.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .ability_estimator import confidence_for, update_session_ability
from .adaptive_difficulty import AdaptiveDifficultyEngine
from .answer_validator import AnswerValidator, ValidationResult
from .errors import (
    ActiveSessionExists, InvalidAnswerFormat, InvalidRequest, NoActiveSession,
    NoCurrentQuestion, NoQuestionsAvailable, QuestionNotFound, SessionAccessDenied,
    SessionNotActive, SessionNotFound,
)
from .questions import MCQ, Question
from .repository import AssessmentStore
from .session import (
    ADAPTIVE, ACTIVE, ASSESSMENT, COMPLETED, MODES, PRACTICE, REVISION, SESSION_TYPES,
    AdaptiveParameters, AssessmentSession, ResponseRecord, SessionItem, new_session_id,
)
from .timeutil import utcnow
from .topic_performance import TopicPerformanceTracker

logger = logging.getLogger(__name__)

ELEVATED_ROLES = ("teacher", "admin")
DEFAULT_STALE_AFTER = timedelta(hours=2)


@dataclass
class SessionHooks:
    """
    Side-effect notifications for downstream services (gamification etc).

    on_answer receives {user_id, is_correct, difficulty, response_time_ms};
    on_session_complete receives {user_id, correct_answers, answered_questions,
    completed_sessions}. Failures are logged and never reach the caller.
    """
    on_answer: Optional[Callable[[Dict], Any]] = None
    on_session_complete: Optional[Callable[[Dict], Any]] = None


@dataclass
class StartResult:
    session: AssessmentSession
    first_question: Dict

    def to_dict(self) -> dict:
        return {"session": self.session.summary(), "first_question": self.first_question}


@dataclass
class SubmitResult:
    validation: ValidationResult
    feedback: Dict
    session: AssessmentSession
    next_question: Optional[Dict] = None
    is_complete: bool = False
    replayed: bool = False

    def to_dict(self) -> dict:
        validation = self.validation.to_dict()
        validation["feedback"] = self.feedback
        data = {
            "validation_result": validation,
            "session": self.session.summary(),
            "session_status": self.session.status,
            "is_complete": self.is_complete,
            "replayed": self.replayed,
        }
        if self.next_question is not None:
            data["next_question"] = self.next_question
        return data


class SessionManager:
    """Glues validator, estimator, tracker and engine around the session aggregate."""

    def __init__(self, store: AssessmentStore,
                 validator: Optional[AnswerValidator] = None,
                 engine: Optional[AdaptiveDifficultyEngine] = None,
                 tracker: Optional[TopicPerformanceTracker] = None,
                 hooks: Optional[SessionHooks] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 stale_after: timedelta = DEFAULT_STALE_AFTER):
        self.store = store
        self.clock = clock or utcnow
        self.validator = validator or AnswerValidator()
        self.engine = engine or AdaptiveDifficultyEngine(store)
        self.tracker = tracker or TopicPerformanceTracker(store, clock=self.clock)
        self.hooks = hooks or SessionHooks()
        self.stale_after = stale_after

    # ==================== Start ====================

    def start_session(self, student_id: str, chapter_id: str,
                      session_type: str = ADAPTIVE, mode: str = ASSESSMENT,
                      grade: Optional[str] = None, topic: Optional[str] = None,
                      max_questions: Optional[int] = None,
                      adaptive_parameters: Optional[dict] = None) -> StartResult:
        """
        Create a session and present question 1.

        An existing active session blocks the start unless it is stale, in
        which case it is abandoned first. `topic` is a topic id that seeds
        adaptive selection.
        """
        if session_type not in SESSION_TYPES:
            raise InvalidRequest(f"session_type must be one of {', '.join(SESSION_TYPES)}")
        if mode not in MODES:
            raise InvalidRequest(f"mode must be one of {', '.join(MODES)}")
        if not chapter_id:
            raise InvalidRequest("chapter_id is required")

        params = AdaptiveParameters.from_dict(adaptive_parameters)
        if max_questions is not None:
            params.max_questions = int(max_questions)
        params.validate()

        now = self.clock()
        with self.store.lock(f"student:{student_id}"):
            existing = self.store.find_active_session(student_id)
            if existing is not None:
                if not self._is_stale(existing, now):
                    raise ActiveSessionExists(existing.id)
                self._abandon_if_stale(existing.id, now)

            session = AssessmentSession(
                id=new_session_id(),
                student_id=student_id,
                chapter_id=chapter_id,
                session_type=session_type,
                mode=mode,
                adaptive_parameters=params,
                started_at=now,
                grade=grade,
                topic=topic,
                allow_retry=mode in (PRACTICE, REVISION),
                show_solutions=mode in (PRACTICE, REVISION),
            )

            question = self._select_question(session)
            if question is None:
                raise NoQuestionsAvailable()

            session.add_item(question, now)
            self.store.save_session(session)

        logger.info("Assessment session started: %s for student %s (%s/%s)",
                    session.id, student_id, session_type, mode)
        return StartResult(session=session, first_question=question.to_view(1, params.max_questions))

    # ==================== Submit ====================

    def submit_answer(self, session_id: str, student_id: str,
                      answer_index: Optional[int] = None, answer: Any = None,
                      response_time_ms: Optional[int] = 0,
                      question_number: Optional[int] = None) -> SubmitResult:
        """
        Judge the open item and advance the session.

        Passing question_number makes retries safe: if that item is already
        answered, its stored outcome is returned unchanged (replayed=True).
        """
        raw_answer = answer if answer is not None else answer_index
        if raw_answer is None:
            raise InvalidAnswerFormat("Either answer_index or answer is required")
        if response_time_ms is not None and response_time_ms < 0:
            raise InvalidRequest("response_time_ms cannot be negative")

        now = self.clock()
        with self.store.lock(f"session:{session_id}"):
            session = self._load_owned(session_id, student_id)

            if question_number is not None:
                answered = session.get_item(question_number)
                if answered is not None and answered.is_answered:
                    return self._replay(session, answered)

            if not session.is_active:
                raise SessionNotActive()

            item = session.current_item
            if item is None or (question_number is not None and item.question_number != question_number):
                raise NoCurrentQuestion()

            question = self.store.get_question(item.question_id)
            if question is None:
                raise QuestionNotFound()

            validation = self.validator.validate(question, raw_answer)
            if not validation.is_valid:
                raise InvalidAnswerFormat(details=validation.error)
            feedback = self.validator.get_feedback(question, raw_answer, validation)
            is_correct = validation.is_correct

            # Everything below mutates state
            is_mcq = question.question_type == MCQ
            session.answer_current_item(
                is_correct,
                response_time_ms,
                answer_index=raw_answer if is_mcq else None,
                answer=None if is_mcq else raw_answer,
                now=now,
            )
            update_session_ability(session, now)

            # Keyed on the item so a retry after a failed session save skips them
            applied_key = f"{session.id}:{item.question_number}"
            if question.topic_id:
                self._apply_once(f"{applied_key}:topic", lambda: self.tracker.record_attempt(
                    student_id, question.topic_id, is_correct, response_time_ms or 0, question.difficulty
                ))
            self._apply_once(f"{applied_key}:usage", lambda: self._update_usage_stats(
                question.id, is_correct, response_time_ms or 0
            ))
            self._apply_once(f"{applied_key}:response", lambda: self.store.record_response(ResponseRecord(
                student_id=student_id,
                session_id=session.id,
                question_id=question.id,
                is_correct=is_correct,
                answered_at=now,
                chapter_id=question.chapter_id or session.chapter_id,
                topic_id=question.topic_id,
                response_time_ms=response_time_ms,
                difficulty=question.difficulty,
                student_ability=session.estimated_ability,
            )))

            next_view = None
            is_complete = not self.should_continue(session)
            if not is_complete:
                next_question = self._select_question(session)
                if next_question is None:
                    is_complete = True
                else:
                    next_item = session.add_item(next_question, now)
                    next_view = next_question.to_view(
                        next_item.question_number, session.adaptive_parameters.max_questions
                    )

            completed_before = 0
            if is_complete:
                completed_before = self.store.count_sessions(student_id, COMPLETED)
                session.complete(now)

            self.store.save_session(session)

        logger.info("Answer submitted for session %s, question %d (%s)",
                    session_id, item.question_number, "correct" if is_correct else "incorrect")

        self._notify("on_answer", {
            "user_id": student_id,
            "is_correct": is_correct,
            "difficulty": question.difficulty,
            "response_time_ms": response_time_ms,
        })
        if is_complete:
            logger.info("Session %s completed: %d/%d correct",
                        session.id, session.correct_answers, session.answered_questions)
            self._notify("on_session_complete", {
                "user_id": student_id,
                "correct_answers": session.correct_answers,
                "answered_questions": session.answered_questions,
                "completed_sessions": completed_before + 1,
            })

        return SubmitResult(
            validation=validation,
            feedback=feedback,
            session=session,
            next_question=next_view,
            is_complete=is_complete,
        )

    def _replay(self, session: AssessmentSession, item: SessionItem) -> SubmitResult:
        question = self.store.get_question(item.question_id)
        if question is None:
            raise QuestionNotFound()

        raw_answer = item.answer_index if item.answer_index is not None else item.answer
        validation = self.validator.validate(question, raw_answer)
        feedback = self.validator.get_feedback(question, raw_answer, validation)

        next_view = None
        current = session.current_item
        if session.is_active and current is not None:
            current_question = self.store.get_question(current.question_id)
            if current_question is not None:
                next_view = current_question.to_view(
                    current.question_number, session.adaptive_parameters.max_questions
                )

        logger.info("Replayed answer for session %s, question %d", session.id, item.question_number)
        return SubmitResult(
            validation=validation,
            feedback=feedback,
            session=session,
            next_question=next_view,
            is_complete=session.is_terminal,
            replayed=True,
        )

    # ==================== Termination Policy ====================

    @staticmethod
    def should_continue(session: AssessmentSession) -> bool:
        params = session.adaptive_parameters
        answered = session.answered_questions

        if answered < params.min_questions:
            return True
        if answered >= params.max_questions:
            return False
        if session.session_type == ADAPTIVE:
            return confidence_for(answered) < params.confidence_threshold
        # Fixed sessions run to max_questions
        return True

    # ==================== Question Selection ====================

    def _select_question(self, session: AssessmentSession) -> Optional[Question]:
        exclude = session.used_question_ids

        if session.mode == REVISION:
            return self._select_revision_question(session, exclude)

        if session.session_type == ADAPTIVE:
            topic_id = self._current_topic(session)
            if topic_id:
                question = self.engine.get_next_question(
                    session.student_id, topic_id, exclude,
                    default_difficulty=session.adaptive_parameters.initial_difficulty,
                )
                if question is not None:
                    return question

        return self._select_fixed_question(session, exclude)

    def _current_topic(self, session: AssessmentSession) -> Optional[str]:
        """Start filter, else the topic just answered, else the chapter's first topic."""
        if session.topic:
            return session.topic
        last = session.last_answered_item
        if last is not None and last.topic_id:
            return last.topic_id
        topics = self.store.list_chapter_topics(session.chapter_id)
        return topics[0] if topics else None

    def _select_fixed_question(self, session: AssessmentSession, exclude: List[str]) -> Optional[Question]:
        """Least-used active question in the chapter."""
        questions = self.store.find_questions(
            chapter_id=session.chapter_id, exclude_ids=exclude, grade=session.grade
        )
        if not questions:
            return None
        return min(questions, key=lambda q: (q.usage_count, q.id))

    def _select_revision_question(self, session: AssessmentSession, exclude: List[str]) -> Optional[Question]:
        """The chapter question this student has missed most often (latest miss breaks ties)."""
        excluded = set(exclude)
        wrong_counts: Dict[str, int] = defaultdict(int)
        last_wrong: Dict[str, datetime] = {}

        for record in self.store.list_responses(session.student_id):
            if record.is_correct or record.chapter_id != session.chapter_id:
                continue
            if record.question_id in excluded:
                continue
            wrong_counts[record.question_id] += 1
            if record.question_id not in last_wrong or record.answered_at > last_wrong[record.question_id]:
                last_wrong[record.question_id] = record.answered_at

        ranked = sorted(wrong_counts, key=lambda qid: (wrong_counts[qid], last_wrong[qid]), reverse=True)
        for question_id in ranked:
            question = self.store.get_question(question_id)
            if question is not None and question.is_active:
                return question

        return self._select_fixed_question(session, exclude)

    # ==================== Queries ====================

    def get_active_session(self, student_id: str) -> Optional[AssessmentSession]:
        return self.store.find_active_session(student_id)

    def get_session(self, session_id: str, requester_id: str,
                    requester_role: str = "student") -> Tuple[AssessmentSession, Optional[Dict]]:
        """Session plus the open question's view. Owner or elevated role only."""
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound()
        if session.student_id != requester_id and requester_role not in ELEVATED_ROLES:
            raise SessionAccessDenied()

        current_view = None
        item = session.current_item
        if item is not None:
            question = self.store.get_question(item.question_id)
            if question is not None:
                current_view = question.to_view(item.question_number, session.adaptive_parameters.max_questions)

        return session, current_view

    # ==================== Abandon / Cleanup ====================

    def abandon(self, session_id: str) -> AssessmentSession:
        with self.store.lock(f"session:{session_id}"):
            session = self.store.get_session(session_id)
            if session is None:
                raise SessionNotFound()
            session.abandon(self.clock())
            self.store.save_session(session)

        logger.info("Session %s abandoned by student %s", session.id, session.student_id)
        return session

    def abandon_session(self, student_id: str) -> AssessmentSession:
        active = self.store.find_active_session(student_id)
        if active is None:
            raise NoActiveSession()
        return self.abandon(active.id)

    def cleanup_stale_sessions(self, student_id: str) -> int:
        """Abandon the student's active sessions older than stale_after. Returns the count."""
        now = self.clock()
        abandoned = 0

        for session in self.store.list_sessions(student_id, ACTIVE):
            if self._is_stale(session, now) and self._abandon_if_stale(session.id, now):
                abandoned += 1

        return abandoned

    def _abandon_if_stale(self, session_id: str, now: datetime) -> bool:
        """Re-read under the session lock so an in-flight submit cannot revive it."""
        with self.store.lock(f"session:{session_id}"):
            session = self.store.get_session(session_id)
            if session is None or not session.is_active or not self._is_stale(session, now):
                return False
            session.abandon(now)
            self.store.save_session(session)

        logger.info("Abandoned stale session %s for student %s", session_id, session.student_id)
        return True

    # ==================== Helpers ====================

    def _is_stale(self, session: AssessmentSession, now: datetime) -> bool:
        return session.started_at < now - self.stale_after

    def _apply_once(self, key: str, action: Callable[[], Any]):
        if not self.store.claim_marker(key):
            logger.info("Skipping %s, already applied", key)
            return
        try:
            action()
        except Exception:
            self.store.release_marker(key)
            raise

    def _load_owned(self, session_id: str, student_id: str) -> AssessmentSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound()
        if session.student_id != student_id:
            raise SessionAccessDenied()
        return session

    def _update_usage_stats(self, question_id: str, is_correct: bool, response_time_ms: float):
        with self.store.lock(f"question:{question_id}"):
            question = self.store.get_question(question_id)
            if question is None:
                return
            question.record_usage(is_correct, response_time_ms)
            self.store.save_question(question)

    def _notify(self, hook_name: str, payload: Dict):
        hook = getattr(self.hooks, hook_name)
        if hook is None:
            return
        try:
            hook(payload)
        except Exception:
            logger.warning("%s hook failed for user %s", hook_name, payload.get("user_id"), exc_info=True)
