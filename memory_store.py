"""
In-Memory Store - Process-local AssessmentStore for development and tests.

Records are kept as plain dicts (the same shape RedisStore serializes), so
callers never share mutable objects with the store.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Set

from core.errors import SessionBusy
from core.questions import Question, question_from_dict
from core.repository import AssessmentStore
from core.session import ACTIVE, AssessmentSession, ResponseRecord
from core.topic_performance import TopicPerformance

logger = logging.getLogger(__name__)


class InMemoryStore(AssessmentStore):
    def __init__(self, lock_wait_seconds: float = 5):
        self.lock_wait_seconds = lock_wait_seconds

        self._sessions: Dict[str, dict] = {}
        self._topic_performance: Dict[tuple, dict] = {}
        self._questions: Dict[str, dict] = {}
        self._responses: Dict[str, List[dict]] = defaultdict(list)

        self._markers: Set[str] = set()

        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    # ==================== Sessions ====================

    def get_session(self, session_id: str) -> Optional[AssessmentSession]:
        data = self._sessions.get(session_id)
        return AssessmentSession.from_dict(data) if data else None

    def save_session(self, session: AssessmentSession):
        session.check_invariants()
        self._sessions[session.id] = session.to_dict()

    def find_active_session(self, student_id: str) -> Optional[AssessmentSession]:
        active = self.list_sessions(student_id, ACTIVE)
        return active[0] if active else None

    def list_sessions(self, student_id: str, status: Optional[str] = None) -> List[AssessmentSession]:
        """Newest first."""
        sessions = [
            AssessmentSession.from_dict(data) for data in self._sessions.values()
            if data["student_id"] == student_id and (status is None or data["status"] == status)
        ]
        sessions.sort(key=lambda s: s.started_at, reverse=True)
        return sessions

    # ==================== Topic Performance ====================

    def get_topic_performance(self, student_id: str, topic_id: str) -> Optional[TopicPerformance]:
        data = self._topic_performance.get((student_id, topic_id))
        return TopicPerformance.from_dict(data) if data else None

    def save_topic_performance(self, performance: TopicPerformance):
        self._topic_performance[(performance.student_id, performance.topic_id)] = performance.to_dict()

    def delete_topic_performance(self, student_id: str, topic_id: str) -> bool:
        return self._topic_performance.pop((student_id, topic_id), None) is not None

    def list_topic_performances(self, student_id: str) -> List[TopicPerformance]:
        return [
            TopicPerformance.from_dict(data)
            for (owner, _), data in self._topic_performance.items()
            if owner == student_id
        ]

    # ==================== Questions ====================

    def get_question(self, question_id: str) -> Optional[Question]:
        data = self._questions.get(question_id)
        return question_from_dict(data) if data else None

    def save_question(self, question: Question):
        self._questions[question.id] = question.to_dict()

    def find_questions(self, topic_id: Optional[str] = None, chapter_id: Optional[str] = None,
                       min_difficulty: Optional[float] = None, max_difficulty: Optional[float] = None,
                       exclude_ids: Iterable[str] = (), grade: Optional[str] = None,
                       active_only: bool = True) -> List[Question]:
        exclude = set(exclude_ids)
        found = []

        for data in self._questions.values():
            if data["id"] in exclude:
                continue
            if active_only and not data.get("is_active", True):
                continue
            if topic_id is not None and data.get("topic_id") != topic_id:
                continue
            if chapter_id is not None and data.get("chapter_id") != chapter_id:
                continue
            if grade is not None and data.get("grade") != grade:
                continue
            difficulty = data.get("difficulty", 0.5)
            if min_difficulty is not None and difficulty < min_difficulty:
                continue
            if max_difficulty is not None and difficulty > max_difficulty:
                continue
            found.append(question_from_dict(data))

        return found

    # ==================== Responses ====================

    def record_response(self, record: ResponseRecord):
        self._responses[record.student_id].append(record.to_dict())

    def list_responses(self, student_id: str) -> List[ResponseRecord]:
        return [ResponseRecord.from_dict(data) for data in self._responses.get(student_id, [])]

    # ==================== Applied Markers ====================

    def claim_marker(self, key: str) -> bool:
        with self._locks_guard:
            if key in self._markers:
                return False
            self._markers.add(key)
            return True

    def release_marker(self, key: str):
        with self._locks_guard:
            self._markers.discard(key)

    # ==================== Concurrency ====================

    @contextmanager
    def lock(self, name: str):
        # Entries are [lock, holders + waiters]; dropped once nobody uses them
        with self._locks_guard:
            entry = self._locks.setdefault(name, [threading.Lock(), 0])
            entry[1] += 1

        try:
            if not entry[0].acquire(timeout=self.lock_wait_seconds):
                logger.warning("Timed out waiting for lock %s", name)
                raise SessionBusy()
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[name]

    def clear(self):
        """Drop everything (tests)."""
        self._sessions.clear()
        self._topic_performance.clear()
        self._questions.clear()
        self._responses.clear()
        self._markers.clear()
