"""
Repository - Storage contract shared by every engine component.

Components take a store explicitly, so tests run against InMemoryStore and
production runs against RedisStore without code changes.
"""

import json
from pathlib import Path
from typing import ContextManager, Iterable, List, Optional, TYPE_CHECKING

from .questions import Question, question_from_dict

if TYPE_CHECKING:
    from .session import AssessmentSession, ResponseRecord
    from .topic_performance import TopicPerformance


class AssessmentStore:
    """
    Abstract store. Subclasses implement every method below.

    Sessions are saved whole (items and ability history embedded), so a
    session write is atomic. lock() gives per-key mutual exclusion for
    read-modify-write sequences.
    """

    # ==================== Sessions ====================

    def get_session(self, session_id: str) -> Optional["AssessmentSession"]:
        raise NotImplementedError

    def save_session(self, session: "AssessmentSession"):
        raise NotImplementedError

    def find_active_session(self, student_id: str) -> Optional["AssessmentSession"]:
        raise NotImplementedError

    def list_sessions(self, student_id: str, status: Optional[str] = None) -> List["AssessmentSession"]:
        raise NotImplementedError

    def count_sessions(self, student_id: str, status: Optional[str] = None) -> int:
        return len(self.list_sessions(student_id, status))

    # ==================== Topic Performance ====================

    def get_topic_performance(self, student_id: str, topic_id: str) -> Optional["TopicPerformance"]:
        raise NotImplementedError

    def save_topic_performance(self, performance: "TopicPerformance"):
        raise NotImplementedError

    def delete_topic_performance(self, student_id: str, topic_id: str) -> bool:
        raise NotImplementedError

    def list_topic_performances(self, student_id: str) -> List["TopicPerformance"]:
        raise NotImplementedError

    # ==================== Questions ====================

    def get_question(self, question_id: str) -> Optional[Question]:
        raise NotImplementedError

    def save_question(self, question: Question):
        raise NotImplementedError

    def find_questions(self, topic_id: Optional[str] = None, chapter_id: Optional[str] = None,
                       min_difficulty: Optional[float] = None, max_difficulty: Optional[float] = None,
                       exclude_ids: Iterable[str] = (), grade: Optional[str] = None,
                       active_only: bool = True) -> List[Question]:
        """Unordered filter; callers rank the result themselves."""
        raise NotImplementedError

    def list_chapter_topics(self, chapter_id: str) -> List[str]:
        """Distinct topic ids with at least one active question in the chapter, sorted."""
        topics = {q.topic_id for q in self.find_questions(chapter_id=chapter_id) if q.topic_id}
        return sorted(topics)

    def load_questions(self, path) -> int:
        """Load a JSON list of question dicts. Returns how many were saved."""
        with open(Path(path), "r") as f:
            data = json.load(f)

        if isinstance(data, dict):
            data = data.get("questions", [])

        for raw in data:
            self.save_question(question_from_dict(raw))
        return len(data)

    # ==================== Responses ====================

    def record_response(self, record: "ResponseRecord"):
        raise NotImplementedError

    def list_responses(self, student_id: str) -> List["ResponseRecord"]:
        raise NotImplementedError

    # ==================== Concurrency ====================

    def lock(self, name: str) -> ContextManager[None]:
        """Context manager holding an exclusive lock on name; SessionBusy on timeout."""
        raise NotImplementedError

    # ==================== Applied Markers ====================

    def claim_marker(self, key: str) -> bool:
        """Set key if absent. True only for the caller that set it."""
        raise NotImplementedError

    def release_marker(self, key: str):
        raise NotImplementedError
