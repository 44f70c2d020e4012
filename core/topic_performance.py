"""
Topic Performance - Per-student, per-topic mastery and difficulty state.

Features:
    - Attempt counters, streaks and response-time averages
    - Four-tier mastery classification (beginner -> advanced)
    - Streak-triggered difficulty ratchet clamped to [0.1, 0.9]
    - Struggling / top-performing topic queries and chapter summaries
    - Per-topic list of concepts the student is struggling with
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .errors import TopicPerformanceNotFound
from .repository import AssessmentStore
from .timeutil import utcnow, to_iso, from_iso

logger = logging.getLogger(__name__)


# Difficulty ratchet
MIN_DIFFICULTY = 0.1
MAX_DIFFICULTY = 0.9
DEFAULT_DIFFICULTY = 0.5
DIFFICULTY_STEP = 0.1
STREAK_THRESHOLD = 3

BEGINNER = "beginner"
DEVELOPING = "developing"
PROFICIENT = "proficient"
ADVANCED = "advanced"

MASTERY_SCORES = {BEGINNER: 0.25, DEVELOPING: 0.5, PROFICIENT: 0.75, ADVANCED: 1.0}


def clamp_difficulty(value: float) -> float:
    # Rounded so repeated 0.1 steps land on 0.6, 0.7, ... rather than 0.7999999
    return round(max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, value)), 4)


def classify_mastery(attempts_count: int, average_score: float) -> str:
    """Mastery tier as a pure function of attempt count and average score."""
    if attempts_count < 3:
        return BEGINNER
    if average_score >= 0.9 and attempts_count >= 5:
        return ADVANCED
    if average_score >= 0.7 and attempts_count >= 4:
        return PROFICIENT
    if average_score >= 0.5 and attempts_count >= 3:
        return DEVELOPING
    return BEGINNER


def ratchet_difficulty(difficulty: float, consecutive_failures: int,
                       consecutive_successes: int, step: float = DIFFICULTY_STEP) -> float:
    """
    One ratchet step for the current streak.

    Fires on every call while a streak of 3+ continues, so a long streak keeps
    moving the difficulty one step per attempt until it hits a bound.
    """
    if consecutive_failures >= STREAK_THRESHOLD:
        difficulty -= step
    elif consecutive_successes >= STREAK_THRESHOLD:
        difficulty += step
    return clamp_difficulty(difficulty)


@dataclass
class TopicPerformance:
    """Mastery state for one (student, topic) pair."""
    student_id: str
    topic_id: str
    attempts_count: int = 0
    correct_count: int = 0
    average_score: float = 0.0
    current_difficulty: float = DEFAULT_DIFFICULTY
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    mastery_level: str = BEGINNER
    total_time_spent: float = 0.0  # ms
    average_response_time: float = 0.0  # ms
    last_attempt_date: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    created_at: Optional[datetime] = None
    struggling_concepts: List[str] = field(default_factory=list)

    # ==================== Derived ====================

    @property
    def success_rate(self) -> float:
        if self.attempts_count == 0:
            return 0.0
        return round(self.correct_count / self.attempts_count, 2)

    @property
    def difficulty_level(self) -> str:
        if self.current_difficulty <= 0.3:
            return "Easy"
        if self.current_difficulty <= 0.7:
            return "Medium"
        return "Hard"

    @property
    def performance_status(self) -> str:
        if self.attempts_count == 0:
            return "not_attempted"
        if self.success_rate >= 0.8:
            return "excellent"
        if self.success_rate >= 0.6:
            return "good"
        if self.success_rate >= 0.4:
            return "needs_improvement"
        return "struggling"

    # ==================== Update ====================

    def apply_attempt(self, is_correct: bool, response_time_ms: float = 0,
                      now: Optional[datetime] = None):
        """Counters, streaks, mastery tier, then the difficulty ratchet."""
        now = now or utcnow()

        self.attempts_count += 1
        self.last_attempt_date = now
        self.last_updated = now
        self.total_time_spent += response_time_ms or 0
        self.average_response_time = self.total_time_spent / self.attempts_count

        if is_correct:
            self.correct_count += 1
            self.consecutive_successes += 1
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
            self.consecutive_successes = 0

        self.average_score = self.correct_count / self.attempts_count
        self.mastery_level = classify_mastery(self.attempts_count, self.average_score)
        self.current_difficulty = ratchet_difficulty(
            self.current_difficulty, self.consecutive_failures, self.consecutive_successes
        )

    # ==================== Serialization ====================

    def to_dict(self) -> dict:
        data = {
            "student_id": self.student_id,
            "topic_id": self.topic_id,
            "attempts_count": self.attempts_count,
            "correct_count": self.correct_count,
            "average_score": self.average_score,
            "current_difficulty": self.current_difficulty,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "mastery_level": self.mastery_level,
            "total_time_spent": self.total_time_spent,
            "average_response_time": self.average_response_time,
            "struggling_concepts": list(self.struggling_concepts),
        }
        for name in ("last_attempt_date", "last_updated", "created_at"):
            data[name] = to_iso(getattr(self, name))
        return data

    def summary(self) -> dict:
        """to_dict plus derived fields, for API responses."""
        data = self.to_dict()
        data.update({
            "success_rate": self.success_rate,
            "difficulty_level": self.difficulty_level,
            "performance_status": self.performance_status,
        })
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TopicPerformance":
        """Accepts native values or the all-string values of a Redis hash."""
        concepts = data.get("struggling_concepts") or []
        if isinstance(concepts, str):
            concepts = json.loads(concepts)

        return cls(
            student_id=str(data["student_id"]),
            topic_id=str(data["topic_id"]),
            attempts_count=int(data.get("attempts_count", 0)),
            correct_count=int(data.get("correct_count", 0)),
            average_score=float(data.get("average_score", 0.0)),
            current_difficulty=float(data.get("current_difficulty", DEFAULT_DIFFICULTY)),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            consecutive_successes=int(data.get("consecutive_successes", 0)),
            mastery_level=data.get("mastery_level") or BEGINNER,
            total_time_spent=float(data.get("total_time_spent", 0.0)),
            average_response_time=float(data.get("average_response_time", 0.0)),
            last_attempt_date=from_iso(data.get("last_attempt_date")),
            last_updated=from_iso(data.get("last_updated")),
            created_at=from_iso(data.get("created_at")),
            struggling_concepts=list(concepts),
        )


class TopicPerformanceTracker:
    """
    Owns TopicPerformance records.

    Each record_attempt runs under the store's per-topic lock so two answers
    for the same (student, topic) cannot interleave their read-modify-write.
    """

    STRUGGLING_THRESHOLD = 0.4
    DEFAULT_STUDY_MINUTES = 30

    def __init__(self, store: AssessmentStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utcnow

    @staticmethod
    def _lock_name(student_id: str, topic_id: str) -> str:
        return f"topic:{student_id}:{topic_id}"

    # ==================== Recording ====================

    def record_attempt(self, student_id: str, topic_id: str, is_correct: bool,
                       response_time_ms: float = 0,
                       question_difficulty: float = DEFAULT_DIFFICULTY) -> TopicPerformance:
        now = self.clock()

        with self.store.lock(self._lock_name(student_id, topic_id)):
            performance = self.store.get_topic_performance(student_id, topic_id)
            if performance is None:
                performance = TopicPerformance(
                    student_id=student_id,
                    topic_id=topic_id,
                    current_difficulty=clamp_difficulty(
                        DEFAULT_DIFFICULTY if question_difficulty is None else question_difficulty
                    ),
                    created_at=now,
                )

            performance.apply_attempt(is_correct, response_time_ms, now)
            self.store.save_topic_performance(performance)

        logger.info(
            "Recorded attempt for student %s on topic %s: %s (difficulty %.2f, mastery %s)",
            student_id, topic_id, "correct" if is_correct else "incorrect",
            performance.current_difficulty, performance.mastery_level,
        )
        return performance

    def add_struggling_concept(self, student_id: str, topic_id: str, concept: str) -> TopicPerformance:
        """Tag a concept on an existing record; adding it twice is a no-op."""
        with self.store.lock(self._lock_name(student_id, topic_id)):
            performance = self._require(student_id, topic_id)
            if concept not in performance.struggling_concepts:
                performance.struggling_concepts.append(concept)
                performance.last_updated = self.clock()
                self.store.save_topic_performance(performance)
        return performance

    def remove_struggling_concept(self, student_id: str, topic_id: str, concept: str) -> TopicPerformance:
        with self.store.lock(self._lock_name(student_id, topic_id)):
            performance = self._require(student_id, topic_id)
            if concept in performance.struggling_concepts:
                performance.struggling_concepts.remove(concept)
                performance.last_updated = self.clock()
                self.store.save_topic_performance(performance)
        return performance

    def _require(self, student_id: str, topic_id: str) -> TopicPerformance:
        performance = self.store.get_topic_performance(student_id, topic_id)
        if performance is None:
            raise TopicPerformanceNotFound()
        return performance

    def reset_topic_performance(self, student_id: str, topic_id: str) -> bool:
        with self.store.lock(self._lock_name(student_id, topic_id)):
            deleted = self.store.delete_topic_performance(student_id, topic_id)
        logger.info("Reset performance for student %s on topic %s", student_id, topic_id)
        return deleted

    # ==================== Queries ====================

    def get_struggling_topics(self, student_id: str,
                              threshold: float = STRUGGLING_THRESHOLD) -> List[TopicPerformance]:
        return [
            p for p in self.store.list_topic_performances(student_id)
            if p.average_score < threshold and p.attempts_count >= 2
        ]

    def get_top_performing_topics(self, student_id: str, limit: int = 5) -> List[TopicPerformance]:
        candidates = [p for p in self.store.list_topic_performances(student_id) if p.attempts_count >= 3]
        candidates.sort(key=lambda p: p.average_score, reverse=True)
        return candidates[:limit]

    def get_chapter_performance_summary(self, student_id: str, chapter_id: str) -> Dict:
        topic_ids = self.store.list_chapter_topics(chapter_id)
        summary = {
            "chapter_id": chapter_id,
            "total_topics": len(topic_ids),
            "completed_topics": 0,
            "average_mastery": 0.0,
            "struggling_topics": [],
            "strong_topics": [],
            "topic_performances": [],
        }

        performances = [
            p for p in (self.store.get_topic_performance(student_id, t) for t in topic_ids)
            if p is not None
        ]
        if not performances:
            return summary

        summary["completed_topics"] = len(performances)
        summary["average_mastery"] = (
            sum(MASTERY_SCORES.get(p.mastery_level, 0.0) for p in performances) / len(performances)
        )

        for p in performances:
            topic_data = {
                "topic_id": p.topic_id,
                "mastery_level": p.mastery_level,
                "success_rate": p.success_rate,
                "attempts_count": p.attempts_count,
                "current_difficulty": p.current_difficulty,
            }
            summary["topic_performances"].append(topic_data)

            if p.success_rate < 0.4 and p.attempts_count >= 2:
                summary["struggling_topics"].append(topic_data)
            elif p.success_rate >= 0.8 and p.attempts_count >= 3:
                summary["strong_topics"].append(topic_data)

        return summary

    def get_recommended_study_time(self, student_id: str, topic_id: str) -> int:
        """Suggested study time in minutes."""
        performance = self.store.get_topic_performance(student_id, topic_id)
        if performance is None:
            return self.DEFAULT_STUDY_MINUTES

        minutes = self.DEFAULT_STUDY_MINUTES
        if performance.success_rate < 0.3:
            minutes = 60
        elif performance.success_rate < 0.6:
            minutes = 45
        elif performance.success_rate >= 0.8:
            minutes = 15

        if performance.attempts_count < 3:
            minutes += 15

        return minutes
