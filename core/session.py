"""
Assessment Session - Aggregate root for one test attempt.

Invariants (checked by check_invariants before every save):
    - items[i].question_number == i + 1
    - at most one unanswered item, and only the last one
    - counters agree with items
    - estimated_ability in [0, 1]
    - completed/abandoned sessions never gain items
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import InvalidRequest, InvariantViolation, NoCurrentQuestion, SessionNotActive
from .questions import Question
from .timeutil import utcnow, to_iso, from_iso


ACTIVE = "active"
COMPLETED = "completed"
ABANDONED = "abandoned"
PAUSED = "paused"
STATUSES = (ACTIVE, COMPLETED, ABANDONED, PAUSED)
TERMINAL_STATUSES = (COMPLETED, ABANDONED)

ADAPTIVE = "adaptive"
FIXED = "fixed"
SESSION_TYPES = (ADAPTIVE, FIXED)

ASSESSMENT = "assessment"
PRACTICE = "practice"
REVISION = "revision"
MODES = (ASSESSMENT, PRACTICE, REVISION)

DEFAULT_ABILITY = 0.5


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class AdaptiveParameters:
    initial_difficulty: float = 0.5
    difficulty_step: float = 0.1
    max_questions: int = 20
    min_questions: int = 5
    confidence_threshold: float = 0.8

    def validate(self):
        if not 0 <= self.initial_difficulty <= 1:
            raise InvalidRequest("initial_difficulty must be within [0, 1]")
        if self.difficulty_step <= 0:
            raise InvalidRequest("difficulty_step must be positive")
        if self.min_questions < 1 or self.max_questions < 1:
            raise InvalidRequest("min_questions and max_questions must be at least 1")
        if self.min_questions > self.max_questions:
            raise InvalidRequest("min_questions cannot exceed max_questions")
        if not 0 < self.confidence_threshold <= 1:
            raise InvalidRequest("confidence_threshold must be within (0, 1]")

    def to_dict(self) -> dict:
        return {
            "initial_difficulty": self.initial_difficulty,
            "difficulty_step": self.difficulty_step,
            "max_questions": self.max_questions,
            "min_questions": self.min_questions,
            "confidence_threshold": self.confidence_threshold,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AdaptiveParameters":
        """Missing or None entries fall back to the defaults."""
        params = cls()
        for name, value in (data or {}).items():
            if value is not None and hasattr(params, name):
                setattr(params, name, value)
        params.max_questions = int(params.max_questions)
        params.min_questions = int(params.min_questions)
        return params


@dataclass
class SessionItem:
    """One presented question. Mutated exactly once, when answered."""
    question_id: str
    question_number: int
    presented_at: datetime
    difficulty: float = 0.5  # snapshot at presentation time
    topic: Optional[str] = None
    topic_id: Optional[str] = None
    answered_at: Optional[datetime] = None
    answer_index: Optional[int] = None
    answer: Any = None  # raw text/list for non-mcq answers
    is_correct: Optional[bool] = None
    response_time_ms: Optional[int] = None

    @property
    def is_answered(self) -> bool:
        return self.answered_at is not None

    def to_dict(self) -> dict:
        return {
            "question_id": self.question_id,
            "question_number": self.question_number,
            "presented_at": to_iso(self.presented_at),
            "difficulty": self.difficulty,
            "topic": self.topic,
            "topic_id": self.topic_id,
            "answered_at": to_iso(self.answered_at),
            "answer_index": self.answer_index,
            "answer": self.answer,
            "is_correct": self.is_correct,
            "response_time_ms": self.response_time_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionItem":
        return cls(
            question_id=data["question_id"],
            question_number=int(data["question_number"]),
            presented_at=from_iso(data["presented_at"]),
            difficulty=data.get("difficulty", 0.5),
            topic=data.get("topic"),
            topic_id=data.get("topic_id"),
            answered_at=from_iso(data.get("answered_at")),
            answer_index=data.get("answer_index"),
            answer=data.get("answer"),
            is_correct=data.get("is_correct"),
            response_time_ms=data.get("response_time_ms"),
        )


@dataclass
class AbilityPoint:
    timestamp: datetime
    ability: float
    confidence: float

    def to_dict(self) -> dict:
        return {"timestamp": to_iso(self.timestamp), "ability": self.ability, "confidence": self.confidence}

    @classmethod
    def from_dict(cls, data: dict) -> "AbilityPoint":
        return cls(
            timestamp=from_iso(data["timestamp"]),
            ability=float(data["ability"]),
            confidence=float(data["confidence"]),
        )


@dataclass
class ResponseRecord:
    """Answer log entry; revision mode mines it for previously missed questions."""
    student_id: str
    session_id: str
    question_id: str
    is_correct: bool
    answered_at: datetime
    chapter_id: Optional[str] = None
    topic_id: Optional[str] = None
    response_time_ms: Optional[int] = None
    difficulty: Optional[float] = None
    student_ability: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "student_id": self.student_id,
            "session_id": self.session_id,
            "question_id": self.question_id,
            "is_correct": self.is_correct,
            "answered_at": to_iso(self.answered_at),
            "chapter_id": self.chapter_id,
            "topic_id": self.topic_id,
            "response_time_ms": self.response_time_ms,
            "difficulty": self.difficulty,
            "student_ability": self.student_ability,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResponseRecord":
        return cls(
            student_id=data["student_id"],
            session_id=data["session_id"],
            question_id=data["question_id"],
            is_correct=bool(data["is_correct"]),
            answered_at=from_iso(data["answered_at"]),
            chapter_id=data.get("chapter_id"),
            topic_id=data.get("topic_id"),
            response_time_ms=data.get("response_time_ms"),
            difficulty=data.get("difficulty"),
            student_ability=data.get("student_ability"),
        )


@dataclass
class AssessmentSession:
    id: str
    student_id: str
    chapter_id: str
    session_type: str = ADAPTIVE
    mode: str = ASSESSMENT
    status: str = ACTIVE
    items: List[SessionItem] = field(default_factory=list)
    estimated_ability: float = DEFAULT_ABILITY
    ability_history: List[AbilityPoint] = field(default_factory=list)
    adaptive_parameters: AdaptiveParameters = field(default_factory=AdaptiveParameters)
    answered_questions: int = 0
    correct_answers: int = 0
    total_questions: int = 0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    grade: Optional[str] = None
    topic: Optional[str] = None
    allow_retry: bool = False
    show_solutions: bool = False

    # ==================== State ====================

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_item(self) -> Optional[SessionItem]:
        """The open (unanswered) item. Only the last item can be open."""
        if self.items and not self.items[-1].is_answered:
            return self.items[-1]
        return None

    @property
    def last_answered_item(self) -> Optional[SessionItem]:
        for item in reversed(self.items):
            if item.is_answered:
                return item
        return None

    @property
    def used_question_ids(self) -> List[str]:
        return [item.question_id for item in self.items]

    def get_item(self, question_number: int) -> Optional[SessionItem]:
        if 1 <= question_number <= len(self.items):
            return self.items[question_number - 1]
        return None

    # ==================== Transitions ====================

    def add_item(self, question: Question, now: Optional[datetime] = None) -> SessionItem:
        if not self.is_active:
            raise SessionNotActive(f"Cannot add questions to a {self.status} session")
        if self.current_item is not None:
            raise InvariantViolation("Previous question has not been answered")

        item = SessionItem(
            question_id=question.id,
            question_number=len(self.items) + 1,
            presented_at=now or utcnow(),
            difficulty=question.difficulty,
            topic=question.topic,
            topic_id=question.topic_id,
        )
        self.items.append(item)
        self.total_questions = len(self.items)
        return item

    def answer_current_item(self, is_correct: bool, response_time_ms: Optional[int],
                            answer_index: Optional[int] = None, answer: Any = None,
                            now: Optional[datetime] = None) -> SessionItem:
        if not self.is_active:
            raise SessionNotActive()
        item = self.current_item
        if item is None:
            raise NoCurrentQuestion()

        item.answered_at = now or utcnow()
        item.answer_index = answer_index
        item.answer = answer
        item.is_correct = is_correct
        item.response_time_ms = response_time_ms

        self.answered_questions += 1
        if is_correct:
            self.correct_answers += 1
        return item

    def complete(self, now: Optional[datetime] = None):
        self._finish(COMPLETED, now)

    def abandon(self, now: Optional[datetime] = None):
        self._finish(ABANDONED, now)

    def _finish(self, status: str, now: Optional[datetime]):
        if not self.is_active:
            raise SessionNotActive(f"Session is already {self.status}")
        self.status = status
        self.finished_at = now or utcnow()

    def check_invariants(self):
        for index, item in enumerate(self.items):
            if item.question_number != index + 1:
                raise InvariantViolation(
                    f"Item at position {index} has question_number {item.question_number}"
                )
            if not item.is_answered and index != len(self.items) - 1:
                raise InvariantViolation(f"Question {item.question_number} is unanswered but not last")

        answered = [item for item in self.items if item.is_answered]
        if self.answered_questions != len(answered):
            raise InvariantViolation("answered_questions does not match answered items")
        if self.correct_answers != sum(1 for item in answered if item.is_correct):
            raise InvariantViolation("correct_answers does not match answered items")
        if self.total_questions != len(self.items):
            raise InvariantViolation("total_questions does not match items")
        if not 0 <= self.estimated_ability <= 1:
            raise InvariantViolation("estimated_ability outside [0, 1]")
        if self.status not in STATUSES:
            raise InvariantViolation(f"Unknown status {self.status!r}")

    # ==================== Derived ====================

    @property
    def completion_percentage(self) -> int:
        if self.total_questions == 0:
            return 0
        return round(self.answered_questions / self.total_questions * 100)

    @property
    def accuracy_percentage(self) -> int:
        if self.answered_questions == 0:
            return 0
        return round(self.correct_answers / self.answered_questions * 100)

    @property
    def duration_minutes(self) -> Optional[int]:
        if not self.finished_at:
            return None
        return round((self.finished_at - self.started_at).total_seconds() / 60)

    # ==================== Serialization ====================

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "chapter_id": self.chapter_id,
            "session_type": self.session_type,
            "mode": self.mode,
            "status": self.status,
            "items": [item.to_dict() for item in self.items],
            "estimated_ability": self.estimated_ability,
            "ability_history": [point.to_dict() for point in self.ability_history],
            "adaptive_parameters": self.adaptive_parameters.to_dict(),
            "answered_questions": self.answered_questions,
            "correct_answers": self.correct_answers,
            "total_questions": self.total_questions,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "grade": self.grade,
            "topic": self.topic,
            "allow_retry": self.allow_retry,
            "show_solutions": self.show_solutions,
        }

    def summary(self) -> Dict:
        """to_dict plus derived percentages, for API responses."""
        data = self.to_dict()
        data.update({
            "completion_percentage": self.completion_percentage,
            "accuracy_percentage": self.accuracy_percentage,
            "duration_minutes": self.duration_minutes,
        })
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AssessmentSession":
        return cls(
            id=data["id"],
            student_id=data["student_id"],
            chapter_id=data["chapter_id"],
            session_type=data.get("session_type", ADAPTIVE),
            mode=data.get("mode", ASSESSMENT),
            status=data.get("status", ACTIVE),
            items=[SessionItem.from_dict(i) for i in data.get("items", [])],
            estimated_ability=float(data.get("estimated_ability", DEFAULT_ABILITY)),
            ability_history=[AbilityPoint.from_dict(p) for p in data.get("ability_history", [])],
            adaptive_parameters=AdaptiveParameters.from_dict(data.get("adaptive_parameters")),
            answered_questions=int(data.get("answered_questions", 0)),
            correct_answers=int(data.get("correct_answers", 0)),
            total_questions=int(data.get("total_questions", 0)),
            started_at=from_iso(data["started_at"]),
            finished_at=from_iso(data.get("finished_at")),
            grade=data.get("grade"),
            topic=data.get("topic"),
            allow_retry=bool(data.get("allow_retry", False)),
            show_solutions=bool(data.get("show_solutions", False)),
        )
