"""
Questions - Tagged question variants consumed by the engine.

Variants:
    - mcq: choices + correct_index
    - fill-in-blank: correct_answer + accepted_answers (+ blanks_count)
    - short-answer: correct_answer + accepted_answers (keyword phrases)

Unknown types deserialize into the generic Question so the validator can
reject them explicitly instead of failing on a missing attribute.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional


MCQ = "mcq"
FILL_IN_BLANK = "fill-in-blank"
SHORT_ANSWER = "short-answer"

QUESTION_TYPES = (MCQ, FILL_IN_BLANK, SHORT_ANSWER)


@dataclass
class Question:
    """Fields shared by every question variant."""
    id: str
    question_type: str = ""
    stem: str = ""
    chapter_id: Optional[str] = None
    topic_id: Optional[str] = None
    topic: Optional[str] = None  # display name
    difficulty: float = 0.5  # [0, 1]
    grade: Optional[str] = None
    passage: Optional[str] = None
    explanation: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    is_active: bool = True

    # Usage statistics, updated after every answer
    usage_count: int = 0
    success_rate: float = 0.0
    average_response_time: float = 0.0  # ms

    @property
    def canonical_answer(self) -> Optional[str]:
        return None

    @property
    def difficulty_level(self) -> str:
        if self.difficulty <= 0.3:
            return "Easy"
        if self.difficulty <= 0.7:
            return "Medium"
        return "Hard"

    def record_usage(self, is_correct: bool, response_time_ms: float = 0):
        """Fold one answer into usage_count, success_rate and average_response_time."""
        self.usage_count += 1
        previous = self.usage_count - 1

        successes = self.success_rate * previous + (1 if is_correct else 0)
        self.success_rate = successes / self.usage_count

        total_time = self.average_response_time * previous + (response_time_ms or 0)
        self.average_response_time = total_time / self.usage_count

    def to_view(self, question_number: Optional[int] = None,
                total_questions: Optional[int] = None) -> Dict:
        """Student-facing payload. Never includes the answer key."""
        view = {
            "id": self.id,
            "question_type": self.question_type,
            "stem": self.stem,
            "passage": self.passage,
            "topic": self.topic,
            "topic_id": self.topic_id,
            "difficulty": self.difficulty,
        }
        if question_number is not None:
            view["question_number"] = question_number
        if total_questions is not None:
            view["total_questions"] = total_questions
        return view

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class McqQuestion(Question):
    question_type: str = MCQ
    choices: List[str] = field(default_factory=list)
    correct_index: Optional[int] = None

    @property
    def canonical_answer(self) -> Optional[str]:
        if self.correct_index is None or not 0 <= self.correct_index < len(self.choices):
            return None
        return self.choices[self.correct_index]

    def to_view(self, question_number: Optional[int] = None,
                total_questions: Optional[int] = None) -> Dict:
        view = super().to_view(question_number, total_questions)
        view["choices"] = list(self.choices)
        return view


@dataclass
class FillInBlankQuestion(Question):
    question_type: str = FILL_IN_BLANK
    correct_answer: Optional[str] = None
    accepted_answers: List[str] = field(default_factory=list)
    blanks_count: int = 1

    @property
    def canonical_answer(self) -> Optional[str]:
        return self.correct_answer

    def to_view(self, question_number: Optional[int] = None,
                total_questions: Optional[int] = None) -> Dict:
        view = super().to_view(question_number, total_questions)
        view["blanks_count"] = self.blanks_count
        return view


@dataclass
class ShortAnswerQuestion(Question):
    question_type: str = SHORT_ANSWER
    correct_answer: Optional[str] = None
    accepted_answers: List[str] = field(default_factory=list)

    @property
    def canonical_answer(self) -> Optional[str]:
        return self.correct_answer


_VARIANTS = {
    MCQ: McqQuestion,
    FILL_IN_BLANK: FillInBlankQuestion,
    SHORT_ANSWER: ShortAnswerQuestion,
}


def question_from_dict(data: dict) -> Question:
    """Build the variant matching data['question_type']; unknown types stay generic."""
    if "id" not in data:
        raise ValueError("Question data is missing 'id'")

    cls = _VARIANTS.get(data.get("question_type"), Question)
    known = set(cls.__dataclass_fields__)
    kwargs = {k: v for k, v in data.items() if k in known}
    kwargs["id"] = str(data["id"])

    if cls is Question:
        kwargs["question_type"] = str(data.get("question_type") or "")

    return cls(**kwargs)
