"""
Answer Validator - Correctness checks for every question variant.

Rules:
    - mcq: integer index in [0, len(choices)), correct iff == correct_index
    - fill-in-blank: normalized exact match against correct/accepted answers
    - short-answer: normalized substring containment against accepted phrases

Validation never raises for bad answers; it reports is_valid=False with an
error so the caller can reject the request before mutating anything.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from .questions import (
    Question, McqQuestion, FillInBlankQuestion, ShortAnswerQuestion,
    MCQ, FILL_IN_BLANK, SHORT_ANSWER,
)


@dataclass
class ValidationResult:
    is_valid: bool
    is_correct: bool
    error: Optional[str] = None
    correct_answer: Optional[str] = None
    selected_answer: Any = None
    matched_answer: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


def normalize_answer(answer: Any) -> str:
    """Trim, case-fold and collapse internal whitespace."""
    if answer is None:
        return ""
    if not isinstance(answer, str):
        answer = str(answer)
    return " ".join(answer.split()).casefold()


def _invalid(error: str, question: Question, selected: Any = None) -> ValidationResult:
    return ValidationResult(
        is_valid=False,
        is_correct=False,
        error=error,
        correct_answer=question.canonical_answer,
        selected_answer=selected,
    )


class AnswerValidator:
    """Dispatches on question_type; one validate_* method per variant."""

    def __init__(self):
        self._handlers = {
            MCQ: self.validate_mcq,
            FILL_IN_BLANK: self.validate_fill_in_blank,
            SHORT_ANSWER: self.validate_short_answer,
        }

    def validate(self, question: Question, raw_answer: Any) -> ValidationResult:
        handler = self._handlers.get(question.question_type)
        if handler is None:
            return _invalid(f"Unknown question type: {question.question_type!r}", question, raw_answer)
        return handler(question, raw_answer)

    # ==================== MCQ ====================

    def validate_mcq(self, question: McqQuestion, raw_answer: Any) -> ValidationResult:
        choices = getattr(question, "choices", None)
        if not choices:
            return _invalid("MCQ question has no choices", question, raw_answer)

        correct_index = getattr(question, "correct_index", None)
        if correct_index is None or not 0 <= correct_index < len(choices):
            return _invalid("MCQ question has no valid correct_index", question, raw_answer)

        # bool is an int subclass; True must not select choice 1
        if isinstance(raw_answer, bool) or not isinstance(raw_answer, int):
            return _invalid("Answer must be an integer choice index", question, raw_answer)

        if not 0 <= raw_answer < len(choices):
            return _invalid("Invalid answer index", question, raw_answer)

        return ValidationResult(
            is_valid=True,
            is_correct=raw_answer == correct_index,
            correct_answer=choices[correct_index],
            selected_answer=choices[raw_answer],
        )

    # ==================== Fill-in-blank ====================

    def validate_fill_in_blank(self, question: FillInBlankQuestion, raw_answer: Any) -> ValidationResult:
        if not normalize_answer(getattr(question, "correct_answer", None)):
            return _invalid("Fill-in-blank question has no correct_answer", question, raw_answer)

        accepted = self._accepted_answers(question)

        if isinstance(raw_answer, (list, tuple)):
            return self._validate_blanks(question, list(raw_answer), accepted)

        normalized = normalize_answer(raw_answer)
        if not normalized:
            return _invalid("Answer is required", question, raw_answer)

        matched = accepted.get(normalized)
        return ValidationResult(
            is_valid=True,
            is_correct=matched is not None,
            correct_answer=question.correct_answer,
            selected_answer=raw_answer,
            matched_answer=matched,
        )

    def _validate_blanks(self, question: FillInBlankQuestion, answers: List[Any],
                         accepted: Dict[str, str]) -> ValidationResult:
        blanks = getattr(question, "blanks_count", 1) or 1
        if len(answers) != blanks:
            return _invalid(f"Expected {blanks} answers, got {len(answers)}", question, answers)

        normalized = [normalize_answer(a) for a in answers]
        if not all(normalized):
            return _invalid("Every blank needs an answer", question, answers)

        return ValidationResult(
            is_valid=True,
            is_correct=all(n in accepted for n in normalized),
            correct_answer=question.correct_answer,
            selected_answer=answers,
        )

    # ==================== Short answer ====================

    def validate_short_answer(self, question: ShortAnswerQuestion, raw_answer: Any) -> ValidationResult:
        phrases = [normalize_answer(a) for a in getattr(question, "accepted_answers", None) or []]
        phrases = [p for p in phrases if p]
        correct = normalize_answer(getattr(question, "correct_answer", None))

        if not phrases and not correct:
            return _invalid("Short-answer question has no accepted answers", question, raw_answer)

        if isinstance(raw_answer, (list, tuple, dict)):
            return _invalid("Short answer must be text", question, raw_answer)

        normalized = normalize_answer(raw_answer)
        if not normalized:
            return _invalid("Answer is required", question, raw_answer)

        if correct and normalized == correct:
            matched = question.correct_answer
        else:
            matched = self.keyword_match(normalized, phrases or [correct])

        return ValidationResult(
            is_valid=True,
            is_correct=matched is not None,
            correct_answer=question.correct_answer,
            selected_answer=raw_answer,
            matched_answer=matched,
        )

    @staticmethod
    def keyword_match(normalized_answer: str, phrases: List[str]) -> Optional[str]:
        """
        Return the first phrase the answer contains or is contained by.

        Both sides must already be normalized. Plain substring containment,
        no similarity scoring.
        """
        if not normalized_answer:
            return None
        for phrase in phrases:
            if phrase and (phrase in normalized_answer or normalized_answer in phrase):
                return phrase
        return None

    # ==================== Feedback ====================

    def get_feedback(self, question: Question, raw_answer: Any,
                     result: ValidationResult) -> Dict:
        """Explanation payload for the student. Pure: reads, never writes."""
        feedback = {
            "is_correct": result.is_correct,
            "correct_answer": result.correct_answer,
            "explanation": question.explanation,
        }

        if not result.is_valid:
            feedback["type"] = "invalid"
            feedback["message"] = result.error or "Invalid answer"
            return feedback

        if result.is_correct:
            feedback["type"] = "success"
            feedback["message"] = "Correct!"
            return feedback

        feedback["type"] = "error"
        feedback["message"] = "Incorrect answer"

        if question.question_type == FILL_IN_BLANK:
            feedback["hint"] = f"Expected answer: {result.correct_answer}"
            alternatives = getattr(question, "accepted_answers", None)
            if alternatives:
                feedback["alternatives"] = list(alternatives)
        elif result.correct_answer is not None:
            feedback["hint"] = f"The correct answer is: {result.correct_answer}"

        return feedback

    @staticmethod
    def _accepted_answers(question: Question) -> Dict[str, str]:
        """normalized -> original text, correct_answer first."""
        pool = [question.correct_answer] + list(getattr(question, "accepted_answers", None) or [])
        accepted: Dict[str, str] = {}
        for answer in pool:
            key = normalize_answer(answer)
            if key and key not in accepted:
                accepted[key] = answer
        return accepted
