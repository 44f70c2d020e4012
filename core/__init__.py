"""
Core module - Adaptive assessment engine.

Components:
    - questions: Question variants (mcq, fill-in-blank, short-answer)
    - answer_validator: Per-variant correctness checks and feedback
    - topic_performance: Per-topic mastery tracking + difficulty ratchet
    - adaptive_difficulty: Next-question selection around a target difficulty
    - ability_estimator: Session-wide ability and confidence
    - session: AssessmentSession aggregate
    - session_manager: Session state machine (start / submit / abandon)
    - repository: Storage contract implemented by InMemoryStore and RedisStore
"""

from .questions import Question, McqQuestion, FillInBlankQuestion, ShortAnswerQuestion, question_from_dict
from .answer_validator import AnswerValidator, ValidationResult
from .topic_performance import TopicPerformance, TopicPerformanceTracker
from .adaptive_difficulty import AdaptiveDifficultyEngine
from .ability_estimator import estimate_ability
from .session import AssessmentSession, AdaptiveParameters, SessionItem
from .session_manager import SessionManager, SessionHooks, StartResult, SubmitResult
from .repository import AssessmentStore
from .errors import AssessmentError

__all__ = [
    "Question",
    "McqQuestion",
    "FillInBlankQuestion",
    "ShortAnswerQuestion",
    "question_from_dict",
    "AnswerValidator",
    "ValidationResult",
    "TopicPerformance",
    "TopicPerformanceTracker",
    "AdaptiveDifficultyEngine",
    "estimate_ability",
    "AssessmentSession",
    "AdaptiveParameters",
    "SessionItem",
    "SessionManager",
    "SessionHooks",
    "StartResult",
    "SubmitResult",
    "AssessmentStore",
    "AssessmentError",
]
