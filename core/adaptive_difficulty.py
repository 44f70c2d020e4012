"""
Adaptive Difficulty Engine - Picks the next question for a topic.

Features:
    - Target difficulty from the student's TopicPerformance
    - Streak nudge applied at selection time (struggling students get easier
      items immediately)
    - Band search (+/- 0.2) ranked by exposure, then closest-difficulty pick
    - Least-used fallback when the band is empty
    - Batch selection for a topic or a whole chapter
"""

import math
import random
from typing import Iterable, List, Optional

from .questions import Question
from .repository import AssessmentStore
from .topic_performance import DEFAULT_DIFFICULTY, ratchet_difficulty


class AdaptiveDifficultyEngine:
    """
    Stateless apart from its store and random source.

    Question difficulty is on the [0, 1] scale throughout.
    """

    DIFFICULTY_BAND = 0.2  # only consider questions within this range of target
    MAX_CANDIDATES = 10

    def __init__(self, store: AssessmentStore, rng: Optional[random.Random] = None):
        self.store = store
        self.rng = rng or random.Random()

    # ==================== Target ====================

    def target_difficulty(self, student_id: str, topic_id: Optional[str],
                          default: float = DEFAULT_DIFFICULTY) -> float:
        performance = self.store.get_topic_performance(student_id, topic_id) if topic_id else None
        if performance is None:
            return default

        return ratchet_difficulty(
            performance.current_difficulty,
            performance.consecutive_failures,
            performance.consecutive_successes,
        )

    # ==================== Question Selection ====================

    def get_next_question(self, student_id: str, topic_id: Optional[str],
                          exclude_question_ids: Iterable[str] = (),
                          default_difficulty: float = DEFAULT_DIFFICULTY) -> Optional[Question]:
        """
        Select the question closest to the student's target difficulty.

        Returns None when the topic has no unused active question left.
        """
        exclude = set(exclude_question_ids)
        target = self.target_difficulty(student_id, topic_id, default_difficulty)

        candidates = self.store.find_questions(
            topic_id=topic_id,
            min_difficulty=target - self.DIFFICULTY_BAND,
            max_difficulty=target + self.DIFFICULTY_BAND,
            exclude_ids=exclude,
        )
        candidates = self._rank(candidates)[:self.MAX_CANDIDATES]

        if not candidates:
            return self._fallback(topic_id, exclude)

        # min() keeps the first of equally close candidates
        return min(candidates, key=lambda q: abs(q.difficulty - target))

    def _fallback(self, topic_id: Optional[str], exclude: set) -> Optional[Question]:
        questions = self.store.find_questions(topic_id=topic_id, exclude_ids=exclude)
        if not questions:
            return None
        questions.sort(key=lambda q: (q.usage_count, q.id))
        return questions[0]

    @staticmethod
    def _rank(questions: List[Question]) -> List[Question]:
        """Least exposed first, then highest success rate; id keeps the order stable."""
        return sorted(questions, key=lambda q: (q.usage_count, -q.success_rate, q.id))

    # ==================== Batch Selection ====================

    def get_adaptive_questions_for_topic(self, student_id: str, topic_id: str, count: int = 5,
                                         exclude_question_ids: Iterable[str] = ()) -> List[Question]:
        """Up to count questions, in selection order."""
        used = list(exclude_question_ids)
        questions = []

        for _ in range(count):
            question = self.get_next_question(student_id, topic_id, used)
            if question is None:
                break
            questions.append(question)
            used.append(question.id)

        return questions

    def get_adaptive_questions_for_chapter(self, student_id: str, chapter_id: str, count: int = 10,
                                           exclude_question_ids: Iterable[str] = ()) -> List[Question]:
        """Spread count across the chapter's topics, shuffle, truncate."""
        topic_ids = self.store.list_chapter_topics(chapter_id)
        if not topic_ids or count <= 0:
            return []

        per_topic = math.ceil(count / len(topic_ids))
        used = list(exclude_question_ids)
        questions: List[Question] = []

        for topic_id in topic_ids:
            topic_questions = self.get_adaptive_questions_for_topic(student_id, topic_id, per_topic, used)
            questions.extend(topic_questions)
            used.extend(q.id for q in topic_questions)

        return self.shuffle(questions)[:count]

    def shuffle(self, items: List) -> List:
        """Fisher-Yates shuffle into a new list."""
        shuffled = list(items)
        for i in range(len(shuffled) - 1, 0, -1):
            j = self.rng.randint(0, i)
            shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
        return shuffled
