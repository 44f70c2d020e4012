"""
Redis Store - Production AssessmentStore.

Key Structure:
    session:{session_id}               -> String (JSON of the whole session aggregate)
    student:{student_id}:sessions      -> Sorted set (session ids scored by start time)
    student:{student_id}:active        -> String (id of the active session, if any)
    topic_perf:{student_id}:{topic_id} -> Hash (TopicPerformance fields)
    student:{student_id}:topics        -> Set (topic ids with a performance record)
    question:{question_id}             -> String (JSON of the question)
    questions:all                      -> Set (every question id)
    chapter:{chapter_id}:questions     -> Set (question ids in the chapter)
    topic:{topic_id}:questions         -> Set (question ids in the topic)
    responses:{student_id}             -> List (JSON of each answered item)
    applied:{session_id}:{n}:{effect}  -> String (side effect done for item n; expires after 7 days)
    lock:{name}                        -> redis-py Lock
"""

import functools
import json
import logging
from typing import Dict, Iterable, List, Optional

import redis
from redis.exceptions import LockError

from config import Settings, get_settings
from core.errors import SessionBusy, StorageError
from core.questions import Question, question_from_dict
from core.repository import AssessmentStore
from core.session import ACTIVE, AssessmentSession, ResponseRecord
from core.topic_performance import TopicPerformance

logger = logging.getLogger(__name__)


def _wrap_redis_errors(method):
    """Log driver failures and surface them as StorageError."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except redis.RedisError as exc:
            logger.error("Redis operation %s failed", method.__name__, exc_info=True)
            raise StorageError() from exc
    return wrapper


class RedisStore(AssessmentStore):
    def __init__(self, settings: Optional[Settings] = None, client: Optional[redis.Redis] = None):
        """Connect to Redis using Settings (environment variables by default)."""
        self.settings = settings or get_settings()
        self.client = client or redis.Redis(
            host=self.settings.redis_host,
            port=self.settings.redis_port,
            password=self.settings.redis_password,
            db=self.settings.redis_db,
            decode_responses=True  # Return strings instead of bytes
        )

    # ==================== Key Builders ====================

    def _session_key(self, session_id: str) -> str:
        return f"session:{session_id}"

    def _student_sessions_key(self, student_id: str) -> str:
        return f"student:{student_id}:sessions"

    def _active_key(self, student_id: str) -> str:
        return f"student:{student_id}:active"

    def _topic_key(self, student_id: str, topic_id: str) -> str:
        return f"topic_perf:{student_id}:{topic_id}"

    def _student_topics_key(self, student_id: str) -> str:
        return f"student:{student_id}:topics"

    def _question_key(self, question_id: str) -> str:
        return f"question:{question_id}"

    def _chapter_questions_key(self, chapter_id: str) -> str:
        return f"chapter:{chapter_id}:questions"

    def _topic_questions_key(self, topic_id: str) -> str:
        return f"topic:{topic_id}:questions"

    def _responses_key(self, student_id: str) -> str:
        return f"responses:{student_id}"

    def _marker_key(self, key: str) -> str:
        return f"applied:{key}"

    ALL_QUESTIONS_KEY = "questions:all"
    MARKER_TTL_SECONDS = 7 * 24 * 3600

    # ==================== Sessions ====================

    @_wrap_redis_errors
    def get_session(self, session_id: str) -> Optional[AssessmentSession]:
        raw = self.client.get(self._session_key(session_id))
        return AssessmentSession.from_dict(json.loads(raw)) if raw else None

    @_wrap_redis_errors
    def save_session(self, session: AssessmentSession):
        """
        Write the aggregate and its indexes in one MULTI/EXEC.

        The active pointer is set while the session is active and cleared
        once it reaches a terminal status.
        """
        session.check_invariants()
        active_key = self._active_key(session.student_id)

        pipe = self.client.pipeline()
        pipe.set(self._session_key(session.id), json.dumps(session.to_dict()))
        pipe.zadd(self._student_sessions_key(session.student_id),
                  {session.id: session.started_at.timestamp()})
        if session.status == ACTIVE:
            pipe.set(active_key, session.id)
        pipe.execute()

        if session.status != ACTIVE and self.client.get(active_key) == session.id:
            self.client.delete(active_key)

    @_wrap_redis_errors
    def find_active_session(self, student_id: str) -> Optional[AssessmentSession]:
        session_id = self.client.get(self._active_key(student_id))
        if not session_id:
            return None
        session = self.get_session(session_id)
        if session is None or session.status != ACTIVE:
            return None
        return session

    @_wrap_redis_errors
    def list_sessions(self, student_id: str, status: Optional[str] = None) -> List[AssessmentSession]:
        """Newest first."""
        session_ids = self.client.zrevrange(self._student_sessions_key(student_id), 0, -1)
        if not session_ids:
            return []

        raws = self.client.mget([self._session_key(sid) for sid in session_ids])
        sessions = [AssessmentSession.from_dict(json.loads(raw)) for raw in raws if raw]
        if status is not None:
            sessions = [s for s in sessions if s.status == status]
        return sessions

    # ==================== Topic Performance ====================

    @_wrap_redis_errors
    def get_topic_performance(self, student_id: str, topic_id: str) -> Optional[TopicPerformance]:
        data = self.client.hgetall(self._topic_key(student_id, topic_id))
        return TopicPerformance.from_dict(data) if data else None

    @_wrap_redis_errors
    def save_topic_performance(self, performance: TopicPerformance):
        # Hash values must be strings; empty string stands for "no timestamp"
        mapping = {k: ("" if v is None else v) for k, v in performance.to_dict().items()}
        mapping["struggling_concepts"] = json.dumps(performance.struggling_concepts)

        pipe = self.client.pipeline()
        pipe.hset(self._topic_key(performance.student_id, performance.topic_id), mapping=mapping)
        pipe.sadd(self._student_topics_key(performance.student_id), performance.topic_id)
        pipe.execute()

    @_wrap_redis_errors
    def delete_topic_performance(self, student_id: str, topic_id: str) -> bool:
        pipe = self.client.pipeline()
        pipe.delete(self._topic_key(student_id, topic_id))
        pipe.srem(self._student_topics_key(student_id), topic_id)
        deleted, _ = pipe.execute()
        return bool(deleted)

    @_wrap_redis_errors
    def list_topic_performances(self, student_id: str) -> List[TopicPerformance]:
        performances = []
        for topic_id in sorted(self.client.smembers(self._student_topics_key(student_id))):
            performance = self.get_topic_performance(student_id, topic_id)
            if performance is not None:
                performances.append(performance)
        return performances

    # ==================== Questions ====================

    @_wrap_redis_errors
    def get_question(self, question_id: str) -> Optional[Question]:
        raw = self.client.get(self._question_key(question_id))
        return question_from_dict(json.loads(raw)) if raw else None

    @_wrap_redis_errors
    def save_question(self, question: Question):
        pipe = self.client.pipeline()
        pipe.set(self._question_key(question.id), json.dumps(question.to_dict()))
        pipe.sadd(self.ALL_QUESTIONS_KEY, question.id)
        if question.chapter_id:
            pipe.sadd(self._chapter_questions_key(question.chapter_id), question.id)
        if question.topic_id:
            pipe.sadd(self._topic_questions_key(question.topic_id), question.id)
        pipe.execute()

    @_wrap_redis_errors
    def find_questions(self, topic_id: Optional[str] = None, chapter_id: Optional[str] = None,
                       min_difficulty: Optional[float] = None, max_difficulty: Optional[float] = None,
                       exclude_ids: Iterable[str] = (), grade: Optional[str] = None,
                       active_only: bool = True) -> List[Question]:
        # Narrow with the index sets, then filter the rest client-side
        index_keys = []
        if topic_id is not None:
            index_keys.append(self._topic_questions_key(topic_id))
        if chapter_id is not None:
            index_keys.append(self._chapter_questions_key(chapter_id))
        if not index_keys:
            index_keys.append(self.ALL_QUESTIONS_KEY)

        question_ids = self.client.sinter(index_keys) - set(exclude_ids)
        if not question_ids:
            return []

        found = []
        for raw in self.client.mget([self._question_key(qid) for qid in sorted(question_ids)]):
            if not raw:
                continue
            question = question_from_dict(json.loads(raw))
            if active_only and not question.is_active:
                continue
            if grade is not None and question.grade != grade:
                continue
            if min_difficulty is not None and question.difficulty < min_difficulty:
                continue
            if max_difficulty is not None and question.difficulty > max_difficulty:
                continue
            found.append(question)

        return found

    # ==================== Responses ====================

    @_wrap_redis_errors
    def record_response(self, record: ResponseRecord):
        self.client.rpush(self._responses_key(record.student_id), json.dumps(record.to_dict()))

    @_wrap_redis_errors
    def list_responses(self, student_id: str) -> List[ResponseRecord]:
        raws = self.client.lrange(self._responses_key(student_id), 0, -1)
        return [ResponseRecord.from_dict(json.loads(raw)) for raw in raws]

    # ==================== Applied Markers ====================

    @_wrap_redis_errors
    def claim_marker(self, key: str) -> bool:
        return bool(self.client.set(self._marker_key(key), 1, nx=True, ex=self.MARKER_TTL_SECONDS))

    @_wrap_redis_errors
    def release_marker(self, key: str):
        self.client.delete(self._marker_key(key))

    # ==================== Concurrency ====================

    def lock(self, name: str):
        """
        Distributed lock. Expires after lock_timeout_seconds so a crashed
        holder cannot wedge the key; waits up to lock_wait_seconds.
        """
        return _RedisLockContext(
            self.client.lock(
                f"lock:{name}",
                timeout=self.settings.lock_timeout_seconds,
                blocking_timeout=self.settings.lock_wait_seconds,
            ),
            name,
        )

    # ==================== Maintenance ====================

    def delete_student_data(self, student_id: str):
        """Delete all data for a student (for testing/cleanup)."""
        session_ids = self.client.zrange(self._student_sessions_key(student_id), 0, -1)
        topic_ids = self.client.smembers(self._student_topics_key(student_id))

        keys = [self._session_key(sid) for sid in session_ids]
        keys += [self._topic_key(student_id, tid) for tid in topic_ids]
        keys += [
            self._student_sessions_key(student_id),
            self._active_key(student_id),
            self._student_topics_key(student_id),
            self._responses_key(student_id),
        ]
        self.client.delete(*keys)

    def delete_question(self, question_id: str):
        question = self.get_question(question_id)
        pipe = self.client.pipeline()
        pipe.delete(self._question_key(question_id))
        pipe.srem(self.ALL_QUESTIONS_KEY, question_id)
        if question is not None and question.chapter_id:
            pipe.srem(self._chapter_questions_key(question.chapter_id), question_id)
        if question is not None and question.topic_id:
            pipe.srem(self._topic_questions_key(question.topic_id), question_id)
        pipe.execute()


class _RedisLockContext:
    """Maps redis-py lock failures onto the engine's errors."""

    def __init__(self, lock: "redis.lock.Lock", name: str):
        self._lock = lock
        self._name = name

    def __enter__(self):
        try:
            acquired = self._lock.acquire()
        except redis.RedisError as exc:
            logger.error("Could not acquire lock %s", self._name, exc_info=True)
            raise StorageError() from exc
        if not acquired:
            logger.warning("Timed out waiting for lock %s", self._name)
            raise SessionBusy()
        return None

    def __exit__(self, exc_type, exc, tb):
        try:
            self._lock.release()
        except LockError:
            # Expired while held; another holder may already own the key
            logger.warning("Lock %s expired before release", self._name)
        return False
