"""
Errors - Failure taxonomy for the assessment engine.

Categories:
    - NotFound (404): session/question absent
    - Unauthorized (401): caller identity missing
    - Forbidden (403): ownership mismatch
    - Conflict (409): duplicate active session, wrong session state, lock contention
    - ValidationError (400): malformed or out-of-range request payload
    - Internal (500): storage or unexpected failure
"""

from typing import Any, Dict, Optional


class AssessmentError(Exception):
    """Base error. Carries a machine-readable code and an HTTP status mapping."""

    status_code = 500
    code = "ASSESSMENT_ERROR"
    default_message = "Assessment error"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        error = {"message": self.message, "code": self.code}
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}


# ==================== Categories ====================

class NotFound(AssessmentError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class Unauthorized(AssessmentError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Authentication required"


class Forbidden(AssessmentError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Access denied"


class Conflict(AssessmentError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Request conflicts with current state"


class ValidationError(AssessmentError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class Internal(AssessmentError):
    status_code = 500
    code = "INTERNAL_SERVER_ERROR"
    default_message = "Internal server error"


# ==================== Concrete Errors ====================

class SessionNotFound(NotFound):
    code = "SESSION_NOT_FOUND"
    default_message = "Session not found"


class QuestionNotFound(NotFound):
    code = "QUESTION_NOT_FOUND"
    default_message = "Question not found"


class TopicPerformanceNotFound(NotFound):
    code = "TOPIC_PERFORMANCE_NOT_FOUND"
    default_message = "No performance record for this topic"


class NoActiveSession(NotFound):
    code = "NO_ACTIVE_SESSION"
    default_message = "No active session found"


class NoQuestionsAvailable(NotFound):
    code = "NO_QUESTIONS_AVAILABLE"
    default_message = "No questions available for the specified criteria"


class SessionAccessDenied(Forbidden):
    code = "SESSION_ACCESS_DENIED"
    default_message = "Access denied to this session"


class ActiveSessionExists(Conflict):
    code = "ACTIVE_SESSION_EXISTS"
    default_message = "Active session already exists"

    def __init__(self, session_id: str, message: Optional[str] = None):
        self.session_id = session_id
        super().__init__(message, details={"session_id": session_id})


class SessionNotActive(Conflict):
    code = "SESSION_NOT_ACTIVE"
    default_message = "Session is not active"


class SessionBusy(Conflict):
    code = "SESSION_BUSY"
    default_message = "Another request is updating this record, retry shortly"


class InvariantViolation(Conflict):
    code = "INVARIANT_VIOLATION"
    default_message = "Update would leave the session in an inconsistent state"


class InvalidAnswerFormat(ValidationError):
    code = "INVALID_ANSWER_FORMAT"
    default_message = "Invalid answer format"


class NoCurrentQuestion(ValidationError):
    code = "NO_CURRENT_QUESTION"
    default_message = "No current question to answer"


class InvalidRequest(ValidationError):
    code = "INVALID_REQUEST"


class StorageError(Internal):
    code = "STORAGE_ERROR"
    default_message = "Storage operation failed"
