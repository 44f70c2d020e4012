"""
FastAPI Backend for the Adaptive Assessment Engine

Endpoints:
    POST   /api/assessments/start                          - Start a session, get question 1
    POST   /api/assessments/{id}/answer                    - Submit an answer, get the next question
    GET    /api/assessments/active                         - Caller's active session
    GET    /api/assessments/{id}                           - Session details (owner, teacher or admin)
    POST   /api/assessments/cleanup                        - Abandon the caller's stale sessions
    POST   /api/assessments/abandon                        - Abandon the caller's active session
    GET    /api/performance/struggling                     - Topics below the struggling threshold
    GET    /api/performance/top                            - Best topics
    GET    /api/performance/chapters/{chapter_id}          - Chapter summary
    GET    /api/performance/topics/{topic_id}/study-time   - Recommended study minutes
    DELETE /api/performance/topics/{topic_id}              - Reset a topic
    PUT    /api/performance/topics/{topic_id}/struggling-concepts/{concept} - Tag a concept
    DELETE /api/performance/topics/{topic_id}/struggling-concepts/{concept} - Untag a concept

Identity comes from the X-User-Id / X-User-Role headers set by the gateway.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Literal, Optional, Union

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import build_store, configure_logging, get_settings
from core.errors import AssessmentError, Internal, Unauthorized
from core.session_manager import SessionManager

# ==================== Request Models ====================

class AdaptiveParametersRequest(BaseModel):
    initial_difficulty: Optional[float] = Field(None, ge=0, le=1)
    difficulty_step: Optional[float] = Field(None, ge=0.05, le=0.3)
    max_questions: Optional[int] = Field(None, ge=5, le=50)
    min_questions: Optional[int] = Field(None, ge=3, le=20)
    confidence_threshold: Optional[float] = Field(None, ge=0.5, le=0.95)


class StartAssessmentRequest(BaseModel):
    chapter_id: str = Field(..., min_length=1)
    session_type: Literal["adaptive", "fixed"] = "adaptive"
    mode: Literal["assessment", "practice", "revision"] = "assessment"
    grade: Optional[str] = None
    topic: Optional[str] = None  # topic id
    max_questions: Optional[int] = Field(None, ge=5, le=50)
    adaptive_parameters: Optional[AdaptiveParametersRequest] = None


class SubmitAnswerRequest(BaseModel):
    answer_index: Optional[int] = None
    answer: Optional[Union[str, List[str]]] = None
    response_time_ms: int = Field(0, ge=0, le=300000)
    question_number: Optional[int] = Field(None, ge=1)


# ==================== Identity ====================

@dataclass
class Caller:
    user_id: str
    role: str = "student"


def get_caller(x_user_id: Optional[str] = Header(None),
               x_user_role: Optional[str] = Header(None)) -> Caller:
    if not x_user_id:
        raise Unauthorized()
    return Caller(user_id=x_user_id, role=(x_user_role or "student").lower())


# ==================== App Factory ====================

def create_app(manager: Optional[SessionManager] = None) -> FastAPI:
    """Build the app. Pass a manager to run against a custom store (tests)."""
    if manager is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        manager = SessionManager(
            build_store(settings),
            stale_after=timedelta(hours=settings.stale_session_hours),
        )

    app = FastAPI(
        title="Adaptive Assessment API",
        description="Adaptive assessments with per-topic mastery tracking",
        version="1.0.0"
    )
    app.state.manager = manager

    # Allow frontend to connect
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==================== Error Handlers ====================

    @app.exception_handler(AssessmentError)
    async def handle_assessment_error(request: Request, exc: AssessmentError):
        if isinstance(exc, Internal):
            # Internal details stay in the logs
            body = {"error": {"message": Internal.default_message, "code": exc.code}}
        else:
            body = exc.to_dict()
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": {"message": "Validation failed", "code": "VALIDATION_ERROR", "details": details}},
        )

    # ==================== Endpoints ====================

    @app.get("/")
    def root():
        """Health check endpoint."""
        return {"status": "ok", "message": "Adaptive Assessment API is running"}

    @app.post("/api/assessments/start", status_code=201)
    def start_assessment(request: StartAssessmentRequest, caller: Caller = Depends(get_caller)):
        """
        Start a new assessment session.

        Returns the session and its first question (no answer key).
        """
        params = request.adaptive_parameters.model_dump(exclude_none=True) if request.adaptive_parameters else None
        result = manager.start_session(
            caller.user_id,
            request.chapter_id,
            session_type=request.session_type,
            mode=request.mode,
            grade=request.grade,
            topic=request.topic,
            max_questions=request.max_questions,
            adaptive_parameters=params,
        )
        return result.to_dict()

    @app.get("/api/assessments/active")
    def get_active_assessment(caller: Caller = Depends(get_caller)):
        session = manager.get_active_session(caller.user_id)
        if session is None:
            return {"session": None, "current_question": None}

        session, current_question = manager.get_session(session.id, caller.user_id, caller.role)
        return {"session": session.summary(), "current_question": current_question}

    @app.post("/api/assessments/cleanup")
    def cleanup_sessions(caller: Caller = Depends(get_caller)):
        cleaned = manager.cleanup_stale_sessions(caller.user_id)
        return {"cleaned_sessions": cleaned}

    @app.post("/api/assessments/abandon")
    def abandon_assessment(caller: Caller = Depends(get_caller)):
        session = manager.abandon_session(caller.user_id)
        return {"session": session.summary()}

    @app.post("/api/assessments/{session_id}/answer")
    def submit_answer(session_id: str, request: SubmitAnswerRequest, caller: Caller = Depends(get_caller)):
        """
        Submit an answer for the current question.

        Send question_number to make retries safe; a repeat of an answered
        question returns the stored result with replayed=true.
        """
        result = manager.submit_answer(
            session_id,
            caller.user_id,
            answer_index=request.answer_index,
            answer=request.answer,
            response_time_ms=request.response_time_ms,
            question_number=request.question_number,
        )
        return result.to_dict()

    @app.get("/api/assessments/{session_id}")
    def get_assessment(session_id: str, caller: Caller = Depends(get_caller)):
        session, current_question = manager.get_session(session_id, caller.user_id, caller.role)
        return {"session": session.summary(), "current_question": current_question}

    @app.get("/api/performance/struggling")
    def struggling_topics(threshold: float = Query(0.4, ge=0, le=1), caller: Caller = Depends(get_caller)):
        topics = manager.tracker.get_struggling_topics(caller.user_id, threshold)
        return {"topics": [t.summary() for t in topics]}

    @app.get("/api/performance/top")
    def top_topics(limit: int = Query(5, ge=1, le=50), caller: Caller = Depends(get_caller)):
        topics = manager.tracker.get_top_performing_topics(caller.user_id, limit)
        return {"topics": [t.summary() for t in topics]}

    @app.get("/api/performance/chapters/{chapter_id}")
    def chapter_summary(chapter_id: str, caller: Caller = Depends(get_caller)):
        return manager.tracker.get_chapter_performance_summary(caller.user_id, chapter_id)

    @app.get("/api/performance/topics/{topic_id}/study-time")
    def study_time(topic_id: str, caller: Caller = Depends(get_caller)):
        minutes = manager.tracker.get_recommended_study_time(caller.user_id, topic_id)
        return {"topic_id": topic_id, "recommended_minutes": minutes}

    @app.delete("/api/performance/topics/{topic_id}")
    def reset_topic(topic_id: str, caller: Caller = Depends(get_caller)):
        deleted = manager.tracker.reset_topic_performance(caller.user_id, topic_id)
        return {"topic_id": topic_id, "deleted": deleted}

    @app.put("/api/performance/topics/{topic_id}/struggling-concepts/{concept}")
    def add_struggling_concept(topic_id: str, concept: str, caller: Caller = Depends(get_caller)):
        performance = manager.tracker.add_struggling_concept(caller.user_id, topic_id, concept)
        return {"topic": performance.summary()}

    @app.delete("/api/performance/topics/{topic_id}/struggling-concepts/{concept}")
    def remove_struggling_concept(topic_id: str, concept: str, caller: Caller = Depends(get_caller)):
        performance = manager.tracker.remove_struggling_concept(caller.user_id, topic_id, concept)
        return {"topic": performance.summary()}

    return app


# ==================== Run Server ====================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
