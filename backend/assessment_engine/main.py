"""FastAPI application entrypoint and HTTP controllers.

This module exposes the assessment engine over HTTP. Controllers are
intentionally thin: they read the authenticated user, delegate to
services, and return JSON. Service errors are mapped to responses by a
single exception handler.

Endpoints implemented:
- POST /auth/register
- POST /auth/login
- GET /assessments
- POST /assessments/{assessment_id}/attempts
- GET /attempts/{attempt_id}
- PUT /attempts/{attempt_id}/answers
- POST /attempts/{attempt_id}/submit
- GET /attempts/{attempt_id}/review
- POST /attempts/{attempt_id}/answers/{question_ref_id}/grade
- POST /attempts/{attempt_id}/reviewed
- GET /mastery, /mastery/weakest, /mastery/strongest, /mastery/overall
- GET /mastery/jobs/{job_id}
- GET /health
"""

import json
import logging
import time
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlmodel import Session

from . import models, repositories, services
from .auth import get_current_user
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import AssessmentError
from .mastery_jobs import MasteryJobStore
from .schemas import AnswerIn, ManualGradeIn, RegisterIn

app = FastAPI(title="Assessment Engine API")
logger = logging.getLogger("assessment_engine.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_mastery_jobs = MasteryJobStore()

# Wide-open CORS keeps local HTML testers working without extra config in dev.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


def get_mastery_jobs() -> MasteryJobStore:
    """Dependency returning the process-wide mastery job store."""
    return _mastery_jobs


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
            },
            ensure_ascii=True,
        ),
    )
    return response


@app.exception_handler(AssessmentError)
async def assessment_error_handler(request: Request, exc: AssessmentError):
    if exc.status_code >= 500:
        logger.error("request_error %s", json.dumps(
            {"request_id": _request_id(request), "kind": exc.kind, "message": exc.message}, ensure_ascii=True))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new student account (idempotent).

    Returns the existing user if the username is taken so automation
    and tests can call it repeatedly. Privileged accounts are provisioned
    by the identity system, not here.
    """
    existing = repositories.UserRepository(db).get_by_username(payload.username)
    if existing:
        return {'id': existing.id, 'username': existing.username, 'role': existing.role}
    user = services.AuthService(db).register(payload.username, payload.password)
    return {'id': user.id, 'username': user.username, 'role': user.role}


@app.post('/auth/login')
def login(payload: RegisterIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT token.

    The returned token contains `user_id`, `username` and `role`.
    """
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


@app.get('/assessments')
def list_assessments(status: Optional[str] = None, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    """List assessments the caller may start (all of them for tutors/admins)."""
    return services.AssessmentService(db).list_available(user.role, status=status)


def _attempts(request: Request, db: Session, jobs: MasteryJobStore) -> services.AttemptService:
    return services.AttemptService(db, mastery_jobs=jobs, request_id=_request_id(request))


@app.post('/assessments/{assessment_id}/attempts', status_code=201)
def start_attempt(assessment_id: int, request: Request, db: Session = Depends(get_session),
                  user: models.User = Depends(get_current_user), jobs: MasteryJobStore = Depends(get_mastery_jobs)):
    """Start an attempt and return the questions without solutions."""
    return _attempts(request, db, jobs).start_attempt(assessment_id, user.id)


@app.get('/attempts/{attempt_id}')
def get_attempt(attempt_id: str, request: Request, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user), jobs: MasteryJobStore = Depends(get_mastery_jobs)):
    return _attempts(request, db, jobs).get_attempt(attempt_id, user.id, user.role)


@app.put('/attempts/{attempt_id}/answers')
def answer_attempt(attempt_id: str, payload: AnswerIn, request: Request, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user), jobs: MasteryJobStore = Depends(get_mastery_jobs)):
    """Save the answer to one question; repeated calls replace it."""
    return _attempts(request, db, jobs).answer_attempt(
        attempt_id, user.id, payload.question_ref_id, payload.answer, payload.time_taken_seconds
    )


@app.post('/attempts/{attempt_id}/submit')
def submit_attempt(attempt_id: str, request: Request, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user), jobs: MasteryJobStore = Depends(get_mastery_jobs)):
    """Grade and close the attempt."""
    return _attempts(request, db, jobs).submit_attempt(attempt_id, user.id)


@app.get('/attempts/{attempt_id}/review')
def review_attempt(attempt_id: str, request: Request, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user), jobs: MasteryJobStore = Depends(get_mastery_jobs)):
    """Return the finished attempt with per-question results."""
    return _attempts(request, db, jobs).get_attempt_review(attempt_id, user.id, user.role)


@app.post('/attempts/{attempt_id}/answers/{question_ref_id}/grade')
def grade_answer(attempt_id: str, question_ref_id: int, payload: ManualGradeIn, request: Request,
                 db: Session = Depends(get_session), user: models.User = Depends(get_current_user),
                 jobs: MasteryJobStore = Depends(get_mastery_jobs)):
    """Record a tutor's score for an answer awaiting manual grading."""
    return _attempts(request, db, jobs).grade_answer_manually(
        attempt_id, question_ref_id, user.id, user.role,
        payload.score, is_correct=payload.is_correct, comment=payload.comment,
    )


@app.post('/attempts/{attempt_id}/reviewed')
def mark_reviewed(attempt_id: str, request: Request, db: Session = Depends(get_session),
                  user: models.User = Depends(get_current_user), jobs: MasteryJobStore = Depends(get_mastery_jobs)):
    return _attempts(request, db, jobs).mark_reviewed(attempt_id, user.role)


@app.get('/mastery')
def get_mastery(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """All topic mastery rows of the caller, weakest first."""
    return services.MasteryService(db).get_user_mastery(user.id)


@app.get('/mastery/weakest')
def weakest_topics(limit: int = 5, min_questions: Optional[int] = None, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    return services.MasteryService(db).get_weakest_topics(user.id, limit=limit, min_questions=min_questions)


@app.get('/mastery/strongest')
def strongest_topics(limit: int = 5, min_questions: Optional[int] = None, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    return services.MasteryService(db).get_strongest_topics(user.id, limit=limit, min_questions=min_questions)


@app.get('/mastery/overall')
def overall_mastery(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.MasteryService(db).get_overall_mastery(user.id)


@app.get('/mastery/jobs/{job_id}')
def get_mastery_job(job_id: str, user: models.User = Depends(get_current_user),
                    jobs: MasteryJobStore = Depends(get_mastery_jobs)):
    """Poll a background mastery recompute job."""
    job = jobs.get(job_id)
    if not job or (job["user_id"] != user.id and not models.is_privileged(user.role)):
        raise HTTPException(status_code=404, detail="job not found")
    return job


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
