import os

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MASTERY_ASYNC", "false")
os.environ.setdefault("MASTERY_RETRY_DELAY_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine, select

from assessment_engine import models
from assessment_engine.database import create_db_and_tables, get_session
from assessment_engine.mastery_jobs import MasteryJobStore
from assessment_engine.repositories import AssessmentRepository, QuestionRepository
from assessment_engine.services import AuthService


class RecordingJobs:
    """Stand-in job store that only records what would have been enqueued."""

    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def submit(self, *, user_id, attempt_id, request_id=""):
        if self.fail:
            raise RuntimeError("queue unavailable")
        self.calls.append((user_id, attempt_id))
        return {"job_id": f"job-{len(self.calls)}", "status": "queued"}


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def jobs():
    return RecordingJobs()


@pytest.fixture
def mastery_jobs(engine):
    return MasteryJobStore(lambda: Session(engine), run_async=False, retry_delay=0)


@pytest.fixture
def student(session):
    return AuthService(session).register("student", "pw")


@pytest.fixture
def other_student(session):
    return AuthService(session).register("other", "pw")


@pytest.fixture
def tutor(session):
    return AuthService(session).register("tutor", "pw", role="TUTOR")


@pytest.fixture
def make_item(session):
    def _make(type="single_choice", correct_answer=None, options=None, points=1, topic_id=None, **kw):
        item = models.QuestionBankItem(
            type=type,
            question_text=kw.pop("question_text", f"Sample {type} question"),
            options=options,
            correct_answer=correct_answer,
            points=points,
            topic_id=topic_id,
            **kw,
        )
        return QuestionRepository(session).create(item)
    return _make


@pytest.fixture
def make_assessment(session):
    """Build (and by default publish) a one-section assessment over `items`."""
    def _make(items, publish=True, overrides=None, sections=None, **config):
        overrides = overrides or {}
        if sections is None:
            sections = [{
                "title": "Section 1",
                "questions": [
                    {"question_bank_item_id": it.id, "order": i, "override_points": overrides.get(it.id)}
                    for i, it in enumerate(items)
                ],
            }]
        repo = AssessmentRepository(session)
        assessment = repo.create(models.Assessment(title=config.pop("title", "Quiz"), **config), sections)
        if publish:
            assessment = repo.publish(assessment.id)
        return assessment
    return _make


@pytest.fixture
def ref_ids(session):
    """Map catalog item id -> assessment question reference id."""
    def _refs(assessment_id):
        stmt = select(models.AssessmentQuestion).where(models.AssessmentQuestion.assessment_id == assessment_id)
        return {ref.question_bank_item_id: ref.id for ref in session.exec(stmt).all()}
    return _refs


@pytest.fixture
def client(engine, mastery_jobs):
    from assessment_engine.main import app, get_mastery_jobs

    def _get_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_mastery_jobs] = lambda: mastery_jobs
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
