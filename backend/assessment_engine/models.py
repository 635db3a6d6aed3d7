"""SQLModel data models.

This module defines the engine's database tables using SQLModel:
the question catalog, assessment definitions (sections and question
references), attempts with their per-question answers, and the derived
per-topic mastery rows. Typed answer payloads are stored in JSON
columns and interpreted by :mod:`assessment_engine.answer_types`.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Role(str, Enum):
    STUDENT = "STUDENT"
    PARENT = "PARENT"
    TUTOR = "TUTOR"
    ADMIN = "ADMIN"


PRIVILEGED_ROLES = frozenset({Role.TUTOR.value, Role.ADMIN.value})


def is_privileged(role) -> bool:
    """Return True for roles allowed to see solutions and grade by hand."""
    if role is None:
        return False
    value = role.value if isinstance(role, Role) else str(role)
    return value.upper() in PRIVILEGED_ROLES


class AssessmentStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    TIMED_OUT = "timed_out"
    GRADED = "graded"
    REVIEWED = "reviewed"


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `role`: coarse role used for review visibility and manual grading
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    role: str = Field(default=Role.STUDENT.value)
    created_at: datetime = Field(default_factory=utcnow)


class QuestionBankItem(SQLModel, table=True):
    """A reusable, typed question owned by the question catalog.

    `correct_answer` holds the type-specific key (see `answer_types`).
    Items are soft-deactivated through `is_active`, never deleted while
    an assessment references them.
    """
    __tablename__ = "question_bank_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(index=True)
    question_text: str
    options: Optional[List[Any]] = Field(default=None, sa_column=Column(JSON))
    correct_answer: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    explanation: Optional[str] = None
    difficulty: str = "medium"
    points: int = 1
    time_limit_seconds: Optional[int] = None
    topic_id: Optional[int] = Field(default=None, index=True)
    tags: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Assessment(SQLModel, table=True):
    """An assessment definition with its delivery configuration."""
    __tablename__ = "assessments"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    instructions: Optional[str] = None
    status: str = Field(default=AssessmentStatus.DRAFT.value, index=True)
    time_limit_minutes: Optional[int] = None
    max_attempts: Optional[int] = None
    shuffle_questions: bool = False
    shuffle_options: bool = False
    show_results_immediately: bool = True
    show_correct_answers: bool = True
    show_explanations: bool = True
    available_from: Optional[datetime] = None
    available_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AssessmentSection(SQLModel, table=True):
    __tablename__ = "assessment_sections"

    id: Optional[int] = Field(default=None, primary_key=True)
    assessment_id: int = Field(foreign_key="assessments.id", index=True)
    title: Optional[str] = None
    instructions: Optional[str] = None
    order: int = 0
    time_limit_minutes: Optional[int] = None


class AssessmentQuestion(SQLModel, table=True):
    """A catalog item placed in an assessment section.

    `override_points` replaces the item's own point value when set.
    """
    __tablename__ = "assessment_questions"

    id: Optional[int] = Field(default=None, primary_key=True)
    assessment_id: int = Field(foreign_key="assessments.id", index=True)
    section_id: Optional[int] = Field(default=None, foreign_key="assessment_sections.id")
    question_bank_item_id: int = Field(foreign_key="question_bank_items.id")
    order: int = 0
    override_points: Optional[int] = None

    def effective_points(self, item: QuestionBankItem) -> int:
        if self.override_points is not None:
            return self.override_points
        if item.points is not None:
            return item.points
        return 1


class Attempt(SQLModel, table=True):
    """One user's run through one assessment."""
    __tablename__ = "assessment_attempts"

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    assessment_id: int = Field(foreign_key="assessments.id", index=True)
    user_id: int = Field(index=True)
    status: str = Field(default=AttemptStatus.IN_PROGRESS.value, index=True)
    started_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    total_score: Optional[float] = None
    max_score: Optional[float] = None
    percentage: Optional[int] = None
    time_spent_seconds: Optional[int] = None
    graded_by: Optional[int] = None


class AttemptAnswer(SQLModel, table=True):
    """The stored answer to one question of one attempt.

    At most one row exists per (attempt, question reference); grading
    fields stay empty until the attempt is submitted.
    """
    __tablename__ = "attempt_answers"
    __table_args__ = (
        UniqueConstraint("attempt_id", "assessment_question_id", name="uq_attempt_answer_question"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: str = Field(foreign_key="assessment_attempts.id", index=True)
    assessment_question_id: int = Field(foreign_key="assessment_questions.id")
    question_bank_item_id: int = Field(foreign_key="question_bank_items.id", index=True)
    answer: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    time_taken_seconds: Optional[int] = None
    answered_at: Optional[datetime] = None
    is_correct: Optional[bool] = None
    score: Optional[float] = None
    max_score: Optional[float] = None
    feedback: Optional[str] = None
    pending_manual: bool = False
    marker_comment: Optional[str] = None


class TopicMastery(SQLModel, table=True):
    """Per-user, per-topic mastery derived from the full answer history."""
    __tablename__ = "topic_mastery"
    __table_args__ = (
        UniqueConstraint("user_id", "topic_id", name="uq_topic_mastery_user_topic"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    topic_id: int = Field(index=True)
    total_questions: int = 0
    correct_answers: int = 0
    mastery_percent: int = 0
    last_attempt_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
