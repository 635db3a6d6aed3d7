"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
the grading engine and the answer renderer. Services perform boundary
validation (ownership, status, availability) and raise the error kinds
from :mod:`assessment_engine.errors`; the HTTP layer maps those to
responses.
"""

import json
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .errors import (
    AttemptLimitReachedError,
    ForbiddenError,
    GradingError,
    InvalidAnswerFormatError,
    InvalidQuestionError,
    InvalidStateError,
    NoQuestionsError,
    NotFoundError,
    UnavailableError,
)
from .grading import grade, requires_manual_grading, round_percent, round_score
from .renderer import render_for_attempt, render_for_review

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

logger = logging.getLogger("assessment_engine.attempts")
mastery_logger = logging.getLogger("assessment_engine.mastery")
grading_logger = logging.getLogger("assessment_engine.grading")

IN_PROGRESS = models.AttemptStatus.IN_PROGRESS.value
SUBMITTED = models.AttemptStatus.SUBMITTED.value
TIMED_OUT = models.AttemptStatus.TIMED_OUT.value
GRADED = models.AttemptStatus.GRADED.value
REVIEWED = models.AttemptStatus.REVIEWED.value


def _event(log: logging.Logger, name: str, payload: dict, level: int = logging.INFO) -> None:
    log.log(level, "%s %s", name, json.dumps(payload, ensure_ascii=True, default=str))


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = models.as_utc(value)
    return value.isoformat() if value else None


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str, role: str = models.Role.STUDENT.value) -> models.User:
        """Create a new user with a hashed password.

        Returns the persisted `User` instance.
        """
        hashed = PWD_CTX.hash(password)
        u = models.User(username=username, password_hash=hashed, role=models.Role(role).value)
        return self.user_repo.create(u)

    def authenticate(self, username: str, password: str):
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {
            "user_id": user.id,
            "username": user.username,
            "role": user.role,
            "exp": int(expire.timestamp()),
        }
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _is_available(assessment: models.Assessment, now: datetime) -> bool:
    if assessment.status != models.AssessmentStatus.PUBLISHED.value:
        return False
    opens = models.as_utc(assessment.available_from)
    closes = models.as_utc(assessment.available_until)
    if opens and now < opens:
        return False
    if closes and now > closes:
        return False
    return True


class AssessmentService:
    """Read-only listing of assessment definitions."""
    def __init__(self, session: Session):
        self.session = session
        self.assessment_repo = repositories.AssessmentRepository(session)

    def list_available(self, role, status: Optional[str] = None) -> List[dict]:
        """Published, in-window assessments; privileged roles see everything."""
        if models.is_privileged(role):
            rows = self.assessment_repo.list(status=status)
        else:
            now = models.utcnow()
            rows = [a for a in self.assessment_repo.list(status=models.AssessmentStatus.PUBLISHED.value)
                    if _is_available(a, now)]
        return [
            {
                "id": a.id,
                "title": a.title,
                "instructions": a.instructions,
                "status": a.status,
                "time_limit_minutes": a.time_limit_minutes,
                "max_attempts": a.max_attempts,
                "available_from": _iso(a.available_from),
                "available_until": _iso(a.available_until),
            }
            for a in rows
        ]


def _group_sections(sections, questions, render) -> List[dict]:
    """Bucket rendered `(ref, item)` pairs under their sections, in order.

    References without a known section land in the first section, or in
    an untitled one when the assessment has none.
    """
    out = [
        {
            "id": s.id,
            "title": s.title,
            "order": s.order,
            "instructions": s.instructions,
            "time_limit_minutes": s.time_limit_minutes,
            "questions": [],
        }
        for s in sections
    ]
    by_id = {s["id"]: s for s in out}
    for ref, item in questions:
        target = by_id.get(ref.section_id)
        if target is None:
            if not out:
                out.append({"id": None, "title": None, "order": 0, "instructions": None,
                            "time_limit_minutes": None, "questions": []})
            target = out[0]
        target["questions"].append({
            "assessment_question_id": ref.id,
            "question_bank_item_id": item.id,
            "order": ref.order,
            **render(ref, item),
        })
    return out


class AttemptService:
    """Attempt lifecycle: start, answer, submit/expire, manual grading, review.

    Status moves forward only:
    ``in_progress -> {submitted, timed_out} -> graded -> reviewed``.
    Every status change goes through `AttemptRepository.transition`, a
    conditional UPDATE, so two racing requests cannot both move the same
    attempt.

    `mastery_jobs` is anything with a `submit(user_id=, attempt_id=,
    request_id=)` method (normally a `MasteryJobStore`); when omitted no
    mastery recompute is scheduled.
    """
    def __init__(self, session: Session, *, mastery_jobs=None, request_id: str = "", rng=None):
        self.session = session
        self.question_repo = repositories.QuestionRepository(session)
        self.assessment_repo = repositories.AssessmentRepository(session)
        self.attempt_repo = repositories.AttemptRepository(session)
        self.mastery_jobs = mastery_jobs
        self.request_id = request_id
        self.rng = rng or random

    # -- lookups ---------------------------------------------------------

    def _load_attempt(self, attempt_id: str) -> models.Attempt:
        attempt = self.attempt_repo.get(attempt_id)
        if not attempt:
            raise NotFoundError(f"attempt not found: {attempt_id}")
        return attempt

    def _load_owned(self, attempt_id: str, user_id: int) -> models.Attempt:
        attempt = self._load_attempt(attempt_id)
        if attempt.user_id != user_id:
            raise ForbiddenError("attempt belongs to another user")
        return attempt

    def _load_visible(self, attempt_id: str, user_id: int, role) -> models.Attempt:
        attempt = self._load_attempt(attempt_id)
        if attempt.user_id != user_id and not models.is_privileged(role):
            raise ForbiddenError("attempt belongs to another user")
        return attempt

    @staticmethod
    def _summary(attempt: models.Attempt) -> dict:
        return {
            "attempt_id": attempt.id,
            "assessment_id": attempt.assessment_id,
            "user_id": attempt.user_id,
            "status": attempt.status,
            "started_at": _iso(attempt.started_at),
            "submitted_at": _iso(attempt.submitted_at),
            "graded_at": _iso(attempt.graded_at),
            "reviewed_at": _iso(attempt.reviewed_at),
            "total_score": attempt.total_score,
            "max_score": attempt.max_score,
            "percentage": attempt.percentage,
            "time_spent_seconds": attempt.time_spent_seconds,
        }

    # -- start -----------------------------------------------------------

    def start_attempt(self, assessment_id: int, user_id: int) -> dict:
        """Open a new attempt and return the safe view of its questions."""
        detail = self.assessment_repo.get_detail(assessment_id)
        if not detail:
            raise NotFoundError(f"assessment not found: {assessment_id}")
        assessment, sections, questions = detail
        if not _is_available(assessment, models.utcnow()):
            raise UnavailableError("assessment is not available")
        attempt = self.attempt_repo.create_within_limit(
            models.Attempt(assessment_id=assessment_id, user_id=user_id), assessment.max_attempts
        )
        if attempt is None:
            raise AttemptLimitReachedError(
                f"maximum attempts ({assessment.max_attempts}) reached for this assessment"
            )
        _event(logger, "attempt_started", {
            "attempt_id": attempt.id,
            "assessment_id": assessment_id,
            "user_id": user_id,
            "request_id": self.request_id,
        })
        return {
            "attempt_id": attempt.id,
            "status": attempt.status,
            "started_at": _iso(attempt.started_at),
            "assessment": {
                "id": assessment.id,
                "title": assessment.title,
                "instructions": assessment.instructions,
                "time_limit_minutes": assessment.time_limit_minutes,
            },
            "sections": self._safe_sections(assessment, sections, questions),
        }

    def _safe_sections(self, assessment, sections, questions) -> List[dict]:
        out = _group_sections(sections, questions, lambda ref, item: render_for_attempt(
            item,
            points=ref.effective_points(item),
            shuffle_options=assessment.shuffle_options,
            rng=self.rng,
        ))
        if assessment.shuffle_questions:
            for s in out:
                self.rng.shuffle(s["questions"])
        return out

    # -- answer ----------------------------------------------------------

    def answer_attempt(self, attempt_id: str, user_id: int, question_ref_id: int, answer,
                       time_taken_seconds: Optional[int] = None) -> dict:
        """Store (or replace) the answer to one question; nothing is graded here."""
        attempt = self._load_owned(attempt_id, user_id)
        if attempt.status != IN_PROGRESS:
            raise InvalidStateError(f"attempt is {attempt.status}; answers can no longer change")
        ref = self.assessment_repo.get_question(attempt.assessment_id, question_ref_id)
        if not ref:
            raise InvalidQuestionError(f"question {question_ref_id} is not part of this assessment")
        row = self.attempt_repo.upsert_answer(attempt.id, ref, answer, time_taken_seconds)
        if row is None:
            raise InvalidStateError("attempt was closed before the answer was stored")
        return {
            "attempt_id": attempt.id,
            "assessment_question_id": ref.id,
            "answered_at": _iso(row.answered_at),
        }

    # -- submit / expire -------------------------------------------------

    def _grade_plan(self, attempt: models.Attempt) -> dict:
        """Grade every question of `attempt` in memory.

        Returns the per-question outcomes plus totals; nothing is written.
        """
        questions = self.assessment_repo.list_questions(attempt.assessment_id)
        if not questions:
            raise NoQuestionsError("assessment has no questions")
        stored = {a.assessment_question_id: a for a in self.attempt_repo.list_answers(attempt.id)}

        outcomes = []
        total = 0.0
        max_total = 0.0
        pending = 0
        time_spent = 0
        for ref, item in questions:
            points = ref.effective_points(item)
            max_total += points
            row = stored.get(ref.id)
            outcome = {"ref": ref, "item": item, "row": row, "max_score": float(points)}
            if row is None:
                outcome.update(is_correct=False, score=0.0, pending=False, feedback="No answer submitted.")
            else:
                time_spent += row.time_taken_seconds or 0
                try:
                    if requires_manual_grading(item):
                        outcome.update(is_correct=None, score=None, pending=True,
                                       feedback="This question requires manual grading by an instructor.")
                    else:
                        result = grade(item, row.answer, points)
                        outcome.update(is_correct=result.is_correct, score=result.score, pending=False,
                                       feedback=result.feedback)
                except GradingError as exc:
                    _event(grading_logger, "question_grading_failed", {
                        "attempt_id": attempt.id,
                        "assessment_question_id": ref.id,
                        "question_bank_item_id": item.id,
                        "error": exc.message,
                    }, level=logging.WARNING)
                    outcome.update(is_correct=None, score=None, pending=True,
                                   feedback="This question could not be graded automatically.")
            if outcome["pending"]:
                pending += 1
            else:
                total += outcome["score"]
            outcomes.append(outcome)
        return {
            "outcomes": outcomes,
            "total": round_score(total),
            "max_total": round_score(max_total),
            "pending": pending,
            "time_spent": time_spent,
        }

    def _finalize(self, attempt: models.Attempt, pending_status: str) -> dict:
        # Holding the attempt row keeps answers from landing between
        # grading and the status change.
        if not self.attempt_repo.transition(attempt.id, [IN_PROGRESS], {"status": IN_PROGRESS}):
            self.attempt_repo.rollback()
            raise InvalidStateError("attempt was already submitted")
        try:
            plan = self._grade_plan(attempt)
        except Exception:
            self.attempt_repo.rollback()
            raise
        now = models.utcnow()
        status = GRADED if plan["pending"] == 0 else pending_status
        values = {
            "status": status,
            "submitted_at": now,
            "total_score": plan["total"],
            "max_score": plan["max_total"],
            "time_spent_seconds": plan["time_spent"],
        }
        if status == GRADED:
            values["graded_at"] = now
            values["percentage"] = round_percent(plan["total"], plan["max_total"])

        if not self.attempt_repo.transition(attempt.id, [IN_PROGRESS], values):
            self.attempt_repo.rollback()
            raise InvalidStateError("attempt was already submitted")
        for o in plan["outcomes"]:
            row = o["row"]
            if row is None:
                row = models.AttemptAnswer(
                    attempt_id=attempt.id,
                    assessment_question_id=o["ref"].id,
                    question_bank_item_id=o["item"].id,
                )
            row.is_correct = o["is_correct"]
            row.score = o["score"]
            row.max_score = o["max_score"]
            row.feedback = o["feedback"]
            row.pending_manual = o["pending"]
            self.attempt_repo.save_answer(row)
        self.attempt_repo.commit()
        self.attempt_repo.refresh(attempt)

        _event(logger, "attempt_submitted", {
            "attempt_id": attempt.id,
            "status": attempt.status,
            "total_score": attempt.total_score,
            "max_score": attempt.max_score,
            "pending_manual": plan["pending"],
            "request_id": self.request_id,
        })
        job_id = self._enqueue_mastery(attempt) if attempt.status == GRADED else None
        assessment = self.assessment_repo.get(attempt.assessment_id)
        return {
            "attempt_id": attempt.id,
            "status": attempt.status,
            "total_score": attempt.total_score,
            "max_score": attempt.max_score,
            "percentage": attempt.percentage,
            "pending_manual_count": plan["pending"],
            "show_results_immediately": bool(assessment.show_results_immediately),
            "mastery_job_id": job_id,
        }

    def submit_attempt(self, attempt_id: str, user_id: int) -> dict:
        """Grade the attempt and close it; `graded` unless something awaits a marker."""
        attempt = self._load_owned(attempt_id, user_id)
        if attempt.status != IN_PROGRESS:
            raise InvalidStateError(f"attempt is already {attempt.status}")
        return self._finalize(attempt, SUBMITTED)

    def expire_attempt(self, attempt_id: str) -> dict:
        """Close an attempt whose time ran out, grading whatever was answered."""
        attempt = self._load_attempt(attempt_id)
        if attempt.status != IN_PROGRESS:
            raise InvalidStateError(f"attempt is already {attempt.status}")
        return self._finalize(attempt, TIMED_OUT)

    def _enqueue_mastery(self, attempt: models.Attempt) -> Optional[str]:
        if self.mastery_jobs is None:
            return None
        try:
            job = self.mastery_jobs.submit(
                user_id=attempt.user_id,
                attempt_id=attempt.id,
                request_id=self.request_id,
            )
        except Exception:
            # grading is already committed; a lost recompute is repaired by the next one
            mastery_logger.exception("mastery_enqueue_failed %s", json.dumps(
                {"attempt_id": attempt.id, "user_id": attempt.user_id}, ensure_ascii=True))
            return None
        return job["job_id"]

    # -- manual grading / review -----------------------------------------

    def grade_answer_manually(self, attempt_id: str, question_ref_id: int, grader_id: int, grader_role,
                              score: float, is_correct: Optional[bool] = None,
                              comment: Optional[str] = None) -> dict:
        """Record a marker's score for one answer of a submitted attempt.

        Once no answer is pending the attempt moves to `graded` and a
        mastery recompute is scheduled. The pending count is taken while
        the attempt row is held, so markers grading different answers at
        the same time still leave the attempt graded exactly once.
        """
        if not models.is_privileged(grader_role):
            raise ForbiddenError("only tutors and admins can grade answers")
        attempt = self._load_attempt(attempt_id)
        if attempt.status not in (SUBMITTED, TIMED_OUT):
            raise InvalidStateError(f"attempt is {attempt.status}; only submitted attempts can be graded")
        row = self.attempt_repo.get_answer(attempt.id, question_ref_id)
        if not row:
            raise InvalidQuestionError(f"question {question_ref_id} is not part of this attempt")
        max_score = row.max_score or 0.0
        if score < 0 or score > max_score:
            raise InvalidAnswerFormatError(f"score must be between 0 and {max_score}")

        gradable = [SUBMITTED, TIMED_OUT]
        if not self.attempt_repo.transition(attempt.id, gradable, {"graded_by": grader_id}):
            self.attempt_repo.rollback()
            raise InvalidStateError("attempt was already graded")
        row.score = round_score(score)
        row.is_correct = is_correct if is_correct is not None else row.score >= max_score
        row.pending_manual = False
        row.marker_comment = comment
        row.feedback = "Graded by instructor."
        self.attempt_repo.save_answer(row)

        rows = self.attempt_repo.list_answers(attempt.id)
        pending = sum(1 for r in rows if r.pending_manual)
        total = round_score(sum(r.score or 0.0 for r in rows if not r.pending_manual))
        values = {"total_score": total}
        if pending == 0:
            values.update(status=GRADED, graded_at=models.utcnow(),
                          percentage=round_percent(total, attempt.max_score or 0.0))
        if not self.attempt_repo.transition(attempt.id, gradable, values, require_no_pending=pending == 0):
            self.attempt_repo.rollback()
            raise InvalidStateError("attempt changed while it was being graded")
        self.attempt_repo.commit()
        self.attempt_repo.refresh(attempt)

        _event(logger, "answer_graded_manually", {
            "attempt_id": attempt.id,
            "assessment_question_id": question_ref_id,
            "grader_id": grader_id,
            "pending_manual": pending,
            "status": attempt.status,
        })
        job_id = self._enqueue_mastery(attempt) if attempt.status == GRADED else None
        return {
            "attempt_id": attempt.id,
            "assessment_question_id": question_ref_id,
            "score": row.score,
            "is_correct": row.is_correct,
            "status": attempt.status,
            "total_score": attempt.total_score,
            "percentage": attempt.percentage,
            "pending_manual_count": pending,
            "mastery_job_id": job_id,
        }

    def mark_reviewed(self, attempt_id: str, reviewer_role) -> dict:
        if not models.is_privileged(reviewer_role):
            raise ForbiddenError("only tutors and admins can mark attempts reviewed")
        attempt = self._load_attempt(attempt_id)
        if attempt.status != GRADED:
            raise InvalidStateError(f"attempt is {attempt.status}; only graded attempts can be reviewed")
        if not self.attempt_repo.transition(attempt.id, [GRADED], {"status": REVIEWED, "reviewed_at": models.utcnow()}):
            self.attempt_repo.rollback()
            raise InvalidStateError("attempt was already reviewed")
        self.attempt_repo.commit()
        self.attempt_repo.refresh(attempt)
        return self._summary(attempt)

    def get_attempt(self, attempt_id: str, user_id: int, role) -> dict:
        return self._summary(self._load_visible(attempt_id, user_id, role))

    def get_attempt_review(self, attempt_id: str, user_id: int, role) -> dict:
        """Return the attempt with each question rendered for review.

        Solutions and explanations follow the assessment's visibility
        flags unless `role` is privileged.
        """
        attempt = self._load_visible(attempt_id, user_id, role)
        if attempt.status == IN_PROGRESS:
            raise InvalidStateError("attempt is still in progress")
        assessment = self.assessment_repo.get(attempt.assessment_id)
        answers = {a.assessment_question_id: a for a in self.attempt_repo.list_answers(attempt.id)}
        sections = _group_sections(
            self.assessment_repo.list_sections(attempt.assessment_id),
            self.assessment_repo.list_questions(attempt.assessment_id),
            lambda ref, item: render_for_review(item, answers.get(ref.id), role, assessment,
                                                points=ref.effective_points(item)),
        )
        return {
            "attempt": self._summary(attempt),
            "assessment": {
                "id": assessment.id,
                "title": assessment.title,
                "show_results_immediately": assessment.show_results_immediately,
                "show_correct_answers": assessment.show_correct_answers,
                "show_explanations": assessment.show_explanations,
            },
            "sections": sections,
        }


def _mastery_dict(row: models.TopicMastery) -> dict:
    return {
        "topic_id": row.topic_id,
        "total_questions": row.total_questions,
        "correct_answers": row.correct_answers,
        "mastery_percent": row.mastery_percent,
        "last_attempt_at": _iso(row.last_attempt_at),
    }


class MasteryService:
    """Per-topic mastery, always recomputed from the full answer history."""
    def __init__(self, session: Session, min_questions: Optional[int] = None):
        self.session = session
        self.mastery_repo = repositories.MasteryRepository(session)
        self.attempt_repo = repositories.AttemptRepository(session)
        self.min_questions = settings.MASTERY_MIN_QUESTIONS if min_questions is None else min_questions

    def recompute_topic_mastery(self, user_id: int, topic_id: int) -> Optional[models.TopicMastery]:
        """Rebuild the (user, topic) row; returns None and writes nothing without history."""
        total, correct, last = self.mastery_repo.topic_history(user_id, topic_id)
        if total == 0:
            return None
        row = models.TopicMastery(
            user_id=user_id,
            topic_id=topic_id,
            total_questions=total,
            correct_answers=correct,
            mastery_percent=round_percent(correct, total),
            last_attempt_at=last,
        )
        return self.mastery_repo.upsert(row)

    def update_mastery_after_attempt(self, user_id: int, attempt_id: str) -> List[int]:
        """Recompute every distinct topic touched by the attempt, once each."""
        attempt = self.attempt_repo.get(attempt_id)
        if not attempt:
            raise NotFoundError(f"attempt not found: {attempt_id}")
        topics = sorted({item.topic_id for _, item in self.attempt_repo.list_answers_with_items(attempt_id)
                         if item.topic_id is not None})
        for topic_id in topics:
            self.recompute_topic_mastery(user_id, topic_id)
        _event(mastery_logger, "mastery_updated", {
            "user_id": user_id,
            "attempt_id": attempt_id,
            "topics": topics,
        })
        return topics

    def get_user_mastery(self, user_id: int) -> List[dict]:
        return [_mastery_dict(r) for r in self.mastery_repo.list_for_user(user_id)]

    def get_weakest_topics(self, user_id: int, limit: int = 5, min_questions: Optional[int] = None) -> List[dict]:
        floor = self.min_questions if min_questions is None else min_questions
        rows = self.mastery_repo.list_for_user(user_id, min_questions=floor, limit=limit)
        return [_mastery_dict(r) for r in rows]

    def get_strongest_topics(self, user_id: int, limit: int = 5, min_questions: Optional[int] = None) -> List[dict]:
        floor = self.min_questions if min_questions is None else min_questions
        rows = self.mastery_repo.list_for_user(user_id, min_questions=floor, descending=True, limit=limit)
        return [_mastery_dict(r) for r in rows]

    def get_overall_mastery(self, user_id: int) -> Dict[str, int]:
        total, correct = self.mastery_repo.totals_for_user(user_id)
        return {
            "total_questions": total,
            "correct_answers": correct,
            "mastery_percent": round_percent(correct, total),
        }
