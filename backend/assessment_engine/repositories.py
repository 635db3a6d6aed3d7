"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
catalog items, assessments, attempts, mastery). Services receive
repositories rather than touching the session directly, and the grading
functions never see storage at all.

Most write methods commit on their own. `AttemptRepository.transition`
and `save_answer` leave committing to the caller so the attempt service
can group a guarded status change and its answer writes in one
transaction.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import case, func, insert, literal, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import models


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class QuestionRepository:
    """Read access to the question catalog.

    The catalog is owned by an external collaborator; `create` exists for
    seeding and tests only.
    """
    def __init__(self, session: Session):
        self.session = session

    def create(self, item: models.QuestionBankItem) -> models.QuestionBankItem:
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def get(self, item_id: int) -> Optional[models.QuestionBankItem]:
        """Fetch a catalog item by id."""
        return self.session.get(models.QuestionBankItem, item_id)

    def get_many(self, item_ids: Iterable[int]) -> Dict[int, models.QuestionBankItem]:
        """Return the items for `item_ids` keyed by id (missing ids are absent)."""
        ids = list(set(item_ids))
        if not ids:
            return {}
        stmt = select(models.QuestionBankItem).where(models.QuestionBankItem.id.in_(ids))
        return {item.id: item for item in self.session.exec(stmt).all()}

    def missing_ids(self, item_ids: Iterable[int]) -> List[int]:
        """Batch existence check: return the ids that are not in the catalog."""
        ids = sorted(set(item_ids))
        if not ids:
            return []
        stmt = select(models.QuestionBankItem.id).where(models.QuestionBankItem.id.in_(ids))
        found = set(self.session.exec(stmt).all())
        return [i for i in ids if i not in found]


class AssessmentRepository:
    """Assessment definitions with their sections and question references."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, assessment_id: int) -> Optional[models.Assessment]:
        return self.session.get(models.Assessment, assessment_id)

    def list(self, status: Optional[str] = None) -> List[models.Assessment]:
        stmt = select(models.Assessment)
        if status:
            stmt = stmt.where(models.Assessment.status == status)
        stmt = stmt.order_by(models.Assessment.created_at.desc(), models.Assessment.id.desc())
        return self.session.exec(stmt).all()

    def list_sections(self, assessment_id: int) -> List[models.AssessmentSection]:
        stmt = (
            select(models.AssessmentSection)
            .where(models.AssessmentSection.assessment_id == assessment_id)
            .order_by(models.AssessmentSection.order, models.AssessmentSection.id)
        )
        return self.session.exec(stmt).all()

    def list_questions(self, assessment_id: int) -> List[Tuple[models.AssessmentQuestion, models.QuestionBankItem]]:
        """Return every (reference, catalog item) pair of the assessment in order."""
        stmt = (
            select(models.AssessmentQuestion, models.QuestionBankItem)
            .join(models.QuestionBankItem, models.AssessmentQuestion.question_bank_item_id == models.QuestionBankItem.id)
            .where(models.AssessmentQuestion.assessment_id == assessment_id)
            .order_by(models.AssessmentQuestion.order, models.AssessmentQuestion.id)
        )
        return list(self.session.exec(stmt).all())

    def get_detail(self, assessment_id: int):
        """Return `(assessment, sections, [(ref, item), ...])` or `None`."""
        assessment = self.get(assessment_id)
        if not assessment:
            return None
        return assessment, self.list_sections(assessment_id), self.list_questions(assessment_id)

    def get_question(self, assessment_id: int, question_ref_id: int) -> Optional[models.AssessmentQuestion]:
        """Return the reference only if it belongs to `assessment_id`."""
        stmt = select(models.AssessmentQuestion).where(
            models.AssessmentQuestion.id == question_ref_id,
            models.AssessmentQuestion.assessment_id == assessment_id,
        )
        return self.session.exec(stmt).first()

    def create(self, assessment: models.Assessment, sections: Sequence[dict]) -> models.Assessment:
        """Create an assessment with its sections.

        Each section dict carries `title`, `instructions`, `order`,
        `time_limit_minutes` and a `questions` list of
        `{question_bank_item_id, order, override_points}` dicts. Unknown
        catalog ids raise ValueError before anything is written.
        """
        item_ids = [q["question_bank_item_id"] for s in sections for q in s.get("questions", [])]
        missing = QuestionRepository(self.session).missing_ids(item_ids)
        if missing:
            raise ValueError(f"unknown question_bank_item_id(s): {', '.join(str(m) for m in missing)}")
        self.session.add(assessment)
        self.session.flush()
        for idx, s in enumerate(sections):
            section = models.AssessmentSection(
                assessment_id=assessment.id,
                title=s.get("title"),
                instructions=s.get("instructions"),
                order=s.get("order", idx),
                time_limit_minutes=s.get("time_limit_minutes"),
            )
            self.session.add(section)
            self.session.flush()
            for qidx, q in enumerate(s.get("questions", [])):
                self.session.add(models.AssessmentQuestion(
                    assessment_id=assessment.id,
                    section_id=section.id,
                    question_bank_item_id=q["question_bank_item_id"],
                    order=q.get("order", qidx),
                    override_points=q.get("override_points"),
                ))
        self.session.commit()
        self.session.refresh(assessment)
        return assessment

    def publish(self, assessment_id: int) -> Optional[models.Assessment]:
        assessment = self.get(assessment_id)
        if not assessment:
            return None
        assessment.status = models.AssessmentStatus.PUBLISHED.value
        assessment.updated_at = models.utcnow()
        self.session.add(assessment)
        self.session.commit()
        self.session.refresh(assessment)
        return assessment


class AttemptRepository:
    """Attempts and their answers."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, attempt: models.Attempt) -> models.Attempt:
        self.session.add(attempt)
        self.session.commit()
        self.session.refresh(attempt)
        return attempt

    def create_within_limit(self, attempt: models.Attempt, max_attempts: Optional[int]) -> Optional[models.Attempt]:
        """Insert `attempt` unless the user already has `max_attempts` for the assessment.

        The count and the insert are one ``INSERT ... SELECT`` statement,
        so concurrent starts cannot both slip under the limit. Returns
        None when the limit is reached.
        """
        if max_attempts is None:
            return self.create(attempt)
        table = models.Attempt.__table__
        used = (
            select(func.count(table.c.id))
            .where(table.c.assessment_id == attempt.assessment_id, table.c.user_id == attempt.user_id)
            .scalar_subquery()
        )
        columns = ["id", "assessment_id", "user_id", "status", "started_at"]
        row = select(*[literal(getattr(attempt, c), table.c[c].type) for c in columns]).where(used < max_attempts)
        result = self.session.exec(insert(table).from_select(columns, row))
        if result.rowcount != 1:
            self.session.rollback()
            return None
        self.session.commit()
        return self.get(attempt.id)

    def get(self, attempt_id: str) -> Optional[models.Attempt]:
        return self.session.get(models.Attempt, attempt_id)

    def list_answers(self, attempt_id: str) -> List[models.AttemptAnswer]:
        # rows another session committed must not be shadowed by stale copies
        stmt = (
            select(models.AttemptAnswer)
            .where(models.AttemptAnswer.attempt_id == attempt_id)
            .execution_options(populate_existing=True)
        )
        return self.session.exec(stmt).all()

    def get_answer(self, attempt_id: str, question_ref_id: int) -> Optional[models.AttemptAnswer]:
        stmt = select(models.AttemptAnswer).where(
            models.AttemptAnswer.attempt_id == attempt_id,
            models.AttemptAnswer.assessment_question_id == question_ref_id,
        )
        return self.session.exec(stmt).first()

    def upsert_answer(
        self,
        attempt_id: str,
        question_ref: models.AssessmentQuestion,
        answer,
        time_taken_seconds: Optional[int],
    ) -> Optional[models.AttemptAnswer]:
        """Insert or replace the answer for (attempt, question); last write wins.

        Returns None, writing nothing, when the attempt is no longer
        `in_progress`. The status check is a conditional UPDATE on the
        attempt row inside the same transaction as the answer write, so
        it serializes with the submit transition.

        A concurrent insert for the same key surfaces as an IntegrityError
        on the unique constraint; the write is then retried as an update.
        """
        in_progress = models.AttemptStatus.IN_PROGRESS.value
        for _ in range(2):
            if not self.transition(attempt_id, [in_progress], {"status": in_progress}):
                self.session.rollback()
                return None
            row = self.get_answer(attempt_id, question_ref.id)
            if row is None:
                row = models.AttemptAnswer(
                    attempt_id=attempt_id,
                    assessment_question_id=question_ref.id,
                    question_bank_item_id=question_ref.question_bank_item_id,
                )
            row.answer = answer
            row.time_taken_seconds = time_taken_seconds
            row.answered_at = models.utcnow()
            self.session.add(row)
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                continue
            self.session.refresh(row)
            return row
        raise RuntimeError(f"could not store answer for attempt {attempt_id}")

    def save_answer(self, row: models.AttemptAnswer) -> None:
        """Stage `row` in the current unit of work without committing."""
        self.session.add(row)

    def transition(self, attempt_id: str, from_statuses: Iterable[str], values: dict,
                   require_no_pending: bool = False) -> bool:
        """Atomically move an attempt out of one of `from_statuses`.

        Issues a single conditional UPDATE and returns False when the
        attempt was no longer in an accepted status (another request got
        there first). With `require_no_pending` the update also only
        applies while no answer of the attempt awaits manual grading.
        The caller commits or rolls back.
        """
        stmt = (
            update(models.Attempt)
            .where(models.Attempt.id == attempt_id, models.Attempt.status.in_(list(from_statuses)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if require_no_pending:
            pending = select(models.AttemptAnswer.id).where(
                models.AttemptAnswer.attempt_id == attempt_id,
                models.AttemptAnswer.pending_manual == True,  # noqa: E712
            )
            stmt = stmt.where(~pending.exists())
        result = self.session.exec(stmt)
        return result.rowcount == 1

    def list_answers_with_items(self, attempt_id: str) -> List[Tuple[models.AttemptAnswer, models.QuestionBankItem]]:
        stmt = (
            select(models.AttemptAnswer, models.QuestionBankItem)
            .join(models.QuestionBankItem, models.AttemptAnswer.question_bank_item_id == models.QuestionBankItem.id)
            .where(models.AttemptAnswer.attempt_id == attempt_id)
        )
        return list(self.session.exec(stmt).all())

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def refresh(self, obj) -> None:
        self.session.refresh(obj)


class MasteryRepository:
    """Topic mastery rows and the history aggregate they are derived from."""
    def __init__(self, session: Session):
        self.session = session

    def topic_history(self, user_id: int, topic_id: int) -> Tuple[int, int, Optional[datetime]]:
        """Aggregate every graded answer of `user_id` on `topic_id`.

        Returns `(total_questions, correct_answers, last_attempt_at)` over
        all of the user's attempts. Answers still waiting for a verdict
        (open attempts, pending manual grading) are not counted.
        """
        answered_at = func.coalesce(models.AttemptAnswer.answered_at, models.Attempt.submitted_at)
        stmt = (
            select(
                func.count(models.AttemptAnswer.id),
                func.sum(case((models.AttemptAnswer.is_correct == True, 1), else_=0)),  # noqa: E712
                func.max(answered_at),
            )
            .join(models.Attempt, models.AttemptAnswer.attempt_id == models.Attempt.id)
            .join(models.QuestionBankItem, models.AttemptAnswer.question_bank_item_id == models.QuestionBankItem.id)
            .where(
                models.Attempt.user_id == user_id,
                models.QuestionBankItem.topic_id == topic_id,
                models.AttemptAnswer.is_correct.is_not(None),
                models.AttemptAnswer.pending_manual == False,  # noqa: E712
            )
        )
        total, correct, last = self.session.exec(stmt).one()
        return int(total or 0), int(correct or 0), last

    def get(self, user_id: int, topic_id: int) -> Optional[models.TopicMastery]:
        stmt = select(models.TopicMastery).where(
            models.TopicMastery.user_id == user_id,
            models.TopicMastery.topic_id == topic_id,
        )
        return self.session.exec(stmt).first()

    def upsert(self, mastery: models.TopicMastery) -> models.TopicMastery:
        """Upsert by (user_id, topic_id), retrying once after a concurrent insert."""
        for _ in range(2):
            existing = self.get(mastery.user_id, mastery.topic_id)
            row = existing or models.TopicMastery(user_id=mastery.user_id, topic_id=mastery.topic_id)
            row.total_questions = mastery.total_questions
            row.correct_answers = mastery.correct_answers
            row.mastery_percent = mastery.mastery_percent
            row.last_attempt_at = mastery.last_attempt_at
            row.updated_at = models.utcnow()
            self.session.add(row)
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                continue
            self.session.refresh(row)
            return row
        raise RuntimeError(f"could not store mastery for user {mastery.user_id} topic {mastery.topic_id}")

    def list_for_user(self, user_id: int, min_questions: int = 0, descending: bool = False,
                      limit: Optional[int] = None) -> List[models.TopicMastery]:
        order = models.TopicMastery.mastery_percent.desc() if descending else models.TopicMastery.mastery_percent
        stmt = (
            select(models.TopicMastery)
            .where(
                models.TopicMastery.user_id == user_id,
                models.TopicMastery.total_questions >= min_questions,
            )
            .order_by(order, models.TopicMastery.topic_id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.exec(stmt).all()

    def totals_for_user(self, user_id: int) -> Tuple[int, int]:
        stmt = select(
            func.sum(models.TopicMastery.total_questions),
            func.sum(models.TopicMastery.correct_answers),
        ).where(models.TopicMastery.user_id == user_id)
        total, correct = self.session.exec(stmt).one()
        return int(total or 0), int(correct or 0)
