import threading

import pytest
from sqlmodel import Session, create_engine, select

from assessment_engine import models
from assessment_engine.database import create_db_and_tables
from assessment_engine.errors import AttemptLimitReachedError, InvalidStateError
from assessment_engine.repositories import AssessmentRepository, QuestionRepository
from assessment_engine.services import AttemptService


def _file_engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_db_and_tables(eng)
    return eng


def _publish(s, type="single_choice", correct_answer="A", points=2, count=5, **config):
    items = [
        QuestionRepository(s).create(models.QuestionBankItem(
            type=type, question_text=f"q{i}", correct_answer=correct_answer, points=points, topic_id=1))
        for i in range(count)
    ]
    repo = AssessmentRepository(s)
    assessment = repo.create(models.Assessment(title="Race", **config), [{
        "title": "Only",
        "questions": [{"question_bank_item_id": it.id, "order": i} for i, it in enumerate(items)],
    }])
    return repo.publish(assessment.id)


def _seed(eng, answered=True):
    with Session(eng) as s:
        assessment = _publish(s)
        svc = AttemptService(s)
        attempt_id = svc.start_attempt(assessment.id, 1)["attempt_id"]
        refs = s.exec(select(models.AssessmentQuestion).where(
            models.AssessmentQuestion.assessment_id == assessment.id)).all()
        for ref in refs if answered else []:
            svc.answer_attempt(attempt_id, 1, ref.id, "A")
        return attempt_id


def _run_together(target, args_list):
    threads = [threading.Thread(target=target, args=args) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)


def test_concurrent_submits_have_one_winner(tmp_path, jobs):
    eng = _file_engine(tmp_path)
    attempt_id = _seed(eng)
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def submit():
        with Session(eng) as s:
            svc = AttemptService(s, mastery_jobs=jobs)
            barrier.wait()
            try:
                result = svc.submit_attempt(attempt_id, 1)
            except InvalidStateError as exc:
                with lock:
                    outcomes.append(("lost", exc.kind))
                return
            with lock:
                outcomes.append(("won", result["total_score"]))

    _run_together(submit, [()] * 2)

    assert sorted(o[0] for o in outcomes) == ["lost", "won"]
    assert ("lost", "InvalidState") in outcomes
    assert len(jobs.calls) == 1

    with Session(eng) as s:
        attempt = s.get(models.Attempt, attempt_id)
        assert attempt.status == "graded"
        assert attempt.total_score == 10.0
        rows = s.exec(select(models.AttemptAnswer).where(models.AttemptAnswer.attempt_id == attempt_id)).all()
        assert len(rows) == 5
        assert all(r.score == 2.0 for r in rows)
    eng.dispose()


def test_concurrent_answers_keep_single_row(tmp_path):
    eng = _file_engine(tmp_path)
    attempt_id = _seed(eng, answered=False)
    with Session(eng) as s:
        ref = s.exec(select(models.AssessmentQuestion)).first()
    barrier = threading.Barrier(4)

    def answer(value):
        with Session(eng) as s:
            barrier.wait()
            AttemptService(s).answer_attempt(attempt_id, 1, ref.id, value)

    _run_together(answer, [(v,) for v in ("A", "B", "C", "D")])

    with Session(eng) as s:
        rows = s.exec(select(models.AttemptAnswer).where(
            models.AttemptAnswer.attempt_id == attempt_id,
            models.AttemptAnswer.assessment_question_id == ref.id,
        )).all()
        assert len(rows) == 1
        assert rows[0].answer in ("A", "B", "C", "D")
    eng.dispose()


def test_submit_landing_before_answer_write_rejects_answer(tmp_path, jobs):
    eng = _file_engine(tmp_path)
    attempt_id = _seed(eng, answered=False)
    with Session(eng) as s:
        ref = s.exec(select(models.AssessmentQuestion)).first()

    with Session(eng) as s:
        svc = AttemptService(s)
        lookup = svc.assessment_repo.get_question

        def lookup_then_submit(assessment_id, question_ref_id):
            # the status check has already passed; another request submits now
            found = lookup(assessment_id, question_ref_id)
            with Session(eng) as other:
                AttemptService(other, mastery_jobs=jobs).submit_attempt(attempt_id, 1)
            return found

        svc.assessment_repo.get_question = lookup_then_submit
        with pytest.raises(InvalidStateError):
            svc.answer_attempt(attempt_id, 1, ref.id, "A")

    with Session(eng) as s:
        attempt = s.get(models.Attempt, attempt_id)
        assert attempt.status == "graded"
        assert attempt.total_score == 0.0
        row = s.exec(select(models.AttemptAnswer).where(
            models.AttemptAnswer.attempt_id == attempt_id,
            models.AttemptAnswer.assessment_question_id == ref.id,
        )).one()
        assert row.answer is None
        assert row.score == 0.0
    assert len(jobs.calls) == 1
    eng.dispose()


def test_concurrent_markers_leave_attempt_graded_once(tmp_path, jobs):
    eng = _file_engine(tmp_path)
    with Session(eng) as s:
        assessment = _publish(s, type="free_text", correct_answer=None, points=3, count=2)
        svc = AttemptService(s)
        attempt_id = svc.start_attempt(assessment.id, 1)["attempt_id"]
        refs = [r.id for r in s.exec(select(models.AssessmentQuestion)).all()]
        for ref_id in refs:
            svc.answer_attempt(attempt_id, 1, ref_id, "An essay")
        assert svc.submit_attempt(attempt_id, 1)["pending_manual_count"] == 2

    barrier = threading.Barrier(2)
    errors = []

    def mark(ref_id):
        with Session(eng) as s:
            marker = AttemptService(s, mastery_jobs=jobs)
            barrier.wait()
            try:
                marker.grade_answer_manually(attempt_id, ref_id, 99, "TUTOR", 3)
            except Exception as exc:
                errors.append(exc)

    _run_together(mark, [(ref_id,) for ref_id in refs])

    assert errors == []
    assert len(jobs.calls) == 1
    with Session(eng) as s:
        attempt = s.get(models.Attempt, attempt_id)
        assert attempt.status == "graded"
        assert attempt.total_score == 6.0
        assert attempt.percentage == 100
    eng.dispose()


def test_concurrent_starts_respect_max_attempts(tmp_path):
    eng = _file_engine(tmp_path)
    with Session(eng) as s:
        assessment_id = _publish(s, count=1, max_attempts=1).id

    barrier = threading.Barrier(4)
    outcomes = []
    lock = threading.Lock()

    def start():
        with Session(eng) as s:
            svc = AttemptService(s)
            barrier.wait()
            try:
                svc.start_attempt(assessment_id, 1)
            except AttemptLimitReachedError:
                with lock:
                    outcomes.append("limited")
                return
            with lock:
                outcomes.append("started")

    _run_together(start, [()] * 4)

    assert sorted(outcomes) == ["limited", "limited", "limited", "started"]
    with Session(eng) as s:
        attempts = s.exec(select(models.Attempt).where(models.Attempt.assessment_id == assessment_id)).all()
        assert len(attempts) == 1
    eng.dispose()
