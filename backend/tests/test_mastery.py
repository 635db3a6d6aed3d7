import pytest
from sqlmodel import Session, select

from assessment_engine import models
from assessment_engine.errors import NotFoundError
from assessment_engine.mastery_jobs import MasteryJobStore
from assessment_engine.services import AttemptService, MasteryService


@pytest.fixture
def topic_quiz(make_item, make_assessment):
    """Two questions on topic 1, one on topic 2, one essay on topic 1."""
    a = make_item("boolean", True, topic_id=1)
    b = make_item("single_choice", "A", topic_id=1)
    c = make_item("numeric", {"value": 4}, topic_id=2)
    essay = make_item("free_text", None, topic_id=1)
    return make_assessment([a, b, c, essay]), a, b, c, essay


def _run(session, user, assessment, answers, ref_ids, mastery_jobs=None):
    svc = AttemptService(session, mastery_jobs=mastery_jobs)
    attempt_id = svc.start_attempt(assessment.id, user.id)["attempt_id"]
    refs = ref_ids(assessment.id)
    for item, value in answers:
        svc.answer_attempt(attempt_id, user.id, refs[item.id], value)
    return attempt_id, svc.submit_attempt(attempt_id, user.id)


def test_recompute_counts_graded_history_only(session, student, topic_quiz, ref_ids):
    assessment, a, b, c, essay = topic_quiz
    attempt_id, _ = _run(session, student, assessment, [(a, True), (b, "B"), (c, 4), (essay, "text")], ref_ids)

    svc = MasteryService(session)
    row = svc.recompute_topic_mastery(student.id, 1)
    # the pending essay carries no verdict yet
    assert (row.total_questions, row.correct_answers, row.mastery_percent) == (2, 1, 50)
    assert row.last_attempt_at is not None

    assert svc.update_mastery_after_attempt(student.id, attempt_id) == [1, 2]
    topic2 = svc.recompute_topic_mastery(student.id, 2)
    assert (topic2.total_questions, topic2.correct_answers, topic2.mastery_percent) == (1, 1, 100)


def test_recompute_is_idempotent(session, student, topic_quiz, ref_ids):
    assessment, a, b, *_ = topic_quiz
    _run(session, student, assessment, [(a, True), (b, "A")], ref_ids)
    svc = MasteryService(session)
    first = svc.recompute_topic_mastery(student.id, 1)
    snapshot = (first.total_questions, first.correct_answers, first.mastery_percent)
    second = svc.recompute_topic_mastery(student.id, 1)
    assert (second.total_questions, second.correct_answers, second.mastery_percent) == snapshot
    rows = session.exec(select(models.TopicMastery).where(models.TopicMastery.user_id == student.id)).all()
    assert len(rows) == 1


def test_recompute_spans_all_attempts(session, student, make_item, make_assessment, ref_ids):
    item = make_item("boolean", True, topic_id=9)
    first = make_assessment([item], title="First")
    second = make_assessment([item], title="Second")
    _run(session, student, first, [(item, True)], ref_ids)
    _run(session, student, second, [(item, False)], ref_ids)
    row = MasteryService(session).recompute_topic_mastery(student.id, 9)
    assert (row.total_questions, row.correct_answers, row.mastery_percent) == (2, 1, 50)


def test_recompute_without_history_writes_nothing(session, student):
    assert MasteryService(session).recompute_topic_mastery(student.id, 42) is None
    assert session.exec(select(models.TopicMastery)).all() == []


def test_update_after_unknown_attempt(session, student):
    with pytest.raises(NotFoundError):
        MasteryService(session).update_mastery_after_attempt(student.id, "nope")


def test_weakest_strongest_and_overall(session, student):
    for topic_id, total, correct in [(1, 10, 2), (2, 10, 9), (3, 2, 0), (4, 5, 3)]:
        session.add(models.TopicMastery(
            user_id=student.id, topic_id=topic_id, total_questions=total,
            correct_answers=correct, mastery_percent=round(correct / total * 100),
        ))
    session.commit()
    svc = MasteryService(session, min_questions=3)

    assert [r["topic_id"] for r in svc.get_user_mastery(student.id)] == [3, 1, 4, 2]
    assert [r["topic_id"] for r in svc.get_weakest_topics(student.id)] == [1, 4, 2]
    assert [r["topic_id"] for r in svc.get_strongest_topics(student.id, limit=2)] == [2, 4]
    assert [r["topic_id"] for r in svc.get_weakest_topics(student.id, min_questions=0, limit=1)] == [3]
    overall = svc.get_overall_mastery(student.id)
    assert overall == {"total_questions": 27, "correct_answers": 14, "mastery_percent": 52}
    assert svc.get_overall_mastery(999)["mastery_percent"] == 0


def test_submit_runs_mastery_job_inline(session, student, topic_quiz, ref_ids, mastery_jobs):
    assessment, a, b, c, essay = topic_quiz
    _, result = _run(session, student, assessment, [(a, True), (b, "A"), (c, 4)], ref_ids, mastery_jobs)
    assert result["status"] == "graded"
    job = mastery_jobs.get(result["mastery_job_id"])
    assert job["status"] == "succeeded"
    assert job["result"] == [1, 2]
    rows = MasteryService(session).get_user_mastery(student.id)
    assert {r["topic_id"]: r["mastery_percent"] for r in rows} == {1: 67, 2: 100}


def test_manual_grading_triggers_mastery(session, student, tutor, topic_quiz, ref_ids, mastery_jobs):
    assessment, a, b, c, essay = topic_quiz
    attempt_id, result = _run(session, student, assessment,
                              [(a, True), (b, "A"), (c, 4), (essay, "text")], ref_ids, mastery_jobs)
    assert result["mastery_job_id"] is None
    graded = AttemptService(session, mastery_jobs=mastery_jobs).grade_answer_manually(
        attempt_id, ref_ids(assessment.id)[essay.id], tutor.id, tutor.role, 1)
    assert graded["status"] == "graded"
    assert mastery_jobs.get(graded["mastery_job_id"])["status"] == "succeeded"
    row = MasteryService(session).recompute_topic_mastery(student.id, 1)
    assert (row.total_questions, row.correct_answers) == (3, 3)


def test_job_retries_then_succeeds(engine):
    calls = []

    def flaky(session, user_id, attempt_id):
        calls.append(attempt_id)
        if len(calls) < 3:
            raise RuntimeError("database busy")
        return [7]

    store = MasteryJobStore(lambda: Session(engine), worker=flaky, run_async=False, retry_delay=0, max_retries=3)
    job = store.submit(user_id=1, attempt_id="abc")
    assert job["status"] == "succeeded"
    assert job["attempts"] == 3
    assert job["result"] == [7]


def test_job_gives_up_after_max_retries(engine):
    def broken(session, user_id, attempt_id):
        raise RuntimeError("boom")

    store = MasteryJobStore(lambda: Session(engine), worker=broken, run_async=False, retry_delay=0, max_retries=2)
    job = store.submit(user_id=1, attempt_id="abc")
    assert job["status"] == "failed"
    assert job["attempts"] == 2
    assert job["error"] == "boom"


def test_async_job_can_be_polled(engine):
    store = MasteryJobStore(lambda: Session(engine), worker=lambda s, u, a: [u], run_async=True, retry_delay=0)
    created = store.submit(user_id=5, attempt_id="xyz", request_id="req-1")
    job = store.wait(created["job_id"], timeout=5)
    assert job["status"] == "succeeded"
    assert job["result"] == [5]
    assert job["request_id"] == "req-1"


def test_job_store_is_bounded(engine):
    store = MasteryJobStore(lambda: Session(engine), worker=lambda s, u, a: [], run_async=False, max_jobs=3)
    ids = [store.submit(user_id=1, attempt_id=str(i))["job_id"] for i in range(5)]
    assert store.get(ids[0]) is None
    assert store.get(ids[-1]) is not None
