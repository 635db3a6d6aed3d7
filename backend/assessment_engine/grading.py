"""Auto-grading for objective question types.

`grade()` scores one submitted answer against one catalog item and
never touches storage. Dispatch is a table from `QuestionType` to a
scoring function; each function receives an already validated key and
answer plus the question's effective point value.

Partial credit applies to multi-select, matching, ordering and
fill-in-blanks questions. Free-text answers are never auto-finalized.
Scores are rounded half-up to two decimals, percentages to integers.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from . import answer_types as at
from .answer_types import QuestionType
from .errors import GradingError, InvalidAnswerFormatError


class GradingResult(BaseModel):
    is_correct: bool
    score: float
    max_score: float
    percent_correct: int
    feedback: str
    requires_manual_grading: bool = False
    invalid: bool = False


def round_score(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def round_percent(numerator: float, denominator: float) -> int:
    """Return numerator/denominator as a whole percentage, 0 for an empty denominator."""
    if not denominator:
        return 0
    return int(Decimal(str(numerator / denominator * 100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _all_or_nothing(is_correct: bool, max_score: float, feedback: str) -> GradingResult:
    return GradingResult(
        is_correct=is_correct,
        score=max_score if is_correct else 0.0,
        max_score=max_score,
        percent_correct=100 if is_correct else 0,
        feedback=feedback,
    )


def _partial(fraction: float, is_correct: bool, max_score: float, feedback: str) -> GradingResult:
    return GradingResult(
        is_correct=is_correct,
        score=max_score if is_correct else round_score(fraction * max_score),
        max_score=max_score,
        percent_correct=round_percent(fraction, 1),
        feedback=feedback,
    )


def manual_grading_result(max_score: float) -> GradingResult:
    return GradingResult(
        is_correct=False,
        score=0.0,
        max_score=max_score,
        percent_correct=0,
        feedback="This question requires manual grading by an instructor.",
        requires_manual_grading=True,
    )


def invalid_answer_result(max_score: float, reason: str) -> GradingResult:
    return GradingResult(
        is_correct=False,
        score=0.0,
        max_score=max_score,
        percent_correct=0,
        feedback=f"Invalid answer format: {reason}",
        invalid=True,
    )


def _grade_choice(key, answer, max_score: float) -> GradingResult:
    is_correct = answer.value == key.value
    if is_correct:
        return _all_or_nothing(True, max_score, "Correct!")
    return _all_or_nothing(False, max_score, "Incorrect.")


def _grade_multi_select(key: at.MultiSelectKey, answer: at.MultiSelectAnswer, max_score: float) -> GradingResult:
    correct = set(key.value)
    chosen = set(answer.value)
    hits = len(chosen & correct)
    misses = len(chosen - correct)
    missed = len(correct - chosen)
    fraction = max(0.0, (hits - misses) / len(correct))
    is_correct = hits == len(correct) and misses == 0
    if is_correct:
        feedback = "All correct!"
    else:
        feedback = f"Partial credit: {hits} correct, {misses} incorrect, {missed} missed."
    return _partial(fraction, is_correct, max_score, feedback)


def _grade_short_text(key: at.ShortTextKey, answer: at.ShortTextAnswer, max_score: float) -> GradingResult:
    def fold(text: str) -> str:
        return text if key.case_sensitive else text.lower()

    given = fold(answer.value.strip())
    acceptable = [fold(a.strip()) for a in key.value]
    if key.exact_match:
        is_correct = given in acceptable
    else:
        is_correct = bool(given) and any(given in a or a in given for a in acceptable if a)
    if is_correct:
        return _all_or_nothing(True, max_score, "Correct!")
    return _all_or_nothing(False, max_score, "Your answer does not match the expected response.")


def _grade_numeric(key: at.NumericKey, answer: at.NumericAnswer, max_score: float) -> GradingResult:
    lower = key.value - key.tolerance
    upper = key.value + key.tolerance
    is_correct = lower <= answer.value <= upper
    if is_correct:
        return _all_or_nothing(True, max_score, f"Correct! (Accepted range: {lower} - {upper})")
    return _all_or_nothing(False, max_score, "Incorrect. Your answer is outside the accepted range.")


def _grade_matching(key: at.MatchingKey, answer: at.MatchingAnswer, max_score: float) -> GradingResult:
    remaining = set(key.value)
    matched = 0
    for pair in answer.value:
        if pair in remaining:
            remaining.discard(pair)
            matched += 1
    total = len(key.value)
    is_correct = matched == total
    if is_correct:
        feedback = "All pairs matched correctly!"
    else:
        feedback = f"Partial credit: {matched} of {total} pairs correct."
    return _partial(matched / total, is_correct, max_score, feedback)


def _grade_ordering(key: at.OrderingKey, answer: at.OrderingAnswer, max_score: float) -> GradingResult:
    expected = key.value
    given = answer.value
    in_place = sum(1 for idx, item in enumerate(expected) if idx < len(given) and given[idx] == item)
    is_correct = list(given) == list(expected)
    if is_correct:
        feedback = "Perfect order!"
    else:
        feedback = f"{in_place} of {len(expected)} items in correct position."
    return _partial(in_place / len(expected), is_correct, max_score, feedback)


def _grade_fill_in_blanks(key: at.FillInBlanksKey, answer: at.FillInBlanksAnswer, max_score: float) -> GradingResult:
    if len(answer.value) != len(key.value):
        return invalid_answer_result(
            max_score, f"expected {len(key.value)} blanks, got {len(answer.value)}"
        )

    def fold(text: str) -> str:
        text = text.strip()
        return text if key.case_sensitive else text.lower()

    correct_blanks = sum(1 for want, got in zip(key.value, answer.value) if fold(want) == fold(got))
    total = len(key.value)
    is_correct = correct_blanks == total
    if is_correct:
        feedback = "All blanks correct!"
    else:
        feedback = f"Partial credit: {correct_blanks} of {total} blanks correct."
    return _partial(correct_blanks / total, is_correct, max_score, feedback)


def _grade_free_text(key, answer, max_score: float) -> GradingResult:
    return manual_grading_result(max_score)


GRADERS: Dict[QuestionType, Callable[[Any, Any, float], GradingResult]] = {
    QuestionType.SINGLE_CHOICE: _grade_choice,
    QuestionType.BOOLEAN: _grade_choice,
    QuestionType.MULTI_SELECT: _grade_multi_select,
    QuestionType.SHORT_TEXT: _grade_short_text,
    QuestionType.NUMERIC: _grade_numeric,
    QuestionType.MATCHING: _grade_matching,
    QuestionType.ORDERING: _grade_ordering,
    QuestionType.FILL_IN_BLANKS: _grade_fill_in_blanks,
    QuestionType.FREE_TEXT: _grade_free_text,
}


def requires_manual_grading(item) -> bool:
    """True for free-text items and short-text items without an answer key."""
    question_type = at.resolve_question_type(item.type)
    if question_type is QuestionType.FREE_TEXT:
        return True
    return question_type is QuestionType.SHORT_TEXT and not item.correct_answer


def grade(item, submitted_answer: Any, points: Optional[float] = None) -> GradingResult:
    """Grade `submitted_answer` against catalog `item`.

    `item` needs `type`, `correct_answer` and `points` attributes; `points`
    overrides the item's own value (assessment-level override). A
    malformed submission yields an invalid-answer result. A malformed
    catalog key raises `GradingError`, as does a key the comparison
    cannot evaluate (a numeric bound that overflows, for example).
    """
    max_score = float(points if points is not None else (item.points if item.points is not None else 1))
    question_type = at.resolve_question_type(item.type)
    if question_type is QuestionType.FREE_TEXT:
        return manual_grading_result(max_score)
    key = at.parse_correct_answer(question_type, item.correct_answer)
    try:
        answer = at.parse_user_answer(question_type, submitted_answer)
    except InvalidAnswerFormatError as exc:
        return invalid_answer_result(max_score, exc.message)
    try:
        return GRADERS[question_type](key, answer, max_score)
    except (ArithmeticError, TypeError, ValueError) as exc:
        raise GradingError(f"cannot grade {question_type.value} question: {exc}") from exc
