"""Answer renderer: project catalog items into client-facing views.

`render_for_attempt` builds the view used while an attempt is open and
never includes correct answers, explanations or per-option correctness,
whatever the caller's role. `render_for_review` is used once an attempt
has left `in_progress` and adds solutions only when the role or the
assessment's visibility flags allow it.
"""

import random
from typing import Any, List, Optional

from . import answer_types as at
from .answer_types import QuestionType
from .errors import GradingError
from .models import is_privileged

# Option fields that are safe to send while an attempt is open.
_SAFE_OPTION_FIELDS = ("id", "text", "image_url")


def _shuffled(items: List[Any], rng) -> List[Any]:
    out = list(items)
    rng.shuffle(out)
    return out


def _safe_options(options) -> List[dict]:
    out = []
    for opt in options or []:
        if isinstance(opt, dict):
            out.append({k: opt[k] for k in _SAFE_OPTION_FIELDS if k in opt})
        else:
            out.append({"id": opt, "text": str(opt)})
    return out


def _parse_key(item):
    try:
        question_type = at.resolve_question_type(item.type)
        return question_type, at.parse_correct_answer(question_type, item.correct_answer)
    except GradingError:
        return None, None


def render_for_attempt(
    item,
    *,
    points: Optional[float] = None,
    shuffle_options: bool = False,
    show_points: bool = True,
    show_time_limit: bool = True,
    rng=None,
) -> dict:
    """Render `item` for an in-progress attempt (solutions stripped)."""
    rng = rng or random
    rendered = {
        "id": item.id,
        "type": item.type,
        "question_text": item.question_text,
        "difficulty": item.difficulty,
    }
    if show_points:
        rendered["points"] = points if points is not None else item.points
    if show_time_limit:
        rendered["time_limit_seconds"] = item.time_limit_seconds

    options = _safe_options(item.options)
    if options:
        rendered["options"] = _shuffled(options, rng) if shuffle_options else options

    # Matching and ordering items draw their choices from the key itself.
    question_type, key = _parse_key(item)
    if question_type is QuestionType.MATCHING and key is not None:
        left = [p.left for p in key.value]
        right = [p.right for p in key.value]
        rendered["left"] = _shuffled(left, rng) if key.shuffle_left else left
        rendered["right"] = _shuffled(right, rng) if key.shuffle_right else right
    elif question_type is QuestionType.ORDERING and key is not None:
        rendered["items"] = _shuffled(key.value, rng)
    elif question_type is QuestionType.FILL_IN_BLANKS and key is not None:
        rendered["blank_count"] = len(key.value)
    return rendered


def _correct_option_ids(key) -> set:
    if isinstance(key, at.SingleChoiceKey):
        return {key.value}
    if isinstance(key, at.MultiSelectKey):
        return set(key.value)
    return set()


def _selected_option_ids(answer_payload) -> set:
    value = answer_payload
    if isinstance(value, dict):
        value = value.get("value")
    if isinstance(value, list):
        return {v for v in value if isinstance(v, (str, int))}
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return {value}
    return set()


def render_for_review(item, answer, role, flags, *, points: Optional[float] = None) -> dict:
    """Render `item` with the stored `answer` for a finished attempt.

    `answer` is an `AttemptAnswer` (or None when no row exists) and
    `flags` exposes `show_correct_answers` and `show_explanations`.
    """
    privileged = is_privileged(role)
    include_solution = privileged or bool(getattr(flags, "show_correct_answers", False))
    include_explanation = privileged or bool(getattr(flags, "show_explanations", False))
    effective_points = points if points is not None else item.points

    rendered = {
        "id": item.id,
        "type": item.type,
        "question_text": item.question_text,
        "difficulty": item.difficulty,
        "points": effective_points,
        "answer": answer.answer if answer is not None else None,
        "is_correct": answer.is_correct if answer is not None else None,
        "score": answer.score if answer is not None else None,
        "max_score": answer.max_score if answer is not None and answer.max_score is not None else effective_points,
        "feedback": answer.feedback if answer is not None else None,
        "pending_manual_grading": bool(answer.pending_manual) if answer is not None else False,
        "marker_comment": answer.marker_comment if answer is not None else None,
    }

    question_type, key = _parse_key(item)
    options = _safe_options(item.options)
    if options and question_type in at.CHOICE_TYPES:
        selected = _selected_option_ids(answer.answer if answer is not None else None)
        correct_ids = _correct_option_ids(key)
        for opt in options:
            opt["is_user_selected"] = opt.get("id") in selected
            if include_solution:
                opt["is_correct"] = opt.get("id") in correct_ids
    if options:
        rendered["options"] = options

    if include_solution:
        rendered["correct_answer"] = item.correct_answer
    if include_explanation:
        rendered["explanation"] = item.explanation
    return rendered
