import pytest

from assessment_engine import models
from assessment_engine.errors import GradingError
from assessment_engine.grading import grade, requires_manual_grading, round_percent, round_score


def _item(type, correct_answer, points=1):
    return models.QuestionBankItem(type=type, question_text="q", correct_answer=correct_answer, points=points)


def test_single_choice_and_boolean_all_or_nothing():
    item = _item("single_choice", "B", points=2)
    assert grade(item, "B").score == 2.0
    wrong = grade(item, "A")
    assert wrong.is_correct is False and wrong.score == 0.0 and wrong.invalid is False

    flag = _item("boolean", True)
    assert grade(flag, True).is_correct
    assert not grade(flag, False).is_correct


def test_legacy_type_names_and_tags_are_accepted():
    item = _item("multiple_choice", {"type": "single", "value": "C"})
    assert grade(item, {"type": "single", "value": "C"}).is_correct
    assert grade(_item("true_false", False), False).is_correct


def test_multi_select_wrong_pick_cancels_right_pick():
    item = _item("multi_select", ["A", "C"], points=4)
    result = grade(item, ["A", "B"])
    assert result.score == 0.0
    assert result.is_correct is False


def test_multi_select_partial_and_full_credit():
    item = _item("multi_select", ["A", "C"], points=4)
    assert grade(item, ["A"]).score == 2.0
    full = grade(item, ["C", "A"])
    assert full.is_correct and full.score == 4.0 and full.percent_correct == 100
    # duplicated ids count once
    assert grade(item, ["A", "A"]).score == 2.0


def test_multi_select_monotonic_and_bounded():
    item = _item("multi_select", ["A", "B", "C"], points=3)
    base = ["A", "D"]
    base_score = grade(item, base).score
    assert grade(item, base + ["B"]).score >= base_score
    assert grade(item, base + ["E"]).score <= base_score
    for chosen in ([], ["D", "E"], ["A", "B", "C", "D", "E"], ["A", "B", "C"]):
        score = grade(item, chosen).score
        assert 0.0 <= score <= 3.0


def test_short_text_defaults_are_case_sensitive_and_exact():
    item = _item("short_text", "Paris")
    assert grade(item, " Paris ").is_correct
    assert not grade(item, "paris").is_correct

    relaxed = _item("short_text", {"value": ["Paris"], "case_sensitive": False})
    assert grade(relaxed, "PARIS").is_correct


def test_short_text_substring_mode():
    item = _item("short_text", {"value": ["photosynthesis"], "exact_match": False, "case_sensitive": False})
    assert grade(item, "Photosynthesis process").is_correct
    assert grade(item, "photo").is_correct
    assert not grade(item, "").is_correct
    assert not grade(item, "respiration").is_correct


def test_short_text_without_key_requires_manual_grading():
    assert requires_manual_grading(_item("short_answer", None))
    assert not requires_manual_grading(_item("short_text", "x"))


def test_numeric_tolerance_bounds_are_inclusive():
    item = _item("numeric", {"value": 10, "tolerance": 0.5})
    assert grade(item, 9.5).is_correct
    assert grade(item, 10.5).is_correct
    assert not grade(item, 10.6).is_correct
    assert not grade(item, 9.4).is_correct


def test_numeric_zero_tolerance_and_bad_input():
    item = _item("numeric", {"value": 3, "tolerance": None})
    assert grade(item, 3.0).is_correct
    assert not grade(item, 3.01).is_correct
    bad = grade(item, "3")
    assert bad.invalid and bad.score == 0.0


def test_matching_counts_each_pair_once():
    key = [{"left": "H", "right": "Hydrogen"}, {"left": "O", "right": "Oxygen"}, {"left": "N", "right": "Nitrogen"}]
    item = _item("matching", key, points=3)
    answer = [{"left": "H", "right": "Hydrogen"}, {"left": "O", "right": "Nitrogen"}, {"left": "N", "right": "Oxygen"}]
    assert grade(item, answer).score == 1.0
    dup = [{"left": "H", "right": "Hydrogen"}] * 3
    assert grade(item, dup).score == 1.0
    assert grade(item, key).is_correct


def test_fraction_scores_round_to_two_decimals():
    key = [{"left": "a", "right": "1"}, {"left": "b", "right": "2"}, {"left": "c", "right": "3"}]
    result = grade(_item("matching", key, points=1), [{"left": "a", "right": "1"}])
    assert result.score == 0.33
    assert result.percent_correct == 33
    assert round_score(0.125) == 0.13
    assert round_percent(1, 2) == 50
    assert round_percent(5, 0) == 0


@pytest.mark.parametrize("n", [3, 4, 5, 6])
def test_ordering_adjacent_swap(n):
    expected = [f"s{i}" for i in range(n)]
    item = _item("ordering", expected, points=n)
    assert grade(item, expected).score == float(n)
    swapped = list(expected)
    swapped[0], swapped[1] = swapped[1], swapped[0]
    result = grade(item, swapped)
    assert not result.is_correct
    assert result.score == round_score((n - 2) / n * n)


def test_fill_in_blanks_case_insensitive_partial():
    item = _item("fill_in_blanks", ["paris", "france"], points=2)
    result = grade(item, ["Paris", "Germany"])
    assert result.score == 1.0
    assert result.percent_correct == 50
    assert not result.is_correct


def test_fill_in_blanks_wrong_count_is_invalid():
    item = _item("fill_in_blanks", ["a", "b"])
    result = grade(item, ["a"])
    assert result.invalid and result.score == 0.0


def test_free_text_is_never_auto_graded():
    result = grade(_item("essay", None, points=5), "An essay")
    assert result.requires_manual_grading
    assert result.score == 0.0 and result.max_score == 5.0


def test_mismatched_or_missing_answers_are_invalid_not_errors():
    item = _item("single_choice", "A")
    assert grade(item, {"type": "multi", "value": ["A"]}).invalid
    assert grade(item, None).invalid
    assert grade(_item("multi_select", ["A"]), "A").invalid


def test_point_override_sets_max_score():
    result = grade(_item("single_choice", "A", points=1), "A", points=5)
    assert result.max_score == 5.0 and result.score == 5.0


def test_malformed_key_raises_grading_error():
    with pytest.raises(GradingError):
        grade(_item("single_choice", {"value": [1, 2]}), 1)
    with pytest.raises(GradingError):
        grade(_item("hotspot", "x"), "x")
    with pytest.raises(GradingError):
        grade(_item("numeric", {"value": 1, "tolerance": -1}), 1)


def test_numeric_key_too_large_to_compare_raises_grading_error():
    item = _item("numeric", {"value": 10**400, "tolerance": 0.5})
    with pytest.raises(GradingError):
        grade(item, 5)
