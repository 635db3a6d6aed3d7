"""Question types and the answer payload shapes that belong to them.

Every question type has exactly one correct-answer model (the key
stored on the catalog item) and one submitted-answer model. Payloads
arrive as JSON, either tagged (``{"type": "multi_select", "value":
[...]}``) or as a bare value, and are validated into the model for the
question's type. Shape problems in a student's answer raise
`InvalidAnswerFormatError`; shape problems in a catalog key raise
`GradingError`.
"""

from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Tuple, Type, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from .errors import GradingError, InvalidAnswerFormatError

OptionId = Union[StrictStr, StrictInt]
Number = Union[StrictInt, StrictFloat]


class QuestionType(str, Enum):
    SINGLE_CHOICE = "single_choice"
    MULTI_SELECT = "multi_select"
    BOOLEAN = "boolean"
    SHORT_TEXT = "short_text"
    NUMERIC = "numeric"
    MATCHING = "matching"
    ORDERING = "ordering"
    FILL_IN_BLANKS = "fill_in_blanks"
    FREE_TEXT = "free_text"


# Type names used by older catalog exports.
_LEGACY_TYPE_NAMES = {
    "multiple_choice": QuestionType.SINGLE_CHOICE,
    "true_false": QuestionType.BOOLEAN,
    "short_answer": QuestionType.SHORT_TEXT,
    "essay": QuestionType.FREE_TEXT,
    "fill_in_blank": QuestionType.FILL_IN_BLANKS,
}

# Payload tags accepted for each type; "text" is shared by both text types.
_PAYLOAD_TAGS: Dict[QuestionType, FrozenSet[str]] = {
    QuestionType.SINGLE_CHOICE: frozenset({"single_choice", "single"}),
    QuestionType.MULTI_SELECT: frozenset({"multi_select", "multi"}),
    QuestionType.BOOLEAN: frozenset({"boolean"}),
    QuestionType.SHORT_TEXT: frozenset({"short_text", "text"}),
    QuestionType.NUMERIC: frozenset({"numeric"}),
    QuestionType.MATCHING: frozenset({"matching", "pairs"}),
    QuestionType.ORDERING: frozenset({"ordering", "order"}),
    QuestionType.FILL_IN_BLANKS: frozenset({"fill_in_blanks", "blanks"}),
    QuestionType.FREE_TEXT: frozenset({"free_text", "text"}),
}

CHOICE_TYPES = frozenset({QuestionType.SINGLE_CHOICE, QuestionType.MULTI_SELECT, QuestionType.BOOLEAN})


def resolve_question_type(value) -> QuestionType:
    """Map a stored type name (current or legacy) to a `QuestionType`."""
    if isinstance(value, QuestionType):
        return value
    name = str(value or "").strip().lower()
    if name in _LEGACY_TYPE_NAMES:
        return _LEGACY_TYPE_NAMES[name]
    try:
        return QuestionType(name)
    except ValueError:
        raise GradingError(f"unsupported question type: {value!r}")


class MatchPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    left: StrictStr
    right: StrictStr


# ---------------------------------------------------------------------------
# Correct-answer keys
# ---------------------------------------------------------------------------


class AnswerKey(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question_type: ClassVar[QuestionType]


class SingleChoiceKey(AnswerKey):
    question_type = QuestionType.SINGLE_CHOICE
    value: OptionId


class MultiSelectKey(AnswerKey):
    question_type = QuestionType.MULTI_SELECT
    value: List[OptionId] = Field(min_length=1)


class BooleanKey(AnswerKey):
    question_type = QuestionType.BOOLEAN
    value: StrictBool


class ShortTextKey(AnswerKey):
    question_type = QuestionType.SHORT_TEXT
    value: List[StrictStr] = Field(min_length=1)
    case_sensitive: bool = True
    exact_match: bool = True

    @field_validator("value", mode="before")
    @classmethod
    def _single_answer_to_list(cls, v):
        if isinstance(v, str):
            return [v]
        return v


class NumericKey(AnswerKey):
    question_type = QuestionType.NUMERIC
    value: Number
    tolerance: Number = 0
    units: Optional[str] = None

    @field_validator("tolerance", mode="before")
    @classmethod
    def _default_tolerance(cls, v):
        return 0 if v is None else v

    @field_validator("tolerance")
    @classmethod
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("tolerance must be >= 0")
        return v


class MatchingKey(AnswerKey):
    question_type = QuestionType.MATCHING
    value: List[MatchPair] = Field(min_length=1)
    shuffle_left: bool = True
    shuffle_right: bool = True


class OrderingKey(AnswerKey):
    question_type = QuestionType.ORDERING
    value: List[OptionId] = Field(min_length=1)


class FillInBlanksKey(AnswerKey):
    question_type = QuestionType.FILL_IN_BLANKS
    value: List[StrictStr] = Field(min_length=1)
    case_sensitive: bool = False


class FreeTextKey(AnswerKey):
    """Optional model answer shown to markers; never used for scoring."""
    question_type = QuestionType.FREE_TEXT
    value: Optional[StrictStr] = None


# ---------------------------------------------------------------------------
# Submitted answers
# ---------------------------------------------------------------------------


class SubmittedAnswer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question_type: ClassVar[QuestionType]


class SingleChoiceAnswer(SubmittedAnswer):
    question_type = QuestionType.SINGLE_CHOICE
    value: OptionId


class MultiSelectAnswer(SubmittedAnswer):
    question_type = QuestionType.MULTI_SELECT
    value: List[OptionId]


class BooleanAnswer(SubmittedAnswer):
    question_type = QuestionType.BOOLEAN
    value: StrictBool


class ShortTextAnswer(SubmittedAnswer):
    question_type = QuestionType.SHORT_TEXT
    value: StrictStr


class NumericAnswer(SubmittedAnswer):
    question_type = QuestionType.NUMERIC
    value: Number
    units: Optional[str] = None


class MatchingAnswer(SubmittedAnswer):
    question_type = QuestionType.MATCHING
    value: List[MatchPair]


class OrderingAnswer(SubmittedAnswer):
    question_type = QuestionType.ORDERING
    value: List[OptionId]


class FillInBlanksAnswer(SubmittedAnswer):
    question_type = QuestionType.FILL_IN_BLANKS
    value: List[StrictStr]


class FreeTextAnswer(SubmittedAnswer):
    question_type = QuestionType.FREE_TEXT
    value: StrictStr


KEY_MODELS: Dict[QuestionType, Type[AnswerKey]] = {
    model.question_type: model
    for model in (
        SingleChoiceKey, MultiSelectKey, BooleanKey, ShortTextKey, NumericKey,
        MatchingKey, OrderingKey, FillInBlanksKey, FreeTextKey,
    )
}

ANSWER_MODELS: Dict[QuestionType, Type[SubmittedAnswer]] = {
    model.question_type: model
    for model in (
        SingleChoiceAnswer, MultiSelectAnswer, BooleanAnswer, ShortTextAnswer, NumericAnswer,
        MatchingAnswer, OrderingAnswer, FillInBlanksAnswer, FreeTextAnswer,
    )
}


def _split_payload(payload: Any) -> Tuple[Optional[str], dict]:
    if isinstance(payload, dict) and ("value" in payload or "type" in payload):
        data = dict(payload)
        tag = data.pop("type", None)
        return tag, data
    return None, {"value": payload}


def _describe(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def parse_correct_answer(question_type: QuestionType, payload: Any) -> AnswerKey:
    """Validate a catalog key for `question_type`; raise `GradingError` if malformed."""
    if payload is None:
        if question_type is QuestionType.FREE_TEXT:
            return FreeTextKey()
        raise GradingError(f"no correct answer defined for {question_type.value} question")
    tag, data = _split_payload(payload)
    if tag is not None and str(tag).lower() not in _PAYLOAD_TAGS[question_type]:
        raise GradingError(f"correct answer tagged {tag!r} does not fit a {question_type.value} question")
    try:
        return KEY_MODELS[question_type].model_validate(data)
    except ValidationError as exc:
        raise GradingError(f"malformed correct answer for {question_type.value} question ({_describe(exc)})") from exc


def parse_user_answer(question_type: QuestionType, payload: Any) -> SubmittedAnswer:
    """Validate a submitted answer; raise `InvalidAnswerFormatError` on a shape mismatch."""
    if payload is None:
        raise InvalidAnswerFormatError("no answer was submitted")
    tag, data = _split_payload(payload)
    if tag is not None and str(tag).lower() not in _PAYLOAD_TAGS[question_type]:
        raise InvalidAnswerFormatError(f"answer of type {tag!r} cannot answer a {question_type.value} question")
    try:
        return ANSWER_MODELS[question_type].model_validate(data)
    except ValidationError as exc:
        raise InvalidAnswerFormatError(f"expected a {question_type.value} answer ({_describe(exc)})") from exc
