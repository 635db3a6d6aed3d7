"""Error kinds raised by the assessment services.

Each error carries a stable ``kind`` name and the HTTP status the API
layer should answer with. Boundary checks (ownership, state,
availability) raise these directly; grading problems inside a single
question are contained by the attempt service instead.
"""


class AssessmentError(Exception):
    """Base class for all assessment engine errors."""

    kind = "AssessmentError"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class NotFoundError(AssessmentError):
    """Attempt, assessment or question reference does not exist."""

    kind = "NotFound"
    status_code = 404


class ForbiddenError(AssessmentError):
    """Caller neither owns the attempt nor holds a privileged role."""

    kind = "Forbidden"
    status_code = 403


class UnavailableError(AssessmentError):
    """Assessment is not published or is outside its availability window."""

    kind = "Unavailable"
    status_code = 403


class AttemptLimitReachedError(AssessmentError):
    kind = "AttemptLimitReached"
    status_code = 400


class InvalidStateError(AssessmentError):
    """Operation is not allowed from the attempt's current status."""

    kind = "InvalidState"
    status_code = 400


class InvalidQuestionError(AssessmentError):
    """Question reference does not belong to the attempt's assessment."""

    kind = "InvalidQuestion"
    status_code = 400


class InvalidAnswerFormatError(AssessmentError):
    kind = "InvalidAnswerFormat"
    status_code = 400


class NoQuestionsError(AssessmentError):
    kind = "NoQuestions"
    status_code = 400


class GradingError(AssessmentError):
    """A catalog item cannot be graded (unknown type or malformed key)."""

    kind = "GradingError"
    status_code = 500
