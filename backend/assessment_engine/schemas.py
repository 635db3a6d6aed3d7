"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class AnswerIn(BaseModel):
    """One answer for an open attempt.

    `answer` is either a tagged object (``{"type": "numeric", "value":
    3.14}``) or a bare value; its shape is checked at grading time.
    """
    question_ref_id: int
    answer: Any = None
    time_taken_seconds: Optional[int] = Field(default=None, ge=0)


class ManualGradeIn(BaseModel):
    """Marker's verdict for one pending answer."""
    score: float
    is_correct: Optional[bool] = None
    comment: Optional[str] = None
