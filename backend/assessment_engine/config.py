"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    DATABASE_URL: str
    MASTERY_ASYNC: bool
    MASTERY_MAX_RETRIES: int
    MASTERY_RETRY_DELAY_SECONDS: float
    MASTERY_JOB_TTL_SECONDS: int
    MASTERY_MAX_JOBS: int
    MASTERY_MIN_QUESTIONS: int
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'assessments.db'}")
        # Mastery recompute runs on worker threads unless explicitly disabled.
        self.MASTERY_ASYNC = os.getenv("MASTERY_ASYNC", "true").lower() == "true"
        self.MASTERY_MAX_RETRIES = int(os.getenv("MASTERY_MAX_RETRIES", "3"))
        self.MASTERY_RETRY_DELAY_SECONDS = float(os.getenv("MASTERY_RETRY_DELAY_SECONDS", "0.5"))
        self.MASTERY_JOB_TTL_SECONDS = int(os.getenv("MASTERY_JOB_TTL_SECONDS", str(24 * 3600)))
        self.MASTERY_MAX_JOBS = int(os.getenv("MASTERY_MAX_JOBS", "500"))
        self.MASTERY_MIN_QUESTIONS = int(os.getenv("MASTERY_MIN_QUESTIONS", "3"))
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.MASTERY_MAX_RETRIES < 1:
            raise RuntimeError("MASTERY_MAX_RETRIES must be >= 1")
        if self.MASTERY_MIN_QUESTIONS < 0:
            raise RuntimeError("MASTERY_MIN_QUESTIONS must be >= 0")


settings = Settings()
