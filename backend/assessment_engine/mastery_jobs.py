"""In-memory background job store for mastery recompute tasks."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlmodel import Session

from .config import settings
from .services import MasteryService

logger = logging.getLogger("assessment_engine.mastery")

FINISHED = ("succeeded", "failed")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MasteryJobStore:
    """Run `update_mastery_after_attempt` outside the request that graded.

    Each job gets its own database session and is retried up to
    `max_retries` times with a linear backoff; a job that keeps failing
    is recorded as `failed` and logged, never raised to the submitter.
    With `run_async=False` the job runs inline inside `submit`.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        worker: Optional[Callable[[Session, int, str], List[int]]] = None,
        max_retries: int = settings.MASTERY_MAX_RETRIES,
        retry_delay: float = settings.MASTERY_RETRY_DELAY_SECONDS,
        run_async: bool = settings.MASTERY_ASYNC,
        max_jobs: int = settings.MASTERY_MAX_JOBS,
        ttl_seconds: int = settings.MASTERY_JOB_TTL_SECONDS,
    ):
        if session_factory is None:
            from .database import engine

            def session_factory():
                return Session(engine)

        self._session_factory = session_factory
        self._worker = worker or self._recompute
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._run_async = run_async
        self._jobs: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._max_jobs = max_jobs
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def _recompute(session: Session, user_id: int, attempt_id: str) -> List[int]:
        return MasteryService(session).update_mastery_after_attempt(user_id, attempt_id)

    def submit(self, *, user_id: int, attempt_id: str, request_id: str = "") -> dict:
        self._cleanup()
        job_id = uuid.uuid4().hex
        job = {
            "job_id": job_id,
            "status": "queued",
            "user_id": user_id,
            "attempt_id": attempt_id,
            "attempts": 0,
            "created_at": _now(),
            "started_at": None,
            "finished_at": None,
            "request_id": request_id,
            "result": None,
            "error": None,
        }
        with self._lock:
            self._jobs[job_id] = job
            if len(self._jobs) > self._max_jobs:
                # remove oldest finished first
                finished = sorted(
                    (j for j in self._jobs.values() if j.get("finished_at")),
                    key=lambda x: x.get("finished_at") or "",
                )
                for old in finished[: max(0, len(self._jobs) - self._max_jobs)]:
                    self._jobs.pop(old["job_id"], None)

        if self._run_async:
            thread = threading.Thread(
                target=self._run_job,
                kwargs={"job_id": job_id, "user_id": user_id, "attempt_id": attempt_id},
                daemon=True,
            )
            thread.start()
        else:
            self._run_job(job_id=job_id, user_id=user_id, attempt_id=attempt_id)
        return self.get(job_id) or {"job_id": job_id, "status": "queued"}

    def get(self, job_id: str) -> Optional[dict]:
        self._cleanup()
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job else None

    def wait(self, job_id: str, timeout: float = 5.0) -> Optional[dict]:
        """Poll until the job finishes or `timeout` elapses; return its last state."""
        deadline = time.time() + timeout
        job = self.get(job_id)
        while job and job["status"] not in FINISHED and time.time() < deadline:
            time.sleep(0.02)
            job = self.get(job_id)
        return job

    def _update(self, job_id: str, **fields) -> None:
        with self._lock:
            if job_id in self._jobs:
                self._jobs[job_id].update(fields)

    def _run_job(self, *, job_id: str, user_id: int, attempt_id: str) -> None:
        with self._lock:
            if job_id not in self._jobs:
                return
        self._update(job_id, status="running", started_at=_now())
        error = None
        for attempt_no in range(1, self._max_retries + 1):
            self._update(job_id, attempts=attempt_no)
            try:
                with self._session_factory() as session:
                    result = self._worker(session, user_id, attempt_id)
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                logger.warning("mastery_job_retry %s", json.dumps({
                    "job_id": job_id,
                    "attempt_id": attempt_id,
                    "attempt": attempt_no,
                    "error": error,
                }, ensure_ascii=True))
                if attempt_no < self._max_retries:
                    time.sleep(self._retry_delay * attempt_no)
                continue
            self._update(job_id, status="succeeded", result=result, finished_at=_now())
            return
        self._update(job_id, status="failed", error=error, finished_at=_now())
        logger.error("mastery_job_failed %s", json.dumps({
            "job_id": job_id,
            "user_id": user_id,
            "attempt_id": attempt_id,
            "attempts": self._max_retries,
            "error": error,
        }, ensure_ascii=True))

    def _cleanup(self) -> None:
        cutoff = time.time() - self._ttl_seconds
        with self._lock:
            to_delete = []
            for job_id, job in self._jobs.items():
                finished = job.get("finished_at")
                if not finished:
                    continue
                if datetime.fromisoformat(finished).timestamp() < cutoff:
                    to_delete.append(job_id)
            for job_id in to_delete:
                self._jobs.pop(job_id, None)
