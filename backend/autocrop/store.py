# backend/autocrop/store.py
"""Process-wide table of asynchronous jobs.

Jobs live as SQLModel rows in whatever engine is injected (an in-memory
sqlite engine by default). Every read-modify-write happens under one lock in
its own session, so a job's fields are always updated atomically.
"""
import json
import logging
import threading
from typing import Any, Callable, Dict, Optional

from sqlmodel import Session

from .db import init_db
from .errors import NotFoundError
from .models import COMPLETED, ERROR, PROCESSING, Job, utcnow
from .scheduler import CleanupScheduler
from .storage import remove_path

logger = logging.getLogger(__name__)

_STATUSES = (PROCESSING, COMPLETED, ERROR)


class JobStore:
    def __init__(self, engine, scheduler: Optional[CleanupScheduler] = None):
        self.engine = engine
        self.scheduler = scheduler
        self._lock = threading.RLock()
        init_db(engine)

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def create(self, job_id: str, source: str) -> Job:
        with self._lock, self._session() as session:
            if session.get(Job, job_id) is not None:
                raise ValueError(f"job {job_id} already exists")
            job = Job(id=job_id, source=source, status=PROCESSING, progress=0, created_at=utcnow())
            session.add(job)
            session.commit()
            return job

    def get(self, job_id: str) -> Job:
        with self._lock, self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise NotFoundError(f"job {job_id} not found")
            return job

    def update(self, job_id: str, mutator: Callable[[Job], None]) -> Job:
        """Apply mutator to the job and persist it.

        Terminal jobs are frozen: the mutator is not even called. Progress is
        clamped to 0..100 and never moves backwards.
        """
        with self._lock, self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise NotFoundError(f"job {job_id} not found")
            if job.is_terminal:
                logger.debug("ignoring update of %s job %s", job.status, job_id)
                return job

            before = job.progress
            mutator(job)
            if job.status not in _STATUSES:
                raise ValueError(f"invalid job status: {job.status!r}")

            job.progress = max(before, min(100, max(0, int(job.progress))))
            if job.status == COMPLETED:
                job.progress = 100
            if job.is_terminal and job.completed_at is None:
                job.completed_at = utcnow()

            session.add(job)
            session.commit()
            return job

    def set_progress(self, job_id: str, progress: int) -> Job:
        def mutate(job: Job):
            job.progress = progress
        return self.update(job_id, mutate)

    def complete(self, job_id: str, result: Dict[str, Any], artifact_path: Optional[str] = None) -> Job:
        def mutate(job: Job):
            job.status = COMPLETED
            job.result = json.dumps(result)
            if artifact_path:
                job.artifact_path = artifact_path
        return self.update(job_id, mutate)

    def fail(self, job_id: str, error: str, artifact_path: Optional[str] = None) -> Job:
        def mutate(job: Job):
            job.status = ERROR
            job.error = error
            if artifact_path:
                job.artifact_path = artifact_path
        return self.update(job_id, mutate)

    def delete(self, job_id: str) -> Optional[Job]:
        with self._lock, self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                return None
            session.delete(job)
            session.commit()
            return job

    def expire(self, job_id: str):
        """Drop the job record and its on-disk artifact, whichever still exist."""
        job = self.delete(job_id)
        if job is not None and job.artifact_path:
            remove_path(job.artifact_path)
        logger.info("job %s expired", job_id)

    def schedule_expiry(self, job_id: str, after: float) -> bool:
        if self.scheduler is None:
            raise RuntimeError("JobStore has no cleanup scheduler")
        return self.scheduler.schedule(f"job:{job_id}", after, lambda: self.expire(job_id))
