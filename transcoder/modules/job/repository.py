"""SQLAlchemy-backed job store.

Snapshots are persisted as JobRecord rows so queued work survives a
restart. Writes are serialized by a store-wide lock; each update reads,
mutates and commits within a single session.
"""

import threading
import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from transcoder.core.database import create_db_engine, create_session_factory
from transcoder.core.errors import JobNotFound
from transcoder.modules.job.models import Job, JobRecord
from transcoder.modules.job.schemas import JobFilter
from transcoder.modules.job.store import JobMutation, JobStore


class SqlJobStore(JobStore):
    """Job store persisting snapshots through SQLAlchemy sessions."""

    def __init__(self, session_factory: sessionmaker):
        super().__init__()
        self._session_factory = session_factory
        self._write_lock = threading.RLock()

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlJobStore":
        engine = create_db_engine(database_url, echo=echo)
        return cls(create_session_factory(engine))

    def add(self, job: Job) -> Job:
        with self._write_lock:
            with self._session_factory() as session, session.begin():
                session.add(JobRecord.from_job(job))
            self._notify(job)
        return job

    def get(self, job_id: uuid.UUID) -> Job:
        with self._session_factory() as session:
            record = session.get(JobRecord, job_id)
            if record is None:
                raise JobNotFound(job_id)
            return record.to_job()

    def list(self, job_filter: Optional[JobFilter] = None) -> list[Job]:
        stmt = select(JobRecord).order_by(JobRecord.sequence)
        if job_filter is not None:
            if job_filter.states is not None:
                stmt = stmt.where(JobRecord.state.in_([s.value for s in job_filter.states]))
            if job_filter.target_format is not None:
                stmt = stmt.where(JobRecord.target_format == job_filter.target_format.value)
            if job_filter.limit is not None and job_filter.created_after is None \
                    and job_filter.created_before is None:
                stmt = stmt.limit(job_filter.limit)

        with self._session_factory() as session:
            jobs = [record.to_job() for record in session.scalars(stmt)]

        # Timestamps are compared on the model side; SQLite stores them naive
        if job_filter is not None and (job_filter.created_after or job_filter.created_before):
            jobs = [job for job in jobs if job_filter.matches(job)]
            if job_filter.limit is not None:
                jobs = jobs[:job_filter.limit]
        return jobs

    def update(self, job_id: uuid.UUID, mutation: JobMutation) -> Job:
        with self._write_lock:
            with self._session_factory() as session, session.begin():
                record = session.get(JobRecord, job_id)
                if record is None:
                    raise JobNotFound(job_id)
                current = record.to_job()
                updated = mutation(current)
                if updated is current:
                    return current
                if updated.id != current.id:
                    raise ValueError("A mutation may not change the job id")
                record.apply(updated)
            self._notify(updated)
            return updated

    def max_sequence(self) -> int:
        with self._session_factory() as session:
            value = session.scalar(select(func.max(JobRecord.sequence)))
        return -1 if value is None else value
