"""
Database-backed durable job queue.

Jobs are persisted in ``queued_jobs`` and executed by a Worker. Each job
class declares its queue, number of tries and backoff delays; the worker
counts attempts, reschedules failures after the configured delay and calls
the job's ``failed`` hook once attempts are exhausted.
"""
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Type

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from ..errors import InvalidJobPayload, MaxAttemptsExceeded, NonRetryableJobError
from ..models.models import QueuedJob, utcnow


logger = structlog.get_logger(__name__)


@dataclass
class JobContext:
    db: Session
    job_id: uuid.UUID
    attempt: int  # 1-based
    max_attempts: int
    gateway: Any = None
    now: Optional[datetime] = None  # worker clock, naive UTC

    def current_attempt_number(self) -> int:
        return self.attempt


class Job:
    name: ClassVar[str] = "job"
    queue: ClassVar[str] = "default"
    tries: ClassVar[int] = 1
    backoff: ClassVar[Sequence[int]] = ()

    def to_payload(self) -> Dict[str, Any]:
        raise NotImplementedError

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Job":
        raise NotImplementedError

    def handle(self, ctx: JobContext) -> None:
        raise NotImplementedError

    def failed(self, ctx: JobContext, exc: BaseException) -> None:
        """Called once when the job will not be attempted again."""


JOB_REGISTRY: Dict[str, Type[Job]] = {}


def register_job(cls: Type[Job]) -> Type[Job]:
    JOB_REGISTRY[cls.name] = cls
    return cls


def backoff_delay(backoff: Sequence[int], attempt: int) -> int:
    """Seconds to wait after failed attempt ``attempt`` (1-based)."""
    if not backoff:
        return 0
    return backoff[min(attempt, len(backoff)) - 1]


def enqueue(
    db: Session,
    job: Job,
    *,
    queue: Optional[str] = None,
    available_at: Optional[datetime] = None,
    commit: bool = True,
) -> QueuedJob:
    row = QueuedJob(
        queue=queue or job.queue,
        job_name=job.name,
        payload=job.to_payload(),
        attempts=0,
        max_attempts=max(1, job.tries),
        status="pending",
        available_at=available_at or utcnow(),
    )
    db.add(row)
    if commit:
        db.commit()
        db.refresh(row)
    else:
        db.flush()
    logger.info("job_enqueued", job=job.name, queue=row.queue, job_id=str(row.id))
    return row


class Worker:
    """Consumes one queue; safe to run several workers side by side."""

    def __init__(
        self,
        session_factory: sessionmaker,
        queue: str = "default",
        gateway: Any = None,
        clock: Callable[[], datetime] = utcnow,
        registry: Optional[Dict[str, Type[Job]]] = None,
        stale_after: timedelta = timedelta(minutes=15),
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.gateway = gateway
        self.clock = clock
        self.registry = JOB_REGISTRY if registry is None else registry
        self.stale_after = stale_after

    def reserve(self) -> Optional[uuid.UUID]:
        with self.session_factory() as db:
            now = self.clock()
            query = (
                db.query(QueuedJob)
                .filter(
                    QueuedJob.queue == self.queue,
                    QueuedJob.status == "pending",
                    QueuedJob.available_at <= now,
                )
                .order_by(QueuedJob.available_at, QueuedJob.created_at)
            )
            if db.get_bind().dialect.name == "postgresql":
                query = query.with_for_update(skip_locked=True)
            row = query.first()
            if row is None:
                return None

            # Another worker may have taken it between select and update
            result = db.execute(
                update(QueuedJob)
                .where(QueuedJob.id == row.id, QueuedJob.status == "pending")
                .values(status="reserved", attempts=QueuedJob.attempts + 1, reserved_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return None
            db.commit()
            return row.id

    def release_stale(self) -> int:
        """Return jobs reserved by a crashed worker to the queue."""
        with self.session_factory() as db:
            cutoff = self.clock() - self.stale_after
            result = db.execute(
                update(QueuedJob)
                .where(
                    QueuedJob.queue == self.queue,
                    QueuedJob.status == "reserved",
                    QueuedJob.reserved_at < cutoff,
                )
                .values(status="pending", reserved_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount:
                logger.warning("stale_jobs_released", queue=self.queue, count=result.rowcount)
            return result.rowcount

    def run_once(self) -> bool:
        job_id = self.reserve()
        if job_id is None:
            return False
        self.process(job_id)
        return True

    def process(self, job_id: uuid.UUID) -> None:
        with self.session_factory() as db:
            row = db.get(QueuedJob, job_id)
            log = logger.bind(job_id=str(job_id), job=row.job_name, attempt=row.attempts)

            job_cls = self.registry.get(row.job_name)
            if job_cls is None:
                self._mark_failed(db, row, f"Unregistered job: {row.job_name}")
                log.error("job_unregistered")
                return

            try:
                job = job_cls.from_payload(row.payload or {})
            except (KeyError, TypeError, ValueError) as exc:
                error = InvalidJobPayload(f"Invalid payload for {row.job_name}: {exc!r}")
                self._mark_failed(db, row, str(error))
                log.error("job_payload_invalid", error=str(error))
                return

            if row.attempts > row.max_attempts:
                # Reserved again after a crash during its final attempt
                row.attempts = row.max_attempts
                db.commit()
                ctx = self._context(db, row)
                exc = MaxAttemptsExceeded(f"{row.job_name} has been attempted too many times")
                self._handle_failure(db, row, job, ctx, exc, log)
                return

            ctx = self._context(db, row)
            try:
                job.handle(ctx)
            except Exception as exc:
                db.rollback()
                self._handle_failure(db, row, job, ctx, exc, log)
                return

            row.status = "done"
            row.finished_at = self.clock()
            db.commit()
            log.info("job_done")

    def _context(self, db: Session, row: QueuedJob) -> JobContext:
        return JobContext(
            db=db,
            job_id=row.id,
            attempt=row.attempts,
            max_attempts=row.max_attempts,
            gateway=self.gateway,
            now=self.clock(),
        )

    def _mark_failed(self, db: Session, row: QueuedJob, error: str) -> None:
        row.status = "failed"
        row.last_error = error
        row.finished_at = self.clock()
        db.commit()

    def _handle_failure(self, db: Session, row: QueuedJob, job: Job, ctx: JobContext, exc: Exception, log) -> None:
        retryable = not isinstance(exc, NonRetryableJobError)
        if retryable and row.attempts < row.max_attempts:
            delay = backoff_delay(job.backoff, row.attempts)
            row.status = "pending"
            row.reserved_at = None
            row.available_at = self.clock() + timedelta(seconds=delay)
            row.last_error = str(exc)
            db.commit()
            log.warning("job_retry_scheduled", delay_seconds=delay, error=str(exc))
            return

        try:
            job.failed(ctx, exc)
        except Exception:
            db.rollback()
            log.exception("job_failed_hook_error")

        row.status = "failed"
        row.last_error = str(exc)
        row.finished_at = self.clock()
        db.commit()
        log.error("job_failed", error=str(exc), retryable=retryable)

    def work(
        self,
        max_jobs: Optional[int] = None,
        stop_when_empty: bool = False,
        idle_sleep: float = 3.0,
    ) -> int:
        processed = 0
        self.release_stale()
        while max_jobs is None or processed < max_jobs:
            if self.run_once():
                processed += 1
                continue
            if stop_when_empty:
                break
            time.sleep(idle_sleep)
        return processed

    def pending_jobs(self) -> List[QueuedJob]:
        with self.session_factory() as db:
            return (
                db.query(QueuedJob)
                .filter(QueuedJob.queue == self.queue, QueuedJob.status.in_(["pending", "reserved"]))
                .order_by(QueuedJob.available_at)
                .all()
            )
