"""
Autoreach - Automation Job Store
Persistence for per-customer automation jobs, including the atomic claim.
"""
import logging
from typing import Optional
from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from autoreach.models import (
    AutomationJob, JobStatus, AutomationStage, ACTIVE_JOB_STATUSES, utcnow,
)
from autoreach.errors import AutomationJobExistsError, InvalidRequestError, NotFoundError

logger = logging.getLogger(__name__)


def create_job(db: Session, customer_id: int) -> AutomationJob:
    """Insert a queued job at stage pending."""
    if not customer_id or customer_id <= 0:
        raise InvalidRequestError("invalid customer id")
    job = AutomationJob(
        customer_id=customer_id,
        status=JobStatus.QUEUED.value,
        stage=AutomationStage.PENDING.value,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        # Partial unique index: another active job won the insert
        existing = get_active_job(db, customer_id)
        if existing is None:
            raise
        raise AutomationJobExistsError(customer_id, existing) from e
    logger.info(f"Automation job {job.id} queued for customer {customer_id}")
    return job


def get_job(db: Session, job_id: int) -> Optional[AutomationJob]:
    return db.query(AutomationJob).filter(AutomationJob.id == job_id).first()


def get_latest_job(db: Session, customer_id: int) -> Optional[AutomationJob]:
    return (
        db.query(AutomationJob)
        .filter(AutomationJob.customer_id == customer_id)
        .order_by(AutomationJob.id.desc())
        .first()
    )


def get_active_job(db: Session, customer_id: int) -> Optional[AutomationJob]:
    """Latest queued or running job for a customer."""
    return (
        db.query(AutomationJob)
        .filter(
            AutomationJob.customer_id == customer_id,
            AutomationJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(AutomationJob.id.desc())
        .first()
    )


def list_jobs(db: Session, status: Optional[str] = None) -> list[AutomationJob]:
    q = db.query(AutomationJob)
    if status:
        q = q.filter(AutomationJob.status == status)
    return q.order_by(AutomationJob.id.asc()).all()


def claim_next_job(db: Session) -> Optional[AutomationJob]:
    """
    Move the oldest queued job to running, stage grading.

    The update is guarded by status = 'queued' and its affected row count
    decides the claim, so concurrent callers get disjoint jobs or None.
    """
    candidate_id = (
        db.query(AutomationJob.id)
        .filter(AutomationJob.status == JobStatus.QUEUED.value)
        .order_by(AutomationJob.id.asc())
        .limit(1)
        .scalar()
    )
    if candidate_id is None:
        db.rollback()
        return None

    now = utcnow()
    claimed = (
        db.query(AutomationJob)
        .filter(
            AutomationJob.id == candidate_id,
            AutomationJob.status == JobStatus.QUEUED.value,
        )
        .update(
            {
                AutomationJob.status: JobStatus.RUNNING.value,
                AutomationJob.stage: case(
                    (AutomationJob.stage == AutomationStage.PENDING.value, AutomationStage.GRADING.value),
                    else_=AutomationJob.stage,
                ),
                AutomationJob.started_at: func.coalesce(AutomationJob.started_at, now),
                AutomationJob.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if claimed == 0:
        db.rollback()
        logger.debug(f"Job {candidate_id} claimed by another worker")
        return None
    db.commit()
    return get_job(db, candidate_id)


def _require_job(db: Session, job_id: int) -> AutomationJob:
    job = get_job(db, job_id)
    if not job:
        raise NotFoundError("automation job", job_id)
    return job


def update_job_stage(db: Session, job_id: int, stage: str) -> AutomationJob:
    job = _require_job(db, job_id)
    job.stage = (stage or "").strip() or AutomationStage.PENDING.value
    job.updated_at = utcnow()
    db.commit()
    return job


def mark_job_completed(db: Session, job_id: int, stage: str = AutomationStage.COMPLETED.value) -> AutomationJob:
    job = _require_job(db, job_id)
    now = utcnow()
    job.status = JobStatus.COMPLETED.value
    job.stage = (stage or "").strip() or AutomationStage.COMPLETED.value
    job.finished_at = job.finished_at or now
    job.updated_at = now
    db.commit()
    return job


def mark_job_stopped(db: Session, job_id: int, reason: str) -> AutomationJob:
    """Terminal, not an error: recorded as completed at stage stopped."""
    job = _require_job(db, job_id)
    now = utcnow()
    job.status = JobStatus.COMPLETED.value
    job.stage = AutomationStage.STOPPED.value
    job.last_error = (reason or "").strip()
    job.finished_at = job.finished_at or now
    job.updated_at = now
    db.commit()
    return job


def mark_job_failed(db: Session, job_id: int, stage: str, error: str) -> AutomationJob:
    job = _require_job(db, job_id)
    now = utcnow()
    job.status = JobStatus.FAILED.value
    job.stage = (stage or "").strip() or AutomationStage.PENDING.value
    job.last_error = (error or "").strip()
    job.finished_at = job.finished_at or now
    job.updated_at = now
    db.commit()
    return job


def delete_job(db: Session, job_id: int) -> None:
    if not job_id or job_id <= 0:
        return
    db.query(AutomationJob).filter(AutomationJob.id == job_id).delete(synchronize_session=False)
    db.commit()
