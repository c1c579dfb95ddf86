"""
Autoreach - Scheduled Task Store
Persistence for follow-up tasks: create, claim (compare-and-swap), reschedule, finalize.
"""
import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
from autoreach.models import ScheduledTask, TaskStatus, ScheduleMode, utcnow
from autoreach.errors import InvalidRequestError, NotFoundError

logger = logging.getLogger(__name__)


def create_task(
    db: Session,
    customer_id: int,
    context_email_id: int,
    due_at: datetime,
    mode: str = ScheduleMode.SIMPLE.value,
    delay_value: int = 0,
    delay_unit: Optional[str] = None,
    cron_expression: Optional[str] = None,
) -> ScheduledTask:
    """Insert a scheduled follow-up task."""
    if not customer_id or customer_id <= 0 or not context_email_id or context_email_id <= 0:
        raise InvalidRequestError("invalid scheduling references")
    if due_at is None:
        raise InvalidRequestError("due time is required")

    task = ScheduledTask(
        customer_id=customer_id,
        context_email_id=context_email_id,
        due_at=due_at,
        status=TaskStatus.SCHEDULED.value,
        mode=(mode or "").strip() or ScheduleMode.SIMPLE.value,
        delay_value=delay_value or 0,
        delay_unit=(delay_unit or "").strip() or None,
        cron_expression=(cron_expression or "").strip() or None,
        attempts=0,
    )
    db.add(task)
    db.commit()
    return task


def get_task(db: Session, task_id: int) -> Optional[ScheduledTask]:
    return db.query(ScheduledTask).filter(ScheduledTask.id == task_id).first()


def get_latest_task(db: Session, customer_id: int) -> Optional[ScheduledTask]:
    """Most recently updated task for a customer, whatever its status."""
    return (
        db.query(ScheduledTask)
        .filter(ScheduledTask.customer_id == customer_id)
        .order_by(ScheduledTask.updated_at.desc(), ScheduledTask.id.desc())
        .first()
    )


def list_tasks(db: Session, status: Optional[str] = None) -> list[ScheduledTask]:
    q = db.query(ScheduledTask)
    if status:
        q = q.filter(ScheduledTask.status == status)
    return q.order_by(ScheduledTask.due_at.asc(), ScheduledTask.id.asc()).all()


def fetch_due_tasks(db: Session, now: datetime, limit: int = 10) -> list[ScheduledTask]:
    """Scheduled tasks whose due time has passed, oldest due first."""
    if limit <= 0:
        limit = 10
    return (
        db.query(ScheduledTask)
        .filter(
            ScheduledTask.status == TaskStatus.SCHEDULED.value,
            ScheduledTask.due_at <= now,
        )
        .order_by(ScheduledTask.due_at.asc(), ScheduledTask.id.asc())
        .limit(limit)
        .all()
    )


def claim_task(db: Session, task_id: int) -> bool:
    """scheduled -> running. False when another caller got there first."""
    claimed = (
        db.query(ScheduledTask)
        .filter(
            ScheduledTask.id == task_id,
            ScheduledTask.status == TaskStatus.SCHEDULED.value,
        )
        .update(
            {
                ScheduledTask.status: TaskStatus.RUNNING.value,
                ScheduledTask.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    if claimed == 0:
        db.rollback()
        return False
    db.commit()
    return True


def _require_task(db: Session, task_id: int) -> ScheduledTask:
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError("scheduled task", task_id)
    return task


def reschedule_task(
    db: Session,
    task_id: int,
    due_at: datetime,
    attempts: int,
    error: str,
    generated_email_id: Optional[int] = None,
) -> ScheduledTask:
    """Put a failed task back in the queue for a later attempt."""
    task = _require_task(db, task_id)
    task.status = TaskStatus.SCHEDULED.value
    task.due_at = due_at
    task.attempts = attempts
    task.last_error = error
    if generated_email_id:
        task.generated_email_id = generated_email_id
    task.updated_at = utcnow()
    db.commit()
    return task


def finalize_task(
    db: Session,
    task_id: int,
    status: str,
    generated_email_id: Optional[int] = None,
    error: Optional[str] = None,
) -> ScheduledTask:
    """Terminal transition: sent or failed."""
    task = _require_task(db, task_id)
    task.status = status
    if generated_email_id:
        task.generated_email_id = generated_email_id
    task.last_error = error or None
    task.updated_at = utcnow()
    db.commit()
    return task
