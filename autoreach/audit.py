"""
Autoreach - Audit Logging
Durable trail for every automation job and scheduled task state change.
"""
import uuid
import logging
from typing import Optional
from sqlalchemy.orm import Session
from autoreach.models import AuditLog

logger = logging.getLogger(__name__)


def gen_request_id() -> str:
    """Generate a unique request ID for tracing one job or task run."""
    return f"req-{uuid.uuid4().hex[:12]}"


def audit(
    db: Session,
    event: str,
    customer_id: Optional[int] = None,
    job_id: Optional[int] = None,
    task_id: Optional[int] = None,
    actor: str = "system",
    request_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> AuditLog:
    """
    Write an audit log entry.

    Events follow this convention:
      job_enqueued, job_claimed, job_stage, job_failed, job_stopped,
      job_completed, task_scheduled, task_sent, task_retry_scheduled,
      task_failed, task_chained
    """
    entry = AuditLog(
        request_id=request_id or gen_request_id(),
        event=event,
        customer_id=customer_id,
        job_id=job_id,
        task_id=task_id,
        actor=actor,
        payload=payload or {},
    )
    db.add(entry)
    # Caller controls the transaction
    logger.debug(f"AUDIT [{event}] customer={customer_id} job={job_id} task={task_id} actor={actor}")
    return entry


def audit_and_commit(
    db: Session,
    event: str,
    **kwargs,
) -> AuditLog:
    """Write audit entry and commit immediately."""
    entry = audit(db, event, **kwargs)
    db.commit()
    return entry
