"""
Autoreach - Follow-up Scheduler
Creates follow-up tasks (fixed delay or cron) and delivers them with retry.

Delivery flow for one task:
  claim (scheduled -> running) -> resolve recipients -> draft -> store draft
  -> send -> mark sent. Any failure after the claim re-queues the task with
  backoff (10m, 1h, 6h) until MAX_TASK_ATTEMPTS is exceeded.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from sqlalchemy.exc import SQLAlchemyError
from autoreach.models import (
    ScheduledTask, ScheduleRequest, ScheduleResponse, ScheduleMode, DelayUnit,
    TaskStatus, EmailType, SessionLocal, utcnow,
)
from autoreach.errors import (
    AutomationError, ExternalServiceError, InvalidRequestError,
    NoRecipientEmailsError, NotFoundError, TaskStateChangedError,
)
from autoreach.engine.cron import next_occurrence
from autoreach.integrations.collaborators import EmailComposer, Mailer
from autoreach.settings import get_settings
from autoreach.store.customers import list_contacts, insert_email, mark_email_sent
from autoreach.store.scheduled_tasks import (
    create_task, get_task, get_latest_task, list_tasks, fetch_due_tasks,
    claim_task, reschedule_task, finalize_task,
)
from autoreach.audit import audit_and_commit, gen_request_id
from autoreach.config import (
    MAIL_SEND_TIMEOUT_SECONDS, MAX_TASK_ATTEMPTS, RETRY_BACKOFF_MINUTES,
)

logger = logging.getLogger(__name__)

DEFAULT_DELAY_VALUE = 3

_UNIT_ALIASES = {
    "m": DelayUnit.MINUTES, "min": DelayUnit.MINUTES, "mins": DelayUnit.MINUTES,
    "minute": DelayUnit.MINUTES, "minutes": DelayUnit.MINUTES,
    "h": DelayUnit.HOURS, "hr": DelayUnit.HOURS, "hrs": DelayUnit.HOURS,
    "hour": DelayUnit.HOURS, "hours": DelayUnit.HOURS,
    "d": DelayUnit.DAYS, "day": DelayUnit.DAYS, "days": DelayUnit.DAYS,
}


def normalize_delay_unit(unit: Optional[str]) -> str:
    """minutes, hours or days. Unknown units read as days."""
    return _UNIT_ALIASES.get((unit or "").strip().lower(), DelayUnit.DAYS).value


def normalize_mode(mode: Optional[str]) -> str:
    value = (mode or "").strip().lower()
    if not value:
        return ScheduleMode.SIMPLE.value
    if value not in (ScheduleMode.SIMPLE.value, ScheduleMode.CRON.value):
        raise InvalidRequestError(f"Unknown schedule mode: {mode}")
    return value


def delay_to_timedelta(value: int, unit: str) -> timedelta:
    return timedelta(**{unit: value})


def backoff_delay(attempt: int) -> timedelta:
    """Delay before retry number `attempt` (1-based). Attempts past the ladder reuse its last step."""
    attempt = max(attempt, 1)
    last_step = max(RETRY_BACKOFF_MINUTES)
    return timedelta(minutes=RETRY_BACKOFF_MINUTES[min(attempt, last_step)])


def select_recipient_emails(contacts) -> list[str]:
    """Key contacts first, then the rest; blanks dropped, duplicates removed case-insensitively."""
    key, others = [], []
    for c in contacts:
        email = (c.email or "").strip()
        if not email:
            continue
        if c.is_key:
            key.append(email)
        else:
            others.append(email)

    unique, seen = [], set()
    for email in key + others:
        lower = email.lower()
        if lower not in seen:
            seen.add(lower)
            unique.append(email)
    return unique


def resolve_recipients(contacts, admin_email: Optional[str]) -> list[str]:
    emails = select_recipient_emails(contacts)
    if emails:
        return emails
    admin = (admin_email or "").strip()
    return [admin] if admin else []


class FollowupScheduler:
    """Schedules follow-up emails and runs them with retry and backoff."""

    def __init__(
        self,
        composer: EmailComposer,
        mailer: Mailer,
        session_factory=SessionLocal,
        clock: Callable[[], datetime] = utcnow,
        send_timeout: float = MAIL_SEND_TIMEOUT_SECONDS,
        max_attempts: int = MAX_TASK_ATTEMPTS,
    ):
        self.composer = composer
        self.mailer = mailer
        self.session_factory = session_factory
        self.clock = clock
        self.send_timeout = send_timeout
        self.max_attempts = max_attempts

    # ── Scheduling ───────────────────────────────────────────────

    def schedule(self, req: ScheduleRequest, actor: str = "scheduler") -> ScheduleResponse:
        """Validate, compute the due time, check recipients, persist."""
        if req is None:
            raise InvalidRequestError("schedule request is empty")
        if req.customer_id <= 0 or req.context_email_id <= 0:
            raise InvalidRequestError("customer_id and context_email_id are required")

        now = self.clock()
        mode = normalize_mode(req.mode)
        delay_value, delay_unit, cron_expression = 0, None, None
        if mode == ScheduleMode.CRON.value:
            cron_expression = (req.cron_expression or "").strip()
            due_at = next_occurrence(cron_expression, now)
        else:
            delay_unit = normalize_delay_unit(req.delay_unit)
            delay_value = req.delay_value if req.delay_value > 0 else DEFAULT_DELAY_VALUE
            try:
                due_at = now + delay_to_timedelta(delay_value, delay_unit)
            except OverflowError as e:
                raise InvalidRequestError(f"Delay of {delay_value} {delay_unit} is out of range") from e

        with self.session_factory() as db:
            settings = get_settings(db)
            recipients = resolve_recipients(list_contacts(db, req.customer_id), settings.admin_email)
            # A task nobody can receive would only burn its retries
            if not recipients:
                raise NoRecipientEmailsError(req.customer_id)

            task = create_task(
                db,
                customer_id=req.customer_id,
                context_email_id=req.context_email_id,
                due_at=due_at,
                mode=mode,
                delay_value=delay_value,
                delay_unit=delay_unit,
                cron_expression=cron_expression,
            )
            audit_and_commit(
                db, "task_scheduled", customer_id=req.customer_id, task_id=task.id, actor=actor,
                payload={"mode": mode, "due_at": due_at.isoformat(), "delay_value": delay_value,
                         "delay_unit": delay_unit, "cron_expression": cron_expression},
            )

        logger.info(f"Follow-up task {task.id} scheduled for customer {req.customer_id} at {due_at.isoformat()} ({mode})")
        return ScheduleResponse(
            task_id=task.id,
            due_at=due_at,
            mode=mode,
            delay_value=delay_value,
            delay_unit=delay_unit,
            cron_expression=cron_expression,
        )

    # ── Execution ────────────────────────────────────────────────

    def run_now(self, task_id: int, actor: str = "scheduler") -> ScheduledTask:
        """Claim and deliver one task. Returns the finalized task."""
        with self.session_factory() as db:
            task = get_task(db, task_id)
            if not task:
                raise NotFoundError("scheduled task", task_id)
            if not claim_task(db, task_id):
                current = get_task(db, task_id)
                raise TaskStateChangedError(task_id, current.status if current else None)

        request_id = gen_request_id()
        phase = "recipients"
        generated_email_id = None
        try:
            with self.session_factory() as db:
                settings = get_settings(db)
                contacts = list_contacts(db, task.customer_id)
            recipients = resolve_recipients(contacts, settings.admin_email)
            if not recipients:
                raise NoRecipientEmailsError(task.customer_id)

            phase = "draft"
            draft = self.composer.draft_followup(task.customer_id, task.context_email_id)
            with self.session_factory() as db:
                email = insert_email(db, task.customer_id, EmailType.FOLLOWUP.value, draft.subject, draft.body)
            generated_email_id = email.id

            phase = "send"
            message_id = self.mailer.send(recipients, draft.subject, draft.body, timeout=self.send_timeout)
            with self.session_factory() as db:
                mark_email_sent(db, generated_email_id, message_id, sent_at=self.clock())
        except Exception as e:
            message = str(e) or e.__class__.__name__
            self._reschedule(task, phase, message, generated_email_id, request_id, actor)
            if isinstance(e, AutomationError):
                raise
            raise ExternalServiceError(phase, message, task_id=task.id) from e

        with self.session_factory() as db:
            sent = finalize_task(db, task.id, TaskStatus.SENT.value, generated_email_id=generated_email_id)
            audit_and_commit(
                db, "task_sent", customer_id=task.customer_id, task_id=task.id, actor=actor,
                request_id=request_id,
                payload={"email_id": generated_email_id, "message_id": message_id, "recipients": recipients},
            )
        logger.info(f"Follow-up task {task.id} sent to {', '.join(recipients)} (email {generated_email_id})")

        if task.mode == ScheduleMode.CRON.value:
            self._schedule_next_occurrence(task, generated_email_id, request_id)
        return sent

    def _reschedule(
        self,
        task: ScheduledTask,
        phase: str,
        message: str,
        generated_email_id: Optional[int],
        request_id: str,
        actor: str,
    ) -> None:
        next_attempt = (task.attempts or 0) + 1
        error = f"[{phase}] {message}"
        with self.session_factory() as db:
            if next_attempt > self.max_attempts:
                finalize_task(db, task.id, TaskStatus.FAILED.value,
                              generated_email_id=generated_email_id, error=error)
                audit_and_commit(
                    db, "task_failed", customer_id=task.customer_id, task_id=task.id, actor=actor,
                    request_id=request_id, payload={"phase": phase, "error": message, "attempts": task.attempts},
                )
                logger.error(f"Follow-up task {task.id} failed permanently after {task.attempts} retries: {error}")
                return

            due_at = self.clock() + backoff_delay(next_attempt)
            reschedule_task(db, task.id, due_at, next_attempt, error, generated_email_id=generated_email_id)
            audit_and_commit(
                db, "task_retry_scheduled", customer_id=task.customer_id, task_id=task.id, actor=actor,
                request_id=request_id,
                payload={"phase": phase, "error": message, "attempt": next_attempt, "due_at": due_at.isoformat()},
            )
        logger.warning(f"Follow-up task {task.id} attempt {next_attempt} retry at {due_at.isoformat()}: {error}")

    def _schedule_next_occurrence(self, task: ScheduledTask, generated_email_id: Optional[int], request_id: str) -> None:
        """Cron tasks chain: the next occurrence becomes a new row. Errors are logged only."""
        try:
            due_at = next_occurrence(task.cron_expression, self.clock())
            with self.session_factory() as db:
                nxt = create_task(
                    db,
                    customer_id=task.customer_id,
                    context_email_id=generated_email_id or task.context_email_id,
                    due_at=due_at,
                    mode=ScheduleMode.CRON.value,
                    cron_expression=task.cron_expression,
                )
                audit_and_commit(
                    db, "task_chained", customer_id=task.customer_id, task_id=nxt.id,
                    actor="scheduler", request_id=request_id,
                    payload={"previous_task_id": task.id, "due_at": due_at.isoformat()},
                )
            logger.info(f"Cron task {task.id} chained to task {nxt.id} at {due_at.isoformat()}")
        except (AutomationError, SQLAlchemyError) as e:
            logger.error(f"Could not schedule next occurrence of cron task {task.id}: {e}")

    # ── Queries ──────────────────────────────────────────────────

    def fetch_due_tasks(self, limit: int) -> list[ScheduledTask]:
        with self.session_factory() as db:
            return fetch_due_tasks(db, self.clock(), limit)

    def list_tasks(self, status: Optional[str] = None) -> list[ScheduledTask]:
        with self.session_factory() as db:
            return list_tasks(db, status)

    def get_latest_task(self, customer_id: int) -> Optional[ScheduledTask]:
        with self.session_factory() as db:
            return get_latest_task(db, customer_id)
