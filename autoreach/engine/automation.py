"""
Autoreach - Automation Engine
Drives one customer at a time through the outreach pipeline:

  GRADING → ANALYSIS → EMAIL → FOLLOWUP → COMPLETED

A job whose grade misses the threshold, or whose follow-up has nobody to
go to, is stopped and removed. A job that fails keeps its row with the
stage and error for inspection. Finished jobs are deleted.
"""
import logging
from typing import Callable, Optional
from sqlalchemy.exc import SQLAlchemyError
from autoreach.models import (
    AutomationJob, AutomationStage, AutomationSettings, ScheduleRequest,
    ScheduleMode, DelayUnit, SessionLocal,
)
from autoreach.errors import (
    ExternalServiceError, InvalidRequestError, JobFailedError,
    NoRecipientEmailsError, AutomationJobExistsError,
)
from autoreach.integrations.collaborators import Grader, Analyst, EmailComposer
from autoreach.engine.followup_scheduler import FollowupScheduler
from autoreach.settings import get_settings, normalize_suggested_grade
from autoreach.store.automation_jobs import (
    create_job, get_active_job, get_latest_job, list_jobs, claim_next_job,
    update_job_stage, mark_job_completed, mark_job_stopped, mark_job_failed,
    delete_job,
)
from autoreach.store.customers import get_latest_followup_id, save_initial_followup
from autoreach.store.scheduled_tasks import get_latest_task
from autoreach.audit import audit_and_commit, gen_request_id

logger = logging.getLogger(__name__)

NO_ADMIN_EMAIL_MESSAGE = (
    "No admin email configured; automatic follow-up skipped. "
    "Set an admin email in settings and enqueue the customer again."
)


class AutomationEngine:
    """Queue and run per-customer automation jobs."""

    def __init__(
        self,
        grader: Grader,
        analyst: Analyst,
        composer: EmailComposer,
        scheduler: FollowupScheduler,
        session_factory=SessionLocal,
        on_enqueued: Optional[Callable[[], None]] = None,
    ):
        self.grader = grader
        self.analyst = analyst
        self.composer = composer
        self.scheduler = scheduler
        self.session_factory = session_factory
        self.on_enqueued = on_enqueued

    # ── Entry points ─────────────────────────────────────────────

    def enqueue(self, customer_id: int, actor: str = "engine") -> AutomationJob:
        """Queue a job for the customer unless one is already queued or running."""
        if not customer_id or customer_id <= 0:
            raise InvalidRequestError("invalid customer id")

        with self.session_factory() as db:
            existing = get_active_job(db, customer_id)
            if existing:
                raise AutomationJobExistsError(customer_id, existing)
            job = create_job(db, customer_id)
            audit_and_commit(db, "job_enqueued", customer_id=customer_id, job_id=job.id, actor=actor)

        if self.on_enqueued:
            self.on_enqueued()
        return job

    def process_next(self) -> bool:
        """
        Claim the oldest queued job and run it to the end.

        Returns False when there was nothing to claim. A claimed job that
        fails raises JobFailedError; claim errors propagate as they are.
        """
        with self.session_factory() as db:
            job = claim_next_job(db)
            if job is None:
                return False
            audit_and_commit(db, "job_claimed", customer_id=job.customer_id, job_id=job.id, actor="engine")

        logger.info(f"[automation] job={job.id} customer={job.customer_id} claimed")
        self._run_job(job)
        return True

    # ── Pipeline ─────────────────────────────────────────────────

    def _run_job(self, job: AutomationJob) -> None:
        request_id = gen_request_id()
        customer_id = job.customer_id
        stage = AutomationStage.PENDING.value
        try:
            with self.session_factory() as db:
                settings = get_settings(db)

            # ── Grading ──
            stage = AutomationStage.GRADING.value
            self._set_stage(job, stage)
            suggestion = self._call(job, stage, request_id, self.grader.suggest, customer_id)
            grade = normalize_suggested_grade(getattr(suggestion, "suggested_grade", ""))
            reason = (getattr(suggestion, "reason", "") or "").strip()
            self._call(job, stage, request_id, self.grader.confirm, customer_id, grade, reason)
            logger.info(f"[automation] job={job.id} graded {grade} (required {settings.required_grade})")

            if grade != settings.required_grade:
                self._stop(
                    job,
                    f"Grade {grade} does not meet the automation threshold {settings.required_grade}; automation ended",
                    request_id,
                )
                return

            # ── Analysis ──
            stage = AutomationStage.ANALYSIS.value
            self._set_stage(job, stage)
            self._call(job, stage, request_id, self.analyst.generate, customer_id)

            # ── Initial email ──
            stage = AutomationStage.EMAIL.value
            self._set_stage(job, stage)
            result = self._call(job, stage, request_id, self.composer.draft_initial, customer_id)
            email_id = getattr(result, "email_id", 0) if result is not None else 0
            if not email_id:
                raise self._fail(job, stage, "Initial email draft returned no email id", request_id)

            # ── Follow-up ──
            stage = AutomationStage.FOLLOWUP.value
            self._set_stage(job, stage)
            if not self._ensure_followup(job, email_id, settings, request_id):
                return

            stage = AutomationStage.COMPLETED.value
            self._complete(job, request_id)
        except JobFailedError:
            raise
        except Exception as e:
            # Store errors between collaborator calls
            raise self._fail(job, stage, str(e) or e.__class__.__name__, request_id) from e

    def _ensure_followup(
        self,
        job: AutomationJob,
        email_id: int,
        settings: AutomationSettings,
        request_id: str,
    ) -> bool:
        """First follow-up record and task, each only if missing. False when the job was stopped."""
        customer_id = job.customer_id

        try:
            with self.session_factory() as db:
                followup_id = get_latest_followup_id(db, customer_id)
        except SQLAlchemyError as e:
            logger.warning(f"[automation] job={job.id} follow-up lookup failed: {e}")
            followup_id = None
        if not followup_id:
            with self.session_factory() as db:
                save_initial_followup(db, customer_id, email_id, notes="Created by automation")

        try:
            with self.session_factory() as db:
                existing_task = get_latest_task(db, customer_id)
        except SQLAlchemyError as e:
            logger.warning(f"[automation] job={job.id} task lookup failed: {e}")
            existing_task = None
        if existing_task is not None:
            logger.info(f"[automation] job={job.id} customer already has task {existing_task.id}")
            return True

        req = ScheduleRequest(
            customer_id=customer_id,
            context_email_id=email_id,
            mode=ScheduleMode.SIMPLE.value,
            delay_value=settings.followup_days if settings.followup_days > 0 else 3,
            delay_unit=DelayUnit.DAYS.value,
        )
        try:
            self.scheduler.schedule(req, actor="engine")
        except NoRecipientEmailsError:
            self._stop(job, NO_ADMIN_EMAIL_MESSAGE, request_id)
            return False
        except Exception as e:
            raise self._fail(job, AutomationStage.FOLLOWUP.value, str(e) or e.__class__.__name__, request_id) from e
        return True

    def _call(self, job: AutomationJob, stage: str, request_id: str, fn, *args):
        """Run a collaborator; any error fails the job at `stage`."""
        try:
            return fn(*args)
        except Exception as e:
            failure = ExternalServiceError(stage, str(e) or e.__class__.__name__, job_id=job.id)
            failure.__cause__ = e
            raise self._fail(job, stage, failure.message, request_id) from failure

    # ── Transitions ──────────────────────────────────────────────

    def _set_stage(self, job: AutomationJob, stage: str) -> None:
        with self.session_factory() as db:
            update_job_stage(db, job.id, stage)
        logger.info(f"[automation] job={job.id} stage={stage}")

    def _fail(self, job: AutomationJob, stage: str, message: str, request_id: str) -> JobFailedError:
        """Record the failure on the row and hand back the error to raise."""
        try:
            with self.session_factory() as db:
                mark_job_failed(db, job.id, stage, message)
                audit_and_commit(
                    db, "job_failed", customer_id=job.customer_id, job_id=job.id, actor="engine",
                    request_id=request_id, payload={"stage": stage, "error": message},
                )
        except SQLAlchemyError as e:
            logger.error(f"[automation] job={job.id} could not record failure: {e}")
        logger.error(f"[automation] job={job.id} failed at stage={stage}: {message}")
        return JobFailedError(job.id, stage, message)

    def _stop(self, job: AutomationJob, reason: str, request_id: str) -> None:
        with self.session_factory() as db:
            mark_job_stopped(db, job.id, reason)
            audit_and_commit(
                db, "job_stopped", customer_id=job.customer_id, job_id=job.id, actor="engine",
                request_id=request_id, payload={"reason": reason},
            )
            delete_job(db, job.id)
        logger.info(f"[automation] job={job.id} stopped: {reason}")

    def _complete(self, job: AutomationJob, request_id: str) -> None:
        with self.session_factory() as db:
            mark_job_completed(db, job.id)
            audit_and_commit(
                db, "job_completed", customer_id=job.customer_id, job_id=job.id, actor="engine",
                request_id=request_id,
            )
            delete_job(db, job.id)
        logger.info(f"[automation] job={job.id} customer={job.customer_id} completed")

    # ── Queries ──────────────────────────────────────────────────

    def get_latest_job(self, customer_id: int) -> Optional[AutomationJob]:
        with self.session_factory() as db:
            return get_latest_job(db, customer_id)

    def list_jobs(self, status: Optional[str] = None) -> list[AutomationJob]:
        with self.session_factory() as db:
            return list_jobs(db, status)
