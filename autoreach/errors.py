"""
Autoreach - Errors
Every failure the automation engine and follow-up scheduler report to callers.
"""
from typing import Optional


class AutomationError(Exception):
    """Base class for expected automation failures."""


# ── Validation ───────────────────────────────────────────────────

class InvalidRequestError(AutomationError):
    """Missing or malformed scheduling parameters."""


class NoRecipientEmailsError(InvalidRequestError):
    """Customer has no contact email and no admin email is configured."""

    def __init__(self, customer_id: int):
        self.customer_id = customer_id
        super().__init__(
            f"Customer {customer_id} has no contact email and no admin email is configured"
        )


# ── Conflicts ────────────────────────────────────────────────────

class ConflictError(AutomationError):
    """State changed underneath the caller."""


class AutomationJobExistsError(ConflictError):
    """A queued or running job already exists for the customer."""

    def __init__(self, customer_id: int, job=None):
        self.customer_id = customer_id
        self.job = job
        super().__init__(f"Automation job already in progress for customer {customer_id}")


class TaskStateChangedError(ConflictError):
    """Compare-and-swap on a scheduled task found it no longer scheduled."""

    def __init__(self, task_id: int, status: Optional[str] = None):
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} is no longer scheduled (status={status})")


# ── Not found ────────────────────────────────────────────────────

class NotFoundError(AutomationError):
    def __init__(self, kind: str, item_id: int):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} {item_id} not found")


# ── Collaborators ────────────────────────────────────────────────

class ExternalServiceError(AutomationError):
    """A collaborator failed. `stage` names the job stage or task phase."""

    def __init__(self, stage: str, message: str, job_id: Optional[int] = None, task_id: Optional[int] = None):
        self.stage = stage
        self.message = message
        self.job_id = job_id
        self.task_id = task_id
        super().__init__(f"[{stage}] {message}")


class JobFailedError(AutomationError):
    """A claimed automation job failed; the row keeps the stage and error."""

    def __init__(self, job_id: int, stage: str, message: str):
        self.job_id = job_id
        self.stage = stage
        self.message = message
        super().__init__(f"Automation job {job_id} failed at stage {stage}: {message}")
