"""
Autoreach - Application
Composition root: builds the scheduler, the engine and both loops, and
owns their lifecycle.
"""
import importlib
import logging
from datetime import datetime
from typing import Callable, Optional
from autoreach.models import SessionLocal, utcnow
from autoreach.integrations.collaborators import Grader, Analyst, EmailComposer, Mailer
from autoreach.integrations.smtp_mailer import SmtpMailer
from autoreach.engine.automation import AutomationEngine
from autoreach.engine.followup_scheduler import FollowupScheduler
from autoreach.worker import AutomationPoller, TaskRunner
from autoreach.config import (
    COLLABORATOR_FACTORY, AUTOMATION_POLL_SECONDS, FOLLOWUP_POLL_SECONDS,
    FOLLOWUP_BATCH_SIZE,
)

logger = logging.getLogger(__name__)


class AutomationApp:
    """Services plus the two background loops, started and stopped together."""

    def __init__(
        self,
        grader: Grader,
        analyst: Analyst,
        composer: EmailComposer,
        mailer: Mailer,
        session_factory=SessionLocal,
        clock: Callable[[], datetime] = utcnow,
        automation_interval: float = AUTOMATION_POLL_SECONDS,
        followup_interval: float = FOLLOWUP_POLL_SECONDS,
        batch_size: int = FOLLOWUP_BATCH_SIZE,
    ):
        self.scheduler = FollowupScheduler(composer, mailer, session_factory=session_factory, clock=clock)
        self.engine = AutomationEngine(
            grader, analyst, composer, self.scheduler,
            session_factory=session_factory,
            on_enqueued=self._wake_poller,
        )
        self.poller = AutomationPoller(self.engine, interval=automation_interval)
        self.runner = TaskRunner(self.scheduler, interval=followup_interval, batch_size=batch_size)

    def _wake_poller(self) -> None:
        self.poller.wake()

    def start(self) -> None:
        self.poller.start()
        self.runner.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.poller.stop(timeout)
        self.runner.stop(timeout)


def load_collaborators(path: str = COLLABORATOR_FACTORY) -> dict:
    """
    Call the "package.module:factory" named by COLLABORATOR_FACTORY.

    The factory returns a dict with grader, analyst and composer, and
    optionally mailer (SMTP is used when it is absent).
    """
    if not path or ":" not in path:
        raise RuntimeError("COLLABORATOR_FACTORY must be set to 'package.module:factory'")
    module_path, attr = path.split(":", 1)
    module = importlib.import_module(module_path)
    factory = getattr(module, attr)
    collaborators = dict(factory())

    missing = [k for k in ("grader", "analyst", "composer") if not collaborators.get(k)]
    if missing:
        raise RuntimeError(f"Collaborator factory {path} did not provide: {', '.join(missing)}")
    collaborators.setdefault("mailer", None)
    if collaborators["mailer"] is None:
        collaborators["mailer"] = SmtpMailer()
    logger.info(f"Collaborators loaded from {path}")
    return collaborators


def build_app(session_factory=SessionLocal, path: str = COLLABORATOR_FACTORY) -> AutomationApp:
    c = load_collaborators(path)
    return AutomationApp(c["grader"], c["analyst"], c["composer"], c["mailer"], session_factory=session_factory)
