"""
Autoreach - Background Loops
Two poll-based loops run next to the host application:

  AutomationPoller: drains queued automation jobs (default every 3s, or on wake)
  TaskRunner:       runs follow-up tasks that have come due (default every 60s)

Each loop owns a daemon thread; stop() lets the current item finish.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional
from autoreach.errors import JobFailedError
from autoreach.engine.automation import AutomationEngine
from autoreach.engine.followup_scheduler import FollowupScheduler
from autoreach.config import (
    AUTOMATION_POLL_SECONDS, FOLLOWUP_POLL_SECONDS, FOLLOWUP_BATCH_SIZE,
)

logger = logging.getLogger(__name__)


class PollingLoop(ABC):
    """Fixed-interval loop on a daemon thread. Subclasses implement drain()."""

    name = "poller"
    drain_on_start = True

    def __init__(self, interval: float):
        self.interval = interval
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._wake_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"{self.name} started. Polling every {self.interval}s.")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info(f"{self.name} stopped.")

    def wake(self) -> None:
        """Run a pass now instead of waiting for the next tick."""
        self._wake_event.set()

    @abstractmethod
    def drain(self) -> dict:
        """One pass over the pending work. Returns counters for the log."""
        ...

    def _loop(self) -> None:
        if self.drain_on_start:
            self._run_pass()
        while not self._stop_event.is_set():
            self._wake_event.wait(self.interval)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            self._run_pass()

    def _run_pass(self) -> None:
        try:
            results = self.drain()
            if any(results.values()):
                logger.info(f"{self.name} pass: {results}")
            else:
                logger.debug(f"{self.name}: nothing to do")
        except Exception as e:
            logger.error(f"{self.name} error: {e}", exc_info=True)


class AutomationPoller(PollingLoop):
    name = "automation-poller"
    drain_on_start = True

    def __init__(self, engine: AutomationEngine, interval: float = AUTOMATION_POLL_SECONDS):
        super().__init__(interval)
        self.engine = engine

    def drain(self) -> dict:
        """Process jobs until the queue is empty or a claim fails."""
        results = {"processed": 0, "failed": 0}
        while not self._stop_event.is_set():
            try:
                processed = self.engine.process_next()
            except JobFailedError as e:
                logger.error(f"[automation] {e}")
                results["failed"] += 1
                continue
            except Exception as e:
                logger.error(f"[automation] claim failed: {e}", exc_info=True)
                break
            if not processed:
                break
            results["processed"] += 1
        return results


class TaskRunner(PollingLoop):
    name = "followup-runner"
    drain_on_start = False

    def __init__(
        self,
        scheduler: FollowupScheduler,
        interval: float = FOLLOWUP_POLL_SECONDS,
        batch_size: int = FOLLOWUP_BATCH_SIZE,
    ):
        super().__init__(interval)
        self.scheduler = scheduler
        self.batch_size = batch_size

    def drain(self) -> dict:
        """Run due tasks batch by batch; each task is tried at most once per pass."""
        results = {"sent": 0, "errors": 0}
        seen: set[int] = set()
        while not self._stop_event.is_set():
            try:
                tasks = self.scheduler.fetch_due_tasks(self.batch_size)
            except Exception as e:
                logger.error(f"[followup] fetch due tasks failed: {e}", exc_info=True)
                break

            fresh = [t for t in tasks if t.id not in seen]
            if not fresh:
                break
            for task in fresh:
                seen.add(task.id)
                try:
                    self.scheduler.run_now(task.id, actor="runner")
                    results["sent"] += 1
                except Exception as e:
                    logger.error(f"[followup] task {task.id} failed: {e}")
                    results["errors"] += 1
        return results
