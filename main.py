"""
Autoreach - Main Entry Point

Usage:
    # Create the database tables:
    python main.py init

    # Run the automation poller and the follow-up runner until SIGINT/SIGTERM:
    python main.py worker

    # Drain queued automation jobs once and exit:
    python main.py process

    # Queue automation for a customer:
    python main.py enqueue <customer_id> [--force]

    # Schedule a follow-up (fixed delay or cron):
    python main.py schedule <customer_id> <context_email_id> <value> <unit>
    python main.py schedule <customer_id> <context_email_id> --cron "0 9 * * MON"

    # Send a scheduled follow-up now:
    python main.py run-task <task_id>

    # Inspect state:
    python main.py tasks [status]
    python main.py jobs [status]

    # Change a runtime setting (automation_required_grade, automation_followup_days,
    # admin_email, automation_enabled):
    python main.py set <key> <value>
"""
import sys
import signal
import logging
import threading
from autoreach.config import DEBUG, SCHEMA_VERSION
from autoreach.models import init_db, SessionLocal, ScheduleRequest, ScheduleMode
from autoreach.errors import AutomationError
from autoreach.settings import get_settings, save_setting
from autoreach.store.automation_jobs import list_jobs
from autoreach.store.scheduled_tasks import list_tasks
from autoreach.app import build_app

# Setup logging - write to stdout
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("autoreach")


def run_worker():
    """Start both loops and block until a shutdown signal arrives."""
    app = build_app()
    shutdown = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}. Shutting down gracefully...")
        shutdown.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    app.start()
    logger.info(f"Autoreach worker started. Schema: {SCHEMA_VERSION}.")
    while not shutdown.is_set():
        shutdown.wait(1)
    app.stop()
    logger.info("Worker shutdown complete.")


def _print_tasks(tasks):
    if not tasks:
        print("No tasks.")
        return
    for t in tasks:
        schedule = t.cron_expression if t.mode == ScheduleMode.CRON.value else f"{t.delay_value} {t.delay_unit}"
        print(
            f"  #{t.id:<6} customer={t.customer_id:<6} {t.status:<10} due={t.due_at:%Y-%m-%d %H:%M} "
            f"{t.mode}({schedule}) attempts={t.attempts}"
            + (f" error={t.last_error}" if t.last_error else "")
        )


def _print_jobs(jobs):
    if not jobs:
        print("No jobs.")
        return
    for j in jobs:
        print(
            f"  #{j.id:<6} customer={j.customer_id:<6} {j.status:<10} stage={j.stage}"
            + (f" error={j.last_error}" if j.last_error else "")
        )


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        return

    command = sys.argv[1].lower()
    args = sys.argv[2:]

    try:
        if command == "init":
            init_db()
            print(f"Database initialized. Schema: {SCHEMA_VERSION}")

        elif command == "worker":
            init_db()
            run_worker()

        elif command == "process":
            app = build_app()
            results = app.poller.drain()
            print(f"Processing complete: {results}")

        elif command == "enqueue":
            if not args:
                print("Usage: python main.py enqueue <customer_id> [--force]")
                return
            with SessionLocal() as db:
                settings = get_settings(db)
            if not settings.automation_enabled and "--force" not in args:
                print("Automation is disabled (automation_enabled=false). Use --force to queue anyway.")
                return
            app = build_app()
            job = app.engine.enqueue(int(args[0]), actor="cli")
            print(f"Queued automation job {job.id} for customer {job.customer_id}")

        elif command == "schedule":
            if len(args) < 4:
                print('Usage: python main.py schedule <customer_id> <context_email_id> (<value> <unit> | --cron "<expr>")')
                return
            if args[2] == "--cron":
                req = ScheduleRequest(
                    customer_id=int(args[0]), context_email_id=int(args[1]),
                    mode=ScheduleMode.CRON.value, cron_expression=args[3],
                )
            else:
                req = ScheduleRequest(
                    customer_id=int(args[0]), context_email_id=int(args[1]),
                    mode=ScheduleMode.SIMPLE.value, delay_value=int(args[2]), delay_unit=args[3],
                )
            app = build_app()
            resp = app.scheduler.schedule(req, actor="cli")
            print(f"Task {resp.task_id} due at {resp.due_at:%Y-%m-%d %H:%M:%S} UTC ({resp.mode})")

        elif command == "run-task":
            if not args:
                print("Usage: python main.py run-task <task_id>")
                return
            app = build_app()
            task = app.scheduler.run_now(int(args[0]), actor="cli")
            print(f"Task {task.id} {task.status} (email {task.generated_email_id})")

        elif command == "tasks":
            with SessionLocal() as db:
                _print_tasks(list_tasks(db, args[0] if args else None))

        elif command == "jobs":
            with SessionLocal() as db:
                _print_jobs(list_jobs(db, args[0] if args else None))

        elif command == "set":
            if len(args) < 2:
                print("Usage: python main.py set <key> <value>")
                return
            with SessionLocal() as db:
                save_setting(db, args[0], args[1])
            print(f"{args[0]} = {args[1]}")

        else:
            print(f"Unknown command: {command}")
            print(__doc__)

    except (AutomationError, KeyError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
