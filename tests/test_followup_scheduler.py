"""Tests for FollowupScheduler: scheduling, delivery, retry and cron chaining."""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import SQLAlchemyError

from autoreach.config import MAIL_SEND_TIMEOUT_SECONDS
from autoreach.engine.followup_scheduler import (
    FollowupScheduler, backoff_delay, normalize_delay_unit, select_recipient_emails, resolve_recipients,
)
from autoreach.errors import (
    ExternalServiceError, InvalidRequestError, NoRecipientEmailsError,
    NotFoundError, TaskStateChangedError,
)
from autoreach.models import Contact, Email, ScheduledTask, ScheduleRequest, TaskStatus, EmailStatus
from autoreach.store.customers import get_email
from autoreach.store.scheduled_tasks import get_task
from fakes import FakeComposer, FakeMailer


@pytest.fixture
def refs(make_customer, make_email):
    customer = make_customer()
    email = make_email(customer.id)
    return customer.id, email.id


def _simple(customer_id, email_id, value=3, unit="days"):
    return ScheduleRequest(customer_id=customer_id, context_email_id=email_id,
                           mode="simple", delay_value=value, delay_unit=unit)


def _cron(customer_id, email_id, expression):
    return ScheduleRequest(customer_id=customer_id, context_email_id=email_id,
                           mode="cron", cron_expression=expression)


def _task(session_factory, task_id):
    with session_factory() as db:
        return get_task(db, task_id)


class TestSchedule:

    def test_simple_delay_in_days(self, scheduler, clock, refs):
        resp = scheduler.schedule(_simple(*refs, value=3, unit="days"))

        assert resp.due_at == clock.now + timedelta(hours=72)
        assert resp.mode == "simple"
        assert resp.delay_value == 3
        assert resp.delay_unit == "days"
        assert resp.cron_expression is None

    def test_unit_aliases_and_default_value(self, scheduler, clock, refs):
        hours = scheduler.schedule(_simple(*refs, value=2, unit="h"))
        defaulted = scheduler.schedule(_simple(*refs, value=0, unit="minute"))

        assert hours.due_at == clock.now + timedelta(hours=2)
        assert defaulted.delay_value == 3
        assert defaulted.due_at == clock.now + timedelta(minutes=3)

    @pytest.mark.parametrize("unit,expected", [
        ("m", "minutes"), ("MIN", "minutes"), ("hour", "hours"),
        ("d", "days"), ("weeks", "days"), ("", "days"),
    ])
    def test_normalize_delay_unit(self, unit, expected):
        assert normalize_delay_unit(unit) == expected

    def test_cron_next_monday_nine(self, scheduler, refs):
        # Monday 10:00, so this week's 09:00 has passed
        resp = scheduler.schedule(_cron(*refs, "0 9 * * MON"))

        assert resp.due_at == datetime(2026, 10, 26, 9, 0)
        assert resp.mode == "cron"
        assert resp.cron_expression == "0 9 * * MON"
        assert resp.delay_unit is None

    def test_invalid_cron_creates_nothing(self, scheduler, session_factory, refs):
        with pytest.raises(InvalidRequestError):
            scheduler.schedule(_cron(*refs, "not a cron"))
        with session_factory() as db:
            assert db.query(ScheduledTask).count() == 0

    def test_unknown_mode(self, scheduler, refs):
        req = ScheduleRequest(customer_id=refs[0], context_email_id=refs[1], mode="weekly")
        with pytest.raises(InvalidRequestError):
            scheduler.schedule(req)

    @pytest.mark.parametrize("customer_id,email_id", [(0, 1), (1, 0), (-1, -1)])
    def test_missing_references(self, scheduler, customer_id, email_id):
        with pytest.raises(InvalidRequestError):
            scheduler.schedule(_simple(customer_id, email_id))

    def test_no_recipient_rejected_before_insert(self, scheduler, session_factory, make_customer, make_email):
        customer = make_customer(contacts=[])
        email = make_email(customer.id)

        with pytest.raises(NoRecipientEmailsError):
            scheduler.schedule(_simple(customer.id, email.id))
        with session_factory() as db:
            assert db.query(ScheduledTask).count() == 0

    def test_admin_email_is_enough(self, scheduler, make_customer, make_email, set_setting):
        set_setting("admin_email", "owner@autoreach.example")
        customer = make_customer(contacts=[])
        email = make_email(customer.id)

        resp = scheduler.schedule(_simple(customer.id, email.id))
        assert resp.task_id > 0


class TestRunNow:

    def test_sends_and_marks_sent(self, scheduler, session_factory, mailer, composer, clock, refs):
        customer_id, email_id = refs
        resp = scheduler.schedule(_simple(customer_id, email_id))

        task = scheduler.run_now(resp.task_id)

        assert task.status == TaskStatus.SENT.value
        assert composer.followup_calls == [(customer_id, email_id)]
        assert mailer.sent[0]["recipients"] == ["dana@acme-roofing.example", "office@acme-roofing.example"]
        assert mailer.sent[0]["timeout"] == MAIL_SEND_TIMEOUT_SECONDS
        with session_factory() as db:
            email = get_email(db, task.generated_email_id)
        assert email.type == "followup"
        assert email.status == EmailStatus.SENT.value
        assert email.message_id == "<msg-1@autoreach.test>"
        assert email.sent_at == clock.now

    def test_missing_task(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.run_now(404)

    def test_second_run_conflicts(self, scheduler, refs):
        resp = scheduler.schedule(_simple(*refs))
        scheduler.run_now(resp.task_id)

        with pytest.raises(TaskStateChangedError) as exc:
            scheduler.run_now(resp.task_id)
        assert exc.value.status == TaskStatus.SENT.value

    def test_backoff_ladder_then_permanent_failure(self, session_factory, composer, clock, refs):
        mailer = FakeMailer(fail_times=10)
        scheduler = FollowupScheduler(composer, mailer, session_factory=session_factory, clock=clock)
        resp = scheduler.schedule(_simple(*refs))

        for attempt, minutes in [(1, 10), (2, 60), (3, 360)]:
            with pytest.raises(ExternalServiceError) as exc:
                scheduler.run_now(resp.task_id)
            assert exc.value.stage == "send"
            task = _task(session_factory, resp.task_id)
            assert task.status == TaskStatus.SCHEDULED.value
            assert task.attempts == attempt
            assert task.due_at == clock.now + timedelta(minutes=minutes)
            assert "SMTP connection refused" in task.last_error

        with pytest.raises(ExternalServiceError):
            scheduler.run_now(resp.task_id)
        task = _task(session_factory, resp.task_id)
        assert task.status == TaskStatus.FAILED.value
        assert task.last_error.startswith("[send]")

    def test_retry_succeeds_after_one_failure(self, session_factory, composer, clock, refs):
        mailer = FakeMailer(fail_times=1)
        scheduler = FollowupScheduler(composer, mailer, session_factory=session_factory, clock=clock)
        resp = scheduler.schedule(_simple(*refs))

        with pytest.raises(ExternalServiceError):
            scheduler.run_now(resp.task_id)
        clock.advance(minutes=5)
        assert scheduler.fetch_due_tasks(5) == []

        clock.advance(minutes=5)
        assert [t.id for t in scheduler.fetch_due_tasks(5)] == [resp.task_id]
        task = scheduler.run_now(resp.task_id)
        assert task.status == TaskStatus.SENT.value
        assert task.attempts == 1

    def test_draft_failure_is_tagged(self, session_factory, mailer, clock, refs):
        composer = FakeComposer(session_factory, followup_error=RuntimeError("model overloaded"))
        scheduler = FollowupScheduler(composer, mailer, session_factory=session_factory, clock=clock)
        resp = scheduler.schedule(_simple(*refs))

        with pytest.raises(ExternalServiceError) as exc:
            scheduler.run_now(resp.task_id)

        assert exc.value.stage == "draft"
        assert mailer.sent == []
        assert _task(session_factory, resp.task_id).attempts == 1

    def test_recipients_removed_after_scheduling(self, scheduler, session_factory, refs):
        customer_id, email_id = refs
        resp = scheduler.schedule(_simple(customer_id, email_id))
        with session_factory() as db:
            db.query(Contact).filter(Contact.customer_id == customer_id).delete()
            db.commit()

        with pytest.raises(NoRecipientEmailsError):
            scheduler.run_now(resp.task_id)
        task = _task(session_factory, resp.task_id)
        assert task.status == TaskStatus.SCHEDULED.value
        assert task.last_error.startswith("[recipients]")

    def test_cron_task_chains_next_occurrence(self, scheduler, session_factory, clock, refs):
        resp = scheduler.schedule(_cron(*refs, "0 9 * * MON"))
        clock.now = resp.due_at

        sent = scheduler.run_now(resp.task_id)

        with session_factory() as db:
            tasks = db.query(ScheduledTask).order_by(ScheduledTask.id).all()
        assert len(tasks) == 2
        original, nxt = tasks
        assert original.status == TaskStatus.SENT.value
        assert nxt.status == TaskStatus.SCHEDULED.value
        assert nxt.mode == "cron"
        assert nxt.cron_expression == "0 9 * * MON"
        assert nxt.due_at == datetime(2026, 11, 2, 9, 0)
        assert nxt.context_email_id == sent.generated_email_id

    def test_simple_task_does_not_chain(self, scheduler, session_factory, refs):
        resp = scheduler.schedule(_simple(*refs))
        scheduler.run_now(resp.task_id)
        with session_factory() as db:
            assert db.query(ScheduledTask).count() == 1
            assert db.query(Email).filter(Email.type == "followup").count() == 1


class TestRecipients:

    def test_key_contacts_first_and_deduped(self):
        contacts = [
            SimpleNamespace(email="b@acme.example", is_key=False),
            SimpleNamespace(email="A@acme.example", is_key=True),
            SimpleNamespace(email=" a@acme.example ", is_key=False),
            SimpleNamespace(email="", is_key=True),
            SimpleNamespace(email=None, is_key=False),
        ]
        assert select_recipient_emails(contacts) == ["A@acme.example", "b@acme.example"]

    def test_admin_fallback(self):
        assert resolve_recipients([], " owner@autoreach.example ") == ["owner@autoreach.example"]
        assert resolve_recipients([], "") == []


class TestBackoff:

    @pytest.mark.parametrize("attempt,minutes", [(0, 10), (1, 10), (2, 60), (3, 360), (7, 360)])
    def test_ladder(self, attempt, minutes):
        assert backoff_delay(attempt) == timedelta(minutes=minutes)


class TestScheduleLimits:

    def test_delay_past_calendar_end_is_invalid(self, scheduler, session_factory, refs):
        with pytest.raises(InvalidRequestError):
            scheduler.schedule(_simple(*refs, value=10**7, unit="days"))
        with session_factory() as db:
            assert db.query(ScheduledTask).count() == 0

    def test_every_past_calendar_end_is_invalid(self, scheduler, refs):
        with pytest.raises(InvalidRequestError):
            scheduler.schedule(_cron(*refs, "@every 99999999999999h"))


class TestCronChainFailure:

    def test_chain_error_is_logged_and_task_stays_sent(self, scheduler, session_factory, clock, refs, monkeypatch):
        resp = scheduler.schedule(_cron(*refs, "0 9 * * MON"))
        clock.now = resp.due_at

        def broken_create_task(*args, **kwargs):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr("autoreach.engine.followup_scheduler.create_task", broken_create_task)

        sent = scheduler.run_now(resp.task_id)

        assert sent.status == TaskStatus.SENT.value
        with session_factory() as db:
            tasks = db.query(ScheduledTask).all()
        assert [t.id for t in tasks] == [resp.task_id]
        assert tasks[0].status == TaskStatus.SENT.value
