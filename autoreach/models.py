"""
Autoreach - Data Models
Relational schema shared by the automation engine and the follow-up scheduler.

Tables:
  customers, contacts, emails, followups, automation_jobs,
  scheduled_tasks, config, audit_log
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from sqlalchemy import (
    create_engine, Column, Integer, String, Text, Boolean,
    DateTime, ForeignKey, JSON, Index, event, text,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from pydantic import BaseModel
from autoreach.config import DATABASE_URL, SQLITE_BUSY_TIMEOUT

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── Enums ─────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = [JobStatus.QUEUED.value, JobStatus.RUNNING.value]


class AutomationStage(str, Enum):
    PENDING = "pending"
    GRADING = "grading"
    ANALYSIS = "analysis"
    EMAIL = "email"
    FOLLOWUP = "followup"
    COMPLETED = "completed"
    STOPPED = "stopped"


class TaskStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SENT = "sent"
    FAILED = "failed"


class ScheduleMode(str, Enum):
    SIMPLE = "simple"
    CRON = "cron"


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class EmailType(str, Enum):
    INITIAL = "initial"
    FOLLOWUP = "followup"


class EmailStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"


# ── Database Models ───────────────────────────────────────────────

class Customer(Base):
    """Prospect company the automation works on."""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    name = Column(String(300), nullable=False)
    website = Column(String(500))
    grade = Column(String(10))
    grade_reason = Column(Text)

    contacts = relationship("Contact", back_populates="customer", cascade="all, delete-orphan")


class Contact(Base):
    """Person at a customer. Key contacts are addressed first."""
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    name = Column(String(300))
    title = Column(String(300))
    email = Column(String(300))
    is_key = Column(Boolean, default=False)

    customer = relationship("Customer", back_populates="contacts")


class Email(Base):
    """Outbound email, either the initial outreach or a follow-up."""
    __tablename__ = "emails"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    type = Column(String(50), default=EmailType.INITIAL.value)
    subject = Column(String(500))
    body = Column(Text)
    status = Column(String(50), default=EmailStatus.DRAFT.value)
    sent_at = Column(DateTime)
    message_id = Column(String(300))                 # Provider / SMTP Message-ID


class Followup(Base):
    """First follow-up record linking a customer to its initial email."""
    __tablename__ = "followups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    initial_email_id = Column(Integer, ForeignKey("emails.id", ondelete="SET NULL"))
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow)


class AutomationJob(Base):
    """Per-customer automation pipeline. Only failed or in-flight rows persist."""
    __tablename__ = "automation_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(50), nullable=False, default=JobStatus.QUEUED.value, index=True)
    stage = Column(String(50), nullable=False, default=AutomationStage.PENDING.value)
    last_error = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # One active job per customer
        Index(
            "uq_automation_jobs_active_customer", "customer_id", unique=True,
            sqlite_where=text("status IN ('queued', 'running')"),
            postgresql_where=text("status IN ('queued', 'running')"),
        ),
    )


class ScheduledTask(Base):
    """Follow-up email due at a point in time."""
    __tablename__ = "scheduled_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    context_email_id = Column(Integer, ForeignKey("emails.id", ondelete="SET NULL"))
    generated_email_id = Column(Integer, ForeignKey("emails.id", ondelete="SET NULL"))
    due_at = Column(DateTime, nullable=False, index=True)
    status = Column(String(50), nullable=False, default=TaskStatus.SCHEDULED.value, index=True)

    # Scheduling parameters as requested
    mode = Column("schedule_mode", String(20), default=ScheduleMode.SIMPLE.value)
    delay_value = Column(Integer, default=0)
    delay_unit = Column(String(20))
    cron_expression = Column(String(200))

    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Config(Base):
    """Runtime config stored in DB for consistency."""
    __tablename__ = "config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(200), unique=True, nullable=False)
    value = Column(Text)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AuditLog(Base):
    """Trail of every job and task state change."""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    request_id = Column(String(36), index=True)
    event = Column(String(100), nullable=False, index=True)
    customer_id = Column(Integer, index=True)
    job_id = Column(Integer)
    task_id = Column(Integer)
    actor = Column(String(100))                      # engine, scheduler, poller, cli
    payload = Column(JSON)


# ── Pydantic Schemas ──────────────────────────────────────────────

class ScheduleRequest(BaseModel):
    customer_id: int = 0
    context_email_id: int = 0
    mode: str = ScheduleMode.SIMPLE.value
    delay_value: int = 0
    delay_unit: str = ""
    cron_expression: str = ""


class ScheduleResponse(BaseModel):
    task_id: int
    due_at: datetime
    mode: str
    delay_value: int = 0
    delay_unit: Optional[str] = None
    cron_expression: Optional[str] = None


class GradeSuggestion(BaseModel):
    """What a grader proposes for a customer."""
    suggested_grade: str = ""
    reason: str = ""


class EmailDraft(BaseModel):
    subject: str
    body: str


class EmailDraftResult(BaseModel):
    """Initial email drafted and stored by the composer."""
    email_id: int = 0
    subject: str = ""
    body: str = ""


class AutomationSettings(BaseModel):
    required_grade: str = "A"
    followup_days: int = 3
    admin_email: str = ""
    automation_enabled: bool = True


# ── Engine / Sessions ─────────────────────────────────────────────

def _serialize_sqlite_writes(engine):
    """Open every SQLite transaction with BEGIN IMMEDIATE so writers queue on the lock."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to SQLAlchemy
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str):
    if url.startswith("sqlite"):
        engine = create_engine(
            url, echo=False,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        )
        _serialize_sqlite_writes(engine)
        return engine
    return create_engine(url, echo=False, pool_pre_ping=True)


def build_session_factory(bind):
    # Rows returned by the store stay readable after their session closes
    return sessionmaker(bind=bind, expire_on_commit=False)


engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)


def init_db(bind=None):
    """Create all tables."""
    Base.metadata.create_all(bind=bind or engine)
