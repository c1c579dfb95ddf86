"""
Autoreach - Runtime Settings
Settings live in the config table; missing keys fall back to env defaults.
"""
import logging
from typing import Optional
from sqlalchemy.orm import Session
from autoreach.models import Config, AutomationSettings, utcnow
from autoreach.config import (
    DEFAULT_REQUIRED_GRADE, DEFAULT_FOLLOWUP_DAYS, ADMIN_EMAIL,
    AUTOMATION_ENABLED, VALID_GRADES, FALLBACK_GRADE,
)

logger = logging.getLogger(__name__)

SETTING_KEYS = [
    "automation_required_grade",
    "automation_followup_days",
    "admin_email",
    "automation_enabled",
]


def normalize_required_grade(value: Optional[str]) -> str:
    """Upper-cased threshold grade. Legacy 'S' reads as 'A'."""
    grade = (value or "").strip().upper()
    if not grade or grade == "S":
        return "A"
    return grade


def normalize_suggested_grade(value: Optional[str]) -> str:
    """Grade as handed back by a grader, with the fallback for empty or unknown values."""
    grade = (value or "").strip().upper()
    if grade == "S":
        grade = "A"
    if grade not in VALID_GRADES:
        return FALLBACK_GRADE
    return grade


def _to_int(value: Optional[str], default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _to_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def get_settings(db: Session) -> AutomationSettings:
    rows = db.query(Config).filter(Config.key.in_(SETTING_KEYS)).all()
    values = {r.key: r.value for r in rows}

    followup_days = _to_int(values.get("automation_followup_days"), DEFAULT_FOLLOWUP_DAYS)
    if followup_days <= 0:
        followup_days = 3

    return AutomationSettings(
        required_grade=normalize_required_grade(values.get("automation_required_grade", DEFAULT_REQUIRED_GRADE)),
        followup_days=followup_days,
        admin_email=(values.get("admin_email", ADMIN_EMAIL) or "").strip(),
        automation_enabled=_to_bool(values.get("automation_enabled"), AUTOMATION_ENABLED),
    )


def save_setting(db: Session, key: str, value) -> Config:
    if key not in SETTING_KEYS:
        raise KeyError(f"Unknown setting: {key}")
    row = db.query(Config).filter(Config.key == key).first()
    if row is None:
        row = Config(key=key)
        db.add(row)
    row.value = "" if value is None else str(value)
    row.updated_at = utcnow()
    db.commit()
    logger.info(f"Setting updated: {key}")
    return row
