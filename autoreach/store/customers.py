"""
Autoreach - Customer Store
Customers, their contacts, outbound emails and first follow-up records.
"""
import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
from autoreach.models import (
    Customer, Contact, Email, Followup, EmailType, EmailStatus, utcnow,
)
from autoreach.errors import NotFoundError

logger = logging.getLogger(__name__)


def create_customer(
    db: Session,
    name: str,
    website: Optional[str] = None,
    contacts: Optional[list[dict]] = None,
) -> Customer:
    """Create a customer with its contacts ({name, title, email, is_key})."""
    customer = Customer(name=name.strip(), website=website)
    for c in contacts or []:
        customer.contacts.append(Contact(
            name=c.get("name"),
            title=c.get("title"),
            email=(c.get("email") or "").strip() or None,
            is_key=bool(c.get("is_key", False)),
        ))
    db.add(customer)
    db.commit()
    logger.info(f"Customer created: {customer.id} ({customer.name})")
    return customer


def list_contacts(db: Session, customer_id: int) -> list[Contact]:
    return (
        db.query(Contact)
        .filter(Contact.customer_id == customer_id)
        .order_by(Contact.id.asc())
        .all()
    )


def insert_email(
    db: Session,
    customer_id: int,
    email_type: str,
    subject: str,
    body: str,
    status: str = EmailStatus.DRAFT.value,
) -> Email:
    email = Email(
        customer_id=customer_id,
        type=email_type or EmailType.INITIAL.value,
        subject=subject,
        body=body,
        status=status,
    )
    db.add(email)
    db.commit()
    return email


def get_email(db: Session, email_id: int) -> Optional[Email]:
    return db.query(Email).filter(Email.id == email_id).first()


def mark_email_sent(db: Session, email_id: int, message_id: str, sent_at: Optional[datetime] = None) -> Email:
    email = get_email(db, email_id)
    if not email:
        raise NotFoundError("email", email_id)
    email.status = EmailStatus.SENT.value
    email.message_id = message_id
    email.sent_at = sent_at or utcnow()
    email.updated_at = utcnow()
    db.commit()
    return email


def get_latest_followup_id(db: Session, customer_id: int) -> Optional[int]:
    return (
        db.query(Followup.id)
        .filter(Followup.customer_id == customer_id)
        .order_by(Followup.id.desc())
        .limit(1)
        .scalar()
    )


def save_initial_followup(db: Session, customer_id: int, email_id: int, notes: str = "") -> Followup:
    """Record the initial email as the customer's first follow-up."""
    followup = Followup(customer_id=customer_id, initial_email_id=email_id, notes=notes)
    db.add(followup)
    db.commit()
    return followup
