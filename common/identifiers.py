"""Human-facing identifiers for students, applications and invoices."""
import random
import secrets
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .models import Application, Payment, Student

_MAX_ATTEMPTS = 50


def student_number(now: Optional[datetime] = None) -> str:
    """``<yy>R<4 digits>``, e.g. ``24R1234``."""
    now = now or datetime.utcnow()
    return f"{now:%y}R{random.randint(1000, 9999)}"


def application_reference(now: Optional[datetime] = None) -> str:
    """``APP-<yyyy>-<5 hex>``."""
    now = now or datetime.utcnow()
    return f"APP-{now:%Y}-{secrets.token_hex(3).upper()[:5]}"


def invoice_id(now: Optional[datetime] = None) -> str:
    """``INV<yymmdd>-<3 digits>``."""
    now = now or datetime.utcnow()
    return f"INV{now:%y%m%d}-{random.randint(0, 999):03d}"


def _unique(generate: Callable[[], str], taken: Callable[[str], bool]) -> str:
    for _ in range(_MAX_ATTEMPTS):
        candidate = generate()
        if not taken(candidate):
            return candidate
    raise RuntimeError("Could not generate a unique identifier")


def new_student_number(db: Session) -> str:
    return _unique(
        student_number,
        lambda value: db.query(Student.id).filter(Student.student_number == value).first() is not None,
    )


def new_application_reference(db: Session) -> str:
    return _unique(
        application_reference,
        lambda value: db.query(Application.id).filter(Application.reference == value).first() is not None,
    )


def new_invoice_id(db: Session) -> str:
    return _unique(
        invoice_id,
        lambda value: db.query(Payment.id).filter(Payment.invoice_id == value).first() is not None,
    )
