import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import update
from sqlalchemy.orm import Session

from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import get_current_active_user, get_current_student, require_admin
from common.errors import NotFound, register_error_handlers
from common.identifiers import new_invoice_id
from common.logging_middleware import add_audit_middleware
from common.models import Payment, PaymentStatus, RoleEnum, Student, User
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import NextPayment, PaymentCreate, PaymentRead, PaymentStatusUpdate
from common.stores import get_student

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Billing Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "billing")
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "billing"}


@app.post("/payments", response_model=PaymentRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_payment(
    request: Request,
    payment_in: PaymentCreate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Payment:
    if payment_in.student_id is not None:
        get_student(db, payment_in.student_id)
    payment = Payment(
        **payment_in.model_dump(),
        invoice_id=new_invoice_id(db),
        status=PaymentStatus.PENDING,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    logger.info("Issued invoice %s for student %s", payment.invoice_id, payment.student_id)
    return payment


@app.get("/payments", response_model=List[PaymentRead])
@limiter.limit("30/minute")
def list_payments(
    request: Request,
    student_id: Optional[int] = None,
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Payment]:
    query = db.query(Payment)
    if current_user.role == RoleEnum.ADMIN:
        if student_id is not None:
            query = query.filter(Payment.student_id == student_id)
    elif current_user.role == RoleEnum.STUDENT:
        profile: Optional[Student] = current_user.student
        if profile is None:
            return []
        query = query.filter(Payment.student_id == profile.id)
    else:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
    if status_filter is not None:
        query = query.filter(Payment.status == status_filter)
    return query.order_by(Payment.due_date.desc(), Payment.id.desc()).all()


@app.get("/payments/next", response_model=NextPayment)
@limiter.limit("30/minute")
def next_payment(
    request: Request,
    student: Student = Depends(get_current_student),
    db: Session = Depends(get_db),
) -> NextPayment:
    payment = (
        db.query(Payment)
        .filter(
            Payment.student_id == student.id,
            Payment.status == PaymentStatus.PENDING,
            Payment.due_date >= date.today(),
        )
        .order_by(Payment.due_date.asc(), Payment.id.asc())
        .first()
    )
    if payment is None:
        return NextPayment()
    return NextPayment(invoice_id=payment.invoice_id, amount=payment.amount, next_payment_date=payment.due_date)


@app.put("/payments/{payment_id}/status", response_model=PaymentRead)
@limiter.limit("20/minute")
def update_payment_status(
    request: Request,
    payment_id: int,
    status_update: PaymentStatusUpdate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    payment.status = status_update.status
    if status_update.transaction_id is not None:
        payment.transaction_id = status_update.transaction_id
    payment.paid_at = datetime.utcnow() if status_update.status == PaymentStatus.PAID else None
    db.commit()
    db.refresh(payment)
    return payment


@app.post("/payments/mark-overdue")
@limiter.limit("5/minute")
def mark_overdue(request: Request, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict[str, int]:
    result = db.execute(
        update(Payment)
        .where(Payment.status == PaymentStatus.PENDING, Payment.due_date < date.today())
        .values(status=PaymentStatus.OVERDUE),
        execution_options={"synchronize_session": False},
    )
    db.commit()
    logger.info("Marked %s payment(s) overdue", result.rowcount)
    return {"updated": result.rowcount}
