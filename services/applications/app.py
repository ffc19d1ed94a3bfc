import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from common import assignment
from common.assignment import RoomLocks
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import get_current_active_user, get_notifier, get_room_locks, require_admin
from common.errors import Conflict, HousingError, InvalidTransition, NotFound, PersistenceError, register_error_handlers
from common.identifiers import new_application_reference
from common.logging_middleware import add_audit_middleware
from common.models import Application, ApplicationStatus, RoleEnum, Student, User
from common.notifications import Notifier
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import ApplicationCreate, ApplicationDecision, ApplicationRead
from common.stores import get_room

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Applications Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    fastapi_app.state.room_locks = RoomLocks()
    fastapi_app.state.notifier = Notifier(settings)
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "applications")
    return fastapi_app


app = create_app()


def _load_application(db: Session, application_id: int) -> Application:
    application = db.get(Application, application_id)
    if application is None:
        raise NotFound("Application not found")
    return application


def _profile_for(db: Session, application: Application) -> Student:
    """Find the applicant's student profile, creating it from the application if needed.

    Only a student account applying for itself is tied to a profile through its
    user id. Applications filed by staff match on student number or e-mail.
    """
    applicant = db.get(User, application.applicant_user_id) if application.applicant_user_id is not None else None
    for_self = applicant is not None and applicant.role == RoleEnum.STUDENT
    if for_self and applicant.student is not None:
        return applicant.student

    student = (
        db.query(Student)
        .filter(or_(Student.student_number == application.student_number, Student.email == application.email))
        .order_by(Student.id)
        .first()
    )
    if student is not None:
        return student
    student = Student(
        name=f"{application.first_name} {application.last_name}",
        email=application.email,
        phone=application.phone,
        program=application.program,
        year_of_study=application.year_of_study,
        student_number=application.student_number,
        user_id=applicant.id if for_self else None,
    )
    db.add(student)
    db.flush()
    return student


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "applications"}


@app.post("/applications", response_model=ApplicationRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def submit_application(
    request: Request,
    application_in: ApplicationCreate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Application:
    get_room(db, application_in.room_id)
    open_application = (
        db.query(Application.id)
        .filter(
            Application.student_number == application_in.student_number,
            Application.status == ApplicationStatus.SUBMITTED,
        )
        .first()
    )
    if open_application:
        raise Conflict("An application for this student is already under review")

    data = application_in.model_dump(mode="json")
    application = Application(
        **data,
        reference=new_application_reference(db),
        status=ApplicationStatus.SUBMITTED,
        applicant_user_id=current_user.id,
    )
    db.add(application)
    db.commit()
    db.refresh(application)
    logger.info("Application %s submitted for room %s", application.reference, application.room_id)
    return application


@app.get("/applications", response_model=List[ApplicationRead])
@limiter.limit("30/minute")
def list_applications(
    request: Request,
    status_filter: Optional[ApplicationStatus] = Query(None, alias="status"),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[Application]:
    query = db.query(Application)
    if status_filter is not None:
        query = query.filter(Application.status == status_filter)
    return query.order_by(Application.submitted_at.desc(), Application.id.desc()).all()


@app.get("/applications/student/{student_number}", response_model=List[ApplicationRead])
@limiter.limit("30/minute")
def applications_for_student(
    request: Request,
    student_number: str,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Application]:
    applications = (
        db.query(Application)
        .filter(Application.student_number == student_number)
        .order_by(Application.submitted_at.desc(), Application.id.desc())
        .all()
    )
    if current_user.role != RoleEnum.ADMIN:
        owns_number = current_user.student is not None and current_user.student.student_number == student_number
        if not owns_number and any(app_.applicant_user_id != current_user.id for app_ in applications):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return applications


@app.put("/applications/{application_id}/status", response_model=ApplicationRead)
@limiter.limit("20/minute")
def decide_application(
    request: Request,
    application_id: int,
    decision: ApplicationDecision,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    locks: RoomLocks = Depends(get_room_locks),
    notifier: Notifier = Depends(get_notifier),
) -> Application:
    application = _load_application(db, application_id)
    if application.status != ApplicationStatus.SUBMITTED:
        raise InvalidTransition(
            f"Application {application.reference} is already {application.status.value}",
            status=application.status.value,
        )

    student: Optional[Student] = None
    try:
        if decision.status == ApplicationStatus.APPROVED and decision.assign:
            student = _profile_for(db, application)
            assignment.assign_student(db, application.room_id, student.id, locks=locks, commit=False)
        application.status = decision.status
        application.processed_at = datetime.utcnow()
        application.processed_by = current_user.id
        db.commit()
    except HousingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Could not record decision for application %s: %s", application_id, exc)
        raise PersistenceError("Could not record the decision; no changes were saved") from exc

    db.refresh(application)
    logger.info("Application %s %s by user %s", application.reference, decision.status.value, current_user.id)
    if student is not None:
        db.refresh(student)
        notifier.room_assigned(student, application.room)
    return application


@app.post("/applications/{application_id}/cancel", response_model=ApplicationRead)
@limiter.limit("10/minute")
def cancel_application(
    request: Request,
    application_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Application:
    application = _load_application(db, application_id)
    if application.applicant_user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the applicant can cancel")
    if application.status != ApplicationStatus.SUBMITTED:
        raise InvalidTransition(
            f"Application {application.reference} is already {application.status.value}",
            status=application.status.value,
        )
    application.status = ApplicationStatus.CANCELLED
    application.processed_at = datetime.utcnow()
    db.commit()
    db.refresh(application)
    return application
