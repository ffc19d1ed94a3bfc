import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from common import assignment
from common.assignment import RoomLocks
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import (
    get_current_active_user,
    get_current_student,
    get_notifier,
    get_room_locks,
    require_admin,
)
from common.errors import Conflict, NotFound, PersistenceError, register_error_handlers
from common.identifiers import new_student_number
from common.logging_middleware import add_audit_middleware
from common.models import RoleEnum, Student, User
from common.notifications import Notifier
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import RoomDetails, StudentCreate, StudentRead, StudentUpdate
from common.stores import email_taken, find_student, get_student, search_students

settings = get_settings()
logger = logging.getLogger(__name__)

DEFAULT_HOUSE_RULES = [
    "Quiet hours: 10 PM - 6 AM",
    "No smoking inside the building",
    "Visitors allowed: 8 AM - 8 PM",
    "Keep common areas clean",
]


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Students Service", version="1.0.0", lifespan=lifespan)
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
    add_audit_middleware(fastapi_app, "students")
    return fastapi_app


app = create_app()


def _ensure_can_view(student: Student, current_user: User) -> None:
    if current_user.role != RoleEnum.ADMIN and student.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "students"}


@app.post("/students", response_model=StudentRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_student(
    request: Request,
    student_in: StudentCreate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Student:
    if email_taken(db, student_in.email):
        raise Conflict("Email already exists")
    number = student_in.student_number
    if number and db.query(Student.id).filter(Student.student_number == number).first():
        raise Conflict(f"Student number {number} already exists")

    student = Student(**student_in.model_dump(exclude={"student_number"}), student_number=number or new_student_number(db))
    db.add(student)
    db.commit()
    db.refresh(student)
    return student


@app.get("/students", response_model=List[StudentRead])
@limiter.limit("30/minute")
def list_students(
    request: Request,
    search: Optional[str] = None,
    assigned: Optional[bool] = None,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[Student]:
    return search_students(db, search=search, assigned=assigned)


@app.get("/students/me", response_model=StudentRead)
@limiter.limit("30/minute")
def read_my_profile(request: Request, student: Student = Depends(get_current_student)) -> Student:
    return student


@app.get("/students/{key}", response_model=StudentRead)
@limiter.limit("30/minute")
def get_student_profile(
    request: Request,
    key: str,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Student:
    student = find_student(db, key)
    _ensure_can_view(student, current_user)
    return student


@app.put("/students/{student_id}", response_model=StudentRead)
@limiter.limit("15/minute")
def update_student(
    request: Request,
    student_id: int,
    student_update: StudentUpdate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Student:
    student = get_student(db, student_id)
    changes = student_update.model_dump(exclude_unset=True)
    if "email" in changes and email_taken(db, changes["email"], exclude_id=student_id):
        raise Conflict("Email already exists")
    for key, value in changes.items():
        setattr(student, key, value)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Could not update student %s: %s", student_id, exc.orig)
        raise Conflict("Email already exists") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Could not update student %s: %s", student_id, exc)
        raise PersistenceError("Could not update the student; no changes were saved") from exc
    db.refresh(student)
    return student


@app.delete("/students/{student_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
def delete_student(
    request: Request,
    student_id: int,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
    locks: RoomLocks = Depends(get_room_locks),
    notifier: Notifier = Depends(get_notifier),
) -> None:
    assignment.delete_student(db, student_id, locks=locks, notifier=notifier)


@app.get("/students/{key}/room", response_model=RoomDetails)
@limiter.limit("30/minute")
def get_assigned_room(
    request: Request,
    key: str,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> RoomDetails:
    student = find_student(db, key)
    _ensure_can_view(student, current_user)
    if student.room is None:
        raise NotFound("No room assigned to this student")
    details = RoomDetails.model_validate(student.room)
    if not details.rules:
        details = details.model_copy(update={"rules": list(DEFAULT_HOUSE_RULES)})
    return details
