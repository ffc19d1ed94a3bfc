from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func
from sqlalchemy.orm import Session

from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import get_current_active_user, require_admin, require_staff
from common.errors import NotFound, register_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import MaintenanceRequest, MaintenanceStatus, Priority, User
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import (
    MaintenanceCreate,
    MaintenanceRead,
    MaintenanceStats,
    MaintenanceUpdate,
    UserMaintenanceStats,
)
from common.stores import get_room

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Maintenance Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "maintenance")
    return fastapi_app


app = create_app()


def _status_counts(db: Session, requested_by: Optional[int] = None) -> dict[MaintenanceStatus, int]:
    query = db.query(MaintenanceRequest.status, func.count(MaintenanceRequest.id))
    if requested_by is not None:
        query = query.filter(MaintenanceRequest.requested_by == requested_by)
    return dict(query.group_by(MaintenanceRequest.status).all())


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "maintenance"}


@app.post("/maintenance", response_model=MaintenanceRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_request(
    request: Request,
    request_in: MaintenanceCreate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> MaintenanceRequest:
    if request_in.room_id is not None:
        get_room(db, request_in.room_id)
    ticket = MaintenanceRequest(
        **request_in.model_dump(),
        status=MaintenanceStatus.PENDING,
        requested_by=current_user.id,
    )
    db.add(ticket)
    db.commit()
    db.refresh(ticket)
    return ticket


@app.get("/maintenance/mine", response_model=List[MaintenanceRead])
@limiter.limit("30/minute")
def my_requests(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[MaintenanceRequest]:
    return (
        db.query(MaintenanceRequest)
        .filter(MaintenanceRequest.requested_by == current_user.id)
        .order_by(MaintenanceRequest.created_at.desc(), MaintenanceRequest.id.desc())
        .all()
    )


@app.get("/maintenance/mine/stats", response_model=UserMaintenanceStats)
@limiter.limit("30/minute")
def my_stats(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> UserMaintenanceStats:
    counts = _status_counts(db, requested_by=current_user.id)
    completed = (
        db.query(MaintenanceRequest)
        .filter(
            MaintenanceRequest.requested_by == current_user.id,
            MaintenanceRequest.status == MaintenanceStatus.COMPLETED,
            MaintenanceRequest.completed_at.is_not(None),
        )
        .all()
    )
    avg_days = 0
    if completed:
        total_seconds = sum((ticket.completed_at - ticket.created_at).total_seconds() for ticket in completed)
        avg_days = round(total_seconds / len(completed) / 86400)
    return UserMaintenanceStats(
        pending=counts.get(MaintenanceStatus.PENDING, 0),
        in_progress=counts.get(MaintenanceStatus.IN_PROGRESS, 0),
        completed=counts.get(MaintenanceStatus.COMPLETED, 0),
        avg_resolution_days=avg_days,
    )


@app.get("/maintenance/stats", response_model=MaintenanceStats)
@limiter.limit("30/minute")
def stats(request: Request, db: Session = Depends(get_db)) -> MaintenanceStats:
    counts = _status_counts(db)
    high_priority = (
        db.query(func.count(MaintenanceRequest.id))
        .filter(
            MaintenanceRequest.priority == Priority.HIGH,
            MaintenanceRequest.status != MaintenanceStatus.COMPLETED,
        )
        .scalar()
    )
    return MaintenanceStats(
        pending=counts.get(MaintenanceStatus.PENDING, 0),
        in_progress=counts.get(MaintenanceStatus.IN_PROGRESS, 0),
        completed=counts.get(MaintenanceStatus.COMPLETED, 0),
        high_priority=high_priority or 0,
    )


@app.get("/maintenance", response_model=List[MaintenanceRead])
@limiter.limit("30/minute")
def list_requests(
    request: Request,
    status_filter: Optional[MaintenanceStatus] = Query(None, alias="status"),
    priority: Optional[Priority] = None,
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> List[MaintenanceRequest]:
    query = db.query(MaintenanceRequest)
    if status_filter is not None:
        query = query.filter(MaintenanceRequest.status == status_filter)
    if priority is not None:
        query = query.filter(MaintenanceRequest.priority == priority)
    return query.order_by(MaintenanceRequest.created_at.desc(), MaintenanceRequest.id.desc()).all()


@app.put("/maintenance/{request_id}", response_model=MaintenanceRead)
@limiter.limit("20/minute")
def update_request(
    request: Request,
    request_id: int,
    update_in: MaintenanceUpdate,
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> MaintenanceRequest:
    ticket = db.get(MaintenanceRequest, request_id)
    if ticket is None:
        raise NotFound("Maintenance request not found")
    changes = update_in.model_dump(exclude_unset=True, exclude_none=True)
    for key, value in changes.items():
        setattr(ticket, key, value)
    if ticket.status != MaintenanceStatus.COMPLETED:
        ticket.completed_at = None
    elif ticket.completed_at is None:
        ticket.completed_at = datetime.utcnow()
    db.commit()
    db.refresh(ticket)
    return ticket


@app.delete("/maintenance/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
def delete_request(
    request: Request,
    request_id: int,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> None:
    ticket = db.get(MaintenanceRequest, request_id)
    if ticket is None:
        raise NotFound("Maintenance request not found")
    db.delete(ticket)
    db.commit()
