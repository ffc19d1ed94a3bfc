from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func
from sqlalchemy.orm import Session

from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import require_admin
from common.errors import register_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import (
    Application,
    ApplicationStatus,
    MaintenanceRequest,
    MaintenanceStatus,
    Payment,
    PaymentStatus,
    Room,
    User,
)
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import AnalyticsOverview

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Analytics Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "analytics")
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "analytics"}


@app.get("/analytics/overview", response_model=AnalyticsOverview)
@limiter.limit("10/minute")
def overview(request: Request, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> AnalyticsOverview:
    total_rooms, total_capacity, occupied_slots = db.query(
        func.count(Room.id),
        func.coalesce(func.sum(Room.capacity), 0),
        func.coalesce(func.sum(Room.occupant_count), 0),
    ).one()
    full_rooms = db.query(func.count(Room.id)).filter(Room.occupant_count >= Room.capacity).scalar() or 0
    type_counts = dict(db.query(Room.type, func.count(Room.id)).group_by(Room.type).all())
    application_counts = dict(db.query(Application.status, func.count(Application.id)).group_by(Application.status).all())
    open_tickets = (
        db.query(func.count(MaintenanceRequest.id))
        .filter(MaintenanceRequest.status != MaintenanceStatus.COMPLETED)
        .scalar()
    )
    revenue = db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(Payment.status == PaymentStatus.PAID).scalar()
    outstanding = (
        db.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.status.in_([PaymentStatus.PENDING, PaymentStatus.OVERDUE]))
        .scalar()
    )

    return AnalyticsOverview(
        total_rooms=total_rooms,
        full_rooms=full_rooms,
        total_capacity=total_capacity,
        occupied_slots=occupied_slots,
        occupancy_rate=round(occupied_slots / total_capacity * 100) if total_capacity else 0,
        room_type_distribution={room_type.value: count for room_type, count in type_counts.items()},
        applications={state.value: application_counts.get(state, 0) for state in ApplicationStatus},
        open_maintenance_requests=open_tickets or 0,
        total_revenue=float(revenue or 0),
        pending_payments=float(outstanding or 0),
    )
