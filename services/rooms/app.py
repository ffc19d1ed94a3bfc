from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from circuitbreaker import circuit
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common import assignment
from common.assignment import RoomLocks
from common.cache import RoomStatusCache
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import get_notifier, get_room_locks, get_status_cache, require_admin
from common.errors import Conflict, register_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import FloorLevel, Room, RoomType, User
from common.notifications import Notifier
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import AssignmentRequest, OccupancyStatus, RoomCreate, RoomRead, RoomUpdate
from common.stores import filter_rooms, get_room as load_room

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Rooms Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    fastapi_app.state.room_locks = RoomLocks()
    fastapi_app.state.notifier = Notifier(settings)
    fastapi_app.state.status_cache = RoomStatusCache(ttl=settings.room_cache_ttl)
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "rooms")
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "rooms"}


@app.post("/rooms", response_model=RoomRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def add_room(
    request: Request,
    room_in: RoomCreate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Room:
    if db.query(Room.id).filter(Room.room_number == room_in.room_number).first():
        raise Conflict(f"Room {room_in.room_number} already exists")
    data = room_in.model_dump()
    data["features"] = room_in.features.model_dump(mode="json")
    room = Room(**data, occupant_count=0, is_available=True)
    db.add(room)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict(f"Room {room_in.room_number} already exists") from exc
    db.refresh(room)
    return room


@app.get("/rooms", response_model=List[RoomRead])
@circuit(failure_threshold=5, recovery_timeout=60)
def list_rooms(
    request: Request,
    available: Optional[bool] = None,
    room_type: Optional[RoomType] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    capacity: Optional[int] = None,
    floor_level: Optional[FloorLevel] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
) -> List[Room]:
    return filter_rooms(
        db,
        available=available,
        room_type=room_type,
        min_price=min_price,
        max_price=max_price,
        capacity=capacity,
        floor_level=floor_level,
        search=search,
    )


@app.get("/rooms/available", response_model=List[RoomRead])
@limiter.limit("60/minute")
def available_rooms(
    request: Request,
    room_type: Optional[RoomType] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    capacity: Optional[int] = None,
    floor_level: Optional[FloorLevel] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
) -> List[Room]:
    return filter_rooms(
        db,
        available=True,
        room_type=room_type,
        min_price=min_price,
        max_price=max_price,
        capacity=capacity,
        floor_level=floor_level,
        search=search,
    )


@app.get("/rooms/{room_id}", response_model=RoomRead)
@limiter.limit("60/minute")
def get_room(request: Request, room_id: int, db: Session = Depends(get_db)) -> Room:
    return load_room(db, room_id)


@app.put("/rooms/{room_id}", response_model=RoomRead)
@limiter.limit("15/minute")
def update_room(
    request: Request,
    room_id: int,
    room_update: RoomUpdate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
    locks: RoomLocks = Depends(get_room_locks),
    cache: RoomStatusCache = Depends(get_status_cache),
) -> Room:
    changes = room_update.model_dump(exclude_unset=True)
    if room_update.features is not None:
        changes["features"] = room_update.features.model_dump(mode="json")
    room = assignment.update_room(db, room_id, changes, locks=locks)
    cache.invalidate(room_id)
    return room


@app.put("/rooms/{room_id}/assign", response_model=RoomRead)
@limiter.limit("30/minute")
def assign_student(
    request: Request,
    room_id: int,
    body: AssignmentRequest,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
    locks: RoomLocks = Depends(get_room_locks),
    notifier: Notifier = Depends(get_notifier),
    cache: RoomStatusCache = Depends(get_status_cache),
) -> Room:
    room = assignment.assign_student(db, room_id, body.student_id, locks=locks, notifier=notifier)
    cache.invalidate(room_id)
    return room


@app.put("/rooms/{room_id}/unassign", response_model=RoomRead)
@limiter.limit("30/minute")
def unassign_student(
    request: Request,
    room_id: int,
    body: AssignmentRequest,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
    locks: RoomLocks = Depends(get_room_locks),
    notifier: Notifier = Depends(get_notifier),
    cache: RoomStatusCache = Depends(get_status_cache),
) -> Room:
    room = assignment.unassign_student(db, room_id, body.student_id, locks=locks, notifier=notifier)
    cache.invalidate(room_id)
    return room


@app.delete("/rooms/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("15/minute")
def delete_room(
    request: Request,
    room_id: int,
    unassign_occupants: bool = False,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
    locks: RoomLocks = Depends(get_room_locks),
    notifier: Notifier = Depends(get_notifier),
    cache: RoomStatusCache = Depends(get_status_cache),
) -> None:
    assignment.delete_room(db, room_id, locks=locks, unassign_occupants=unassign_occupants, notifier=notifier)
    cache.invalidate(room_id)


@app.get("/rooms/{room_id}/status", response_model=OccupancyStatus)
@limiter.limit("30/minute")
def room_status(
    request: Request,
    room_id: int,
    force_refresh: bool = False,
    db: Session = Depends(get_db),
    cache: RoomStatusCache = Depends(get_status_cache),
) -> dict:
    """Occupancy snapshot, cached for ``room_cache_ttl`` seconds.

    Writes through this service drop the cached entry. Assignments made by the
    applications or students services do not, so callers that need the value
    right after such a write pass ``force_refresh=true``.
    """
    if not force_refresh:
        cached = cache.get(room_id)
        if cached:
            return cached
    room = load_room(db, room_id)
    payload = {
        "room_id": room.id,
        "status": "available" if room.is_available else "full",
        "occupant_count": room.occupant_count,
        "capacity": room.capacity,
        "checked_at": datetime.utcnow().isoformat(),
    }
    cache.set(room_id, payload)
    return payload
