from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import or_
from sqlalchemy.orm import Session

from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import get_current_active_user, require_admin
from common.errors import NotFound, register_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import Announcement, AnnouncementCategory, AnnouncementStatus, Priority, User
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import AnnouncementCreate, AnnouncementRead, AnnouncementUpdate, Audience

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Announcements Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "announcements")
    return fastapi_app


app = create_app()


def _load(db: Session, announcement_id: int) -> Announcement:
    announcement = db.get(Announcement, announcement_id)
    if announcement is None:
        raise NotFound("Announcement not found")
    return announcement


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "announcements"}


@app.get("/announcements", response_model=List[AnnouncementRead])
@limiter.limit("60/minute")
def list_announcements(
    request: Request,
    status_filter: AnnouncementStatus = Query(AnnouncementStatus.PUBLISHED, alias="status"),
    category: Optional[AnnouncementCategory] = None,
    priority: Optional[Priority] = None,
    audience: Optional[Audience] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Announcement]:
    query = db.query(Announcement).filter(
        Announcement.status == status_filter,
        or_(Announcement.valid_until.is_(None), Announcement.valid_until > datetime.utcnow()),
    )
    if category is not None:
        query = query.filter(Announcement.category == category)
    if priority is not None:
        query = query.filter(Announcement.priority == priority)
    announcements = query.order_by(Announcement.created_at.desc(), Announcement.id.desc()).all()
    # target_audience is a JSON list, matched here rather than in SQL
    if audience is not None:
        announcements = [item for item in announcements if audience.value in (item.target_audience or [])]
    start = (page - 1) * limit
    return announcements[start : start + limit]


@app.get("/announcements/{announcement_id}", response_model=AnnouncementRead)
@limiter.limit("60/minute")
def get_announcement(
    request: Request,
    announcement_id: int,
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Announcement:
    return _load(db, announcement_id)


@app.post("/announcements", response_model=AnnouncementRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_announcement(
    request: Request,
    announcement_in: AnnouncementCreate,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Announcement:
    data = announcement_in.model_dump()
    data["target_audience"] = [audience.value for audience in announcement_in.target_audience]
    announcement = Announcement(**data, author_id=current_user.id)
    db.add(announcement)
    db.commit()
    db.refresh(announcement)
    return announcement


@app.put("/announcements/{announcement_id}", response_model=AnnouncementRead)
@limiter.limit("20/minute")
def update_announcement(
    request: Request,
    announcement_id: int,
    announcement_update: AnnouncementUpdate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Announcement:
    announcement = _load(db, announcement_id)
    changes = announcement_update.model_dump(exclude_unset=True)
    if announcement_update.target_audience is not None:
        changes["target_audience"] = [audience.value for audience in announcement_update.target_audience]
    for key, value in changes.items():
        if value is None and key != "valid_until":
            continue
        setattr(announcement, key, value)
    db.commit()
    db.refresh(announcement)
    return announcement


@app.put("/announcements/{announcement_id}/archive", response_model=AnnouncementRead)
@limiter.limit("20/minute")
def archive_announcement(
    request: Request,
    announcement_id: int,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Announcement:
    announcement = _load(db, announcement_id)
    announcement.status = AnnouncementStatus.ARCHIVED
    db.commit()
    db.refresh(announcement)
    return announcement


@app.delete("/announcements/{announcement_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
def delete_announcement(
    request: Request,
    announcement_id: int,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> None:
    announcement = _load(db, announcement_id)
    db.delete(announcement)
    db.commit()
