"""Reusable FastAPI dependencies for auth, database access and request context."""
from typing import Callable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from .assignment import RoomLocks
from .auth import decode_token
from .cache import RoomStatusCache
from .database import get_db
from .models import RoleEnum, Student, User
from .notifications import Notifier

oauth_scheme = OAuth2PasswordBearer(tokenUrl="/users/login")


def get_current_user(token: str = Depends(oauth_scheme), db: Session = Depends(get_db)) -> User:
    payload = decode_token(token)
    username: str | None = payload.get("sub")
    if username is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing subject in token")
    user = db.query(User).filter(User.username == username).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    return current_user


def allow_roles(*roles: RoleEnum) -> Callable[[User], User]:
    def dependency(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return current_user

    return dependency


require_admin = allow_roles(RoleEnum.ADMIN)
require_staff = allow_roles(RoleEnum.ADMIN, RoleEnum.STAFF)


def get_current_student(
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Student:
    student = db.query(Student).filter(Student.user_id == current_user.id).first()
    if not student:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No student profile for this account")
    return student


def get_room_locks(request: Request) -> RoomLocks:
    return request.app.state.room_locks


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_status_cache(request: Request) -> RoomStatusCache:
    return request.app.state.status_cache
