"""Password hashing, JWT handling, and account lookup helpers."""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .config import get_settings
from .models import User

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
settings = get_settings()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def token_for(user: User) -> str:
    """Issue a token carrying the account's role and student profile id."""
    claims: Dict[str, Any] = {"sub": user.username, "role": user.role.value}
    if user.student_id is not None:
        claims["student_id"] = user.student_id
    return create_access_token(claims)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:  # pragma: no cover - jose already tested
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc


def authenticate_user(db: Session, login: str, password: str) -> Optional[User]:
    """Accept either the username or the e-mail address as the login."""
    user: Optional[User] = db.query(User).filter((User.username == login) | (User.email == login)).first()
    if not user or not verify_password(password, user.hashed_password):
        return None
    return user
