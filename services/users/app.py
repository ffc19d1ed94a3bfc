from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from common import auth
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import get_current_active_user, require_admin
from common.errors import Conflict, register_error_handlers
from common.identifiers import new_student_number
from common.logging_middleware import add_audit_middleware
from common.models import RoleEnum, Student, User
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import Token, UserCreate, UserRead

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Users Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "users")
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "users"}


@app.post("/users/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def register_user(request: Request, user_in: UserCreate, db: Session = Depends(get_db)) -> User:
    if db.query(User).filter((User.username == user_in.username) | (User.email == user_in.email)).first():
        raise Conflict("Username or email already exists")

    admins_exist = db.query(User).filter(User.role == RoleEnum.ADMIN).first() is not None
    if user_in.role != RoleEnum.STUDENT and admins_exist:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins can assign elevated roles")

    user = User(
        name=user_in.name,
        username=user_in.username,
        email=user_in.email,
        role=user_in.role,
        hashed_password=auth.get_password_hash(user_in.password),
    )
    db.add(user)
    if user_in.role == RoleEnum.STUDENT:
        # An admin may already have created the profile from an application.
        profile = db.query(Student).filter(Student.email == user_in.email).first()
        if profile is None:
            profile = Student(
                name=user_in.name,
                email=user_in.email,
                phone=user_in.phone or "",
                student_number=new_student_number(db),
            )
            db.add(profile)
        elif profile.user_id is not None:
            db.rollback()
            raise Conflict("A student profile with this email is already linked to an account")
        profile.user = user
    db.commit()
    db.refresh(user)
    return user


@app.post("/users/login", response_model=Token)
@limiter.limit("10/minute")
def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> Token:
    user = auth.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect username or password")
    return Token(access_token=auth.token_for(user))


@app.get("/users/me", response_model=UserRead)
@limiter.limit("30/minute")
def read_me(request: Request, current_user: User = Depends(get_current_active_user)) -> User:
    return current_user


@app.get("/users", response_model=list[UserRead])
@limiter.limit("20/minute")
def list_users(request: Request, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> list[User]:
    return db.query(User).order_by(User.id).all()
