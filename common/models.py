"""SQLAlchemy models shared across all housing services."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class RoleEnum(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    STUDENT = "student"


class RoomType(str, Enum):
    SINGLE = "single"
    DOUBLE = "double"
    SUITE = "suite"
    APARTMENT = "apartment"


class FloorLevel(str, Enum):
    GROUND = "ground"
    LOW = "low"
    MID = "mid"
    HIGH = "high"


class ApplicationStatus(str, Enum):
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MaintenanceStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class AnnouncementCategory(str, Enum):
    MAINTENANCE = "maintenance"
    EVENT = "event"
    ACADEMIC = "academic"
    GENERAL = "general"


class AnnouncementStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


class PaymentType(str, Enum):
    RENT = "rent"
    DEPOSIT = "deposit"
    UTILITIES = "utilities"
    MAINTENANCE = "maintenance"
    OTHER = "other"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    username: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    email: Mapped[str] = mapped_column(String(255), unique=True)
    role: Mapped[RoleEnum] = mapped_column(SqlEnum(RoleEnum), default=RoleEnum.STUDENT)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    student: Mapped[Optional["Student"]] = relationship(back_populates="user")

    @property
    def student_id(self) -> Optional[int]:
        return self.student.id if self.student else None


class Room(Base):
    __tablename__ = "rooms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    room_number: Mapped[str] = mapped_column(String(30), unique=True, index=True)
    type: Mapped[RoomType] = mapped_column(SqlEnum(RoomType), index=True)
    capacity: Mapped[int] = mapped_column(Integer)
    # Always equal to len(occupants); the conditional writes compare against it.
    occupant_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0, index=True)
    floor_level: Mapped[Optional[FloorLevel]] = mapped_column(SqlEnum(FloorLevel), nullable=True)
    features: Mapped[dict] = mapped_column(JSON, default=dict)
    amenities: Mapped[list[str]] = mapped_column(JSON, default=list)
    rules: Mapped[list[str]] = mapped_column(JSON, default=list)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    occupants: Mapped[List["Student"]] = relationship(back_populates="room", order_by="Student.id")


class Student(Base):
    __tablename__ = "students"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    phone: Mapped[str] = mapped_column(String(30))
    program: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    year_of_study: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    student_number: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    payment_status: Mapped[bool] = mapped_column(Boolean, default=False)
    room_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("rooms.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    room: Mapped[Optional[Room]] = relationship(back_populates="occupants")
    user: Mapped[Optional[User]] = relationship(back_populates="student")


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    reference: Mapped[str] = mapped_column(String(20), unique=True)
    first_name: Mapped[str] = mapped_column(String(60))
    last_name: Mapped[str] = mapped_column(String(60))
    email: Mapped[str] = mapped_column(String(255))
    phone: Mapped[str] = mapped_column(String(30))
    student_number: Mapped[str] = mapped_column(String(20), index=True)
    program: Mapped[str] = mapped_column(String(120))
    year_of_study: Mapped[str] = mapped_column(String(20))
    special_requirements: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"), index=True)
    preferences: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[ApplicationStatus] = mapped_column(
        SqlEnum(ApplicationStatus), default=ApplicationStatus.SUBMITTED, index=True
    )
    applicant_user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processed_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    room: Mapped[Room] = relationship()


class MaintenanceRequest(Base):
    __tablename__ = "maintenance_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    title: Mapped[str] = mapped_column(String(150))
    description: Mapped[str] = mapped_column(Text)
    priority: Mapped[Priority] = mapped_column(SqlEnum(Priority), default=Priority.LOW, index=True)
    status: Mapped[MaintenanceStatus] = mapped_column(
        SqlEnum(MaintenanceStatus), default=MaintenanceStatus.PENDING, index=True
    )
    location: Mapped[str] = mapped_column(String(255))
    room_id: Mapped[Optional[int]] = mapped_column(ForeignKey("rooms.id", ondelete="SET NULL"), nullable=True)
    requested_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    assignee: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    estimated_completion: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Announcement(Base):
    __tablename__ = "announcements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    title: Mapped[str] = mapped_column(String(200))
    content: Mapped[str] = mapped_column(Text)
    author_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    priority: Mapped[Priority] = mapped_column(SqlEnum(Priority), default=Priority.MEDIUM, index=True)
    category: Mapped[AnnouncementCategory] = mapped_column(
        SqlEnum(AnnouncementCategory), default=AnnouncementCategory.GENERAL, index=True
    )
    target_audience: Mapped[list[str]] = mapped_column(JSON, default=lambda: ["all"])
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[AnnouncementStatus] = mapped_column(
        SqlEnum(AnnouncementStatus), default=AnnouncementStatus.PUBLISHED, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    author: Mapped[User] = relationship()


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    invoice_id: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    student_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), nullable=True, index=True
    )
    amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False))
    due_date: Mapped[date] = mapped_column(Date, index=True)
    status: Mapped[PaymentStatus] = mapped_column(SqlEnum(PaymentStatus), default=PaymentStatus.PENDING, index=True)
    payment_type: Mapped[PaymentType] = mapped_column(SqlEnum(PaymentType))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
