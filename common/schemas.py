"""Pydantic schemas shared across the housing services."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

from .models import (
    AnnouncementCategory,
    AnnouncementStatus,
    ApplicationStatus,
    FloorLevel,
    MaintenanceStatus,
    PaymentStatus,
    PaymentType,
    Priority,
    RoleEnum,
    RoomType,
)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserBase(BaseModel):
    name: str = Field(..., max_length=100)
    username: str = Field(..., max_length=50)
    email: EmailStr
    role: RoleEnum = RoleEnum.STUDENT


class UserCreate(UserBase):
    password: str = Field(..., min_length=8)
    phone: Optional[str] = Field(None, max_length=30)


class UserRead(UserBase):
    id: int
    created_at: datetime
    student_id: Optional[int] = None

    model_config = {"from_attributes": True}


class GenderPreference(str, Enum):
    ANY = "any"
    MALE = "male"
    FEMALE = "female"


class RoomFeatures(BaseModel):
    quiet_study: bool = False
    gender_preference: GenderPreference = GenderPreference.ANY


class OccupantRead(BaseModel):
    id: int
    name: str
    email: str
    student_number: str

    model_config = {"from_attributes": True}


class RoomBase(BaseModel):
    room_number: str = Field(..., min_length=1, max_length=30)
    type: RoomType
    capacity: int = Field(..., gt=0)
    price: float = Field(0, ge=0)
    floor_level: Optional[FloorLevel] = None
    features: RoomFeatures = Field(default_factory=RoomFeatures)
    amenities: List[str] = Field(default_factory=list)
    rules: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class RoomCreate(RoomBase):
    pass


def _reject_cleared(model: BaseModel, required: tuple[str, ...]) -> None:
    """Partial updates may omit a required field but never send it as null."""
    cleared = [name for name in required if name in model.model_fields_set and getattr(model, name) is None]
    if cleared:
        raise ValueError(f"{', '.join(cleared)} cannot be null")


class RoomUpdate(BaseModel):
    room_number: Optional[str] = Field(None, min_length=1, max_length=30)
    type: Optional[RoomType] = None
    capacity: Optional[int] = Field(None, gt=0)
    price: Optional[float] = Field(None, ge=0)
    floor_level: Optional[FloorLevel] = None
    features: Optional[RoomFeatures] = None
    amenities: Optional[List[str]] = None
    rules: Optional[List[str]] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def _required_fields_stay_set(self) -> "RoomUpdate":
        _reject_cleared(self, ("room_number", "type", "capacity", "price", "features", "amenities", "rules"))
        return self


class RoomRead(RoomBase):
    id: int
    occupant_count: int
    is_available: bool
    occupants: List[OccupantRead] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class AssignmentRequest(BaseModel):
    student_id: int


class RoomSummary(BaseModel):
    id: int
    room_number: str
    type: RoomType
    capacity: int
    is_available: bool

    model_config = {"from_attributes": True}


class StudentBase(BaseModel):
    name: str = Field(..., max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=3, max_length=30)
    program: Optional[str] = Field(None, max_length=120)
    year_of_study: Optional[str] = Field(None, max_length=20)


class StudentCreate(StudentBase):
    student_number: Optional[str] = Field(None, max_length=20)


class StudentUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, min_length=3, max_length=30)
    program: Optional[str] = Field(None, max_length=120)
    year_of_study: Optional[str] = Field(None, max_length=20)
    payment_status: Optional[bool] = None

    @model_validator(mode="after")
    def _required_fields_stay_set(self) -> "StudentUpdate":
        _reject_cleared(self, ("name", "email", "phone", "payment_status"))
        return self


class StudentRead(StudentBase):
    id: int
    student_number: str
    payment_status: bool
    room_id: Optional[int]
    room: Optional[RoomSummary] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class RoomDetails(RoomRead):
    """Assigned-room view returned to the occupant."""


class RoommateGender(str, Enum):
    SAME = "same"
    ANY = "any"


class StudyHabits(str, Enum):
    EARLY = "early"
    NIGHT = "night"
    MIXED = "mixed"


class SleepSchedule(str, Enum):
    EARLY = "early"
    MEDIUM = "medium"
    LATE = "late"


class RoomPreferences(BaseModel):
    floor_level: Optional[FloorLevel] = None
    roommate_gender: Optional[RoommateGender] = None
    quiet_study_area: bool = False
    room_type: Optional[RoomType] = None
    study_habits: Optional[StudyHabits] = None
    sleep_schedule: Optional[SleepSchedule] = None


class ApplicationCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=60)
    last_name: str = Field(..., min_length=1, max_length=60)
    email: EmailStr
    phone: str = Field(..., min_length=3, max_length=30)
    student_number: str = Field(..., min_length=1, max_length=20)
    program: str = Field(..., min_length=1, max_length=120)
    year_of_study: str = Field(..., min_length=1, max_length=20)
    special_requirements: Optional[str] = None
    room_id: int
    preferences: RoomPreferences = Field(default_factory=RoomPreferences)


class ApplicationRead(ApplicationCreate):
    id: int
    reference: str
    status: ApplicationStatus
    applicant_user_id: Optional[int]
    submitted_at: datetime
    processed_at: Optional[datetime]
    processed_by: Optional[int]

    model_config = {"from_attributes": True}


class ApplicationDecision(BaseModel):
    status: ApplicationStatus
    assign: bool = True

    @model_validator(mode="after")
    def _only_review_outcomes(self) -> "ApplicationDecision":
        if self.status not in {ApplicationStatus.APPROVED, ApplicationStatus.REJECTED}:
            raise ValueError("status must be 'approved' or 'rejected'")
        return self


class MaintenanceCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=150)
    description: str = Field(..., min_length=1)
    priority: Priority
    location: str = Field(..., min_length=1, max_length=255)
    room_id: Optional[int] = None


class MaintenanceUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=150)
    description: Optional[str] = None
    priority: Optional[Priority] = None
    status: Optional[MaintenanceStatus] = None
    location: Optional[str] = None
    assignee: Optional[str] = None
    notes: Optional[str] = None
    estimated_completion: Optional[datetime] = None


class MaintenanceRead(MaintenanceCreate):
    id: int
    status: MaintenanceStatus
    requested_by: int
    assignee: Optional[str]
    notes: Optional[str]
    estimated_completion: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MaintenanceStats(BaseModel):
    pending: int
    in_progress: int
    completed: int
    high_priority: int


class UserMaintenanceStats(BaseModel):
    pending: int
    in_progress: int
    completed: int
    avg_resolution_days: int


class Audience(str, Enum):
    ALL = "all"
    STUDENTS = "students"
    STAFF = "staff"


class AnnouncementCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)
    priority: Priority = Priority.MEDIUM
    category: AnnouncementCategory = AnnouncementCategory.GENERAL
    target_audience: List[Audience] = Field(default_factory=lambda: [Audience.ALL])
    valid_until: Optional[datetime] = None
    status: AnnouncementStatus = AnnouncementStatus.PUBLISHED


class AnnouncementUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    content: Optional[str] = None
    priority: Optional[Priority] = None
    category: Optional[AnnouncementCategory] = None
    target_audience: Optional[List[Audience]] = None
    valid_until: Optional[datetime] = None
    status: Optional[AnnouncementStatus] = None


class AnnouncementRead(AnnouncementCreate):
    id: int
    author_id: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaymentCreate(BaseModel):
    student_id: Optional[int] = None
    amount: float = Field(..., gt=0)
    due_date: date
    payment_type: PaymentType
    description: Optional[str] = None

    @model_validator(mode="after")
    def _rent_needs_student(self) -> "PaymentCreate":
        if self.payment_type == PaymentType.RENT and self.student_id is None:
            raise ValueError("rent payments require a student_id")
        return self


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus
    transaction_id: Optional[str] = Field(None, max_length=100)


class PaymentRead(PaymentCreate):
    id: int
    invoice_id: str
    status: PaymentStatus
    paid_at: Optional[datetime]
    transaction_id: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class NextPayment(BaseModel):
    invoice_id: Optional[str] = None
    amount: Optional[float] = None
    next_payment_date: Optional[date] = None


class OccupancyStatus(BaseModel):
    room_id: int
    status: str
    occupant_count: int
    capacity: int
    checked_at: str


class AnalyticsOverview(BaseModel):
    total_rooms: int
    full_rooms: int
    total_capacity: int
    occupied_slots: int
    occupancy_rate: int
    room_type_distribution: dict[str, int]
    applications: dict[str, int]
    open_maintenance_requests: int
    total_revenue: float
    pending_payments: float
