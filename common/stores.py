"""Lookups and filtered queries over the room and student tables."""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .errors import NotFound
from .models import FloorLevel, Room, RoomType, Student


def get_room(db: Session, room_id: int) -> Room:
    room = db.get(Room, room_id)
    if room is None:
        raise NotFound("Room not found")
    return room


def get_student(db: Session, student_id: int) -> Student:
    student = db.get(Student, student_id)
    if student is None:
        raise NotFound("Student not found")
    return student


def find_student(db: Session, key: str) -> Student:
    """Resolve a student by student number first, then by numeric id."""
    student = db.query(Student).filter(Student.student_number == key).first()
    if student is None and key.isdigit():
        student = db.get(Student, int(key))
    if student is None:
        raise NotFound("Student not found")
    return student


def filter_rooms(
    db: Session,
    *,
    available: Optional[bool] = None,
    room_type: Optional[RoomType] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    capacity: Optional[int] = None,
    floor_level: Optional[FloorLevel] = None,
    search: Optional[str] = None,
) -> List[Room]:
    query = db.query(Room)
    if available is not None:
        query = query.filter(Room.is_available.is_(available))
    if room_type is not None:
        query = query.filter(Room.type == room_type)
    if min_price is not None:
        query = query.filter(Room.price >= min_price)
    if max_price is not None:
        query = query.filter(Room.price <= max_price)
    if capacity is not None:
        query = query.filter(Room.capacity >= capacity)
    if floor_level is not None:
        query = query.filter(Room.floor_level == floor_level)
    if search:
        term = search.strip().lower()
        # Enum columns hold member names, so match the type against values here.
        matching_types = [member for member in RoomType if term in member.value]
        clauses = [Room.room_number.ilike(f"%{term}%")]
        if matching_types:
            clauses.append(Room.type.in_(matching_types))
        query = query.filter(or_(*clauses))
    return query.order_by(Room.room_number.asc()).all()


def search_students(db: Session, *, search: Optional[str] = None, assigned: Optional[bool] = None) -> List[Student]:
    query = db.query(Student)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(Student.name.ilike(pattern), Student.email.ilike(pattern), Student.student_number.ilike(pattern))
        )
    if assigned is True:
        query = query.filter(Student.room_id.is_not(None))
    elif assigned is False:
        query = query.filter(Student.room_id.is_(None))
    return query.order_by(Student.name.asc()).all()


def email_taken(db: Session, email: str, *, exclude_id: Optional[int] = None) -> bool:
    query = db.query(Student.id).filter(Student.email == email)
    if exclude_id is not None:
        query = query.filter(Student.id != exclude_id)
    return query.first() is not None
