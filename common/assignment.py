"""Room occupancy workflow: assigning, unassigning and removing occupants.

A room's occupants are the students whose ``room_id`` points at it, and
``Room.occupant_count`` mirrors their number. Every change here writes the room
row and the student row(s) in one transaction, so either both sides of the
cross-reference change or neither does.

Two guards keep ``occupant_count <= capacity`` when requests race:

* ``RoomLocks`` serialises changes to the same room within a process.
* Room writes are conditional updates on ``occupant_count``; a writer in
  another process that lost the race updates zero rows and is rejected.
"""
from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import (
    AlreadyAssigned,
    CapacityExceeded,
    Conflict,
    HousingError,
    NotAssigned,
    PersistenceError,
    RoomOccupied,
    ValidationError,
)
from .models import Application, MaintenanceRequest, Payment, Room, Student
from .notifications import Notifier
from .stores import get_room, get_student

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


class RoomLocks:
    """One mutex per room id, created on first use."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[int, Lock] = {}

    def for_room(self, room_id: int) -> Lock:
        with self._guard:
            return self._locks.setdefault(room_id, Lock())

    @contextmanager
    def hold(self, *room_ids: int) -> Iterator[None]:
        with ExitStack() as stack:
            # ascending order so two multi-room holders cannot deadlock
            for room_id in sorted(set(room_ids)):
                stack.enter_context(self.for_room(room_id))
            yield


def _finish(db: Session, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()


@contextmanager
def _transaction(db: Session, action: str) -> Iterator[None]:
    """Roll back both documents on any failure inside the block."""
    try:
        yield
    except HousingError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Integrity error while trying to %s: %s", action, exc.orig)
        raise Conflict(f"Could not {action}: conflicting data") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Database error while trying to %s: %s", action, exc)
        raise PersistenceError(f"Could not {action}; no changes were saved") from exc


def _claim_slot(db: Session, room: Room) -> None:
    stmt = (
        update(Room)
        .where(Room.id == room.id, Room.occupant_count < Room.capacity)
        .values(
            occupant_count=Room.occupant_count + 1,
            is_available=Room.occupant_count + 1 < Room.capacity,
        )
    )
    if db.execute(stmt, execution_options=_NO_SYNC).rowcount != 1:
        raise CapacityExceeded(f"Room {room.room_number} is full")


def _release_slot(db: Session, room_id: int) -> None:
    stmt = (
        update(Room)
        .where(Room.id == room_id, Room.occupant_count > 0)
        .values(occupant_count=Room.occupant_count - 1, is_available=True)
    )
    db.execute(stmt, execution_options=_NO_SYNC)


def assign_student(
    db: Session,
    room_id: int,
    student_id: int,
    *,
    locks: RoomLocks,
    notifier: Optional[Notifier] = None,
    commit: bool = True,
) -> Room:
    """Add a student to a room, enforcing capacity.

    Raises ``NotFound`` for unknown ids, ``AlreadyAssigned`` when the student
    already holds a room (including this one) and ``CapacityExceeded`` when the
    room is full. With ``commit=False`` the writes are flushed and the caller
    owns the transaction (and any notification).
    """
    with locks.hold(room_id):
        room = get_room(db, room_id)
        student = get_student(db, student_id)
        if student.room_id is not None:
            if student.room_id == room_id:
                raise AlreadyAssigned(f"Student {student.student_number} already lives in room {room.room_number}")
            raise AlreadyAssigned(f"Student {student.student_number} is already assigned to another room")
        if room.occupant_count >= room.capacity:
            raise CapacityExceeded(f"Room {room.room_number} is full")

        with _transaction(db, "assign student"):
            _claim_slot(db, room)
            linked = db.execute(
                update(Student)
                .where(Student.id == student_id, Student.room_id.is_(None))
                .values(room_id=room_id),
                execution_options=_NO_SYNC,
            ).rowcount
            if linked != 1:
                raise AlreadyAssigned(f"Student {student.student_number} is already assigned to another room")
            _finish(db, commit)

        db.refresh(room)
        db.refresh(student)

    logger.info(
        "Assigned student %s to room %s (%s/%s)",
        student.id,
        room.room_number,
        room.occupant_count,
        room.capacity,
    )
    if commit and notifier is not None:
        notifier.room_assigned(student, room)
    return room


def unassign_student(
    db: Session,
    room_id: int,
    student_id: int,
    *,
    locks: RoomLocks,
    notifier: Optional[Notifier] = None,
    commit: bool = True,
) -> Room:
    """Remove a student from a room; ``NotAssigned`` if they do not live there."""
    with locks.hold(room_id):
        room = get_room(db, room_id)
        student = get_student(db, student_id)
        if student.room_id != room_id:
            raise NotAssigned(f"Student {student.student_number} is not assigned to room {room.room_number}")

        with _transaction(db, "unassign student"):
            released = db.execute(
                update(Student)
                .where(Student.id == student_id, Student.room_id == room_id)
                .values(room_id=None),
                execution_options=_NO_SYNC,
            ).rowcount
            if released != 1:
                raise NotAssigned(f"Student {student.student_number} is not assigned to room {room.room_number}")
            _release_slot(db, room_id)
            _finish(db, commit)

        db.refresh(room)
        db.refresh(student)

    logger.info("Unassigned student %s from room %s", student.id, room.room_number)
    if commit and notifier is not None:
        notifier.room_unassigned(student, room)
    return room


def delete_student(db: Session, student_id: int, *, locks: RoomLocks, notifier: Optional[Notifier] = None) -> None:
    """Delete a student with their invoices, vacating their room slot in the same transaction."""
    student = get_student(db, student_id)
    room_id = student.room_id
    email = student.email
    if room_id is not None:
        unassign_student(db, room_id, student_id, locks=locks, commit=False)
    with _transaction(db, "delete student"):
        db.execute(delete(Payment).where(Payment.student_id == student_id), execution_options=_NO_SYNC)
        db.delete(student)
        db.commit()
    logger.info("Deleted student %s (released room %s)", student_id, room_id)
    if room_id is not None and notifier is not None:
        notifier.publish(
            "room_unassigned",
            {"student_id": student_id, "student_email": email, "room_id": room_id, "reason": "student_deleted"},
        )


def delete_room(
    db: Session,
    room_id: int,
    *,
    locks: RoomLocks,
    unassign_occupants: bool = False,
    notifier: Optional[Notifier] = None,
) -> List[int]:
    """Delete a room without leaving students pointing at it.

    An occupied room is rejected with ``RoomOccupied`` unless
    ``unassign_occupants`` is set, in which case every occupant is unassigned
    in the same transaction. Returns the ids of the released students.
    """
    with locks.hold(room_id):
        room = get_room(db, room_id)
        released = [student.id for student in room.occupants]
        if released and not unassign_occupants:
            raise RoomOccupied(
                f"Room {room.room_number} still has {len(released)} occupant(s)",
                occupants=released,
            )

        with _transaction(db, "delete room"):
            # Zeroing the counter first takes the row lock, so no slot can be
            # claimed between detaching occupants and the delete below.
            db.execute(
                update(Room).where(Room.id == room_id).values(occupant_count=0, is_available=False),
                execution_options=_NO_SYNC,
            )
            db.execute(
                update(Student).where(Student.room_id == room_id).values(room_id=None),
                execution_options=_NO_SYNC,
            )
            db.execute(
                update(MaintenanceRequest).where(MaintenanceRequest.room_id == room_id).values(room_id=None),
                execution_options=_NO_SYNC,
            )
            db.execute(delete(Application).where(Application.room_id == room_id), execution_options=_NO_SYNC)
            db.execute(delete(Room).where(Room.id == room_id), execution_options=_NO_SYNC)
            db.commit()

    logger.info("Deleted room %s (released students %s)", room_id, released or "none")
    if notifier is not None:
        for student_id in released:
            notifier.publish(
                "room_unassigned",
                {"student_id": student_id, "room_id": room_id, "reason": "room_deleted"},
            )
    return released


def update_room(db: Session, room_id: int, changes: Dict[str, Any], *, locks: RoomLocks) -> Room:
    """Apply an admin edit; capacity can never drop below the occupant count."""
    with locks.hold(room_id):
        room = get_room(db, room_id)
        capacity = changes.pop("capacity", None)
        with _transaction(db, "update room"):
            for key, value in changes.items():
                setattr(room, key, value)
            if capacity is not None and capacity != room.capacity:
                resized = db.execute(
                    update(Room)
                    .where(Room.id == room_id, Room.occupant_count <= capacity)
                    .values(capacity=capacity, is_available=Room.occupant_count < capacity),
                    execution_options=_NO_SYNC,
                ).rowcount
                if resized != 1:
                    raise ValidationError(
                        f"Capacity {capacity} is below the current occupancy of room {room.room_number}",
                        occupant_count=room.occupant_count,
                    )
            db.commit()
        db.refresh(room)
    return room


def occupancy_violations(db: Session) -> List[str]:
    """Describe every room whose counters disagree with its occupants."""
    counts = dict(
        db.query(Student.room_id, func.count(Student.id))
        .filter(Student.room_id.is_not(None))
        .group_by(Student.room_id)
        .all()
    )
    problems: List[str] = []
    known_rooms = set()
    for room in db.query(Room).all():
        known_rooms.add(room.id)
        actual = counts.get(room.id, 0)
        if actual != room.occupant_count:
            problems.append(f"room {room.id}: counter {room.occupant_count} but {actual} occupants")
        if actual > room.capacity:
            problems.append(f"room {room.id}: {actual} occupants exceed capacity {room.capacity}")
        if room.is_available != (actual < room.capacity):
            problems.append(f"room {room.id}: is_available={room.is_available} with {actual}/{room.capacity}")
    for dangling in set(counts) - known_rooms:
        problems.append(f"students reference missing room {dangling}")
    return problems
