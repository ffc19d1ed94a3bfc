"""Unit tests for the room occupancy workflow."""
import threading
from datetime import date

import pytest
from sqlalchemy import Update
from sqlalchemy.exc import OperationalError

from common import assignment
from common.assignment import RoomLocks, occupancy_violations
from common.database import SessionLocal
from common.errors import (
    AlreadyAssigned,
    CapacityExceeded,
    NotAssigned,
    NotFound,
    PersistenceError,
    RoomOccupied,
    ValidationError,
)
from common.models import Payment, PaymentType, Room, RoomType, Student


def make_room(db, number="R1", capacity=2):
    room = Room(room_number=number, type=RoomType.DOUBLE, capacity=capacity, occupant_count=0, is_available=True)
    db.add(room)
    db.commit()
    return room.id


def make_students(db, *names):
    students = [
        Student(name=name, email=f"{name.lower()}@example.com", phone="555-0000", student_number=f"24R{1000 + i}")
        for i, name in enumerate(names)
    ]
    db.add_all(students)
    db.commit()
    return [student.id for student in students]


@pytest.fixture()
def locks():
    return RoomLocks()


class TestAssignStudent:
    """Capacity and cross-reference rules for single assignments."""

    def test_room_fills_then_frees(self, db_session, locks):
        room_id = make_room(db_session, capacity=2)
        s1, s2, s3 = make_students(db_session, "Ann", "Bo", "Cy")

        room = assignment.assign_student(db_session, room_id, s1, locks=locks)
        assert [o.id for o in room.occupants] == [s1]
        assert room.is_available is True

        room = assignment.assign_student(db_session, room_id, s2, locks=locks)
        assert [o.id for o in room.occupants] == [s1, s2]
        assert room.is_available is False

        with pytest.raises(CapacityExceeded):
            assignment.assign_student(db_session, room_id, s3, locks=locks)

        room = assignment.unassign_student(db_session, room_id, s1, locks=locks)
        assert [o.id for o in room.occupants] == [s2]
        assert room.is_available is True
        assert occupancy_violations(db_session) == []

    def test_student_holds_one_room(self, db_session, locks):
        first = make_room(db_session, "R1")
        second = make_room(db_session, "R2")
        (student,) = make_students(db_session, "Dee")

        assignment.assign_student(db_session, first, student, locks=locks)
        with pytest.raises(AlreadyAssigned):
            assignment.assign_student(db_session, first, student, locks=locks)
        with pytest.raises(AlreadyAssigned):
            assignment.assign_student(db_session, second, student, locks=locks)
        assert db_session.get(Room, second).occupant_count == 0

    def test_unknown_ids(self, db_session, locks):
        room_id = make_room(db_session)
        (student,) = make_students(db_session, "Eli")
        with pytest.raises(NotFound):
            assignment.assign_student(db_session, room_id + 1, student, locks=locks)
        with pytest.raises(NotFound):
            assignment.assign_student(db_session, room_id, student + 1, locks=locks)

    def test_unassign_requires_membership(self, db_session, locks):
        room_id = make_room(db_session)
        (student,) = make_students(db_session, "Fay")
        with pytest.raises(NotAssigned):
            assignment.unassign_student(db_session, room_id, student, locks=locks)

    def test_round_trip_restores_state(self, db_session, locks):
        room_id = make_room(db_session, capacity=3)
        s1, s2 = make_students(db_session, "Gus", "Hana")
        assignment.assign_student(db_session, room_id, s1, locks=locks)
        assignment.assign_student(db_session, room_id, s2, locks=locks)
        before = db_session.get(Room, room_id)
        snapshot = (before.occupant_count, before.is_available, [o.id for o in before.occupants])

        assignment.unassign_student(db_session, room_id, s1, locks=locks)
        room = assignment.assign_student(db_session, room_id, s1, locks=locks)

        assert (room.occupant_count, room.is_available, sorted(o.id for o in room.occupants)) == (
            snapshot[0],
            snapshot[1],
            sorted(snapshot[2]),
        )

    def test_uncommitted_assignment_can_be_rolled_back(self, db_session, locks):
        room_id = make_room(db_session, capacity=1)
        (student,) = make_students(db_session, "Ivy")

        assignment.assign_student(db_session, room_id, student, locks=locks, commit=False)
        db_session.rollback()

        assert db_session.get(Room, room_id).occupant_count == 0
        assert db_session.get(Student, student).room_id is None

    def test_failed_student_write_rolls_back_room(self, db_session, locks, monkeypatch):
        room_id = make_room(db_session, capacity=2)
        (student,) = make_students(db_session, "Jo")
        real_execute = db_session.execute

        def flaky_execute(statement, *args, **kwargs):
            if isinstance(statement, Update) and statement.table.name == "students":
                raise OperationalError("UPDATE students", {}, Exception("disk I/O error"))
            return real_execute(statement, *args, **kwargs)

        monkeypatch.setattr(db_session, "execute", flaky_execute)
        with pytest.raises(PersistenceError):
            assignment.assign_student(db_session, room_id, student, locks=locks)
        monkeypatch.undo()

        with SessionLocal() as fresh:
            assert fresh.get(Room, room_id).occupant_count == 0
            assert fresh.get(Student, student).room_id is None
            assert occupancy_violations(fresh) == []


class TestConcurrentAssignment:
    """Two writers competing for the last slot of a room."""

    def test_threads_racing_for_last_slot(self, db_session, locks):
        room_id = make_room(db_session, capacity=1)
        s1, s2 = make_students(db_session, "Kai", "Lu")
        barrier = threading.Barrier(2)
        outcomes = {}

        def attempt(student_id):
            with SessionLocal() as session:
                barrier.wait()
                try:
                    assignment.assign_student(session, room_id, student_id, locks=locks)
                    outcomes[student_id] = "assigned"
                except CapacityExceeded:
                    outcomes[student_id] = "full"

        workers = [threading.Thread(target=attempt, args=(sid,)) for sid in (s1, s2)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=30)

        assert sorted(outcomes.values()) == ["assigned", "full"]
        db_session.expire_all()
        assert db_session.get(Room, room_id).occupant_count == 1
        assert occupancy_violations(db_session) == []

    def test_stale_reader_is_rejected_by_conditional_write(self, locks):
        with SessionLocal() as setup:
            room_id = make_room(setup, capacity=1)
            s1, s2 = make_students(setup, "Mo", "Nia")

        with SessionLocal() as stale, SessionLocal() as winner:
            # Loads occupant_count == 0 into the identity map.
            stale_room = stale.get(Room, room_id)
            stale_student = stale.get(Student, s2)
            assert (stale_room.occupant_count, stale_student.room_id) == (0, None)

            # A writer with its own lock registry, as in another process.
            assignment.assign_student(winner, room_id, s1, locks=RoomLocks())

            with pytest.raises(CapacityExceeded):
                assignment.assign_student(stale, room_id, s2, locks=locks)

        with SessionLocal() as check:
            assert check.get(Room, room_id).occupant_count == 1
            assert check.get(Student, s2).room_id is None
            assert occupancy_violations(check) == []


class TestDeleteAndResize:
    """Room removal and capacity edits keep both sides consistent."""

    def test_delete_occupied_room_rejected(self, db_session, locks):
        room_id = make_room(db_session)
        (student,) = make_students(db_session, "Oz")
        assignment.assign_student(db_session, room_id, student, locks=locks)

        with pytest.raises(RoomOccupied) as excinfo:
            assignment.delete_room(db_session, room_id, locks=locks)
        assert excinfo.value.details == {"occupants": [student]}
        assert db_session.get(Room, room_id) is not None

    def test_delete_room_unassigns_everyone(self, db_session, locks):
        room_id = make_room(db_session)
        s1, s2 = make_students(db_session, "Pia", "Quo")
        assignment.assign_student(db_session, room_id, s1, locks=locks)
        assignment.assign_student(db_session, room_id, s2, locks=locks)

        released = assignment.delete_room(db_session, room_id, locks=locks, unassign_occupants=True)

        assert sorted(released) == [s1, s2]
        with SessionLocal() as fresh:
            assert fresh.get(Room, room_id) is None
            assert [fresh.get(Student, s).room_id for s in (s1, s2)] == [None, None]
            assert occupancy_violations(fresh) == []

    def test_delete_student_releases_slot(self, db_session, locks):
        room_id = make_room(db_session, capacity=1)
        (student,) = make_students(db_session, "Rex")
        assignment.assign_student(db_session, room_id, student, locks=locks)

        assignment.delete_student(db_session, student, locks=locks)

        room = db_session.get(Room, room_id)
        assert room.occupant_count == 0
        assert room.is_available is True

    def test_delete_student_removes_their_invoices(self, db_session, locks):
        leaving, staying = make_students(db_session, "Uma", "Vic")
        db_session.add_all(
            [
                Payment(
                    invoice_id=f"INV-{student}",
                    student_id=student,
                    amount=100,
                    due_date=date.today(),
                    payment_type=PaymentType.RENT,
                )
                for student in (leaving, staying)
            ]
        )
        db_session.commit()

        assignment.delete_student(db_session, leaving, locks=locks)

        with SessionLocal() as fresh:
            assert [p.student_id for p in fresh.query(Payment).all()] == [staying]

    def test_capacity_floor(self, db_session, locks):
        room_id = make_room(db_session, capacity=3)
        s1, s2 = make_students(db_session, "Sid", "Tia")
        assignment.assign_student(db_session, room_id, s1, locks=locks)
        assignment.assign_student(db_session, room_id, s2, locks=locks)

        with pytest.raises(ValidationError):
            assignment.update_room(db_session, room_id, {"capacity": 1}, locks=locks)
        room = assignment.update_room(db_session, room_id, {"capacity": 2, "description": "Full now"}, locks=locks)
        assert (room.capacity, room.is_available, room.description) == (2, False, "Full now")


def test_invariants_hold_across_mixed_operations(db_session, locks):
    rooms = [make_room(db_session, f"M{i}", capacity=c) for i, c in enumerate((1, 2, 3))]
    students = make_students(db_session, *(f"S{i}" for i in range(8)))
    plan = [(r, s) for s in students for r in rooms]

    for step, (room_id, student_id) in enumerate(plan):
        try:
            if step % 3 == 2:
                assignment.unassign_student(db_session, room_id, student_id, locks=locks)
            else:
                assignment.assign_student(db_session, room_id, student_id, locks=locks)
        except (AlreadyAssigned, CapacityExceeded, NotAssigned):
            pass
        assert occupancy_violations(db_session) == []
