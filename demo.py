"""Demo script to exercise HostelSystem with a small sample dataset.

Run: python demo.py

Supports two backends:
- In-memory (default)
- MongoDB (set DB_BACKEND=mongodb and MONGODB_URI in .env)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict

from hostel_config import configure_logging, load_settings
from hostel_store import ROOMS, USERS, MongoStore
from hostel_system import Conflict, HostelSystem, Room, Student

logger = logging.getLogger(__name__)

SAMPLE_ROOMS = [
    # number, floor, block, type, capacity, amenities
    ("101", "1", "A", "single", 1, "Attached Bathroom"),
    ("102", "1", "A", "double", 2, "AC, Attached Bathroom"),
    ("201", "2", "B", "triple", 3, "Balcony"),
    ("202", "2", "B", "single", 1, None),
]

SAMPLE_STUDENTS = [
    # name, email, course, year
    ("Alice Johnson", "alice@example.com", "CSE", 3),
    ("Bob Smith", "bob@example.com", "ECE", 2),
    ("Carol Lee", "carol@example.com", "ME", 1),
    ("David Kim", "david@example.com", "EEE", 4),
]


def _room_by_number(system: HostelSystem, number: str) -> Room:
    return Room.from_doc(system.store.query(ROOMS, [("number", "==", number)])[0])


def _student_by_email(system: HostelSystem, email: str) -> Student:
    return Student.from_doc(system.store.query(USERS, [("email", "==", email)])[0])


def seed_sample_data(system: HostelSystem) -> Dict[str, int]:
    """Seed deterministic sample data. Existing rooms and students are skipped.

    Returns counts of inserted records.
    """
    added = {"rooms": 0, "students": 0, "assignments": 0, "requests": 0, "fees": 0, "complaints": 0}

    for number, floor, block, room_type, capacity, amenities in SAMPLE_ROOMS:
        try:
            system.rooms.create_room(number, floor, room_type, capacity, block=block, amenities=amenities)
            added["rooms"] += 1
        except Conflict:
            continue
    for name, email, course, year in SAMPLE_STUDENTS:
        try:
            system.rooms.register_student(name, email, course=course, year=year)
            added["students"] += 1
        except Conflict:
            continue
    if not added["students"]:
        return added

    alice = _student_by_email(system, "alice@example.com")
    bob = _student_by_email(system, "bob@example.com")
    carol = _student_by_email(system, "carol@example.com")

    # 202 is under repair; 101 goes to Alice; Bob asks for a bed in 102
    system.rooms.set_room_status(_room_by_number(system, "202").id, "maintenance")
    system.rooms.assign_room_direct(alice.id, _room_by_number(system, "101").id)
    added["assignments"] += 1
    system.rooms.request_room(bob.id, _room_by_number(system, "102").id)
    added["requests"] += 1

    now = system.clock()
    paid = system.fees.create_fee(alice.id, 5000, now - timedelta(days=30))
    system.fees.mark_paid(paid.id, "UPI ref 0042")
    system.fees.create_fee(bob.id, 5000, now - timedelta(days=1))
    system.fees.create_fee(carol.id, 4500, now + timedelta(days=14))
    added["fees"] += 3

    system.complaints.file_complaint(alice.id, "Water leakage", "Tap in the bathroom keeps dripping", "high")
    system.complaints.file_complaint(carol.id, "Wi-Fi", "Signal drops in the evening", "low")
    added["complaints"] += 2
    logger.info("Seeded sample data: %s", added)
    return added


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_format)
    if settings.db_backend == "mongodb":
        store = MongoStore(uri=settings.mongodb_uri, db_name=settings.db_name, collection_prefix=settings.collection_prefix)
        system = HostelSystem(store=store)
        print("Using MongoDB backend")
    else:
        system = HostelSystem()
        print("Using in-memory backend")

    print("Seeded:", seed_sample_data(system))

    print("\nRooms:")
    for room in system.rooms.list_rooms():
        print(f"  {room.number:>4}  {room.type:<7} {room.occupancy}/{room.capacity}  {room.status}")
    print("Occupancy:", system.rooms.occupancy_summary())

    print("\nPending room requests:")
    for req in system.rooms.list_requests(status="pending"):
        print(f"  {req.user_name} -> Room {req.room_number}")

    print("\nFee totals:", system.fees.totals_by_status())

    print("\nComplaint queue:")
    for c in system.complaints.admin_queue():
        print(f"  [{c.priority:<6}] {c.title} ({c.status}, room {c.room_number})")
    print("Complaint stats:", system.complaints.stats())

    problems = system.rooms.audit_occupancy()
    print("\nOccupancy audit:", "ok" if not problems else problems)


if __name__ == "__main__":
    main()
